# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
In-Memory Change Log - A process-local change-log source.

Behaves like a real change log where it matters to the capture engine:
positions only grow, old positions rotate out of retention, and only one
reading session may be open at a time. Faults can be queued to exercise
the engine's recovery paths.
"""

import asyncio
from datetime import datetime, UTC
from typing import AsyncIterator, Dict, List

import structlog

from cdchistory.exceptions import (
    RangeUnavailableError,
    SessionBusyError,
    SourceError,
)
from cdchistory.models import ChangeEvent
from cdchistory.source import SessionHandle

logger = structlog.get_logger()


class InMemoryChangeLog:
    """Change-log source backed by a Python list."""

    def __init__(self, start_position: int = 0):
        self._events: List[ChangeEvent] = []
        self._position = start_position
        # Lowest position that is still readable
        self._retained_from = 0
        self._sessions: Dict[str, SessionHandle] = {}

        # Fault injection: exceptions raised by the next open_session calls
        self.fail_next_open: List[BaseException] = []
        self.fail_on_read: BaseException | None = None
        self.fail_on_close: BaseException | None = None
        # Seconds to pause before each event is yielded
        self.read_delay: float = 0.0

        # Counters
        self.sessions_opened = 0
        self.max_concurrent_sessions = 0

    @property
    def open_session_count(self) -> int:
        return len(self._sessions)

    @property
    def retained_from(self) -> int:
        return self._retained_from

    def emit(
        self,
        operation: str,
        namespace: str | None,
        entity: str | None,
        *,
        position: int | None = None,
        redo: str | None = None,
        undo: str | None = None,
        actor: str | None = None,
        transaction_id: str | None = None,
        source_row_id: str | None = None,
        event_time: datetime | None = None,
    ) -> ChangeEvent:
        """
        Record a change at the next position (or at an explicit one).

        Positions may repeat (sub-transaction granularity) but never go back.
        """
        if position is None:
            position = self._position + 1
        if position < self._position:
            raise ValueError(
                f"position {position} is behind the current position {self._position}"
            )

        event = ChangeEvent(
            position=position,
            operation=operation,
            namespace=namespace,
            entity=entity,
            event_time=event_time or datetime.now(UTC),
            commit_position=position,
            commit_time=event_time or datetime.now(UTC),
            actor=actor,
            redo_payload=redo,
            undo_payload=undo,
            transaction_id=transaction_id,
            source_row_id=source_row_id,
        )
        self._events.append(event)
        self._position = position
        return event

    def advance(self, position: int) -> None:
        """Move the current position forward without recording a change."""
        self._position = max(self._position, position)

    def rotate(self, before_position: int) -> None:
        """Drop every change below before_position from retention."""
        self._events = [e for e in self._events if e.position >= before_position]
        self._retained_from = max(self._retained_from, before_position)
        logger.debug("memory_log_rotated", retained_from=self._retained_from)

    def rotate_all(self) -> None:
        """Drop every retained change."""
        self.rotate(self._position + 1)

    async def open_session(
        self,
        *,
        start_position: int | None = None,
        end_position: int | None = None,
        start_time: datetime | None = None,
        end_time: datetime | None = None,
    ) -> SessionHandle:
        if self.fail_next_open:
            raise self.fail_next_open.pop(0)

        if self._sessions:
            raise SessionBusyError(
                "A reading session is already open",
                details={"open_sessions": list(self._sessions)},
            )

        # Reading (start, end] needs start + 1 to still be retained
        if start_position is not None and start_position + 1 < self._retained_from:
            raise RangeUnavailableError(
                f"Position {start_position} precedes the retained window",
                details={
                    "start_position": start_position,
                    "retained_from": self._retained_from,
                },
            )

        handle = SessionHandle(
            start_position=start_position,
            end_position=end_position,
            start_time=start_time,
            end_time=end_time,
        )
        self._sessions[handle.session_id] = handle
        self.sessions_opened += 1
        self.max_concurrent_sessions = max(self.max_concurrent_sessions, len(self._sessions))
        return handle

    async def read_events(self, handle: SessionHandle) -> AsyncIterator[ChangeEvent]:
        if handle.closed or handle.session_id not in self._sessions:
            raise SourceError(
                "Reading session is not open",
                details={"session_id": handle.session_id},
            )

        selected = [e for e in self._events if self._in_range(e, handle)]
        selected.sort(key=lambda e: e.position)

        for event in selected:
            if self.read_delay:
                await asyncio.sleep(self.read_delay)
            if self.fail_on_read is not None:
                error, self.fail_on_read = self.fail_on_read, None
                raise error
            if handle.closed:
                raise SourceError("Reading session was closed during iteration")
            yield event

    async def close_session(self, handle: SessionHandle | None) -> None:
        if handle is None or handle.closed:
            return
        handle.closed = True
        self._sessions.pop(handle.session_id, None)
        if self.fail_on_close is not None:
            error, self.fail_on_close = self.fail_on_close, None
            raise error

    async def current_position(self) -> int:
        return self._position

    async def close(self) -> None:
        for handle in list(self._sessions.values()):
            handle.closed = True
        self._sessions.clear()

    @staticmethod
    def _in_range(event: ChangeEvent, handle: SessionHandle) -> bool:
        if handle.start_position is not None and event.position <= handle.start_position:
            return False
        if handle.end_position is not None and event.position > handle.end_position:
            return False
        if handle.start_time is not None and event.event_time < handle.start_time:
            return False
        if handle.end_time is not None and event.event_time > handle.end_time:
            return False
        return True
