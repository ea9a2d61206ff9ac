# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Change-Log Source Layer - Bounded, exclusive access to recent changes.

The source is an external collaborator: it owns durability, retention
and decoding. The capture engine only needs to open a bounded reading
session, iterate the events in it, close it, and ask for the current
position. At most one session may be open system-wide.
"""

from dataclasses import dataclass, field
from datetime import datetime, UTC
from typing import AsyncIterator, Protocol

from ulid import ULID

from cdchistory.exceptions import ConfigurationError
from cdchistory.models import ChangeEvent


@dataclass
class SessionHandle:
    """An open reading session on a change-log source."""

    session_id: str = field(default_factory=lambda: str(ULID()))
    start_position: int | None = None
    end_position: int | None = None
    start_time: datetime | None = None
    end_time: datetime | None = None
    opened_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    closed: bool = False


class ChangeLogSource(Protocol):
    """Protocol for change-log sources."""

    async def open_session(
        self,
        *,
        start_position: int | None = None,
        end_position: int | None = None,
        start_time: datetime | None = None,
        end_time: datetime | None = None,
    ) -> SessionHandle:
        """
        Open a reading session over a position or time range.

        A position-bounded session covers (start_position, end_position].

        Raises:
            RangeUnavailableError: start_position has rotated out of retention
            SessionBusyError: another session is already open
            SourceUnavailableError: the source could not be reached
        """
        ...

    def read_events(self, handle: SessionHandle) -> AsyncIterator[ChangeEvent]:
        """Iterate the session's events in position order. Not restartable."""
        ...

    async def close_session(self, handle: SessionHandle | None) -> None:
        """Close a session. Safe on closed or never-opened handles."""
        ...

    async def current_position(self) -> int:
        """Return the source's current position."""
        ...

    async def close(self) -> None:
        """Release the source's own resources."""
        ...


async def open_change_log(
    backend: str,
    connection_url: str | None = None,
) -> ChangeLogSource:
    """
    Open a change-log source for the given backend.

    Args:
        backend: Source backend type ('memory' or 'postgres')
        connection_url: Database connection URL (postgres only)

    Returns:
        A ready-to-use change-log source

    Raises:
        ConfigurationError: If the backend is unsupported or misconfigured
        SourceUnavailableError: If the source cannot be reached
    """
    if backend == "memory":
        from cdchistory.source.memory import InMemoryChangeLog

        return InMemoryChangeLog()
    elif backend == "postgres":
        if not connection_url:
            from cdchistory.errors import explain_missing_source_url

            raise ConfigurationError(explain_missing_source_url(backend))

        from cdchistory.source.postgres import PostgresChangeLog

        return await PostgresChangeLog.connect(connection_url)
    else:
        raise ConfigurationError(f"Unsupported change-log source: {backend}")


__all__ = [
    "ChangeLogSource",
    "SessionHandle",
    "open_change_log",
]
