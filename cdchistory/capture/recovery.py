# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Gap Detector & Recovery - Opening a session when the log has rotated.

When the checkpoint has fallen out of the source's retention, the
source refuses to open a session from it. Recovery then has two
outcomes, both leaving a permanent marker row behind:

1. Recoverable gap: a probe finds the oldest position still readable.
   A GAP marker moves the checkpoint to just before it and the session
   is reopened from there.
2. Full reset: nothing is readable (or the probe fails). A RESET marker
   moves the checkpoint to the current position and the cycle ends.

Every other open failure propagates unchanged.
"""

from contextlib import aclosing, asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta, UTC
from typing import AsyncIterator

import aiosqlite
import structlog

from cdchistory.capture.markers import record_gap, record_reset
from cdchistory.capture.session import close_quietly, reading_session
from cdchistory.checkpoint import CaptureWindow
from cdchistory.exceptions import RangeUnavailableError
from cdchistory.models import Operation
from cdchistory.source import ChangeLogSource, SessionHandle

logger = structlog.get_logger()

DEFAULT_PROBE_WINDOW_DAYS = 6


@dataclass
class RecoveredSession:
    """Outcome of opening a session for a capture window."""

    handle: SessionHandle | None  # None after a full reset
    start: int  # Effective start position: (start, window.end]
    marker: Operation | None = None  # GAP or RESET if recovery ran


async def probe_oldest_position(
    source: ChangeLogSource,
    after_position: int,
    window_days: int = DEFAULT_PROBE_WINDOW_DAYS,
    now: datetime | None = None,
) -> int | None:
    """
    Find the lowest readable position after after_position.

    Looks through a recent time window rather than by position, since
    the position range is exactly what the source just refused.

    Returns:
        The oldest available position, or None if none was found or the
        probe itself failed
    """
    now = now or datetime.now(UTC)
    try:
        async with reading_session(
            source,
            start_time=now - timedelta(days=window_days),
            end_time=now,
        ) as handle:
            async with aclosing(source.read_events(handle)) as events:
                async for event in events:
                    if event.position > after_position:
                        return event.position
    except Exception as e:
        logger.warning("gap_probe_failed", after_position=after_position, error=str(e))
        return None

    return None


@asynccontextmanager
async def open_with_recovery(
    db: aiosqlite.Connection,
    source: ChangeLogSource,
    window: CaptureWindow,
    probe_window_days: int = DEFAULT_PROBE_WINDOW_DAYS,
) -> AsyncIterator[RecoveredSession]:
    """
    Open a reading session for window, recovering from log rotation.

    Must run inside the capture's write transaction: marker rows are
    committed on db and a new write transaction is opened after them.

    Yields:
        RecoveredSession; its handle is closed when the block exits
    """
    handle: SessionHandle | None = None
    start = window.start
    marker: Operation | None = None

    try:
        handle = await source.open_session(start_position=window.start, end_position=window.end)
    except RangeUnavailableError as e:
        logger.warning(
            "gap_detected",
            last_position=window.start,
            current_position=window.end,
            error=str(e),
        )

        oldest = await probe_oldest_position(source, window.start, probe_window_days)

        if oldest is None:
            await record_reset(db, window.start, window.end)
            logger.warning("full_reset_recorded", position=window.end)
            start = window.end
            marker = Operation.RESET
        else:
            await record_gap(db, window.start, oldest)
            start = max(oldest - 1, window.start)
            marker = Operation.GAP
            logger.warning(
                "gap_recovered",
                skipped_from=window.start,
                resumed_at=start,
            )
            handle = await source.open_session(start_position=start, end_position=window.end)

    try:
        yield RecoveredSession(handle=handle, start=start, marker=marker)
    finally:
        await close_quietly(source, handle)
