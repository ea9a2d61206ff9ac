# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Marker rows written by the capture engine.

Each marker is committed as soon as it is written: it is the permanent
record of why the checkpoint moved without captured changes.
"""

from datetime import datetime, UTC

import aiosqlite

from cdchistory.models import BOOTSTRAP_ENTITY, GAP_ENTITY, RESET_ENTITY, Operation
from cdchistory.store import commit_and_begin, insert_marker


def _stamp(now: datetime) -> str:
    return now.strftime("%Y-%m-%d %H:%M:%S")


async def record_bootstrap(
    db: aiosqlite.Connection,
    position: int,
    now: datetime | None = None,
) -> int:
    """Record the starting point of an empty store."""
    now = now or datetime.now(UTC)
    capture_id = await insert_marker(
        db,
        Operation.BOOTSTRAP,
        position,
        BOOTSTRAP_ENTITY,
        redo=f"-- Capture started at position {position}",
        undo=f"-- Bootstrap at {_stamp(now)}",
        note="Auto-checkpoint",
        captured_at=now,
    )
    await commit_and_begin(db)
    return capture_id


async def record_gap(
    db: aiosqlite.Connection,
    last_position: int,
    oldest_available: int,
    now: datetime | None = None,
) -> int:
    """
    Record that positions up to oldest_available - 1 were skipped.

    The marker sits at oldest_available - 1 so the checkpoint lands just
    before the first change that can still be read.
    """
    now = now or datetime.now(UTC)
    position = max(oldest_available - 1, last_position)
    capture_id = await insert_marker(
        db,
        Operation.GAP,
        position,
        GAP_ENTITY,
        redo=f"-- Gap from position {last_position} to {oldest_available}",
        undo=f"-- Recovery at {_stamp(now)}",
        note="Auto-recovery checkpoint",
        captured_at=now,
    )
    await commit_and_begin(db)
    return capture_id


async def record_reset(
    db: aiosqlite.Connection,
    last_position: int,
    current_position: int,
    now: datetime | None = None,
) -> int:
    """Record that nothing after last_position was recoverable."""
    now = now or datetime.now(UTC)
    capture_id = await insert_marker(
        db,
        Operation.RESET,
        current_position,
        RESET_ENTITY,
        redo=(
            f"-- All changes after position {last_position} were purged. "
            f"Reset to position {current_position}"
        ),
        undo=f"-- Reset at {_stamp(now)}",
        note="Full reset checkpoint",
        captured_at=now,
    )
    await commit_and_begin(db)
    return capture_id
