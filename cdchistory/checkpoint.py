# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Checkpoint Cursor - Where the next capture cycle starts and ends.

The checkpoint is not stored anywhere on its own: it is MAX(position)
over the history store, read inside the capture's write transaction.
"""

from dataclasses import dataclass

import aiosqlite

from cdchistory.store import get_checkpoint


@dataclass(frozen=True)
class CaptureWindow:
    """Position range covered by one capture cycle: (start, end]."""

    start: int
    end: int
    bootstrap: bool = False

    @property
    def empty(self) -> bool:
        return self.bootstrap or self.end <= self.start


async def compute_checkpoint(db: aiosqlite.Connection) -> int | None:
    """Return the last captured position, or None for an empty store."""
    return await get_checkpoint(db)


def resolve_window(last_position: int | None, current_position: int) -> CaptureWindow:
    """
    Decide what a capture cycle should read.

    - No checkpoint yet: bootstrap at the current position. History
      older than "now" is deliberately not backfilled.
    - current <= last: nothing new, the window is empty.
    - Otherwise: everything after the checkpoint up to current.
    """
    if last_position is None:
        return CaptureWindow(start=current_position, end=current_position, bootstrap=True)

    return CaptureWindow(start=last_position, end=current_position)
