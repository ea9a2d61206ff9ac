# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Capture Layer - Reading sessions, gap recovery and batch capture.
"""

from cdchistory.capture.session import (
    reading_session,
    close_quietly,
)

from cdchistory.capture.markers import (
    record_bootstrap,
    record_gap,
    record_reset,
)

from cdchistory.capture.recovery import (
    RecoveredSession,
    open_with_recovery,
    probe_oldest_position,
)

from cdchistory.capture.batch import (
    BatchOutcome,
    EventFilter,
    collect_batch,
    capture_batch,
)

__all__ = [
    # Sessions
    "reading_session",
    "close_quietly",
    # Markers
    "record_bootstrap",
    "record_gap",
    "record_reset",
    # Recovery
    "RecoveredSession",
    "open_with_recovery",
    "probe_oldest_position",
    # Batch
    "BatchOutcome",
    "EventFilter",
    "collect_batch",
    "capture_batch",
]
