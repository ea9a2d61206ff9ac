# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
CDC History Models - Change events and persisted change records.

A ChangeEvent is what the change-log source hands us. A ChangeRecord is
what the history store keeps. Marker records are written by the capture
engine itself to record bootstrap, gap and reset events; they always live
in the SYSTEM namespace and are never purged.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Mapping, TypedDict


class Operation(str, Enum):
    """Operation kind of a change record."""

    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"
    DDL = "DDL"  # Coarse schema-change marker from the source
    GAP = "GAP"  # Changes were skipped because the log rotated
    RESET = "RESET"  # No position was recoverable; restarted from current
    BOOTSTRAP = "BOOTSTRAP"  # First cycle: starting point established


CAPTURED_OPERATIONS = frozenset({Operation.INSERT, Operation.UPDATE, Operation.DELETE})
MARKER_OPERATIONS = frozenset({Operation.GAP, Operation.RESET, Operation.BOOTSTRAP})

# Never removed by retention
RETAINED_OPERATIONS = MARKER_OPERATIONS | {Operation.DDL}

SYSTEM_NAMESPACE = "SYSTEM"
GAP_ENTITY = "AUTO_RECOVERY"
RESET_ENTITY = "FULL_RESET"
BOOTSTRAP_ENTITY = "AUTO_CHECKPOINT"


@dataclass(frozen=True)
class ChangeEvent:
    """A decoded change event read from the change-log source."""

    position: int
    operation: str
    namespace: str | None
    entity: str | None
    event_time: datetime
    commit_position: int | None = None
    commit_time: datetime | None = None
    actor: str | None = None
    redo_payload: str | None = None
    undo_payload: str | None = None
    transaction_id: str | None = None
    source_row_id: str | None = None


class ChangeRecord(TypedDict):
    """A row of the history store."""

    capture_id: int  # Auto-increment, ordering tiebreak
    capture_time: str  # ISO 8601, time of ingestion
    position: int
    commit_position: int | None
    commit_time: str | None  # ISO 8601
    event_time: str  # ISO 8601
    operation: str
    actor: str | None
    namespace: str
    entity: str
    redo_payload: str | None
    undo_payload: str | None
    transaction_id: str | None
    source_row_id: str | None
    note: str | None


def is_marker(record: Mapping) -> bool:
    """Return True if the record was written by the capture engine itself."""
    return (
        record["namespace"] == SYSTEM_NAMESPACE
        and record["operation"] in {op.value for op in MARKER_OPERATIONS}
    )
