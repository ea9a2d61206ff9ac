# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
CDC History Core - Main orchestrator functions for change capture.

This module contains the capture and retention cycle functions that
coordinate all the components: history store, checkpoint, change-log
source, gap recovery and batch capture.
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime, UTC
from enum import Enum
from pathlib import Path
from typing import Any, TypedDict

from cdchistory.config import CaptureConfig


class CycleStatus(str, Enum):
    """Outcome of a capture cycle."""

    BOOTSTRAP = "bootstrap"  # Empty store: starting point recorded
    IDLE = "idle"  # Nothing new to capture
    CAPTURED = "captured"
    GAP_RECOVERED = "gap_recovered"
    RESET = "reset"
    SKIPPED = "skipped"  # Another cycle was already running


@dataclass
class CaptureResult:
    """Result of a capture cycle."""

    cycle_id: str  # ULID
    status: CycleStatus
    captured: int = 0
    start_position: int | None = None
    end_position: int | None = None
    checkpoint: int | None = None
    truncated: bool = False
    duration_seconds: float = 0.0


@dataclass
class RetentionResult:
    """Result of a retention run."""

    operation_id: str  # ULID
    retention_days: int
    deleted_count: int
    duration_seconds: float


@dataclass
class CaptureMetrics:
    """Metrics for capture operations."""

    total_cycles: int
    total_captured: int
    total_markers: int
    total_purged: int
    last_cycle_at: datetime | None
    last_retention_at: datetime | None
    last_error: str | None
    checkpoint: int | None
    total_records: int
    total_changes: int
    compressed_records: int


class CaptureState(TypedDict):
    """Runtime state for capture operations."""

    store_db_path: Path
    source: Any  # ChangeLogSource
    capture_lock: asyncio.Lock  # Single-flight guard for capture cycles
    total_cycles: int
    total_captured: int
    total_markers: int
    total_purged: int
    last_cycle_at: datetime | None
    last_retention_at: datetime | None
    last_error: str | None
    scheduler: Any  # AsyncIOScheduler when started


async def initialize_capture_state(
    config: CaptureConfig,
    source: Any = None,
) -> CaptureState:
    """
    Initialize runtime state for capture operations.

    Creates the store directory, initializes the history store and opens
    the configured change-log source.

    Args:
        config: Capture configuration
        source: Already-open change-log source (default: from config)

    Returns:
        Initialized CaptureState dictionary
    """
    from cdchistory.source import open_change_log
    from cdchistory.store import init_store_db

    config.store_path.parent.mkdir(parents=True, exist_ok=True)
    await init_store_db(config.store_path)

    if source is None:
        source = await open_change_log(config.source_backend.value, config.source_url)

    return CaptureState(
        store_db_path=config.store_path,
        source=source,
        capture_lock=asyncio.Lock(),
        total_cycles=0,
        total_captured=0,
        total_markers=0,
        total_purged=0,
        last_cycle_at=None,
        last_retention_at=None,
        last_error=None,
        scheduler=None,
    )


async def run_capture_cycle(config: CaptureConfig, state: CaptureState) -> CaptureResult:
    """
    Run one capture cycle.

    This is the main entry point for capture. It:
    1. Computes the checkpoint and reads the source's current position
    2. Records a bootstrap marker if the store is empty
    3. Opens a reading session, recovering from log rotation if needed
    4. Appends up to batch_limit filtered changes and commits

    Only one cycle runs at a time per state; a call made while another
    cycle is running returns immediately with status SKIPPED.

    Args:
        config: Capture configuration
        state: Runtime state

    Returns:
        CaptureResult with cycle details

    Raises:
        CaptureTimeoutError: If the cycle exceeded cycle_timeout_seconds
        StoreWriteError: If the batch could not be stored
        SourceError: If the change-log source failed
    """
    import structlog
    from ulid import ULID

    from cdchistory.exceptions import CaptureTimeoutError

    logger = structlog.get_logger()
    cycle_id = str(ULID())

    lock = state["capture_lock"]
    if lock.locked():
        logger.info("capture_cycle_skipped", cycle_id=cycle_id, reason="cycle_in_progress")
        return CaptureResult(cycle_id=cycle_id, status=CycleStatus.SKIPPED)

    async with lock:
        start_time = datetime.now(UTC)
        logger.info("capture_cycle_started", cycle_id=cycle_id)

        deadline = asyncio.timeout(config.cycle_timeout_seconds)
        try:
            async with deadline:
                result = await _capture(config, state, cycle_id)
        except TimeoutError as e:
            if not deadline.expired():
                state["last_error"] = str(e)
                logger.error("capture_cycle_failed", cycle_id=cycle_id, error=str(e))
                raise
            error = CaptureTimeoutError(
                "Capture cycle exceeded its deadline",
                details={
                    "cycle_id": cycle_id,
                    "timeout_seconds": config.cycle_timeout_seconds,
                },
            )
            state["last_error"] = str(error)
            logger.error("capture_cycle_timed_out", cycle_id=cycle_id)
            raise error from e
        except Exception as e:
            state["last_error"] = str(e)
            logger.error("capture_cycle_failed", cycle_id=cycle_id, error=str(e))
            raise

        result.duration_seconds = (datetime.now(UTC) - start_time).total_seconds()

        # Update state
        state["last_cycle_at"] = datetime.now(UTC)
        state["total_cycles"] += 1
        state["total_captured"] += result.captured
        if result.status in (
            CycleStatus.BOOTSTRAP,
            CycleStatus.GAP_RECOVERED,
            CycleStatus.RESET,
        ):
            state["total_markers"] += 1

        logger.info(
            "capture_cycle_completed",
            cycle_id=cycle_id,
            status=result.status.value,
            captured=result.captured,
            checkpoint=result.checkpoint,
            duration=result.duration_seconds,
        )
        return result


async def _capture(config: CaptureConfig, state: CaptureState, cycle_id: str) -> CaptureResult:
    """Capture one window inside a single write transaction."""
    import aiosqlite
    import structlog

    from cdchistory.capture import capture_batch, record_bootstrap
    from cdchistory.checkpoint import compute_checkpoint, resolve_window
    from cdchistory.exceptions import StoreWriteError
    from cdchistory.models import Operation
    from cdchistory.store import busy_timeout_for, connect_store, write_transaction

    logger = structlog.get_logger()
    source = state["source"]

    lock_wait = busy_timeout_for(config.cycle_timeout_seconds)

    try:
        async with connect_store(state["store_db_path"], timeout=lock_wait) as db:
            async with write_transaction(db):
                last_position = await compute_checkpoint(db)
                current_position = await source.current_position()
                window = resolve_window(last_position, current_position)

                if window.bootstrap:
                    await record_bootstrap(db, current_position)
                    logger.info("capture_bootstrapped", cycle_id=cycle_id, position=current_position)
                    return CaptureResult(
                        cycle_id=cycle_id,
                        status=CycleStatus.BOOTSTRAP,
                        start_position=current_position,
                        end_position=current_position,
                        checkpoint=current_position,
                    )

                if window.empty:
                    return CaptureResult(
                        cycle_id=cycle_id,
                        status=CycleStatus.IDLE,
                        start_position=window.start,
                        end_position=window.end,
                        checkpoint=last_position,
                    )

                outcome = await capture_batch(db, source, window, config)
                checkpoint = await compute_checkpoint(db)
    except aiosqlite.Error as e:
        raise StoreWriteError(
            "Failed to store captured changes",
            details={"cycle_id": cycle_id, "error": str(e)},
        ) from e

    if outcome.marker == Operation.RESET:
        status = CycleStatus.RESET
    elif outcome.marker == Operation.GAP:
        status = CycleStatus.GAP_RECOVERED
    elif outcome.captured:
        status = CycleStatus.CAPTURED
    else:
        status = CycleStatus.IDLE

    return CaptureResult(
        cycle_id=cycle_id,
        status=status,
        captured=outcome.captured,
        start_position=window.start,
        end_position=window.end,
        checkpoint=checkpoint,
        truncated=outcome.truncated,
    )


async def run_retention(
    config: CaptureConfig,
    state: CaptureState,
    retention_days: int | None = None,
) -> RetentionResult:
    """
    Delete captured changes older than the retention horizon.

    Marker and DDL rows are never deleted, nor the rows holding the
    checkpoint. Runs independently of the capture lock; SQLite serializes
    it against a concurrent capture, and it waits out a capture cycle
    still holding the write lock.

    Args:
        config: Capture configuration
        state: Runtime state
        retention_days: Override for config.retention_days

    Returns:
        RetentionResult with the number of rows deleted
    """
    import aiosqlite
    import structlog
    from ulid import ULID

    from cdchistory.exceptions import StoreWriteError
    from cdchistory.store import busy_timeout_for, connect_store, purge_expired_changes

    logger = structlog.get_logger()
    operation_id = str(ULID())
    start_time = datetime.now(UTC)
    days = retention_days if retention_days is not None else config.retention_days
    lock_wait = busy_timeout_for(config.cycle_timeout_seconds)

    logger.info("retention_started", operation_id=operation_id, retention_days=days)

    try:
        async with connect_store(state["store_db_path"], timeout=lock_wait) as db:
            deleted = await purge_expired_changes(db, days)
    except aiosqlite.Error as e:
        state["last_error"] = str(e)
        logger.error("retention_failed", operation_id=operation_id, error=str(e))
        raise StoreWriteError(
            "Failed to purge expired changes",
            details={"operation_id": operation_id, "error": str(e)},
        ) from e

    duration = (datetime.now(UTC) - start_time).total_seconds()

    state["last_retention_at"] = datetime.now(UTC)
    state["total_purged"] += deleted

    logger.info(
        "retention_completed",
        operation_id=operation_id,
        deleted=deleted,
        duration=duration,
    )

    return RetentionResult(
        operation_id=operation_id,
        retention_days=days,
        deleted_count=deleted,
        duration_seconds=duration,
    )


async def get_metrics(config: CaptureConfig, state: CaptureState) -> CaptureMetrics:
    """Get current capture metrics."""
    from cdchistory.store import connect_store, get_store_stats

    async with connect_store(state["store_db_path"]) as db:
        stats = await get_store_stats(db)

    return CaptureMetrics(
        total_cycles=state["total_cycles"],
        total_captured=state["total_captured"],
        total_markers=state["total_markers"],
        total_purged=state["total_purged"],
        last_cycle_at=state["last_cycle_at"],
        last_retention_at=state["last_retention_at"],
        last_error=state["last_error"],
        checkpoint=stats["checkpoint"],
        total_records=stats["total_records"],
        total_changes=stats["total_changes"],
        compressed_records=stats["compressed_records"],
    )


async def shutdown_capture_state(state: CaptureState) -> None:
    """Cleanup resources."""
    import structlog

    from cdchistory.scheduler import stop_scheduler

    logger = structlog.get_logger()

    if state["scheduler"] is not None:
        stop_scheduler(state)

    if state["source"] is not None:
        try:
            await state["source"].close()
        except Exception as e:
            logger.warning("source_close_failed", error=str(e))

    logger.info("capture_state_shutdown_complete")
