# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Periodic scheduling of capture and retention jobs.

Capture runs on a fixed interval and retention once a month. A capture
tick that arrives while the previous cycle is still running is dropped,
not queued.
"""

from datetime import UTC

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from cdchistory.config import CaptureConfig
from cdchistory.core import CaptureState, run_capture_cycle, run_retention

logger = structlog.get_logger()

CAPTURE_JOB_ID = "cdchistory_capture"
RETENTION_JOB_ID = "cdchistory_retention"


def start_scheduler(config: CaptureConfig, state: CaptureState) -> AsyncIOScheduler:
    """
    Start the capture and retention jobs.

    Must be called from within a running event loop. The scheduler is
    stored in state["scheduler"].

    Args:
        config: Capture configuration
        state: Runtime state

    Returns:
        The started scheduler
    """
    if state["scheduler"] is not None:
        return state["scheduler"]

    scheduler = AsyncIOScheduler(timezone=UTC)

    async def scheduled_capture():
        """Run scheduled capture cycle."""
        try:
            result = await run_capture_cycle(config, state)
            logger.info(
                "scheduled_capture_completed",
                status=result.status.value,
                captured=result.captured,
            )
        except Exception as e:
            # Next tick retries from the same checkpoint
            logger.error("scheduled_capture_failed", error=str(e))

    async def scheduled_retention():
        """Run scheduled retention."""
        logger.info("scheduled_retention_starting")
        try:
            result = await run_retention(config, state)
            logger.info("scheduled_retention_completed", deleted=result.deleted_count)
        except Exception as e:
            logger.error("scheduled_retention_failed", error=str(e))

    scheduler.add_job(
        scheduled_capture,
        trigger=IntervalTrigger(seconds=config.capture_interval_seconds, timezone=UTC),
        id=CAPTURE_JOB_ID,
        max_instances=1,
        coalesce=True,
        replace_existing=True,
    )
    scheduler.add_job(
        scheduled_retention,
        trigger=CronTrigger(
            day=config.retention_day_of_month,
            hour=config.retention_hour,
            minute=0,
            timezone=UTC,
        ),
        id=RETENTION_JOB_ID,
        max_instances=1,
        coalesce=True,
        replace_existing=True,
    )
    scheduler.start()
    state["scheduler"] = scheduler

    logger.info(
        "scheduler_started",
        capture_interval_seconds=config.capture_interval_seconds,
        next_capture=scheduler.get_job(CAPTURE_JOB_ID).next_run_time.isoformat(),
        next_retention=scheduler.get_job(RETENTION_JOB_ID).next_run_time.isoformat(),
    )

    return scheduler


def stop_scheduler(state: CaptureState) -> None:
    """Stop the scheduler without waiting for running jobs."""
    scheduler = state["scheduler"]
    if scheduler is None:
        return

    if scheduler.running:
        scheduler.shutdown(wait=False)
    state["scheduler"] = None

    logger.info("scheduler_stopped")
