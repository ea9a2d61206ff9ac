# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
CDC History FastAPI Integration - Plugin for FastAPI applications.

This module provides a complete integration with FastAPI including:
- Lifespan management (startup/shutdown)
- Protected admin endpoints
- Scheduled capture and retention runs
- Health checks
"""

import os
from contextlib import asynccontextmanager
from dataclasses import asdict
from datetime import datetime, UTC

import structlog
from fastapi import Depends, FastAPI, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from cdchistory.config import CaptureConfig
from cdchistory.core import (
    CaptureState,
    get_metrics,
    initialize_capture_state,
    run_capture_cycle,
    run_retention,
    shutdown_capture_state,
)
from cdchistory.exceptions import (
    CaptureError,
    CaptureTimeoutError,
    SessionBusyError,
    SourceError,
)
from cdchistory.scheduler import start_scheduler
from cdchistory.store import (
    changes_by_actor,
    changes_by_entity,
    connect_store,
    get_records,
    get_store_stats,
    list_markers,
    list_recent_changes,
)

logger = structlog.get_logger()

DEFAULT_PREFIX = "/admin/cdchistory"

# Security
security = HTTPBearer(auto_error=False)


async def verify_api_key(
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
) -> bool:
    """
    Verify API key from Authorization header.

    The API key is read from the CDCHISTORY_ADMIN_API_KEY environment variable.
    Requests must include: Authorization: Bearer <api_key>

    Raises:
        HTTPException: If API key is missing or invalid
    """
    api_key = os.getenv("CDCHISTORY_ADMIN_API_KEY")

    if not api_key:
        raise HTTPException(
            status_code=500,
            detail="CDCHISTORY_ADMIN_API_KEY environment variable not set",
        )

    if not credentials:
        raise HTTPException(
            status_code=401,
            detail="Authorization header required",
        )

    if credentials.credentials != api_key:
        raise HTTPException(
            status_code=403,
            detail="Invalid API key",
        )

    return True


def _http_error(error: CaptureError) -> HTTPException:
    """Map a capture failure to an HTTP error response."""
    if isinstance(error, CaptureTimeoutError):
        status_code = 504
    elif isinstance(error, SessionBusyError):
        status_code = 409
    elif isinstance(error, SourceError):
        status_code = 503
    else:
        status_code = 500
    return HTTPException(
        status_code=status_code,
        detail={"error": type(error).__name__, "message": error.message, **error.details},
    )


def _isoformat(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def register_cdchistory_routes(
    app: FastAPI,
    config: CaptureConfig,
    state: CaptureState,
    prefix: str = DEFAULT_PREFIX,
) -> None:
    """
    Register CDC History admin endpoints on a FastAPI app.

    All endpoints require Bearer token authentication.

    Args:
        app: FastAPI application
        config: Capture configuration
        state: Runtime state
        prefix: URL prefix for endpoints (default: /admin/cdchistory)
    """

    @app.post(f"{prefix}/run", dependencies=[Depends(verify_api_key)])
    async def trigger_capture() -> dict:
        """
        Manually trigger a capture cycle.

        Returns status "skipped" if a cycle is already running.
        """
        try:
            result = await run_capture_cycle(config, state)
        except CaptureError as e:
            raise _http_error(e) from e
        return asdict(result)

    @app.post(f"{prefix}/retention", dependencies=[Depends(verify_api_key)])
    async def trigger_retention(retention_days: int | None = None) -> dict:
        """
        Manually purge captured changes older than the retention horizon.

        Args:
            retention_days: Override the configured horizon
        """
        if retention_days is not None and retention_days < 1:
            raise HTTPException(status_code=422, detail="retention_days must be >= 1")
        try:
            result = await run_retention(config, state, retention_days)
        except CaptureError as e:
            raise _http_error(e) from e
        return asdict(result)

    @app.get(f"{prefix}/status", dependencies=[Depends(verify_api_key)])
    async def get_status() -> dict:
        """
        Get current capture status.

        Returns last cycle time, counters, and the scheduler state.
        """
        scheduler = state["scheduler"]
        return {
            "last_cycle_at": _isoformat(state["last_cycle_at"]),
            "last_retention_at": _isoformat(state["last_retention_at"]),
            "total_cycles": state["total_cycles"],
            "total_captured": state["total_captured"],
            "cycle_running": state["capture_lock"].locked(),
            "scheduler_running": bool(scheduler and scheduler.running),
            "source_backend": config.source_backend.value,
            "retention_days": config.retention_days,
            "last_error": state["last_error"],
        }

    @app.get(f"{prefix}/metrics", dependencies=[Depends(verify_api_key)])
    async def get_capture_metrics() -> dict:
        """
        Get detailed capture metrics.
        """
        metrics = await get_metrics(config, state)
        data = asdict(metrics)
        data["last_cycle_at"] = _isoformat(metrics.last_cycle_at)
        data["last_retention_at"] = _isoformat(metrics.last_retention_at)
        return data

    @app.get(f"{prefix}/history", dependencies=[Depends(verify_api_key)])
    async def list_history(
        after: int = 0,
        limit: int = 100,
        namespace: str | None = None,
        entity: str | None = None,
        include_markers: bool = True,
    ) -> list:
        """
        Page through the history store in capture order.

        Args:
            after: Return records with capture_id greater than this
            limit: Maximum number of records to return (1-1000)
            namespace: Filter by namespace
            entity: Filter by entity (table)
            include_markers: Include bootstrap, gap and reset markers
        """
        limit = max(1, min(limit, 1000))
        async with connect_store(state["store_db_path"]) as db:
            return await get_records(db, after, limit, namespace, entity, include_markers)

    @app.get(f"{prefix}/recent", dependencies=[Depends(verify_api_key)])
    async def list_recent(limit: int = 100) -> list:
        """
        Changes captured in the last 7 days, payloads truncated for display.
        """
        limit = max(1, min(limit, 1000))
        async with connect_store(state["store_db_path"]) as db:
            return await list_recent_changes(db, limit)

    @app.get(f"{prefix}/by-entity", dependencies=[Depends(verify_api_key)])
    async def summarize_by_entity() -> list:
        """
        30-day change counts per namespace, entity and operation.
        """
        async with connect_store(state["store_db_path"]) as db:
            return await changes_by_entity(db)

    @app.get(f"{prefix}/by-actor", dependencies=[Depends(verify_api_key)])
    async def summarize_by_actor() -> list:
        """
        30-day change counts per actor and operation.
        """
        async with connect_store(state["store_db_path"]) as db:
            return await changes_by_actor(db)

    @app.get(f"{prefix}/markers", dependencies=[Depends(verify_api_key)])
    async def list_marker_records() -> list:
        """
        Every bootstrap, gap and reset marker ever recorded.
        """
        async with connect_store(state["store_db_path"]) as db:
            return await list_markers(db)

    @app.get(f"{prefix}/health", dependencies=[Depends(verify_api_key)])
    async def health_check() -> dict:
        """
        Health check endpoint.

        Verifies the history store and the change-log source.
        """
        store_ok = False
        store_error = None
        checkpoint = None
        try:
            async with connect_store(state["store_db_path"]) as db:
                checkpoint = (await get_store_stats(db))["checkpoint"]
            store_ok = True
        except Exception as e:
            store_error = str(e)

        source_ok = False
        source_error = None
        source_position = None
        try:
            source_position = await state["source"].current_position()
            source_ok = True
        except Exception as e:
            source_error = str(e)

        status = "healthy"
        if not store_ok or not source_ok:
            status = "degraded"
        if not store_ok and not source_ok:
            status = "unhealthy"

        return {
            "status": status,
            "store_accessible": store_ok,
            "store_error": store_error,
            "checkpoint": checkpoint,
            "source_reachable": source_ok,
            "source_error": source_error,
            "source_position": source_position,
            "lag": (
                source_position - checkpoint
                if source_position is not None and checkpoint is not None
                else None
            ),
            "timestamp": datetime.now(UTC).isoformat(),
        }

    @app.get(f"{prefix}/config", dependencies=[Depends(verify_api_key)])
    async def get_config() -> dict:
        """
        Get current configuration (sensitive values redacted).
        """
        return {
            "store_path": str(config.store_path),
            "source_backend": config.source_backend.value,
            "source_configured": config.source_url is not None,
            "owner_namespace": config.owner_namespace,
            "denied_namespaces": config.all_denied_namespaces,
            "denied_prefixes": config.denied_prefixes,
            "batch_limit": config.batch_limit,
            "retention_days": config.retention_days,
            "capture_interval_seconds": config.capture_interval_seconds,
            "retention_day_of_month": config.retention_day_of_month,
            "retention_hour": config.retention_hour,
            "probe_window_days": config.probe_window_days,
            "cycle_timeout_seconds": config.cycle_timeout_seconds,
            "scheduler_enabled": config.scheduler_enabled,
        }


@asynccontextmanager
async def cdchistory_lifespan(
    app: FastAPI,
    config: CaptureConfig,
    prefix: str = DEFAULT_PREFIX,
):
    """
    Lifespan context manager for FastAPI.

        app = FastAPI(lifespan=lambda app: cdchistory_lifespan(app, config))

    Args:
        app: FastAPI application
        config: Capture configuration
        prefix: URL prefix for admin endpoints
    """
    logger.info("cdchistory_lifespan_starting", source=config.source_backend.value)

    state = await initialize_capture_state(config)
    app.state.cdchistory_state = state
    app.state.cdchistory_config = config

    register_cdchistory_routes(app, config, state, prefix)

    if config.scheduler_enabled:
        start_scheduler(config, state)

    logger.info("cdchistory_lifespan_started")

    try:
        yield
    finally:
        logger.info("cdchistory_lifespan_stopping")
        await shutdown_capture_state(state)
        app.state.cdchistory_state = None
        logger.info("cdchistory_lifespan_stopped")


def setup_cdchistory_plugin(
    app: FastAPI,
    config: CaptureConfig,
    prefix: str = DEFAULT_PREFIX,
) -> None:
    """
    Set up the CDC History plugin on an existing app.

    Wraps the app's own lifespan so that capture state is initialized
    before it and shut down after it. Sets up:
    - Startup/shutdown lifecycle
    - Admin endpoints
    - Scheduled capture and retention if config.scheduler_enabled

    Args:
        app: FastAPI application
        config: Capture configuration
        prefix: URL prefix for admin endpoints
    """
    app.state.cdchistory_config = config
    app.state.cdchistory_state = None

    app_lifespan = app.router.lifespan_context

    @asynccontextmanager
    async def lifespan(app_: FastAPI):
        async with cdchistory_lifespan(app_, config, prefix):
            async with app_lifespan(app_) as app_state:
                yield app_state

    app.router.lifespan_context = lifespan


def get_cdchistory_state(app: FastAPI) -> CaptureState:
    """
    Get CDC History state from a FastAPI app.

    Raises:
        RuntimeError: If CDC History is not initialized
    """
    state = getattr(app.state, "cdchistory_state", None)
    if not state:
        raise RuntimeError("CDC History not initialized. Call setup_cdchistory_plugin first.")
    return state


def get_cdchistory_config(app: FastAPI) -> CaptureConfig:
    """
    Get CDC History config from a FastAPI app.

    Raises:
        RuntimeError: If CDC History is not initialized
    """
    config = getattr(app.state, "cdchistory_config", None)
    if not config:
        raise RuntimeError("CDC History not initialized. Call setup_cdchistory_plugin first.")
    return config
