# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Integration Tests for CDC History.

These tests verify the integration between components:
- FastAPI endpoints
- Lifespan management
- Scheduler jobs
"""

import pytest
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient

from cdchistory.core import run_capture_cycle
from cdchistory.exceptions import SourceUnavailableError
from cdchistory.integrations.fastapi import (
    cdchistory_lifespan,
    get_cdchistory_state,
    register_cdchistory_routes,
    setup_cdchistory_plugin,
)

from conftest import AUTH_HEADERS, emit_inserts

PREFIX = "/admin/cdchistory"


def make_client(app: FastAPI) -> AsyncClient:
    return AsyncClient(transport=ASGITransport(app=app), base_url="http://test")


@pytest.fixture
def app(test_config, test_state) -> FastAPI:
    app = FastAPI()
    register_cdchistory_routes(app, test_config, test_state)
    return app


# ============================================================================
# FastAPI Integration Tests
# ============================================================================

@pytest.mark.asyncio
async def test_fastapi_unauthorized_access(app):
    """Admin endpoints require the bearer token."""
    async with make_client(app) as client:
        response = await client.get(f"{PREFIX}/status")
        assert response.status_code == 401

        response = await client.get(
            f"{PREFIX}/status",
            headers={"Authorization": "Bearer wrong-key"},
        )
        assert response.status_code == 403


@pytest.mark.asyncio
async def test_fastapi_run_endpoint(app, change_log):
    """Triggering capture bootstraps, then captures."""
    async with make_client(app) as client:
        response = await client.post(f"{PREFIX}/run", headers=AUTH_HEADERS)
        assert response.status_code == 200
        assert response.json()["status"] == "bootstrap"

        emit_inserts(change_log, 3)
        response = await client.post(f"{PREFIX}/run", headers=AUTH_HEADERS)
        data = response.json()
        assert data["status"] == "captured"
        assert data["captured"] == 3
        assert data["checkpoint"] == 1003


@pytest.mark.asyncio
async def test_fastapi_run_endpoint_maps_source_errors(app, test_config, test_state, change_log):
    """A failing source is reported as 503, not a bare 500."""
    await run_capture_cycle(test_config, test_state)
    emit_inserts(change_log, 1)
    change_log.fail_next_open = [SourceUnavailableError("source offline")]

    async with make_client(app) as client:
        response = await client.post(f"{PREFIX}/run", headers=AUTH_HEADERS)

    assert response.status_code == 503
    assert response.json()["detail"]["error"] == "SourceUnavailableError"


@pytest.mark.asyncio
async def test_fastapi_history_endpoints(app, test_config, test_state, change_log):
    """History, recent, summaries and markers reflect captured rows."""
    await run_capture_cycle(test_config, test_state)
    emit_inserts(change_log, 2)
    change_log.emit("DELETE", "APP", "CUSTOMERS", actor="admin")
    await run_capture_cycle(test_config, test_state)

    async with make_client(app) as client:
        history = (await client.get(f"{PREFIX}/history", headers=AUTH_HEADERS)).json()
        assert [r["position"] for r in history] == [1000, 1001, 1002, 1003]

        changes_only = (
            await client.get(
                f"{PREFIX}/history",
                params={"include_markers": "false", "entity": "CUSTOMERS"},
                headers=AUTH_HEADERS,
            )
        ).json()
        assert [r["operation"] for r in changes_only] == ["DELETE"]

        recent = (await client.get(f"{PREFIX}/recent", headers=AUTH_HEADERS)).json()
        assert len(recent) == 4

        by_entity = (await client.get(f"{PREFIX}/by-entity", headers=AUTH_HEADERS)).json()
        assert {(r["entity"], r["change_count"]) for r in by_entity} == {
            ("ORDERS", 2),
            ("CUSTOMERS", 1),
        }

        by_actor = (await client.get(f"{PREFIX}/by-actor", headers=AUTH_HEADERS)).json()
        assert {r["actor"] for r in by_actor} == {"app_user", "admin"}

        markers = (await client.get(f"{PREFIX}/markers", headers=AUTH_HEADERS)).json()
        assert [m["operation"] for m in markers] == ["BOOTSTRAP"]


@pytest.mark.asyncio
async def test_fastapi_retention_endpoint(app):
    async with make_client(app) as client:
        response = await client.post(
            f"{PREFIX}/retention",
            params={"retention_days": 30},
            headers=AUTH_HEADERS,
        )
        assert response.status_code == 200
        assert response.json()["retention_days"] == 30
        assert response.json()["deleted_count"] == 0

        response = await client.post(
            f"{PREFIX}/retention",
            params={"retention_days": 0},
            headers=AUTH_HEADERS,
        )
        assert response.status_code == 422


@pytest.mark.asyncio
async def test_fastapi_status_and_metrics(app, test_config, test_state, change_log):
    await run_capture_cycle(test_config, test_state)
    emit_inserts(change_log, 4)
    await run_capture_cycle(test_config, test_state)

    async with make_client(app) as client:
        status = (await client.get(f"{PREFIX}/status", headers=AUTH_HEADERS)).json()
        assert status["total_cycles"] == 2
        assert status["total_captured"] == 4
        assert status["cycle_running"] is False
        assert status["scheduler_running"] is False
        assert status["last_cycle_at"] is not None

        metrics = (await client.get(f"{PREFIX}/metrics", headers=AUTH_HEADERS)).json()
        assert metrics["checkpoint"] == 1004
        assert metrics["total_records"] == 5
        assert metrics["total_changes"] == 4
        assert metrics["total_markers"] == 1


@pytest.mark.asyncio
async def test_fastapi_health_endpoint(app, test_config, test_state, change_log):
    """Health reports store, source and capture lag."""
    await run_capture_cycle(test_config, test_state)
    emit_inserts(change_log, 7)

    async with make_client(app) as client:
        response = await client.get(f"{PREFIX}/health", headers=AUTH_HEADERS)

    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "healthy"
    assert data["checkpoint"] == 1000
    assert data["source_position"] == 1007
    assert data["lag"] == 7


@pytest.mark.asyncio
async def test_fastapi_config_endpoint(app):
    async with make_client(app) as client:
        response = await client.get(f"{PREFIX}/config", headers=AUTH_HEADERS)

    data = response.json()
    assert data["batch_limit"] == 10_000
    assert "CDCADMIN" in data["denied_namespaces"]
    assert "source_url" not in data


# ============================================================================
# Lifespan Tests
# ============================================================================

@pytest.mark.asyncio
async def test_lifespan_initializes_and_shuts_down(test_config):
    app = FastAPI()
    config = test_config.with_updates(scheduler_enabled=True)

    async with cdchistory_lifespan(app, config):
        state = get_cdchistory_state(app)
        assert state["scheduler"] is not None
        assert state["scheduler"].running
        assert config.store_path.exists()

        async with make_client(app) as client:
            response = await client.post(f"{PREFIX}/run", headers=AUTH_HEADERS)
            assert response.json()["status"] == "bootstrap"

    assert state["scheduler"] is None
    with pytest.raises(RuntimeError):
        get_cdchistory_state(app)


@pytest.mark.asyncio
async def test_setup_plugin_wraps_app_lifespan(test_config):
    app = FastAPI()
    setup_cdchistory_plugin(app, test_config)

    async with app.router.lifespan_context(app):
        assert get_cdchistory_state(app)["scheduler"] is None

    assert app.state.cdchistory_state is None


# ============================================================================
# Scheduler Tests
# ============================================================================

@pytest.mark.asyncio
async def test_scheduler_jobs(test_config, test_state):
    """Capture runs on an interval, retention monthly, neither overlaps."""
    from apscheduler.triggers.cron import CronTrigger
    from apscheduler.triggers.interval import IntervalTrigger

    from cdchistory.scheduler import (
        CAPTURE_JOB_ID,
        RETENTION_JOB_ID,
        start_scheduler,
        stop_scheduler,
    )

    scheduler = start_scheduler(test_config, test_state)
    try:
        assert start_scheduler(test_config, test_state) is scheduler

        capture = scheduler.get_job(CAPTURE_JOB_ID)
        assert isinstance(capture.trigger, IntervalTrigger)
        assert capture.trigger.interval.total_seconds() == 300
        assert capture.max_instances == 1
        assert capture.coalesce is True

        retention = scheduler.get_job(RETENTION_JOB_ID)
        assert isinstance(retention.trigger, CronTrigger)
        assert retention.next_run_time.day == 1
        assert retention.next_run_time.hour == 3
    finally:
        stop_scheduler(test_state)

    assert test_state["scheduler"] is None
