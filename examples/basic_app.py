# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Example FastAPI Application with CDC History Integration.

This example demonstrates how to integrate CDC History into a FastAPI
application with a change-log source, scheduled capture and monthly
retention.

Run with:
    uvicorn examples.basic_app:app --reload

Environment variables:
    DATABASE_URL: PostgreSQL connection URL (trigger-fed change log)
    CDCHISTORY_ADMIN_API_KEY: API key for admin endpoints

Without DATABASE_URL the app uses an in-memory change log, and the demo
user endpoints below write their changes into it.
"""

import os
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI
from pydantic import BaseModel

from cdchistory.builder import (
    build_config,
    cap_batch_at,
    capture_every,
    create_empty_config,
    deny_namespace,
    purge_monthly_at,
    retain_changes_for,
    use_source,
    with_store,
)
from cdchistory.exceptions import ConfigurationError
from cdchistory.integrations.fastapi import cdchistory_lifespan
from cdchistory.models import Operation


# Build CDC History configuration
def create_cdchistory_config():
    """
    Create CDC History configuration from environment variables.

    This uses the functional builder pattern for clean, composable configuration.
    """
    database_url = os.getenv("DATABASE_URL")
    store_path = Path(os.getenv("CDCHISTORY_STORE_PATH", "./cdchistory_data/history.db"))

    config = create_empty_config()
    config = with_store(config, store_path)

    if database_url:
        config = use_source(config, "postgres", database_url)

    # Reporting jobs write a lot and nobody audits them
    config = deny_namespace(config, "REPORTING")

    config = cap_batch_at(config, 10_000)
    config = retain_changes_for(config, 90)

    # Capture every 5 minutes, purge on the 1st of each month at 03:00 UTC
    config = capture_every(config, 300)
    config = purge_monthly_at(config, day=1, time="03:00")

    return build_config(config)


try:
    cdchistory_config = create_cdchistory_config()
except ConfigurationError as e:
    print(f"Failed to create CDC History config: {e}")
    # Use minimal config for development
    cdchistory_config = build_config(create_empty_config())


@asynccontextmanager
async def lifespan(app: FastAPI):
    async with cdchistory_lifespan(app, cdchistory_config):
        yield


# Create FastAPI app
app = FastAPI(
    title="My App with CDC History",
    description="Example application demonstrating change history capture",
    version="1.0.0",
    lifespan=lifespan,
)


# ============================================================================
# Application Routes
# ============================================================================


class User(BaseModel):
    """Example user model."""

    id: int
    name: str
    email: str | None = None


async def _record_change(operation: Operation, user: User, before: User | None = None):
    """Feed the in-memory change log the way database triggers would."""
    state = app.state.cdchistory_state
    emit = getattr(state["source"], "emit", None)
    if emit is None:
        # The postgres change log is fed by triggers
        return
    emit(
        operation,
        "APP",
        "USERS",
        redo=user.model_dump_json(),
        undo=before.model_dump_json() if before else None,
        actor="example_app",
        source_row_id=str(user.id),
    )


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "message": "Welcome to My App with CDC History",
        "docs": "/docs",
        "cdchistory_admin": "/admin/cdchistory/health",
    }


@app.post("/users")
async def create_user(user: User) -> User:
    """Create a new user."""
    await _record_change(Operation.INSERT, user)
    return user


@app.put("/users/{user_id}")
async def update_user(user_id: int, user: User) -> User:
    """Update a user."""
    before = User(id=user_id, name=f"User {user_id}")
    await _record_change(Operation.UPDATE, user, before)
    return user


@app.delete("/users/{user_id}")
async def delete_user(user_id: int):
    """Delete a user."""
    await _record_change(Operation.DELETE, User(id=user_id, name=f"User {user_id}"))
    return {"deleted": user_id}


# ============================================================================
# CDC History Admin Endpoints (registered at startup)
# ============================================================================
#
# GET  /admin/cdchistory/health    - Store and source health, capture lag
# GET  /admin/cdchistory/status    - Current capture status
# GET  /admin/cdchistory/metrics   - Capture metrics
# GET  /admin/cdchistory/config    - Configuration (redacted)
# POST /admin/cdchistory/run       - Trigger a capture cycle
# POST /admin/cdchistory/retention - Trigger retention
# GET  /admin/cdchistory/history   - Page through captured changes
# GET  /admin/cdchistory/recent    - Last 7 days, payloads truncated
# GET  /admin/cdchistory/by-entity - 30-day counts per table
# GET  /admin/cdchistory/by-actor  - 30-day counts per user
# GET  /admin/cdchistory/markers   - Bootstrap, gap and reset markers
#
# All admin endpoints require: Authorization: Bearer <CDCHISTORY_ADMIN_API_KEY>


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
