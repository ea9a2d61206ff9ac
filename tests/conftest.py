# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Test fixtures for CDC History tests.

Provides an in-memory change log, history store fixtures, and test
configuration helpers.
"""

import os
import tempfile
from datetime import datetime, UTC
from pathlib import Path
from typing import Generator

import aiosqlite
import pytest
import pytest_asyncio

# Set test environment variables
os.environ["CDCHISTORY_ADMIN_API_KEY"] = "test-api-key-12345"

AUTH_HEADERS = {"Authorization": "Bearer test-api-key-12345"}


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for tests."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest_asyncio.fixture
async def store_db_path(temp_dir: Path) -> Path:
    """Create a temporary history store."""
    from cdchistory.store import init_store_db

    db_path = temp_dir / "history.db"
    await init_store_db(db_path)
    return db_path


@pytest.fixture
def change_log():
    """Create an in-memory change log positioned at 1000."""
    from cdchistory.source.memory import InMemoryChangeLog

    return InMemoryChangeLog(start_position=1000)


@pytest.fixture
def test_config(temp_dir: Path):
    """Create a test configuration."""
    from cdchistory.config import CaptureConfig

    return CaptureConfig(
        store_path=temp_dir / "data" / "history.db",
        cycle_timeout_seconds=10.0,
    )


@pytest_asyncio.fixture
async def test_state(test_config, change_log):
    """Create initialized capture state for testing."""
    from cdchistory.core import initialize_capture_state, shutdown_capture_state

    state = await initialize_capture_state(test_config, source=change_log)
    yield state
    await shutdown_capture_state(state)


@pytest_asyncio.fixture
async def bootstrapped_state(test_config, test_state):
    """Capture state whose store already holds a bootstrap marker at 1000."""
    from cdchistory.core import run_capture_cycle

    await run_capture_cycle(test_config, test_state)
    return test_state


def emit_inserts(change_log, count: int, namespace: str = "APP", entity: str = "ORDERS"):
    """Emit count INSERT events on consecutive positions."""
    return [
        change_log.emit(
            "INSERT",
            namespace,
            entity,
            redo=f"insert into {entity} values ({i})",
            undo=f"delete from {entity} where id = {i}",
            actor="app_user",
        )
        for i in range(count)
    ]


async def store_checkpoint(db_path: Path) -> int | None:
    """Read MAX(position) from a history store."""
    from cdchistory.store import connect_store, get_checkpoint

    async with connect_store(db_path) as db:
        return await get_checkpoint(db)


async def store_changes(db_path: Path, include_markers: bool = False):
    """Read every record from a history store."""
    from cdchistory.store import connect_store, get_records

    async with connect_store(db_path) as db:
        return await get_records(db, limit=1_000_000, include_markers=include_markers)


async def set_capture_time(db_path: Path, capture_id: int, when: datetime) -> None:
    """Backdate a row's capture_time."""
    from cdchistory.store import format_time

    async with aiosqlite.connect(db_path) as db:
        await db.execute(
            "UPDATE change_history SET capture_time = ? WHERE capture_id = ?",
            (format_time(when.astimezone(UTC)), capture_id),
        )
        await db.commit()
