# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
History Store Tests for CDC History.

These tests verify the store's own guarantees:
- Retention never deletes marker rows
- Appends are atomic with the caller's transaction
- Reporting views and readers see the right rows
- Payload compression is transparent
"""

import asyncio
from datetime import datetime, timedelta, UTC
from pathlib import Path

import pytest

from cdchistory.core import CycleStatus, run_capture_cycle, run_retention
from cdchistory.exceptions import StoreError
from cdchistory.models import ChangeEvent, Operation
from cdchistory.store import (
    append_changes,
    changes_by_actor,
    changes_by_entity,
    connect_store,
    count_changes,
    decode_payload,
    encode_payloads,
    format_time,
    get_checkpoint,
    get_records,
    init_store_db,
    insert_marker,
    list_markers,
    list_recent_changes,
    purge_expired_changes,
    write_transaction,
)

from conftest import emit_inserts, set_capture_time, store_changes, store_checkpoint


def make_event(position: int, operation: str = "INSERT", **kwargs) -> ChangeEvent:
    defaults = {
        "namespace": "APP",
        "entity": "ORDERS",
        "event_time": datetime.now(UTC),
        "actor": "app_user",
        "redo_payload": f"redo {position}",
        "undo_payload": f"undo {position}",
        "transaction_id": f"tx-{position}",
    }
    defaults.update(kwargs)
    return ChangeEvent(position=position, operation=operation, **defaults)


# ============================================================================
# Retention Tests
# ============================================================================

@pytest.mark.asyncio
async def test_retention_scenario_keeps_old_marker(test_config, bootstrapped_state, change_log):
    """
    CRITICAL: A 100-day-old change is purged at 90 days retention;
    a 200-day-old marker is kept.
    """
    db_path = bootstrapped_state["store_db_path"]
    emit_inserts(change_log, 2)

    await run_capture_cycle(test_config, bootstrapped_state)

    async with connect_store(db_path) as db:
        marker = (await list_markers(db))[0]
        changes = await get_records(db, include_markers=False)

    now = datetime.now(UTC)
    await set_capture_time(db_path, marker["capture_id"], now - timedelta(days=200))
    await set_capture_time(db_path, changes[0]["capture_id"], now - timedelta(days=100))

    result = await run_retention(test_config, bootstrapped_state)

    assert result.deleted_count == 1
    assert result.retention_days == 90
    assert bootstrapped_state["total_purged"] == 1

    remaining = await store_changes(db_path, include_markers=True)
    assert [r["capture_id"] for r in remaining] == [
        marker["capture_id"],
        changes[1]["capture_id"],
    ]


@pytest.mark.asyncio
async def test_retention_never_deletes_markers_or_ddl(store_db_path: Path):
    """Every marker kind and DDL rows survive any retention horizon."""
    old = datetime.now(UTC) - timedelta(days=3650)

    async with connect_store(store_db_path) as db:
        async with write_transaction(db):
            await insert_marker(
                db, Operation.BOOTSTRAP, 10, "AUTO_CHECKPOINT", "r", "u", "n", captured_at=old
            )
            await insert_marker(
                db, Operation.GAP, 20, "AUTO_RECOVERY", "r", "u", "n", captured_at=old
            )
            await insert_marker(
                db, Operation.RESET, 30, "FULL_RESET", "r", "u", "n", captured_at=old
            )
            await append_changes(db, [make_event(31, "DDL")], note="schema", captured_at=old)
            await append_changes(db, [make_event(32, "DELETE")], note="old", captured_at=old)
            await append_changes(db, [make_event(33)], note="new")

        deleted = await purge_expired_changes(db, retention_days=1)
        remaining = await get_records(db)

    assert deleted == 1
    assert [r["operation"] for r in remaining] == ["BOOTSTRAP", "GAP", "RESET", "DDL", "INSERT"]


@pytest.mark.asyncio
async def test_retention_override_days(test_config, bootstrapped_state, change_log):
    """An explicit horizon overrides the configured one."""
    db_path = bootstrapped_state["store_db_path"]
    emit_inserts(change_log, 2)

    await run_capture_cycle(test_config, bootstrapped_state)

    async with connect_store(db_path) as db:
        change = (await get_records(db, include_markers=False))[0]
    await set_capture_time(db_path, change["capture_id"], datetime.now(UTC) - timedelta(days=10))

    assert (await run_retention(test_config, bootstrapped_state)).deleted_count == 0
    assert (await run_retention(test_config, bootstrapped_state, retention_days=7)).deleted_count == 1


@pytest.mark.asyncio
async def test_retention_keeps_checkpoint_rows(test_config, bootstrapped_state, change_log):
    """
    CRITICAL: Purging an idle store never moves the checkpoint back,
    so the next cycle neither recaptures nor reports a gap.
    """
    db_path = bootstrapped_state["store_db_path"]
    emit_inserts(change_log, 3)
    await run_capture_cycle(test_config, bootstrapped_state)

    old = datetime.now(UTC) - timedelta(days=100)
    for record in await store_changes(db_path, include_markers=True):
        await set_capture_time(db_path, record["capture_id"], old)

    result = await run_retention(test_config, bootstrapped_state)

    assert result.deleted_count == 2
    assert await store_checkpoint(db_path) == 1003

    idle = await run_capture_cycle(test_config, bootstrapped_state)
    assert idle.status == CycleStatus.IDLE
    assert idle.captured == 0

    emit_inserts(change_log, 1)
    captured = await run_capture_cycle(test_config, bootstrapped_state)
    assert captured.status == CycleStatus.CAPTURED

    changes = await store_changes(db_path)
    assert [c["position"] for c in changes] == [1003, 1004]

    async with connect_store(db_path) as db:
        assert [m["operation"] for m in await list_markers(db)] == ["BOOTSTRAP"]


@pytest.mark.asyncio
async def test_retention_waits_for_running_capture(
    test_config, bootstrapped_state, change_log, monkeypatch
):
    """
    Retention started while a slow capture holds the write lock waits for
    it instead of failing with "database is locked".
    """
    monkeypatch.setattr("cdchistory.store.sqlite_store.SQLITE_BUSY_TIMEOUT", 0.1)
    db_path = bootstrapped_state["store_db_path"]

    emit_inserts(change_log, 2)
    await run_capture_cycle(test_config, bootstrapped_state)
    first = (await store_changes(db_path))[0]
    await set_capture_time(db_path, first["capture_id"], datetime.now(UTC) - timedelta(days=100))

    emit_inserts(change_log, 50)
    change_log.read_delay = 0.02

    capture = asyncio.create_task(run_capture_cycle(test_config, bootstrapped_state))
    while change_log.open_session_count == 0:
        await asyncio.sleep(0.001)

    retention = await run_retention(test_config, bootstrapped_state)
    result = await capture

    assert retention.deleted_count == 1
    assert result.captured == 50
    assert [c["position"] for c in await store_changes(db_path)] == list(range(1002, 1053))


# ============================================================================
# Write Tests
# ============================================================================

@pytest.mark.asyncio
async def test_init_store_is_idempotent(temp_dir: Path):
    """Initializing an existing store keeps its rows."""
    db_path = temp_dir / "history.db"
    await init_store_db(db_path)

    async with connect_store(db_path) as db:
        async with write_transaction(db):
            await append_changes(db, [make_event(1)], note="first")

    await init_store_db(db_path)

    async with connect_store(db_path) as db:
        assert await count_changes(db) == 1


@pytest.mark.asyncio
async def test_init_store_failure_raises_store_error(temp_dir: Path):
    """An unusable store path is reported as StoreError."""
    blocker = temp_dir / "not_a_dir"
    blocker.write_text("file")

    with pytest.raises(StoreError):
        await init_store_db(blocker / "history.db")


@pytest.mark.asyncio
async def test_write_transaction_rolls_back_on_error(store_db_path: Path):
    """Rows appended before a failure are discarded."""
    async with connect_store(store_db_path) as db:
        with pytest.raises(RuntimeError):
            async with write_transaction(db):
                await append_changes(db, [make_event(1), make_event(2)], note="batch")
                raise RuntimeError("boom")

        assert await get_checkpoint(db) is None
        assert not db.in_transaction


@pytest.mark.asyncio
async def test_append_rejects_unknown_operation(store_db_path: Path):
    """Only known operation kinds reach the ledger."""
    async with connect_store(store_db_path) as db:
        with pytest.raises(ValueError):
            async with write_transaction(db):
                await append_changes(db, [make_event(1, "MERGE")], note="bad")


@pytest.mark.asyncio
async def test_insert_marker_rejects_change_operations(store_db_path: Path):
    """Markers must be BOOTSTRAP, GAP or RESET."""
    async with connect_store(store_db_path) as db:
        with pytest.raises(StoreError):
            async with write_transaction(db):
                await insert_marker(db, Operation.INSERT, 1, "X", "r", "u", "n")


@pytest.mark.asyncio
async def test_checkpoint_includes_markers(store_db_path: Path):
    """The checkpoint is MAX(position) over changes and markers alike."""
    async with connect_store(store_db_path) as db:
        async with write_transaction(db):
            await append_changes(db, [make_event(5), make_event(7)], note="batch")
            await insert_marker(db, Operation.GAP, 41, "AUTO_RECOVERY", "r", "u", "n")

        assert await get_checkpoint(db) == 41
        assert await count_changes(db) == 2


# ============================================================================
# Reader Tests
# ============================================================================

@pytest.mark.asyncio
async def test_get_records_filters_and_pages(store_db_path: Path):
    """Records page by capture_id and filter by namespace and entity."""
    async with connect_store(store_db_path) as db:
        async with write_transaction(db):
            await insert_marker(db, Operation.BOOTSTRAP, 0, "AUTO_CHECKPOINT", "r", "u", "n")
            await append_changes(
                db,
                [
                    make_event(1),
                    make_event(2, entity="CUSTOMERS"),
                    make_event(3, namespace="BILLING", entity="INVOICES"),
                ],
                note="batch",
            )

        first_page = await get_records(db, limit=2)
        second_page = await get_records(db, after_capture_id=first_page[-1]["capture_id"])
        customers = await get_records(db, entity="CUSTOMERS")
        billing = await get_records(db, namespace="BILLING")
        no_markers = await get_records(db, include_markers=False)

    assert [r["position"] for r in first_page] == [0, 1]
    assert [r["position"] for r in second_page] == [2, 3]
    assert [r["position"] for r in customers] == [2]
    assert [r["entity"] for r in billing] == ["INVOICES"]
    assert [r["position"] for r in no_markers] == [1, 2, 3]


@pytest.mark.asyncio
async def test_reporting_views(store_db_path: Path):
    """The recent, per-entity and per-actor views summarize real changes."""
    long_redo = "x" * 5000

    async with connect_store(store_db_path) as db:
        async with write_transaction(db):
            await insert_marker(db, Operation.BOOTSTRAP, 0, "AUTO_CHECKPOINT", "r", "u", "n")
            await append_changes(
                db,
                [
                    make_event(1, redo_payload=long_redo),
                    make_event(2, "UPDATE"),
                    make_event(3, "UPDATE", actor="batch_job"),
                    make_event(4, "DELETE", entity="CUSTOMERS"),
                ],
                note="batch",
            )

        recent = await list_recent_changes(db)
        by_entity = await changes_by_entity(db)
        by_actor = await changes_by_actor(db)

    assert len(recent) == 5
    long_row = next(r for r in recent if r["position"] == 1)
    assert len(long_row["redo_preview"]) == 4000
    assert long_row["has_more_redo"] == "Y"
    assert next(r for r in recent if r["position"] == 2)["has_more_redo"] == "N"

    counts = {(r["entity"], r["operation"]): r["change_count"] for r in by_entity}
    assert counts == {
        ("ORDERS", "INSERT"): 1,
        ("ORDERS", "UPDATE"): 2,
        ("CUSTOMERS", "DELETE"): 1,
    }

    actors = {(r["actor"], r["operation"]): r["change_count"] for r in by_actor}
    assert actors[("app_user", "UPDATE")] == 1
    assert actors[("batch_job", "UPDATE")] == 1
    assert "SYSTEM" not in {r["actor"] for r in by_actor}


@pytest.mark.asyncio
async def test_recent_view_excludes_old_rows(store_db_path: Path):
    """Rows captured more than 7 days ago are not recent."""
    async with connect_store(store_db_path) as db:
        async with write_transaction(db):
            await append_changes(
                db,
                [make_event(1)],
                note="old",
                captured_at=datetime.now(UTC) - timedelta(days=8),
            )
            await append_changes(db, [make_event(2)], note="new")

        recent = await list_recent_changes(db)

    assert [r["position"] for r in recent] == [2]


# ============================================================================
# Compression Tests
# ============================================================================

def test_small_payloads_stored_plain():
    """Payloads at or under the threshold are not compressed."""
    redo, undo, encoding = encode_payloads("insert", None, threshold=100)

    assert encoding == "plain"
    assert redo == b"insert"
    assert undo is None


def test_large_payload_compresses_both_sides():
    """One oversized payload puts the whole row in zstd encoding."""
    big = "update t set c = 'abc' " * 2000
    redo, undo, encoding = encode_payloads(big, "small", threshold=8192)

    assert encoding == "zstd"
    assert len(redo) < len(big)
    assert decode_payload(redo, encoding) == big
    assert decode_payload(undo, encoding) == "small"


def test_decode_corrupt_payload_raises_store_error():
    """Undecodable payloads are reported, not returned garbled."""
    with pytest.raises(StoreError):
        decode_payload(b"not zstd data", "zstd")


def test_format_time_is_utc_and_sortable():
    """Stored times compare correctly as strings."""
    naive = datetime(2026, 1, 2, 3, 4, 5)
    aware = datetime(2026, 1, 2, 3, 4, 5, 1, tzinfo=UTC)

    assert format_time(naive) == "2026-01-02T03:04:05.000000+00:00"
    assert format_time(naive) < format_time(aware)
    assert format_time(None) is None
