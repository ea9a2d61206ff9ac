# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
CDC History SQLite Store - Append-only ledger of captured changes.

Rows are only ever inserted by the capture engine and deleted by the
retention reaper. There is no checkpoint table: MAX(position) over the
ledger is the checkpoint, so the checkpoint always moves in the same
commit as the rows that justify it.

Writers take SQLite's reserved lock up front (BEGIN IMMEDIATE), which
makes the store single-writer across processes as well as tasks.
"""

from contextlib import asynccontextmanager
from datetime import datetime, timedelta, UTC
from pathlib import Path
from typing import AsyncIterator, Iterable, List

import aiosqlite
import structlog

from cdchistory.exceptions import StoreError
from cdchistory.models import (
    CAPTURED_OPERATIONS,
    MARKER_OPERATIONS,
    SYSTEM_NAMESPACE,
    ChangeEvent,
    ChangeRecord,
    Operation,
)
from cdchistory.store.compressor import (
    DEFAULT_COMPRESSION_THRESHOLD,
    ZSTD_ENCODING,
    decode_payload,
    encode_payloads,
)

logger = structlog.get_logger()

# Seconds a writer waits for the reserved lock before failing
SQLITE_BUSY_TIMEOUT = 30.0

# Characters of redo payload shown by the recent-changes view
REDO_PREVIEW_CHARS = 4000

_CAPTURED_SQL = ", ".join(f"'{op.value}'" for op in sorted(CAPTURED_OPERATIONS))
_MARKER_SQL = ", ".join(f"'{op.value}'" for op in sorted(MARKER_OPERATIONS))
_ALL_OPERATIONS_SQL = ", ".join(f"'{op.value}'" for op in Operation)

_RECORD_COLUMNS = """
    capture_id, capture_time, position, commit_position, commit_time,
    event_time, operation, actor, namespace, entity, redo_payload,
    undo_payload, payload_encoding, transaction_id, source_row_id, note
"""


def format_time(value: datetime | None) -> str | None:
    """
    Format a datetime for storage.

    All stored times are UTC ISO 8601 with microseconds, so that string
    order matches time order and the capture_time index stays usable.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).isoformat(timespec="microseconds")


def busy_timeout_for(cycle_timeout_seconds: float) -> float:
    """
    Lock wait for writers that may contend with a capture cycle.

    A capture holds the write lock while it reads the source, for up to
    cycle_timeout_seconds. Retention and other captures wait that long
    plus the usual busy timeout instead of failing with "database is
    locked".
    """
    return cycle_timeout_seconds + SQLITE_BUSY_TIMEOUT


@asynccontextmanager
async def connect_store(
    db_path: Path,
    timeout: float | None = None,
) -> AsyncIterator[aiosqlite.Connection]:
    """
    Open a connection to the history store.

    Transactions are managed explicitly (see write_transaction), so the
    connection runs with sqlite3's implicit transactions disabled.

    Args:
        db_path: Path to the SQLite database file
        timeout: Seconds to wait for the write lock (default: SQLITE_BUSY_TIMEOUT)
    """
    async with aiosqlite.connect(
        db_path,
        isolation_level=None,
        timeout=SQLITE_BUSY_TIMEOUT if timeout is None else timeout,
    ) as db:
        db.row_factory = aiosqlite.Row
        await db.execute("PRAGMA journal_mode=WAL")
        yield db


@asynccontextmanager
async def write_transaction(db: aiosqlite.Connection) -> AsyncIterator[aiosqlite.Connection]:
    """
    Run a block inside a write transaction.

    Commits when the block completes. Any exception, cancellation
    included, rolls back whatever is still uncommitted and propagates.
    """
    await db.execute("BEGIN IMMEDIATE")
    try:
        yield db
    except BaseException:
        if db.in_transaction:
            await db.rollback()
        raise
    else:
        await db.commit()


async def commit_and_begin(db: aiosqlite.Connection) -> None:
    """Commit the current transaction and immediately open a new write transaction."""
    await db.commit()
    await db.execute("BEGIN IMMEDIATE")


async def init_store_db(db_path: Path) -> None:
    """
    Initialize the history store schema.

    Creates the ledger table, its indexes and the reporting views if they
    don't exist. This is idempotent.

    Args:
        db_path: Path to the SQLite database file
    """
    try:
        async with connect_store(db_path) as db:
            await db.execute(f"""
                CREATE TABLE IF NOT EXISTS change_history (
                    capture_id INTEGER PRIMARY KEY AUTOINCREMENT,
                    capture_time TEXT NOT NULL,
                    position INTEGER NOT NULL,
                    commit_position INTEGER,
                    commit_time TEXT,
                    event_time TEXT NOT NULL,
                    operation TEXT NOT NULL
                        CHECK (operation IN ({_ALL_OPERATIONS_SQL})),
                    actor TEXT,
                    namespace TEXT NOT NULL,
                    entity TEXT NOT NULL,
                    redo_payload BLOB,
                    undo_payload BLOB,
                    payload_encoding TEXT NOT NULL DEFAULT 'plain',
                    transaction_id TEXT,
                    source_row_id TEXT,
                    note TEXT
                )
            """)

            # Indexes for retention, checkpoint and reporting queries
            await db.execute("""
                CREATE INDEX IF NOT EXISTS idx_change_history_capture_time
                ON change_history(capture_time)
            """)

            await db.execute("""
                CREATE INDEX IF NOT EXISTS idx_change_history_position
                ON change_history(position)
            """)

            await db.execute("""
                CREATE INDEX IF NOT EXISTS idx_change_history_entity
                ON change_history(namespace, entity, event_time)
            """)

            await db.execute("""
                CREATE INDEX IF NOT EXISTS idx_change_history_operation
                ON change_history(operation, capture_time)
            """)

            await db.execute("""
                CREATE INDEX IF NOT EXISTS idx_change_history_actor
                ON change_history(actor, event_time)
            """)

            await db.execute("""
                CREATE INDEX IF NOT EXISTS idx_change_history_transaction
                ON change_history(transaction_id)
            """)

            # Reporting views
            await db.execute(f"""
                CREATE VIEW IF NOT EXISTS v_recent_changes AS
                SELECT
                    capture_id,
                    capture_time AS captured_at,
                    position,
                    event_time AS changed_at,
                    operation,
                    actor,
                    namespace,
                    entity,
                    namespace || '.' || entity AS full_entity_name,
                    CASE WHEN payload_encoding = 'plain'
                        THEN substr(CAST(redo_payload AS TEXT), 1, {REDO_PREVIEW_CHARS})
                    END AS redo_preview,
                    CASE WHEN payload_encoding != 'plain'
                          OR length(CAST(redo_payload AS TEXT)) > {REDO_PREVIEW_CHARS}
                        THEN 'Y' ELSE 'N'
                    END AS has_more_redo,
                    transaction_id,
                    source_row_id
                FROM change_history
                WHERE julianday(capture_time) > julianday('now', '-7 days')
                ORDER BY capture_time DESC, capture_id DESC
            """)

            await db.execute(f"""
                CREATE VIEW IF NOT EXISTS v_changes_by_entity AS
                SELECT
                    namespace,
                    entity,
                    namespace || '.' || entity AS full_entity_name,
                    operation,
                    COUNT(*) AS change_count,
                    MIN(event_time) AS first_change,
                    MAX(event_time) AS last_change,
                    COUNT(DISTINCT transaction_id) AS transaction_count,
                    COUNT(DISTINCT actor) AS actor_count
                FROM change_history
                WHERE julianday(capture_time) > julianday('now', '-30 days')
                  AND operation IN ({_CAPTURED_SQL})
                GROUP BY namespace, entity, operation
                ORDER BY change_count DESC
            """)

            await db.execute(f"""
                CREATE VIEW IF NOT EXISTS v_changes_by_actor AS
                SELECT
                    actor,
                    operation,
                    COUNT(*) AS change_count,
                    COUNT(DISTINCT namespace || '.' || entity) AS entities_affected,
                    MIN(event_time) AS first_change,
                    MAX(event_time) AS last_change
                FROM change_history
                WHERE julianday(capture_time) > julianday('now', '-30 days')
                  AND operation IN ({_CAPTURED_SQL})
                GROUP BY actor, operation
                ORDER BY change_count DESC
            """)

        logger.info("store_db_initialized", db_path=str(db_path))

    except Exception as e:
        raise StoreError(
            f"Failed to initialize history store: {e}",
            details={"db_path": str(db_path)},
        ) from e


async def get_checkpoint(db: aiosqlite.Connection) -> int | None:
    """
    Get the highest position recorded in the store.

    Returns:
        MAX(position), or None if the store is empty
    """
    async with db.execute("SELECT MAX(position) FROM change_history") as cursor:
        row = await cursor.fetchone()
        return row[0] if row else None


async def append_changes(
    db: aiosqlite.Connection,
    events: Iterable[ChangeEvent],
    note: str,
    captured_at: datetime | None = None,
    compression_threshold: int = DEFAULT_COMPRESSION_THRESHOLD,
) -> int:
    """
    Append captured change events to the ledger.

    Does not commit: the caller owns the transaction so that a batch is
    either stored completely or not at all.

    Args:
        db: SQLite database connection
        events: Events to store, in position order
        note: Ingestion annotation stored on every row
        captured_at: Ingestion time (default: now)
        compression_threshold: Payload size above which zstd is used

    Returns:
        Number of rows inserted
    """
    capture_time = format_time(captured_at or datetime.now(UTC))

    rows = []
    for event in events:
        redo, undo, encoding = encode_payloads(
            event.redo_payload, event.undo_payload, compression_threshold
        )
        rows.append(
            (
                capture_time,
                event.position,
                event.commit_position,
                format_time(event.commit_time),
                format_time(event.event_time),
                Operation(event.operation).value,
                event.actor,
                event.namespace,
                event.entity,
                redo,
                undo,
                encoding,
                event.transaction_id,
                event.source_row_id,
                note,
            )
        )

    if not rows:
        return 0

    await db.executemany(
        """
        INSERT INTO change_history
        (capture_time, position, commit_position, commit_time, event_time,
         operation, actor, namespace, entity, redo_payload, undo_payload,
         payload_encoding, transaction_id, source_row_id, note)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        rows,
    )

    logger.debug("changes_appended", count=len(rows))

    return len(rows)


async def insert_marker(
    db: aiosqlite.Connection,
    operation: Operation,
    position: int,
    entity: str,
    redo: str,
    undo: str,
    note: str,
    commit_position: int | None = None,
    captured_at: datetime | None = None,
) -> int:
    """
    Insert a marker row recording a capture-engine event.

    Markers live in the SYSTEM namespace and are never purged. Like
    append_changes, this does not commit.

    Args:
        db: SQLite database connection
        operation: GAP, RESET or BOOTSTRAP
        position: Position the checkpoint moves to
        entity: Marker sentinel entity (AUTO_RECOVERY, FULL_RESET, ...)
        redo: Human-readable explanation of the event
        undo: Human-readable recovery note
        note: Ingestion annotation
        commit_position: Commit position to record (default: position)
        captured_at: Ingestion time (default: now)

    Returns:
        capture_id of the marker row
    """
    if operation not in MARKER_OPERATIONS:
        raise StoreError(
            f"Not a marker operation: {operation}",
            details={"operation": str(operation)},
        )

    now = format_time(captured_at or datetime.now(UTC))

    cursor = await db.execute(
        """
        INSERT INTO change_history
        (capture_time, position, commit_position, commit_time, event_time,
         operation, actor, namespace, entity, redo_payload, undo_payload,
         payload_encoding, transaction_id, source_row_id, note)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 'plain', NULL, NULL, ?)
        """,
        (
            now,
            position,
            position if commit_position is None else commit_position,
            now,
            now,
            operation.value,
            SYSTEM_NAMESPACE,
            SYSTEM_NAMESPACE,
            entity,
            redo.encode("utf-8"),
            undo.encode("utf-8"),
            note,
        ),
    )

    logger.info(
        "marker_inserted",
        operation=operation.value,
        entity=entity,
        position=position,
    )

    return cursor.lastrowid


async def purge_expired_changes(
    db: aiosqlite.Connection,
    retention_days: int,
    now: datetime | None = None,
) -> int:
    """
    Delete captured changes older than the retention horizon.

    Only INSERT/UPDATE/DELETE rows are eligible. DDL and marker rows are
    the only trace of schema changes, gaps and resets, so they stay.
    Rows at MAX(position) also stay: they hold the checkpoint, and
    deleting them would make the next capture read their range again.

    Args:
        db: SQLite database connection
        retention_days: Age in days beyond which rows are deleted
        now: Reference time (default: now)

    Returns:
        Number of rows deleted
    """
    cutoff = format_time((now or datetime.now(UTC)) - timedelta(days=retention_days))

    async with write_transaction(db):
        cursor = await db.execute(
            f"""
            DELETE FROM change_history
            WHERE capture_time < ?
              AND operation IN ({_CAPTURED_SQL})
              AND position < (SELECT MAX(position) FROM change_history)
            """,
            (cutoff,),
        )
        deleted = cursor.rowcount

    logger.info("expired_changes_purged", deleted=deleted, cutoff=cutoff)

    return deleted


def _row_to_record(row: aiosqlite.Row) -> ChangeRecord:
    """Convert a ledger row to a ChangeRecord, decoding payloads."""
    encoding = row["payload_encoding"]
    return ChangeRecord(
        capture_id=row["capture_id"],
        capture_time=row["capture_time"],
        position=row["position"],
        commit_position=row["commit_position"],
        commit_time=row["commit_time"],
        event_time=row["event_time"],
        operation=row["operation"],
        actor=row["actor"],
        namespace=row["namespace"],
        entity=row["entity"],
        redo_payload=decode_payload(row["redo_payload"], encoding),
        undo_payload=decode_payload(row["undo_payload"], encoding),
        transaction_id=row["transaction_id"],
        source_row_id=row["source_row_id"],
        note=row["note"],
    )


async def get_records(
    db: aiosqlite.Connection,
    after_capture_id: int = 0,
    limit: int = 100,
    namespace: str | None = None,
    entity: str | None = None,
    include_markers: bool = True,
) -> List[ChangeRecord]:
    """
    Page through the ledger in capture order.

    Args:
        db: SQLite database connection
        after_capture_id: Return rows with a larger capture_id
        limit: Maximum number of rows
        namespace: Optional namespace filter
        entity: Optional entity filter
        include_markers: Whether to include marker rows

    Returns:
        List of change records
    """
    query = f"SELECT {_RECORD_COLUMNS} FROM change_history WHERE capture_id > ?"
    params: List = [after_capture_id]

    if namespace:
        query += " AND namespace = ?"
        params.append(namespace)

    if entity:
        query += " AND entity = ?"
        params.append(entity)

    if not include_markers:
        query += f" AND operation NOT IN ({_MARKER_SQL})"

    query += " ORDER BY capture_id LIMIT ?"
    params.append(limit)

    async with db.execute(query, params) as cursor:
        return [_row_to_record(row) async for row in cursor]


async def list_markers(db: aiosqlite.Connection) -> List[ChangeRecord]:
    """List every marker row in capture order."""
    async with db.execute(
        f"""
        SELECT {_RECORD_COLUMNS} FROM change_history
        WHERE operation IN ({_MARKER_SQL})
        ORDER BY capture_id
        """
    ) as cursor:
        return [_row_to_record(row) async for row in cursor]


async def count_changes(db: aiosqlite.Connection) -> int:
    """Count rows that record real changes (markers excluded)."""
    async with db.execute(
        f"SELECT COUNT(*) FROM change_history WHERE operation NOT IN ({_MARKER_SQL})"
    ) as cursor:
        row = await cursor.fetchone()
        return row[0] if row else 0


async def list_recent_changes(db: aiosqlite.Connection, limit: int = 100) -> List[dict]:
    """Rows from the 7-day recent changes view, newest first."""
    async with db.execute("SELECT * FROM v_recent_changes LIMIT ?", (limit,)) as cursor:
        return [dict(row) async for row in cursor]


async def changes_by_entity(db: aiosqlite.Connection) -> List[dict]:
    """30-day change counts per namespace/entity/operation."""
    async with db.execute("SELECT * FROM v_changes_by_entity") as cursor:
        return [dict(row) async for row in cursor]


async def changes_by_actor(db: aiosqlite.Connection) -> List[dict]:
    """30-day change counts per actor/operation."""
    async with db.execute("SELECT * FROM v_changes_by_actor") as cursor:
        return [dict(row) async for row in cursor]


async def get_store_stats(db: aiosqlite.Connection) -> dict:
    """
    Get history store statistics.

    Returns:
        Dict with store statistics
    """
    stats: dict = {}

    async with db.execute("SELECT COUNT(*) FROM change_history") as cursor:
        row = await cursor.fetchone()
        stats["total_records"] = row[0] if row else 0

    stats["total_changes"] = await count_changes(db)
    stats["checkpoint"] = await get_checkpoint(db)

    async with db.execute(
        "SELECT operation, COUNT(*) FROM change_history GROUP BY operation"
    ) as cursor:
        stats["records_by_operation"] = {row[0]: row[1] async for row in cursor}

    async with db.execute(
        "SELECT MIN(capture_time), MAX(capture_time) FROM change_history"
    ) as cursor:
        row = await cursor.fetchone()
        stats["oldest_capture_time"] = row[0] if row else None
        stats["newest_capture_time"] = row[1] if row else None

    async with db.execute(
        "SELECT COUNT(*) FROM change_history WHERE payload_encoding = ?",
        (ZSTD_ENCODING,),
    ) as cursor:
        row = await cursor.fetchone()
        stats["compressed_records"] = row[0] if row else 0

    return stats
