# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
PostgreSQL Change Log - Trigger-fed change-log source.

Row-level triggers on the tracked tables append decoded changes to a
cdc_change_log table whose BIGSERIAL key is the change position. The
log is trimmed by age with trim_change_log(), which records the highest
trimmed position so that a reader asking for an older start position
gets RangeUnavailableError instead of a silent hole.

Session exclusivity uses a session-level advisory lock held on the
connection that serves the reading session.

Positions are assigned when the triggering statement runs, not when its
transaction commits. With concurrent writers, a long transaction can
commit a position lower than one already captured; sources that need
strict commit ordering should feed the log from logical decoding.
"""

import re
from datetime import datetime
from typing import Any, AsyncIterator, Dict, List
from urllib.parse import urlparse

import asyncpg
import structlog

from cdchistory.exceptions import (
    ConfigurationError,
    RangeUnavailableError,
    SessionBusyError,
    SourceError,
    SourceUnavailableError,
)
from cdchistory.models import ChangeEvent
from cdchistory.source import SessionHandle

logger = structlog.get_logger()

CHANGE_LOG_TABLE = "cdc_change_log"
HORIZON_TABLE = "cdc_change_log_horizon"

# Advisory lock key guarding the single reading session ("cdc_hist")
SESSION_LOCK_KEY = 0x6364635F68697374

DEFAULT_PAGE_SIZE = 1000

_TABLE_NAME = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*(\.[A-Za-z_][A-Za-z0-9_]*)?$")

_SOURCE_ERRORS = (OSError, asyncpg.PostgresError, asyncpg.InterfaceError)


class PostgresChangeLog:
    """Change-log source over the cdc_change_log table."""

    def __init__(self, pool: Any, page_size: int = DEFAULT_PAGE_SIZE):
        self._pool = pool
        self._page_size = page_size
        self._connections: Dict[str, Any] = {}

    @classmethod
    async def connect(
        cls,
        connection_url: str,
        page_size: int = DEFAULT_PAGE_SIZE,
    ) -> "PostgresChangeLog":
        """
        Create a connection pool for the change log.

        Raises:
            SourceUnavailableError: If the database cannot be reached
        """
        try:
            pool = await asyncpg.create_pool(connection_url, min_size=1, max_size=4)
        except _SOURCE_ERRORS as e:
            raise SourceUnavailableError(
                f"Failed to connect to change log: {e}",
                details={"connection_url": _mask_password(connection_url)},
            ) from e

        logger.info("postgres_change_log_connected", url=_mask_password(connection_url))
        return cls(pool, page_size)

    async def open_session(
        self,
        *,
        start_position: int | None = None,
        end_position: int | None = None,
        start_time: datetime | None = None,
        end_time: datetime | None = None,
    ) -> SessionHandle:
        try:
            conn = await self._pool.acquire()
        except _SOURCE_ERRORS as e:
            raise SourceUnavailableError(f"Failed to acquire connection: {e}") from e

        try:
            locked = await conn.fetchval("SELECT pg_try_advisory_lock($1)", SESSION_LOCK_KEY)
            if not locked:
                raise SessionBusyError(
                    "A reading session is already open",
                    details={"lock_key": SESSION_LOCK_KEY},
                )

            try:
                if start_position is not None:
                    await self._check_retained(conn, start_position)
            except BaseException:
                await conn.execute("SELECT pg_advisory_unlock($1)", SESSION_LOCK_KEY)
                raise

        except _SOURCE_ERRORS as e:
            await self._pool.release(conn)
            raise SourceUnavailableError(f"Failed to open reading session: {e}") from e
        except BaseException:
            await self._pool.release(conn)
            raise

        handle = SessionHandle(
            start_position=start_position,
            end_position=end_position,
            start_time=start_time,
            end_time=end_time,
        )
        self._connections[handle.session_id] = conn

        logger.debug(
            "postgres_session_opened",
            session_id=handle.session_id,
            start_position=start_position,
            end_position=end_position,
        )
        return handle

    async def _check_retained(self, conn: Any, start_position: int) -> None:
        """Reject a start position that has been trimmed away."""
        purged_through = await conn.fetchval(
            f"SELECT purged_through FROM {HORIZON_TABLE} WHERE id = 1"
        )
        if purged_through is not None and start_position < purged_through:
            raise RangeUnavailableError(
                f"Position {start_position} precedes the retained window",
                details={
                    "start_position": start_position,
                    "purged_through": purged_through,
                },
            )

    async def read_events(self, handle: SessionHandle) -> AsyncIterator[ChangeEvent]:
        conn = self._connections.get(handle.session_id)
        if conn is None or handle.closed:
            raise SourceError(
                "Reading session is not open",
                details={"session_id": handle.session_id},
            )

        # Keyset pagination over the position key
        cursor = handle.start_position if handle.start_position is not None else -1
        while True:
            try:
                rows = await conn.fetch(
                    f"""
                    SELECT position, commit_position, commit_time, event_time,
                           operation, actor, namespace, entity, redo_payload,
                           undo_payload, transaction_id, source_row_id
                    FROM {CHANGE_LOG_TABLE}
                    WHERE position > $1
                      AND ($2::bigint IS NULL OR position <= $2)
                      AND ($3::timestamptz IS NULL OR event_time >= $3)
                      AND ($4::timestamptz IS NULL OR event_time <= $4)
                    ORDER BY position
                    LIMIT $5
                    """,
                    cursor,
                    handle.end_position,
                    handle.start_time,
                    handle.end_time,
                    self._page_size,
                )
            except _SOURCE_ERRORS as e:
                raise SourceUnavailableError(f"Failed to read change log: {e}") from e

            for row in rows:
                yield ChangeEvent(
                    position=row["position"],
                    operation=row["operation"],
                    namespace=row["namespace"],
                    entity=row["entity"],
                    event_time=row["event_time"],
                    commit_position=row["commit_position"],
                    commit_time=row["commit_time"],
                    actor=row["actor"],
                    redo_payload=row["redo_payload"],
                    undo_payload=row["undo_payload"],
                    transaction_id=row["transaction_id"],
                    source_row_id=row["source_row_id"],
                )

            if len(rows) < self._page_size:
                return
            cursor = rows[-1]["position"]

    async def close_session(self, handle: SessionHandle | None) -> None:
        if handle is None or handle.closed:
            return
        handle.closed = True

        conn = self._connections.pop(handle.session_id, None)
        if conn is None:
            return

        try:
            await conn.execute("SELECT pg_advisory_unlock($1)", SESSION_LOCK_KEY)
        finally:
            await self._pool.release(conn)

        logger.debug("postgres_session_closed", session_id=handle.session_id)

    async def current_position(self) -> int:
        try:
            async with self._pool.acquire() as conn:
                position = await conn.fetchval(
                    f"""
                    SELECT GREATEST(
                        COALESCE((SELECT MAX(position) FROM {CHANGE_LOG_TABLE}), 0),
                        COALESCE((SELECT purged_through FROM {HORIZON_TABLE} WHERE id = 1), 0)
                    )
                    """
                )
        except _SOURCE_ERRORS as e:
            raise SourceUnavailableError(f"Failed to read current position: {e}") from e
        return int(position)

    async def close(self) -> None:
        for session_id in list(self._connections):
            conn = self._connections.pop(session_id)
            await self._pool.release(conn)
        await self._pool.close()
        logger.info("postgres_change_log_closed")


async def setup_change_log(connection_url: str, tables: List[str]) -> None:
    """
    Install the change-log table and capture triggers.

    Idempotent: existing objects are kept and triggers are recreated.

    Args:
        connection_url: PostgreSQL connection URL
        tables: Tables to track, as 'table' or 'schema.table'
    """
    for table in tables:
        if not _TABLE_NAME.match(table):
            raise ConfigurationError(
                f"Invalid table name: {table!r}",
                details={"table": table},
            )

    conn = await asyncpg.connect(connection_url)

    try:
        await conn.execute(f"""
            CREATE TABLE IF NOT EXISTS {CHANGE_LOG_TABLE} (
                position BIGSERIAL PRIMARY KEY,
                commit_position BIGINT,
                commit_time TIMESTAMP WITH TIME ZONE,
                event_time TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT clock_timestamp(),
                operation TEXT NOT NULL,
                actor TEXT DEFAULT current_user,
                namespace TEXT,
                entity TEXT,
                redo_payload TEXT,
                undo_payload TEXT,
                transaction_id TEXT DEFAULT txid_current()::text,
                source_row_id TEXT
            )
        """)

        await conn.execute(f"""
            CREATE INDEX IF NOT EXISTS idx_{CHANGE_LOG_TABLE}_event_time
            ON {CHANGE_LOG_TABLE}(event_time)
        """)

        await conn.execute(f"""
            CREATE TABLE IF NOT EXISTS {HORIZON_TABLE} (
                id INTEGER PRIMARY KEY CHECK (id = 1),
                purged_through BIGINT NOT NULL DEFAULT 0
            )
        """)

        await conn.execute(
            f"INSERT INTO {HORIZON_TABLE} (id) VALUES (1) ON CONFLICT (id) DO NOTHING"
        )

        await conn.execute(f"""
            CREATE OR REPLACE FUNCTION cdc_capture_change()
            RETURNS TRIGGER AS $$
            BEGIN
                IF TG_OP = 'INSERT' THEN
                    INSERT INTO {CHANGE_LOG_TABLE}
                        (operation, namespace, entity, redo_payload, undo_payload, source_row_id)
                    VALUES ('INSERT', TG_TABLE_SCHEMA, TG_TABLE_NAME,
                            row_to_json(NEW)::text, NULL, NEW.ctid::text);
                ELSIF TG_OP = 'UPDATE' THEN
                    INSERT INTO {CHANGE_LOG_TABLE}
                        (operation, namespace, entity, redo_payload, undo_payload, source_row_id)
                    VALUES ('UPDATE', TG_TABLE_SCHEMA, TG_TABLE_NAME,
                            row_to_json(NEW)::text, row_to_json(OLD)::text, NEW.ctid::text);
                ELSIF TG_OP = 'DELETE' THEN
                    INSERT INTO {CHANGE_LOG_TABLE}
                        (operation, namespace, entity, redo_payload, undo_payload, source_row_id)
                    VALUES ('DELETE', TG_TABLE_SCHEMA, TG_TABLE_NAME,
                            NULL, row_to_json(OLD)::text, OLD.ctid::text);
                END IF;

                RETURN NULL;
            END;
            $$ LANGUAGE plpgsql;
        """)

        for table in tables:
            trigger_name = "cdc_capture_" + table.replace(".", "_")

            await conn.execute(f"DROP TRIGGER IF EXISTS {trigger_name} ON {table}")

            await conn.execute(f"""
                CREATE TRIGGER {trigger_name}
                AFTER INSERT OR UPDATE OR DELETE ON {table}
                FOR EACH ROW
                EXECUTE FUNCTION cdc_capture_change()
            """)

            logger.info("change_log_trigger_created", table=table, trigger=trigger_name)

    finally:
        await conn.close()


async def trim_change_log(connection_url: str, older_than_days: int) -> int:
    """
    Trim the change log by age and advance the retention horizon.

    Returns:
        Number of change-log rows removed
    """
    conn = await asyncpg.connect(connection_url)

    try:
        async with conn.transaction():
            rows = await conn.fetch(
                f"""
                DELETE FROM {CHANGE_LOG_TABLE}
                WHERE event_time < now() - make_interval(days => $1)
                RETURNING position
                """,
                older_than_days,
            )

            if rows:
                highest = max(row["position"] for row in rows)
                await conn.execute(
                    f"""
                    UPDATE {HORIZON_TABLE}
                    SET purged_through = GREATEST(purged_through, $1)
                    WHERE id = 1
                    """,
                    highest,
                )

        logger.info("change_log_trimmed", removed=len(rows))
        return len(rows)

    finally:
        await conn.close()


def _mask_password(url: str) -> str:
    """Mask password in connection URL for logging."""
    parsed = urlparse(url)
    if parsed.password:
        return url.replace(f":{parsed.password}@", ":***@")
    return url
