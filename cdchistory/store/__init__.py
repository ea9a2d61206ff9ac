# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
History Store - Durable, append-only ledger of captured changes.
"""

from cdchistory.store.sqlite_store import (
    init_store_db,
    connect_store,
    busy_timeout_for,
    write_transaction,
    commit_and_begin,
    get_checkpoint,
    append_changes,
    insert_marker,
    purge_expired_changes,
    get_records,
    list_markers,
    count_changes,
    list_recent_changes,
    changes_by_entity,
    changes_by_actor,
    get_store_stats,
    format_time,
)

from cdchistory.store.compressor import (
    encode_payloads,
    decode_payload,
)

__all__ = [
    # Store functions
    "init_store_db",
    "connect_store",
    "busy_timeout_for",
    "write_transaction",
    "commit_and_begin",
    "get_checkpoint",
    "append_changes",
    "insert_marker",
    "purge_expired_changes",
    "get_records",
    "list_markers",
    "count_changes",
    "list_recent_changes",
    "changes_by_entity",
    "changes_by_actor",
    "get_store_stats",
    "format_time",
    # Compressor
    "encode_payloads",
    "decode_payload",
]
