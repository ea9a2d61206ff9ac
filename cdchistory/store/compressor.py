# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
CDC History Compressor - Large payload encoding for the history store.

Redo/undo payloads are unbounded text. Small payloads are stored as
plain UTF-8; payloads above the configured threshold are compressed
with zstd and flagged with the 'zstd' encoding so reads can undo it.
"""

from typing import Tuple

import structlog
import zstandard as zstd

from cdchistory.exceptions import StoreError

logger = structlog.get_logger()

PLAIN_ENCODING = "plain"
ZSTD_ENCODING = "zstd"

DEFAULT_ZSTD_LEVEL = 9
DEFAULT_COMPRESSION_THRESHOLD = 8192


def encode_payloads(
    redo: str | None,
    undo: str | None,
    threshold: int = DEFAULT_COMPRESSION_THRESHOLD,
    zstd_level: int = DEFAULT_ZSTD_LEVEL,
) -> Tuple[bytes | None, bytes | None, str]:
    """
    Encode a redo/undo payload pair for storage.

    Both payloads of a row share one encoding. If either exceeds the
    threshold, both are compressed.

    Args:
        redo: Forward representation of the change
        undo: Reverse representation of the change
        threshold: Size in bytes above which payloads are compressed
        zstd_level: zstd compression level

    Returns:
        Tuple of (redo_bytes, undo_bytes, encoding)
    """
    redo_bytes = redo.encode("utf-8") if redo is not None else None
    undo_bytes = undo.encode("utf-8") if undo is not None else None

    largest = max(len(redo_bytes or b""), len(undo_bytes or b""))
    if largest <= threshold:
        return redo_bytes, undo_bytes, PLAIN_ENCODING

    cctx = zstd.ZstdCompressor(level=zstd_level)
    redo_packed = cctx.compress(redo_bytes) if redo_bytes is not None else None
    undo_packed = cctx.compress(undo_bytes) if undo_bytes is not None else None

    logger.debug(
        "payload_compressed",
        original_size=len(redo_bytes or b"") + len(undo_bytes or b""),
        compressed_size=len(redo_packed or b"") + len(undo_packed or b""),
    )

    return redo_packed, undo_packed, ZSTD_ENCODING


def decode_payload(data: bytes | str | None, encoding: str) -> str | None:
    """
    Decode a stored payload back to text.

    Args:
        data: Stored payload bytes
        encoding: 'plain' or 'zstd'

    Returns:
        Payload text or None
    """
    if data is None:
        return None
    if isinstance(data, str):
        return data

    if encoding == ZSTD_ENCODING:
        try:
            data = zstd.ZstdDecompressor().decompress(data)
        except zstd.ZstdError as e:
            raise StoreError(f"Payload decompression failed: {e}") from e
    elif encoding != PLAIN_ENCODING:
        raise StoreError(
            f"Unknown payload encoding: {encoding}",
            details={"encoding": encoding},
        )

    return data.decode("utf-8")
