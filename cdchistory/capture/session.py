# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Scoped reading sessions.

A reading session is a system-wide exclusive resource: a session left
open blocks every later capture cycle. Sessions are therefore only ever
held through reading_session(), which releases them on every exit path.
"""

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

import structlog

from cdchistory.source import ChangeLogSource, SessionHandle

logger = structlog.get_logger()


async def close_quietly(source: ChangeLogSource, handle: SessionHandle | None) -> None:
    """
    Close a reading session, logging instead of raising on failure.

    Used on exit paths where an error may already be propagating; a
    failed close must never replace it.
    """
    if handle is None:
        return
    try:
        await source.close_session(handle)
    except Exception as e:
        logger.error(
            "session_close_failed",
            session_id=handle.session_id,
            error=str(e),
        )


@asynccontextmanager
async def reading_session(
    source: ChangeLogSource,
    **bounds: Any,
) -> AsyncIterator[SessionHandle]:
    """
    Open a reading session and guarantee it is closed.

    Args:
        source: Change-log source
        **bounds: start_position / end_position / start_time / end_time

    Yields:
        The open session handle
    """
    handle = await source.open_session(**bounds)
    logger.debug("session_opened", session_id=handle.session_id, **_printable(bounds))
    try:
        yield handle
    finally:
        await close_quietly(source, handle)


def _printable(bounds: dict) -> dict:
    return {key: str(value) for key, value in bounds.items() if value is not None}
