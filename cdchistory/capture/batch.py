# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Batch Capture - Read one window of changes and append it to the store.

Events are filtered before they reach the store:
- internal and platform namespaces are never captured
- events without an entity are dropped
- only INSERT, UPDATE and DELETE are captured

At most batch_limit events are appended per cycle, plus any further
events sharing the last position: the next cycle resumes strictly after
the new checkpoint, so a batch never ends partway through a position.
The remainder is not buffered.
"""

from contextlib import aclosing
from dataclasses import dataclass, field
from datetime import datetime, UTC
from typing import AsyncIterable, FrozenSet, Iterable, List

import aiosqlite
import structlog

from cdchistory.capture.recovery import open_with_recovery
from cdchistory.checkpoint import CaptureWindow
from cdchistory.config import (
    DEFAULT_BATCH_LIMIT,
    DEFAULT_DENIED_NAMESPACES,
    DEFAULT_DENIED_PREFIXES,
    CaptureConfig,
)
from cdchistory.models import CAPTURED_OPERATIONS, ChangeEvent, Operation
from cdchistory.source import ChangeLogSource
from cdchistory.store import append_changes

logger = structlog.get_logger()

_CAPTURED_VALUES = frozenset(op.value for op in CAPTURED_OPERATIONS)


def _upper_set(names: Iterable[str]) -> FrozenSet[str]:
    return frozenset(name.upper() for name in names)


@dataclass(frozen=True)
class EventFilter:
    """Decides which source events become change records."""

    denied_namespaces: FrozenSet[str] = field(
        default_factory=lambda: _upper_set(DEFAULT_DENIED_NAMESPACES)
    )
    denied_prefixes: FrozenSet[str] = field(
        default_factory=lambda: _upper_set(DEFAULT_DENIED_PREFIXES)
    )

    @classmethod
    def from_config(cls, config: CaptureConfig) -> "EventFilter":
        return cls(
            denied_namespaces=_upper_set(config.all_denied_namespaces),
            denied_prefixes=_upper_set(config.denied_prefixes),
        )

    def accepts(self, event: ChangeEvent, after_position: int) -> bool:
        if event.position <= after_position:
            return False

        if event.namespace is None or event.entity is None:
            return False

        namespace = event.namespace.upper()
        if namespace in self.denied_namespaces:
            return False
        if any(namespace.startswith(prefix) for prefix in self.denied_prefixes):
            return False

        return event.operation in _CAPTURED_VALUES


@dataclass
class BatchOutcome:
    """Result of capturing one window."""

    captured: int = 0
    truncated: bool = False  # batch_limit was reached
    marker: Operation | None = None  # Recovery marker written while opening


async def collect_batch(
    events: AsyncIterable[ChangeEvent],
    event_filter: EventFilter,
    after_position: int,
    limit: int = DEFAULT_BATCH_LIMIT,
) -> tuple[List[ChangeEvent], bool]:
    """
    Collect up to limit accepted events from a position-ordered stream.

    Once the limit is reached, events at the same position as the last
    one collected are still taken.

    Returns:
        Tuple of (accepted events, whether the limit cut the batch short)
    """
    batch: List[ChangeEvent] = []

    async for event in events:
        if not event_filter.accepts(event, after_position):
            continue
        if len(batch) >= limit and (not batch or event.position != batch[-1].position):
            return batch, True
        batch.append(event)

    return batch, False


async def capture_batch(
    db: aiosqlite.Connection,
    source: ChangeLogSource,
    window: CaptureWindow,
    config: CaptureConfig,
    now: datetime | None = None,
) -> BatchOutcome:
    """
    Capture the changes in (window.start, window.end].

    Runs inside the caller's write transaction and does not commit the
    appended rows. The reading session is closed before returning.
    """
    now = now or datetime.now(UTC)
    event_filter = EventFilter.from_config(config)

    async with open_with_recovery(db, source, window, config.probe_window_days) as opened:
        if opened.handle is None:
            return BatchOutcome(marker=opened.marker)

        async with aclosing(source.read_events(opened.handle)) as events:
            batch, truncated = await collect_batch(
                events,
                event_filter,
                opened.start,
                config.batch_limit,
            )

    captured = await append_changes(
        db,
        batch,
        note=f"Captured at {now.strftime('%Y-%m-%d %H:%M:%S')}",
        captured_at=now,
        compression_threshold=config.payload_compression_threshold,
    )

    if truncated:
        logger.warning(
            "batch_limit_reached",
            limit=config.batch_limit,
            last_position=batch[-1].position if batch else window.start,
            window_end=window.end,
        )

    return BatchOutcome(captured=captured, truncated=truncated, marker=opened.marker)
