# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Environment-based configuration helpers and profiles.

These helpers are small, convenient wrappers around create_config() and
CaptureConfig.with_updates(). They make it easy to:

- Build a configuration from environment variables
- Apply ready-made capture profiles
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import List

from cdchistory.builder import create_config
from cdchistory.config import CaptureConfig, SourceBackend
from cdchistory.errors import (
    explain_invalid_int_env,
    explain_invalid_retention_days_env,
    explain_invalid_source_backend_env,
    explain_missing_source_url,
)
from cdchistory.exceptions import ConfigurationError


def _parse_int(name: str, value: str | None, default: int, minimum: int = 0) -> int:
    if not value:
        return default
    try:
        number = int(value)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(explain_invalid_int_env(name, value, minimum)) from exc
    if number < minimum:
        raise ConfigurationError(explain_invalid_int_env(name, value, minimum))
    return number


def _parse_retention_days(value: str | None) -> int:
    if not value:
        return 90
    try:
        days = int(value)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(explain_invalid_retention_days_env(value)) from exc
    if days < 1:
        raise ConfigurationError(explain_invalid_retention_days_env(value))
    return days


def _parse_list(value: str | None) -> List[str]:
    if not value:
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


def _parse_source_backend(value: str | None, url: str | None) -> SourceBackend:
    if not value:
        if url and url.lower().startswith(("postgres://", "postgresql://")):
            return SourceBackend.POSTGRES
        return SourceBackend.MEMORY

    try:
        return SourceBackend(value.lower())
    except ValueError as exc:
        raise ConfigurationError(explain_invalid_source_backend_env(value)) from exc


def create_config_from_env() -> CaptureConfig:
    """
    Create a CaptureConfig from environment variables.

    Optional environment variables:
        - CDCHISTORY_STORE_PATH: History database path (default: ./cdchistory_data/history.db)
        - CDCHISTORY_SOURCE: 'memory' | 'postgres' (default: inferred from URL)
        - CDCHISTORY_SOURCE_URL: Change-log source URL (falls back to DATABASE_URL)
        - CDCHISTORY_OWNER: Namespace owning the store (default: CDCADMIN)
        - CDCHISTORY_DENIED_NAMESPACES: Comma-separated extra namespaces to skip
        - CDCHISTORY_DENIED_PREFIXES: Comma-separated extra namespace prefixes to skip
        - CDCHISTORY_BATCH_LIMIT: Changes per cycle (default: 10000)
        - CDCHISTORY_RETENTION_DAYS: Positive integer (default: 90)
        - CDCHISTORY_CAPTURE_INTERVAL: Seconds between cycles; enables the scheduler
    """

    source_url = os.getenv("CDCHISTORY_SOURCE_URL") or os.getenv("DATABASE_URL")
    backend = _parse_source_backend(os.getenv("CDCHISTORY_SOURCE"), source_url)

    if backend == SourceBackend.POSTGRES and not source_url:
        raise ConfigurationError(explain_missing_source_url(backend.value))

    store_path_env = os.getenv("CDCHISTORY_STORE_PATH")
    interval_env = os.getenv("CDCHISTORY_CAPTURE_INTERVAL")

    return create_config(
        store_path=Path(store_path_env) if store_path_env else None,
        source_backend=backend,
        source_url=source_url if backend == SourceBackend.POSTGRES else None,
        denied_namespaces=_parse_list(os.getenv("CDCHISTORY_DENIED_NAMESPACES")),
        denied_prefixes=_parse_list(os.getenv("CDCHISTORY_DENIED_PREFIXES")),
        batch_limit=_parse_int(
            "CDCHISTORY_BATCH_LIMIT", os.getenv("CDCHISTORY_BATCH_LIMIT"), 10_000, minimum=1
        ),
        retention_days=_parse_retention_days(os.getenv("CDCHISTORY_RETENTION_DAYS")),
        capture_interval_seconds=(
            _parse_int("CDCHISTORY_CAPTURE_INTERVAL", interval_env, 300, minimum=1)
            if interval_env
            else None
        ),
        owner_namespace=os.getenv("CDCHISTORY_OWNER", "CDCADMIN"),
    )


# ============================================================================
# Profiles
# ============================================================================

def safe_defaults(config: CaptureConfig) -> CaptureConfig:
    """
    Apply conservative defaults.

    - Keep at least 90 days of history
    - Bound every cycle with a deadline
    - Restore the platform deny lists if they were removed
    """

    namespaces = list(config.denied_namespaces)
    for name in ("SYS", "SYSTEM", "AUDSYS"):
        if name not in namespaces:
            namespaces.append(name)

    prefixes = list(config.denied_prefixes)
    for p in ("APEX", "C##CLOUD$"):
        if p not in prefixes:
            prefixes.append(p)

    return config.with_updates(
        retention_days=max(config.retention_days, 90),
        cycle_timeout_seconds=config.cycle_timeout_seconds or 240.0,
        denied_namespaces=namespaces,
        denied_prefixes=prefixes,
    )


def high_volume(config: CaptureConfig) -> CaptureConfig:
    """
    Apply a profile for busy sources.

    - Capture every minute
    - Larger batches (at least 50000)
    - Compress payloads earlier (4 KiB)
    """

    return config.with_updates(
        capture_interval_seconds=min(config.capture_interval_seconds, 60),
        batch_limit=max(config.batch_limit, 50_000),
        payload_compression_threshold=min(config.payload_compression_threshold, 4096),
        scheduler_enabled=True,
    )


def compliance_friendly(config: CaptureConfig) -> CaptureConfig:
    """
    Apply a compliance-friendly profile.

    - Longer retention (at least 365 days)
    - Wider probe window when recovering from log rotation (14 days)
    """

    return config.with_updates(
        retention_days=max(config.retention_days, 365),
        probe_window_days=max(config.probe_window_days, 14),
    )
