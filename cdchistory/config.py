# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
CDC History Configuration - Immutable configuration data structures.

All configuration is frozen (immutable) after creation so that a capture
cycle always sees one consistent set of settings.
"""

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import List


class SourceBackend(str, Enum):
    """Change-log source backend type."""

    MEMORY = "memory"  # Process-local change log (tests, demos)
    POSTGRES = "postgres"  # Trigger-fed change log table via asyncpg


# Schemas that never produce captured changes
DEFAULT_DENIED_NAMESPACES = ["SYS", "SYSTEM", "AUDSYS"]

# Platform-reserved namespace prefixes
DEFAULT_DENIED_PREFIXES = ["APEX", "C##CLOUD$"]

DEFAULT_BATCH_LIMIT = 10_000
DEFAULT_RETENTION_DAYS = 90


def _validate_namespaces(names: List[str]) -> bool:
    """Validate a list of namespace names or prefixes."""
    if not isinstance(names, list):
        return False
    return all(isinstance(name, str) and name.strip() for name in names)


@dataclass(frozen=True)
class CaptureConfig:
    """
    Immutable configuration for the change-capture engine.

    The store path points at the SQLite history database. The checkpoint
    lives inside that database, so no other state path is configured.
    """

    # Path to the SQLite history store
    store_path: Path = field(default_factory=lambda: Path("./cdchistory_data/history.db"))

    # Change-log source backend
    source_backend: SourceBackend = SourceBackend.MEMORY

    # Connection URL for the change-log source (required for postgres)
    source_url: str | None = None

    # Principal owning the history store; its own writes are never captured
    owner_namespace: str = "CDCADMIN"

    # Namespaces excluded from capture (exact match, case-insensitive)
    denied_namespaces: List[str] = field(
        default_factory=lambda: list(DEFAULT_DENIED_NAMESPACES)
    )

    # Namespace prefixes excluded from capture
    denied_prefixes: List[str] = field(
        default_factory=lambda: list(DEFAULT_DENIED_PREFIXES)
    )

    # Maximum number of changes captured per cycle
    batch_limit: int = DEFAULT_BATCH_LIMIT

    # Age in days after which non-marker rows are purged
    retention_days: int = DEFAULT_RETENTION_DAYS

    # Seconds between capture cycles
    capture_interval_seconds: int = 300

    # Monthly retention schedule (UTC)
    retention_day_of_month: int = 1
    retention_hour: int = 3

    # How far back the gap probe looks for the oldest available position
    probe_window_days: int = 6

    # Payloads larger than this (bytes) are stored zstd-compressed
    payload_compression_threshold: int = 8192

    # Deadline for a whole capture cycle; None disables it
    cycle_timeout_seconds: float | None = 240.0

    # Start the periodic scheduler with the application
    scheduler_enabled: bool = False

    def __post_init__(self) -> None:
        """Validate configuration after creation."""
        errors: List[str] = []

        if self.batch_limit < 1:
            from cdchistory.errors import explain_batch_limit_too_small

            errors.append(explain_batch_limit_too_small(self.batch_limit))

        if self.retention_days < 1:
            errors.append(f"retention_days must be >= 1, got {self.retention_days}")

        if self.capture_interval_seconds < 1:
            errors.append(
                f"capture_interval_seconds must be >= 1, got {self.capture_interval_seconds}"
            )

        if not 1 <= self.retention_day_of_month <= 28:
            errors.append(
                f"retention_day_of_month must be within 1..28, got {self.retention_day_of_month}"
            )

        if not 0 <= self.retention_hour <= 23:
            errors.append(f"retention_hour must be within 0..23, got {self.retention_hour}")

        if self.probe_window_days < 1:
            errors.append(f"probe_window_days must be >= 1, got {self.probe_window_days}")

        if self.payload_compression_threshold < 0:
            errors.append(
                "payload_compression_threshold must be >= 0, "
                f"got {self.payload_compression_threshold}"
            )

        if self.cycle_timeout_seconds is not None and self.cycle_timeout_seconds <= 0:
            errors.append(
                f"cycle_timeout_seconds must be > 0, got {self.cycle_timeout_seconds}"
            )

        if not self.owner_namespace or not self.owner_namespace.strip():
            errors.append("owner_namespace must not be empty")

        if not _validate_namespaces(self.denied_namespaces):
            errors.append("Invalid denied_namespaces configuration")

        if not _validate_namespaces(self.denied_prefixes):
            errors.append("Invalid denied_prefixes configuration")

        # Validate source configuration consistency
        if self.source_backend == SourceBackend.POSTGRES and not self.source_url:
            errors.append("source_url required when source_backend is postgres")

        if errors:
            from cdchistory.exceptions import ConfigurationError

            raise ConfigurationError(
                "Configuration validation failed",
                details={"errors": errors},
            )

    @property
    def all_denied_namespaces(self) -> List[str]:
        """Denied namespaces including the store's owning principal."""
        names = list(self.denied_namespaces)
        if self.owner_namespace not in names:
            names.append(self.owner_namespace)
        return names

    def with_updates(self, **kwargs) -> "CaptureConfig":
        """
        Create a new config with updated values.

        Since the config is frozen, this creates a new instance.
        """
        from dataclasses import asdict

        current = asdict(self)
        current.update(kwargs)
        return CaptureConfig(**current)
