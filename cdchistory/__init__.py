# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
CDC History - Checkpointed, incremental change-data-capture history.

Periodically reads committed row changes from a change-log source and
appends them to a durable history store, resuming from the last captured
position. Log rotation is detected and recorded as permanent gap or reset
markers; captured changes are purged after a retention horizon.
Package name: cdchistory.
"""

__version__ = "0.1.0"

# Configuration creation (user-facing API)
from cdchistory.builder import create_config

# Core functions
from cdchistory.core import (
    CaptureResult,
    CycleStatus,
    RetentionResult,
    initialize_capture_state,
    run_capture_cycle,
    run_retention,
    get_metrics,
    shutdown_capture_state,
)

# Environment-based configuration and profiles (additional helpers)
from cdchistory.env import (
    create_config_from_env,
    safe_defaults,
    high_volume,
    compliance_friendly,
)

__all__ = [
    # Version
    "__version__",
    # Configuration creation (primary user-facing APIs)
    "create_config",
    "create_config_from_env",
    "safe_defaults",
    "high_volume",
    "compliance_friendly",
    # Core orchestration functions
    "CaptureResult",
    "CycleStatus",
    "RetentionResult",
    "initialize_capture_state",
    "run_capture_cycle",
    "run_retention",
    "get_metrics",
    "shutdown_capture_state",
]
