# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Human-friendly error message helpers for CDC History.

These helpers centralize wording for common configuration errors so that
all modules present consistent, actionable messages.
"""


def explain_missing_source_url(backend: str) -> str:
    """
    Explain that a source backend needs a connection URL.
    """

    return (
        f"The {backend!r} change-log source needs a connection URL. "
        "Set CDCHISTORY_SOURCE_URL or pass source_url=... to create_config()."
    )


def explain_invalid_source_backend_env(value: str | None) -> str:
    """
    Explain that CDCHISTORY_SOURCE is invalid.
    """

    return (
        f"Invalid CDCHISTORY_SOURCE value: {value!r}. "
        "Expected 'memory' or 'postgres'."
    )


def explain_invalid_int_env(name: str, value: str | None, minimum: int = 0) -> str:
    """
    Explain that an integer environment variable is invalid.
    """

    return (
        f"Invalid {name} value: {value!r}. "
        f"It must be an integer greater than or equal to {minimum}."
    )


def explain_invalid_retention_days_env(value: str | None) -> str:
    """
    Explain that CDCHISTORY_RETENTION_DAYS is invalid.
    """

    return (
        f"Invalid CDCHISTORY_RETENTION_DAYS value: {value!r}. "
        "It must be a positive integer number of days. "
        "Marker rows are kept regardless of this setting."
    )


def explain_batch_limit_too_small(value: int) -> str:
    """
    Explain that the batch ceiling cannot be below one row.
    """

    return (
        f"batch_limit must be >= 1, got {value}. "
        "A capture cycle must be able to advance the checkpoint by at least one change."
    )
