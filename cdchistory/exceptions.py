# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
CDC History Exceptions - Custom exceptions for the cdchistory package.
"""


class CaptureError(Exception):
    """Base exception for all cdchistory errors."""

    def __init__(self, message: str, details: dict | None = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message


class ConfigurationError(CaptureError):
    """Raised when configuration is invalid."""

    pass


class StoreError(CaptureError):
    """Raised when history store operations fail."""

    pass


class StoreWriteError(StoreError):
    """Raised when a batch could not be inserted or committed.

    The batch is rolled back as a whole before this is raised.
    """

    pass


class SourceError(CaptureError):
    """Raised when the change-log source fails."""

    pass


class RangeUnavailableError(SourceError):
    """Raised when the requested start position has rotated out of retention."""

    pass


class SessionBusyError(SourceError):
    """Raised when a reading session is already open system-wide."""

    pass


class SourceUnavailableError(SourceError):
    """Raised on transient source I/O failures."""

    pass


class CaptureTimeoutError(CaptureError):
    """Raised when a capture cycle exceeds its deadline."""

    pass
