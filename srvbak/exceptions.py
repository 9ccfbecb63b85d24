# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Server Backup Manager Exceptions - Custom exceptions for the srvbak package.

Only InvalidRequest and Busy (plus JobNotFoundError on reads) escape the
public entry points. Everything else is caught at the orchestrator boundary
and recorded on the job as a failed status with an error message.
"""


class SrvBakError(Exception):
    """Base exception for all srvbak errors."""

    def __init__(self, message: str, details: dict | None = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message


class ConfigurationError(SrvBakError):
    """Raised when configuration is invalid."""

    pass


class InvalidRequest(SrvBakError):
    """Raised when a request is malformed or a prerequisite is missing."""

    pass


class JobNotFoundError(InvalidRequest):
    """Raised when a job id does not exist in the job store."""

    pass


class Busy(SrvBakError):
    """Raised when the single-writer lock is held by another job."""

    pass


class CaptureError(SrvBakError):
    """Raised when packing sources into an archive fails."""

    pass


class CorruptArchiveError(SrvBakError):
    """Raised when an archive or its manifest cannot be trusted."""

    pass


class PartialApplyError(SrvBakError):
    """Raised when the directory swap phase of a restore fails."""

    pass


class JobStoreError(SrvBakError):
    """Raised when job store operations fail."""

    pass
