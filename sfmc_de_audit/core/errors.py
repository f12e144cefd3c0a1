"""Exception hierarchy for the Data Extension audit.

Only PlatformConnectionError escapes a bulk load. The others are raised and
absorbed at well-defined seams:
- TransientNetworkError: retry budget exhausted, source degrades to empty
- SourceUnavailableError: source returned a non-retryable failure
- CacheLockTimeoutError: cache write gives up and reports False
- MalformedRecordError: scanner skips the record
- InsufficientMetadataError: classifier reports UNKNOWN
"""

from typing import Optional


class DependencyAuditError(Exception):
    """Base class for all audit errors."""


class TransientNetworkError(DependencyAuditError):
    """Timeout, connection reset or throttling that outlived the retry budget."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class SourceUnavailableError(DependencyAuditError):
    """A metadata source answered with a non-retryable failure."""

    def __init__(self, source: str, message: str, status_code: Optional[int] = None):
        super().__init__(f"{source}: {message}")
        self.source = source
        self.status_code = status_code


class PlatformConnectionError(DependencyAuditError):
    """Authentication failed or the platform could not be reached at all."""


class CacheLockTimeoutError(DependencyAuditError):
    """The cache write lock could not be acquired in time."""

    def __init__(self, lock_path: str, attempts: int):
        super().__init__(f"Could not acquire cache lock {lock_path} after {attempts} attempts")
        self.lock_path = lock_path
        self.attempts = attempts


class MalformedRecordError(DependencyAuditError):
    """A metadata record is missing an identifier or has an unusable shape."""


class InsufficientMetadataError(DependencyAuditError):
    """Not enough metadata to reach a classification."""
