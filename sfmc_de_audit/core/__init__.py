"""Core configuration and error types."""

from .config import AuditSettings, SFMCConfig, get_config, get_settings
from .errors import (
    CacheLockTimeoutError,
    DependencyAuditError,
    InsufficientMetadataError,
    MalformedRecordError,
    PlatformConnectionError,
    SourceUnavailableError,
    TransientNetworkError,
)

__all__ = [
    "AuditSettings",
    "SFMCConfig",
    "get_config",
    "get_settings",
    "CacheLockTimeoutError",
    "DependencyAuditError",
    "InsufficientMetadataError",
    "MalformedRecordError",
    "PlatformConnectionError",
    "SourceUnavailableError",
    "TransientNetworkError",
]
