"""Persisted cache for bulk metadata."""

from .cache_store import CacheStore, CacheType, format_age
from .file_lock import exclusive_lock

__all__ = ["CacheStore", "CacheType", "format_age", "exclusive_lock"]
