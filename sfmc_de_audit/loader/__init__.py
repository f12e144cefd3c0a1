"""Bulk metadata loading."""

from .bulk_loader import (
    BulkDataLoader,
    CacheContext,
    LoadOptions,
    find_automations_containing_activity,
)

__all__ = [
    "BulkDataLoader",
    "CacheContext",
    "LoadOptions",
    "find_automations_containing_activity",
]
