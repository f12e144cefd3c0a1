"""File-backed cache for bulk metadata.

Provides per-account persisted caching with:
- 24 hour default TTL, expired entries read as absent
- Lock-free reads; a missing, unparseable or metadata-less file is a miss
- Writes serialized by a lock file, then temp-file + os.replace so readers
  never observe a partial file
- Async wrappers that run the blocking I/O in the default executor

File layout: ``{cache_type}-{account_id}.json`` holding
``{"metadata": {"cachedAt", "accountId", "cacheType", ...}, "data": ...}``.
"""

import asyncio
import contextlib
import logging
import os
import uuid
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Optional

import orjson

from ..core.errors import CacheLockTimeoutError
from ..core.jsonutil import json_dumps, json_loads
from ..types.models import CacheEntry, CacheInfo
from .file_lock import LOCK_MAX_RETRIES, LOCK_RETRY_DELAY, LOCK_TIMEOUT, exclusive_lock

logger = logging.getLogger(__name__)

DEFAULT_MAX_AGE = 24 * 60 * 60  # Seconds


class CacheType(str, Enum):
    """Types of persisted data."""

    BULK_DATA = "bulk-data"


def format_age(age_ms: int) -> str:
    """Human-readable age, e.g. ``3h 12m ago``."""
    minutes = max(0, age_ms) // 60000
    hours = minutes // 60
    if hours > 0:
        return f"{hours}h {minutes % 60}m ago"
    return f"{minutes}m ago"


def _parse_cached_at(value: Any) -> Optional[datetime]:
    if not isinstance(value, str) or not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _now() -> datetime:
    return datetime.now(timezone.utc)


class CacheStore:
    """Persisted cache keyed by (cache type, account id).

    Args:
        cache_dir: Directory holding the cache files.
        lock_timeout: Age in seconds after which a lock is considered stale.
        lock_retry_delay: Seconds between lock attempts.
        lock_max_retries: Waits before a write gives up.
        default_max_age: TTL in seconds used by read() when none is given.
    """

    def __init__(
        self,
        cache_dir: Path,
        lock_timeout: float = LOCK_TIMEOUT,
        lock_retry_delay: float = LOCK_RETRY_DELAY,
        lock_max_retries: int = LOCK_MAX_RETRIES,
        default_max_age: float = DEFAULT_MAX_AGE,
    ):
        self._cache_dir = Path(cache_dir)
        self._lock_timeout = lock_timeout
        self._lock_retry_delay = lock_retry_delay
        self._lock_max_retries = lock_max_retries
        self._default_max_age = default_max_age

    @property
    def cache_dir(self) -> Path:
        return self._cache_dir

    def file_path(self, cache_type: str, account_id: str) -> Path:
        """Path of the cache file for a (type, account) pair."""
        return self._cache_dir / f"{_type_value(cache_type)}-{account_id}.json"

    def _load(self, path: Path) -> Optional[dict[str, Any]]:
        try:
            raw = path.read_bytes()
        except FileNotFoundError:
            return None
        except OSError as e:
            logger.warning(f"Could not read cache file {path}: {e}")
            return None

        try:
            cache = json_loads(raw)
        except orjson.JSONDecodeError:
            logger.debug(f"Cache file {path} is not valid JSON, treating as miss")
            return None
        return cache if isinstance(cache, dict) else None

    def read(
        self,
        cache_type: str,
        account_id: str,
        max_age: Optional[float] = None,
        ignore_expiry: bool = False,
    ) -> Optional[CacheEntry]:
        """Read a cache entry without taking the lock.

        Args:
            cache_type: Cache type.
            account_id: Account/MID the data belongs to.
            max_age: TTL in seconds, defaults to the store's TTL.
            ignore_expiry: Return the entry even if expired.

        Returns:
            CacheEntry, or None when missing, unreadable or expired.
        """
        cache = self._load(self.file_path(cache_type, account_id))
        if cache is None:
            return None

        metadata = cache.get("metadata")
        if not isinstance(metadata, dict):
            return None
        cached_at = _parse_cached_at(metadata.get("cachedAt"))
        if cached_at is None:
            return None

        if not ignore_expiry:
            limit = self._default_max_age if max_age is None else max_age
            age = (_now() - cached_at).total_seconds()
            if age > limit:
                logger.debug(f"Cache {cache_type}/{account_id} expired ({age:.0f}s old)")
                return None

        return CacheEntry(
            cache_type=_type_value(cache_type),
            account_id=account_id,
            cached_at=cached_at,
            data=cache.get("data"),
            metadata=metadata,
        )

    def write(
        self,
        cache_type: str,
        account_id: str,
        data: Any,
        extra_metadata: Optional[dict[str, Any]] = None,
    ) -> bool:
        """Write a cache entry under the exclusive lock.

        Returns:
            True on success. False when the lock could not be acquired or the
            file could not be written; callers treat caching as best effort.
        """
        path = self.file_path(cache_type, account_id)
        cache = {
            "metadata": {
                "cachedAt": _now().isoformat().replace("+00:00", "Z"),
                "accountId": account_id,
                "cacheType": _type_value(cache_type),
                **(extra_metadata or {}),
            },
            "data": data,
        }

        try:
            self._cache_dir.mkdir(parents=True, exist_ok=True)
            with exclusive_lock(
                path,
                timeout=self._lock_timeout,
                retry_delay=self._lock_retry_delay,
                max_retries=self._lock_max_retries,
            ):
                self._atomic_write(path, json_dumps(cache))
        except CacheLockTimeoutError as e:
            logger.warning(f"Skipping cache write: {e}")
            return False
        except OSError as e:
            logger.warning(f"Failed to write cache file {path}: {e}")
            return False

        logger.debug(f"Wrote cache {path}")
        return True

    def _atomic_write(self, path: Path, payload: bytes) -> None:
        tmp_path = path.with_name(f".{path.name}.{uuid.uuid4().hex}.tmp")
        try:
            tmp_path.write_bytes(payload)
            os.replace(tmp_path, path)
        except OSError:
            with contextlib.suppress(OSError):
                tmp_path.unlink()
            raise

    def clear(self, cache_type: str, account_id: str) -> bool:
        """Delete one cache file.

        Returns:
            True if a file was removed.
        """
        path = self.file_path(cache_type, account_id)
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        logger.info(f"Cleared cache {path.name}")
        return True

    def clear_all(self, account_id: str) -> int:
        """Delete every cache file for an account.

        Returns:
            Number of files removed.
        """
        if not self._cache_dir.exists():
            return 0

        cleared = 0
        for path in self._cache_dir.glob(f"*-{account_id}.json"):
            with contextlib.suppress(FileNotFoundError):
                path.unlink()
                cleared += 1
        logger.info(f"Cleared {cleared} cache file(s) for account {account_id}")
        return cleared

    def info(self, cache_type: str, account_id: str) -> CacheInfo:
        """Describe one cache file (age, size, item count)."""
        path = self.file_path(cache_type, account_id)
        cache = self._load(path)
        if cache is None:
            return CacheInfo(exists=False, file_path=str(path))
        return self._describe(path, cache)

    def list_all(self) -> list[CacheInfo]:
        """Describe every readable cache file in the directory."""
        if not self._cache_dir.exists():
            return []

        infos = []
        for path in sorted(self._cache_dir.glob("*.json")):
            cache = self._load(path)
            if cache is not None:
                infos.append(self._describe(path, cache))
        return infos

    def _describe(self, path: Path, cache: dict[str, Any]) -> CacheInfo:
        metadata = cache.get("metadata") if isinstance(cache.get("metadata"), dict) else {}
        cached_at = _parse_cached_at(metadata.get("cachedAt"))

        age_ms = None
        age_string = None
        if cached_at is not None:
            age_ms = int((_now() - cached_at).total_seconds() * 1000)
            age_string = format_age(age_ms)

        data = cache.get("data")
        item_count = len(data) if isinstance(data, (list, dict)) else 0

        try:
            file_size = path.stat().st_size
        except FileNotFoundError:
            file_size = None

        return CacheInfo(
            exists=True,
            file_path=str(path),
            file_size=file_size,
            cache_type=metadata.get("cacheType"),
            account_id=metadata.get("accountId"),
            cached_at=metadata.get("cachedAt"),
            age_ms=age_ms,
            age_string=age_string,
            item_count=item_count,
            metadata=metadata,
        )

    async def read_async(self, cache_type: str, account_id: str, **kwargs: Any) -> Optional[CacheEntry]:
        """Async wrapper around read()."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, lambda: self.read(cache_type, account_id, **kwargs))

    async def write_async(
        self,
        cache_type: str,
        account_id: str,
        data: Any,
        extra_metadata: Optional[dict[str, Any]] = None,
    ) -> bool:
        """Async wrapper around write()."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(
            None, lambda: self.write(cache_type, account_id, data, extra_metadata)
        )


def _type_value(cache_type: Any) -> str:
    return cache_type.value if isinstance(cache_type, Enum) else str(cache_type)
