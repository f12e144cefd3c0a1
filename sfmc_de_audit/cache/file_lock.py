"""Cross-process exclusive lock for cache files.

A lock is a sibling ``<file>.lock`` created with O_CREAT | O_EXCL that holds
``{"pid", "timestamp", "hostname"}``. Locks older than the timeout are
treated as abandoned and removed.
"""

import contextlib
import logging
import os
import socket
import time
from collections.abc import Iterator
from pathlib import Path
from typing import Any, Optional

import orjson

from ..core.errors import CacheLockTimeoutError

logger = logging.getLogger(__name__)

LOCK_TIMEOUT = 30.0  # Seconds after which a lock is considered stale
LOCK_RETRY_DELAY = 0.1  # Seconds between acquisition attempts
LOCK_MAX_RETRIES = 50


def lock_path_for(path: Path) -> Path:
    """Lock file path for a cache file."""
    return path.with_name(f"{path.name}.lock")


def _lock_payload() -> dict[str, Any]:
    return {
        "pid": os.getpid(),
        "timestamp": int(time.time() * 1000),
        "hostname": socket.gethostname(),
    }


def _read_lock(lock_path: Path) -> Optional[dict[str, Any]]:
    try:
        data = orjson.loads(lock_path.read_bytes())
    except (OSError, orjson.JSONDecodeError):
        return None
    return data if isinstance(data, dict) else None


def lock_age(lock_path: Path) -> Optional[float]:
    """Age of an existing lock in seconds, or None if it vanished.

    Uses the recorded timestamp, falling back to the file's mtime when the
    content is unreadable (e.g. a holder crashed mid-write).
    """
    info = _read_lock(lock_path)
    if info is not None and isinstance(info.get("timestamp"), (int, float)):
        return time.time() - info["timestamp"] / 1000
    try:
        return time.time() - lock_path.stat().st_mtime
    except FileNotFoundError:
        return None


def _safe_unlink(path: Path) -> None:
    with contextlib.suppress(FileNotFoundError):
        path.unlink()


def _try_create(lock_path: Path, payload: dict[str, Any]) -> bool:
    try:
        fd = os.open(lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
    except FileExistsError:
        return False
    with os.fdopen(fd, "wb") as handle:
        handle.write(orjson.dumps(payload))
    return True


def acquire_lock(
    path: Path,
    timeout: float = LOCK_TIMEOUT,
    retry_delay: float = LOCK_RETRY_DELAY,
    max_retries: int = LOCK_MAX_RETRIES,
) -> dict[str, Any]:
    """Acquire the lock guarding ``path``.

    Args:
        path: Cache file to protect.
        timeout: Age in seconds after which an existing lock is removed.
        retry_delay: Sleep between attempts.
        max_retries: Waits allowed before giving up.

    Returns:
        The payload written into the lock file, needed for release.

    Raises:
        CacheLockTimeoutError: The lock stayed held for every attempt.
    """
    lock_path = lock_path_for(path)
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    payload = _lock_payload()
    waits = 0

    while True:
        if _try_create(lock_path, payload):
            return payload

        age = lock_age(lock_path)
        if age is None:
            # Holder released between our attempt and the age check
            continue
        if age > timeout:
            logger.warning(f"Removing stale cache lock {lock_path} ({age:.1f}s old)")
            _safe_unlink(lock_path)
            continue

        if waits >= max_retries:
            raise CacheLockTimeoutError(str(lock_path), waits)
        waits += 1
        time.sleep(retry_delay)


def release_lock(path: Path, payload: dict[str, Any]) -> None:
    """Release the lock on ``path`` if it is still ours."""
    lock_path = lock_path_for(path)
    current = _read_lock(lock_path)
    if current is not None and current != payload:
        logger.debug(f"Cache lock {lock_path} was taken over, leaving it in place")
        return
    _safe_unlink(lock_path)


@contextlib.contextmanager
def exclusive_lock(
    path: Path,
    timeout: float = LOCK_TIMEOUT,
    retry_delay: float = LOCK_RETRY_DELAY,
    max_retries: int = LOCK_MAX_RETRIES,
) -> Iterator[dict[str, Any]]:
    """Hold the cache lock for ``path`` for the duration of the block."""
    payload = acquire_lock(path, timeout=timeout, retry_delay=retry_delay, max_retries=max_retries)
    try:
        yield payload
    finally:
        release_lock(path, payload)
