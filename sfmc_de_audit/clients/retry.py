"""Shared retry policy for every SFMC network call.

One policy value is handed to both the REST and SOAP clients so that
timeouts, connection resets and throttling (429/503) are retried the same way:
- Exponential backoff: base_delay * backoff ** attempt
- Upstream Retry-After header preferred when present
- max_attempts counts the first try
"""

import logging
from dataclasses import dataclass, field
from email.utils import parsedate_to_datetime
from datetime import datetime, timezone
from typing import Optional

import httpx

logger = logging.getLogger(__name__)

# Retry configuration
MAX_RETRIES = 3
RETRY_DELAY = 1.0  # Base delay in seconds
RETRY_BACKOFF = 2.0  # Exponential backoff multiplier
RETRYABLE_STATUS_CODES = frozenset({429, 503})
MAX_RETRY_AFTER = 120.0  # Cap for server-provided Retry-After values


@dataclass(frozen=True)
class RetryPolicy:
    """Retry parameters and decisions for a single network call site."""

    max_attempts: int = MAX_RETRIES
    base_delay: float = RETRY_DELAY
    backoff: float = RETRY_BACKOFF
    retryable_status_codes: frozenset[int] = field(default=RETRYABLE_STATUS_CODES)
    respect_retry_after: bool = True
    max_retry_after: float = MAX_RETRY_AFTER

    def should_retry_status(self, status_code: int) -> bool:
        """Whether an HTTP status is worth another attempt."""
        return status_code in self.retryable_status_codes

    def should_retry_exception(self, error: BaseException) -> bool:
        """Whether a transport error is worth another attempt.

        Timeouts and network-level failures (resets, refused connections)
        are retried. Protocol and decoding errors are not.
        """
        return isinstance(error, (httpx.TimeoutException, httpx.NetworkError))

    def has_attempts_left(self, attempt: int) -> bool:
        """Whether another try follows the zero-based ``attempt``."""
        return attempt + 1 < self.max_attempts

    def backoff_delay(self, attempt: int) -> float:
        """Exponential delay for the zero-based ``attempt``."""
        return self.base_delay * (self.backoff**attempt)

    def delay_for_response(self, response: httpx.Response, attempt: int) -> float:
        """Delay before retrying after a retryable response."""
        if self.respect_retry_after:
            retry_after = parse_retry_after(response.headers.get("Retry-After"))
            if retry_after is not None:
                return min(retry_after, self.max_retry_after)
        return self.backoff_delay(attempt)


def parse_retry_after(value: Optional[str]) -> Optional[float]:
    """Parse a Retry-After header in seconds or HTTP-date form.

    Args:
        value: Raw header value, possibly None.

    Returns:
        Seconds to wait, or None when absent or unparseable.
    """
    if not value:
        return None

    value = value.strip()
    try:
        return max(0.0, float(value))
    except ValueError:
        pass

    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        logger.debug(f"Ignoring unparseable Retry-After header: {value!r}")
        return None

    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return max(0.0, (when - datetime.now(timezone.utc)).total_seconds())


DEFAULT_RETRY_POLICY = RetryPolicy()
