"""Async SFMC REST client.

Every call goes through the shared RetryPolicy, refreshes the token once on
401 and sleeps for the configured pacing delay after it completes.
Collections are walked with $page/$pageSize.
"""

import asyncio
import logging
from typing import Any, Optional

import httpx

from ..core.config import SFMCConfig, get_config
from ..core.errors import SourceUnavailableError, TransientNetworkError
from .auth import TokenManager
from .retry import DEFAULT_RETRY_POLICY, RetryPolicy

logger = logging.getLogger(__name__)

REQUEST_TIMEOUT = 60.0
DEFAULT_PAGE_SIZE = 500
MAX_PAGES = 1000  # Safety stop for runaway pagination


def to_result(response: httpx.Response) -> dict[str, Any]:
    """Normalize a final response to ``{ok, status_code, data[, error]}``."""
    try:
        data: Any = response.json()
    except ValueError:
        data = response.text
    result = {"ok": response.is_success, "status_code": response.status_code, "data": data}
    if not response.is_success:
        result["error"] = response.text
    return result


class RESTClient:
    """Async REST client bound to one tenant's REST base URL."""

    def __init__(
        self,
        config: Optional[SFMCConfig] = None,
        token_manager: Optional[TokenManager] = None,
        retry_policy: RetryPolicy = DEFAULT_RETRY_POLICY,
        request_delay: float = 0.0,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self._config = config or get_config()
        self._token_manager = token_manager or TokenManager(self._config)
        self._retry = retry_policy
        self._request_delay = request_delay
        self._http_client = http_client
        self._trace = self._config.rest_debug

    @property
    def base_url(self) -> str:
        return self._config.rest_url

    async def _send(self, method: str, url: str, token: str, **kwargs: Any) -> httpx.Response:
        headers = {"Authorization": f"Bearer {token}", "Content-Type": "application/json"}
        if self._trace:
            logger.debug(f"REST >>> {method} {url} params={kwargs.get('params')} json={kwargs.get('json')}")
        if self._http_client is not None:
            response = await self._http_client.request(method, url, headers=headers, **kwargs)
        else:
            async with httpx.AsyncClient(timeout=REQUEST_TIMEOUT) as client:
                response = await client.request(method, url, headers=headers, **kwargs)
        if self._trace:
            logger.debug(f"REST <<< {response.status_code} {response.text[:1000]}")
        return response

    async def request_async(self, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        """Send a request relative to the REST base URL.

        Non-retryable failures come back as a result with ``ok`` False.

        Raises:
            TransientNetworkError: Timeouts, connection failures or 429/503
                responses outlasted the retry budget.
        """
        url = f"{self.base_url}{path}"
        attempts = self._retry.max_attempts
        last_error: Optional[str] = None
        last_status: Optional[int] = None

        for attempt in range(attempts):
            token = await self._token_manager.get_token()
            retry_delay: Optional[float] = None

            try:
                response = await self._send(method, url, token, **kwargs)
            except httpx.RequestError as e:
                if not self._retry.should_retry_exception(e):
                    raise TransientNetworkError(f"{method} {path} failed: {e}") from e
                last_error = str(e) or type(e).__name__
                retry_delay = self._retry.backoff_delay(attempt)
            else:
                if response.status_code == 401 and self._retry.has_attempts_left(attempt):
                    logger.debug(f"{method} {path}: token rejected, refreshing")
                    await self._token_manager.force_refresh(token)
                    continue
                if not self._retry.should_retry_status(response.status_code):
                    if self._request_delay:
                        await asyncio.sleep(self._request_delay)
                    return to_result(response)
                last_status = response.status_code
                last_error = f"HTTP {response.status_code}"
                retry_delay = self._retry.delay_for_response(response, attempt)

            logger.debug(f"{method} {path}: {last_error}, attempt {attempt + 1}/{attempts}")
            if self._retry.has_attempts_left(attempt):
                await asyncio.sleep(retry_delay)

        raise TransientNetworkError(
            f"{method} {path} failed after {attempts} attempts: {last_error or 'max retries exceeded'}",
            status_code=last_status,
        )

    async def get_async(self, path: str, **kwargs: Any) -> dict[str, Any]:
        return await self.request_async("GET", path, **kwargs)

    async def get_json(self, path: str, source: str, **kwargs: Any) -> Any:
        """GET a path and return its JSON body.

        Raises:
            SourceUnavailableError: The platform answered with a failure status.
        """
        result = await self.get_async(path, **kwargs)
        if not result.get("ok"):
            raise SourceUnavailableError(
                source,
                str(result.get("error", ""))[:200] or "request failed",
                status_code=result.get("status_code"),
            )
        return result.get("data")

    async def get_all_pages(
        self,
        path: str,
        source: str,
        page_size: int = DEFAULT_PAGE_SIZE,
        items_key: str = "items",
        params: Optional[dict[str, Any]] = None,
    ) -> list[dict[str, Any]]:
        """Fetch every page of a paginated collection.

        Pages are requested sequentially. The loop stops when the reported
        count is covered, or when a page comes back short or empty.

        Args:
            path: Collection path.
            source: Source label used in errors and logs.
            page_size: Requested $pageSize.
            items_key: Response key holding the page items.
            params: Extra query parameters.

        Returns:
            All items across all pages.
        """
        all_items: list[dict[str, Any]] = []
        page = 1

        while page <= MAX_PAGES:
            page_params = dict(params or {})
            page_params.update({"$page": page, "$pageSize": page_size})

            data = await self.get_json(path, source, params=page_params)

            if isinstance(data, dict):
                items = data.get(items_key)
                if not isinstance(items, list):
                    items = data.get("items") or []
            elif isinstance(data, list):
                items = data
            else:
                items = []

            all_items.extend(items)
            logger.debug(f"{source}: page {page} returned {len(items)} items (total {len(all_items)})")

            if isinstance(data, dict) and data.get("count") is not None and data.get("pageSize"):
                has_more = page * int(data["pageSize"]) < int(data["count"])
            else:
                has_more = len(items) >= page_size

            if not has_more or not items:
                break
            page += 1

        return all_items
