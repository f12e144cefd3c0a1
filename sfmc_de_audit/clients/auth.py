"""Client-credentials tokens for the SFMC REST and SOAP APIs.

One TokenManager is shared by both clients. Refreshes are single-flight: a
burst of 401s from concurrent coroutines results in one token request.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Optional

import httpx

from ..core.config import SFMCConfig, get_config
from ..core.errors import PlatformConnectionError

logger = logging.getLogger(__name__)

# Treat a token as spent this many seconds before its stated expiry
EXPIRY_MARGIN_SECONDS = 60
DEFAULT_LIFETIME_SECONDS = 1200
AUTH_TIMEOUT = 30.0


@dataclass(frozen=True)
class AccessToken:
    value: str
    expires_at: float

    def usable(self) -> bool:
        return time.time() < self.expires_at - EXPIRY_MARGIN_SECONDS


class TokenManager:
    """Caches the access token and refreshes it under an asyncio.Lock."""

    def __init__(
        self,
        config: Optional[SFMCConfig] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self._config = config or get_config()
        self._http_client = http_client
        self._token: Optional[AccessToken] = None
        self._lock = asyncio.Lock()

    async def get_token(self) -> str:
        """Return a usable token, requesting a new one when needed.

        Raises:
            PlatformConnectionError: The auth endpoint rejected the
                credentials or could not be reached.
        """
        token = self._token
        if token is not None and token.usable():
            return token.value

        async with self._lock:
            if self._token is None or not self._token.usable():
                self._token = await self._request_token()
            return self._token.value

    async def force_refresh(self, stale_token: Optional[str] = None) -> str:
        """Replace a token the platform rejected.

        When another coroutine has already swapped out ``stale_token``, its
        replacement is returned without a second request.
        """
        async with self._lock:
            current = self._token
            already_replaced = (
                stale_token is not None
                and current is not None
                and current.value != stale_token
                and current.usable()
            )
            if not already_replaced:
                self._token = await self._request_token()
            return self._token.value  # type: ignore[union-attr]

    async def _post(self, payload: dict[str, Any]) -> httpx.Response:
        if self._http_client is not None:
            return await self._http_client.post(self._config.auth_url, json=payload)
        async with httpx.AsyncClient(timeout=AUTH_TIMEOUT) as client:
            return await client.post(self._config.auth_url, json=payload)

    async def _request_token(self) -> AccessToken:
        payload: dict[str, Any] = {
            "grant_type": "client_credentials",
            "client_id": self._config.client_id,
            "client_secret": self._config.client_secret,
        }
        if self._config.account_id:
            payload["account_id"] = int(self._config.account_id)

        try:
            response = await self._post(payload)
            response.raise_for_status()
            body = response.json()
        except httpx.HTTPStatusError as e:
            raise PlatformConnectionError(f"Authentication failed with HTTP {e.response.status_code}") from e
        except httpx.RequestError as e:
            raise PlatformConnectionError(f"Could not reach auth endpoint: {e}") from e

        lifetime = body.get("expires_in", DEFAULT_LIFETIME_SECONDS)
        logger.debug(f"Obtained access token, expires in {lifetime}s")
        return AccessToken(value=body["access_token"], expires_at=time.time() + lifetime)
