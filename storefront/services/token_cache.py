"""
TokenCache - OAuth bearer token for the connector, refreshed on expiry.

A statically configured bearer bypasses everything. Otherwise the token is
obtained with a password grant and reused until shortly before it expires.
"""

import asyncio
import time
from dataclasses import dataclass
from typing import Any, Callable

import httpx
from loguru import logger

from storefront.services.errors import (
    ConnectorAuthError,
    RequestTimeoutError,
    ServiceError,
)
from storefront.settings import Settings

DEFAULT_EXPIRES_IN = 3600
EXPIRY_MARGIN = 15  # seconds shaved off the declared lifetime
MIN_LIFETIME = 30  # seconds


def join_url(base: str, *parts: str) -> str:
    """Join URL segments, collapsing the slashes between them."""
    segments = [base.rstrip("/")] + [p.strip("/") for p in parts]
    return "/".join(s for s in segments if s)


def safe_json(response: httpx.Response) -> Any:
    """Parsed JSON body, or None when the body is empty or not JSON."""
    try:
        return response.json()
    except ValueError:
        return None


@dataclass
class TokenState:
    """Cached bearer token and its monotonic expiry deadline."""

    token: str | None = None
    expires_at: float = 0.0


class TokenCache:
    """
    Caches the connector bearer token.

    Usage:
        tokens = TokenCache(settings, http_client)
        bearer = await tokens.get_token()
        ...
        tokens.invalidate()  # after the API rejects the token with 401
    """

    service_id = "connector_oauth"

    def __init__(
        self,
        settings: Settings,
        http_client: httpx.AsyncClient,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._settings = settings
        self._http = http_client
        self._clock = clock
        self._state = TokenState()
        self._refresh_lock = asyncio.Lock()
        self.exchanges = 0

    @property
    def static_bearer(self) -> str:
        return self._settings.connector_bearer

    @property
    def uses_static_bearer(self) -> bool:
        return bool(self.static_bearer)

    @property
    def state(self) -> TokenState:
        return self._state

    async def get_token(self) -> str:
        """Return a usable bearer token, exchanging credentials if needed."""
        if self.uses_static_bearer:
            return self.static_bearer

        if self._is_fresh():
            return self._state.token  # type: ignore[return-value]

        # Callers that all find the token stale share one exchange
        async with self._refresh_lock:
            if self._is_fresh():
                return self._state.token  # type: ignore[return-value]
            return await self._exchange()

    def invalidate(self) -> None:
        """Forget the cached token."""
        self._state = TokenState()
        logger.debug("[TokenCache] token invalidated")

    def _is_fresh(self) -> bool:
        return self._state.token is not None and self._clock() < self._state.expires_at

    async def _exchange(self) -> str:
        """Password-grant exchange of the configured credentials."""
        s = self._settings
        url = join_url(s.connector_base_url, s.connector_token_path)
        form = {
            "grant_type": "password",
            "client_id": s.connector_client_id,
            "client_secret": s.connector_client_secret,
            "username": s.connector_username,
            "password": s.connector_password,
            "scope": s.connector_scope,
        }

        self.exchanges += 1
        try:
            response = await self._http.post(
                url, data=form, headers={"Accept": "application/json"}
            )
        except httpx.TimeoutException as e:
            raise RequestTimeoutError(self.service_id, s.connector_timeout) from e
        except httpx.RequestError as e:
            raise ServiceError(str(e), service_id=self.service_id) from e

        if not response.is_success:
            logger.error(f"Connector token exchange failed: HTTP {response.status_code}")
            raise ConnectorAuthError(response.status_code, safe_json(response))

        payload = safe_json(response)
        if not isinstance(payload, dict):
            payload = {}
        token = payload.get("access_token")
        if not token:
            raise ConnectorAuthError(response.status_code, payload)

        try:
            expires_in = float(payload.get("expires_in") or DEFAULT_EXPIRES_IN)
        except (TypeError, ValueError):
            expires_in = DEFAULT_EXPIRES_IN
        lifetime = max(MIN_LIFETIME, expires_in - EXPIRY_MARGIN)

        self._state = TokenState(token=token, expires_at=self._clock() + lifetime)
        logger.info(f"Connector token refreshed, valid for {lifetime:.0f}s")
        return token
