"""
ConnectorClient - Async HTTP client for the OAuth-protected connector API.

Combines:
- TokenCache for bearer credentials
- A single token refresh and retry when the API answers 401
- Typed errors for every non-2xx response
- One normalised result shape for list/object payloads
"""

from dataclasses import dataclass
from typing import Any, Iterable, Mapping

import httpx
from loguru import logger

from storefront.services.errors import (
    ConnectorAuthError,
    ConnectorError,
    RequestTimeoutError,
    ServiceError,
)
from storefront.services.token_cache import TokenCache, join_url, safe_json
from storefront.settings import Settings, global_settings

# Candidate-endpoint statuses that mean "try the next path"
FALLTHROUGH_STATUSES = frozenset({404, 405})

_LIST_FIELDS = ("data", "items", "products", "result")


def _as_number(value: Any) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return None


def list_from(data: Any) -> list[Any]:
    """Extract the record list from a bare or wrapped list payload."""
    if isinstance(data, list):
        return data
    if isinstance(data, dict):
        for name in _LIST_FIELDS:
            if isinstance(data.get(name), list):
                return data[name]
    return []


def _nested_total(data: dict, name: str) -> Any:
    inner = data.get(name)
    return inner.get("total") if isinstance(inner, dict) else None


def total_from(data: Any) -> int | None:
    """Extract a total record count from common pagination layouts."""
    if not isinstance(data, dict):
        return None
    candidates = (
        _nested_total(data, "meta"),
        data.get("total"),
        data.get("count"),
        _nested_total(data, "pagination"),
    )
    for candidate in candidates:
        number = _as_number(candidate)
        if number is not None:
            return number
    return None


def clean_params(params: Mapping[str, Any] | None) -> list[tuple[str, str]]:
    """
    Flatten query parameters.

    None and empty-string values are dropped; list values repeat the parameter.
    """
    if not params:
        return []

    def fmt(value: Any) -> str:
        if isinstance(value, bool):
            return "true" if value else "false"
        return str(value)

    query: list[tuple[str, str]] = []
    for name, value in params.items():
        if value is None or value == "":
            continue
        if isinstance(value, (list, tuple)):
            query.extend((name, fmt(item)) for item in value)
        else:
            query.append((name, fmt(value)))
    return query


@dataclass
class ConnectorResult:
    """Result from a connector request."""

    data: Any
    status: int = 200
    path: str | None = None

    @property
    def items(self) -> list[Any]:
        return list_from(self.data)

    @property
    def total(self) -> int | None:
        return total_from(self.data)


class ConnectorClient:
    """
    Client for the connector API.

    Usage:
        async with ConnectorClient() as client:
            result = await client.get("/product", params={"per_page": 20})
            for product in result.items:
                ...

            # Endpoint names differ between connector versions
            result = await client.get_any(["/product-list", "/product"])
    """

    service_id = "connector"

    def __init__(
        self,
        settings: Settings | None = None,
        http_client: httpx.AsyncClient | None = None,
        token_cache: TokenCache | None = None,
    ):
        self._settings = settings or global_settings
        self._owns_http_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(
            timeout=httpx.Timeout(self._settings.connector_timeout),
            follow_redirects=True,
        )
        self._tokens = token_cache or TokenCache(self._settings, self._http_client)

    @property
    def tokens(self) -> TokenCache:
        return self._tokens

    def build_url(self, path: str) -> str:
        """Target URL for an API path: base + prefix + path."""
        s = self._settings
        return join_url(s.connector_base_url, s.connector_prefix, path)

    async def request(
        self,
        path: str,
        method: str = "GET",
        params: Mapping[str, Any] | None = None,
        json_data: Any = None,
        headers: Mapping[str, str] | None = None,
    ) -> ConnectorResult:
        """
        Make an authenticated request.

        Args:
            path: API path below the configured prefix
            method: HTTP method
            params: Query parameters (None/empty dropped, lists repeated)
            json_data: JSON body
            headers: Additional headers

        Returns:
            ConnectorResult with the parsed body ({} when empty)

        Raises:
            ConnectorError: For non-2xx responses (after at most one 401 retry)
            ConnectorAuthError: If the token exchange is rejected
            RequestTimeoutError: If the request times out
            ServiceError: For transport errors
        """
        url = self.build_url(path)
        query = clean_params(params)

        response = await self._send(method, url, query, json_data, headers)
        if response.status_code == 401 and not self._tokens.uses_static_bearer:
            logger.warning(f"Connector rejected token for {method} {path}, refreshing")
            self._tokens.invalidate()
            response = await self._send(method, url, query, json_data, headers)

        body = safe_json(response)
        if not response.is_success:
            raise ConnectorError(response.status_code, body)

        return ConnectorResult(
            data=body if body is not None else {},
            status=response.status_code,
            path=path,
        )

    async def get(
        self, path: str, params: Mapping[str, Any] | None = None
    ) -> ConnectorResult:
        return await self.request(path, params=params)

    async def post_json(
        self,
        path: str,
        payload: Any,
        params: Mapping[str, Any] | None = None,
    ) -> ConnectorResult:
        return await self.request(path, method="POST", params=params, json_data=payload)

    async def get_any(
        self,
        paths: Iterable[str],
        params: Mapping[str, Any] | None = None,
    ) -> ConnectorResult:
        """
        GET the first candidate path that succeeds.

        Moves on to the next candidate only when the path answers 404/405; any
        other failure, token exchange failures included, is raised immediately.
        The result's `path` names the candidate that answered.
        """
        last_error: ConnectorError | None = None
        for path in paths:
            try:
                return await self.get(path, params=params)
            except ConnectorAuthError:
                raise
            except ConnectorError as e:
                if e.status not in FALLTHROUGH_STATUSES:
                    raise
                logger.debug(f"Connector path {path} unavailable (HTTP {e.status})")
                last_error = e

        if last_error is not None:
            raise last_error
        raise ServiceError("all_paths_failed", service_id=self.service_id)

    async def _send(
        self,
        method: str,
        url: str,
        query: list[tuple[str, str]],
        json_data: Any,
        headers: Mapping[str, str] | None,
    ) -> httpx.Response:
        """Execute one HTTP request with a bearer header."""
        token = await self._tokens.get_token()
        req_headers = {"Accept": "application/json"}
        if headers:
            req_headers.update(headers)
        if token:
            req_headers["Authorization"] = f"Bearer {token}"

        try:
            return await self._http_client.request(
                method,
                url,
                params=query or None,
                json=json_data,
                headers=req_headers,
            )
        except httpx.TimeoutException as e:
            raise RequestTimeoutError(
                self.service_id, self._settings.connector_timeout
            ) from e
        except httpx.RequestError as e:
            raise ServiceError(str(e), service_id=self.service_id) from e

    async def close(self) -> None:
        """Close the HTTP client if this instance created it."""
        if self._owns_http_client:
            await self._http_client.aclose()
        logger.debug("ConnectorClient closed")

    async def __aenter__(self) -> "ConnectorClient":
        """Async context manager entry."""
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        """Async context manager exit."""
        await self.close()
