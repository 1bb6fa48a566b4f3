"""Async Microsoft Graph HTTP client with token caching and throttling support."""

from __future__ import annotations

import asyncio
import time
from typing import Any

import httpx
import structlog

from ..config import GraphConfig, RetryConfig
from ..errors import (
    InefficientFilterError,
    ProviderError,
    ProviderTransportError,
    RateLimitedError,
)
from ..retry import with_retry

logger = structlog.get_logger()

GRAPH_SCOPE = "https://graph.microsoft.com/.default"
# Tokens are refreshed this long before they actually expire.
TOKEN_EXPIRY_BUFFER_SECONDS = 5 * 60


def _parse_retry_after(value: str | None) -> float | None:
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        return None


class GraphClient:
    """Thin JSON client for the Graph REST API.

    * Client-credentials tokens are cached until five minutes before
      expiry.
    * HTTP 429 raises :class:`RateLimitedError` carrying the server's
      ``Retry-After``; requests are retried by tenacity, which waits that
      long (or ``default_retry_after_seconds``) first.
    * Transport failures and 5xx responses are retried the same way.
    * A 400 naming an inefficient filter raises
      :class:`InefficientFilterError`; other non-2xx responses raise
      :class:`ProviderError` without retry.
    """

    def __init__(self, config: GraphConfig, retry_config: RetryConfig) -> None:
        self._config = config
        self._retry_config = retry_config
        self._client: httpx.AsyncClient | None = None
        self._token: str | None = None
        self._token_expires_at: float = 0.0
        self._token_lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=httpx.Timeout(self._config.timeout_seconds))
            logger.info("graph_client_started", base_url=self._config.base_url)

    async def stop(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
            logger.info("graph_client_stopped")

    # ------------------------------------------------------------------
    # Auth
    # ------------------------------------------------------------------

    async def get_token(self) -> str:
        """Return a cached app token, fetching a new one when close to expiry."""
        async with self._token_lock:
            now = time.monotonic()
            if self._token and self._token_expires_at > now + TOKEN_EXPIRY_BUFFER_SECONDS:
                return self._token

            assert self._client is not None, "Client not started"
            if not (self._config.tenant_id and self._config.client_id):
                raise ProviderError(401, "Graph tenant_id/client_id not configured")

            url = self._config.token_url_template.format(tenant_id=self._config.tenant_id)
            try:
                response = await self._client.post(
                    url,
                    data={
                        "client_id": self._config.client_id,
                        "client_secret": self._config.client_secret.get_secret_value(),
                        "scope": GRAPH_SCOPE,
                        "grant_type": "client_credentials",
                    },
                )
            except httpx.TransportError as exc:
                raise ProviderTransportError(f"token request failed: {exc}") from exc

            if response.status_code != 200:
                raise ProviderError(response.status_code, response.text)

            payload = response.json()
            self._token = payload["access_token"]
            self._token_expires_at = now + float(payload.get("expires_in", 3600))
            logger.debug("graph_token_refreshed", expires_in=payload.get("expires_in"))
            return self._token

    def invalidate_token(self) -> None:
        self._token = None
        self._token_expires_at = 0.0

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------

    async def get_json(
        self,
        path_or_url: str,
        *,
        params: dict[str, Any] | None = None,
        eventual_consistency: bool = False,
    ) -> dict[str, Any]:
        """GET a Graph resource and return the decoded JSON body.

        *path_or_url* may be a path relative to ``base_url`` or an absolute
        ``@odata.nextLink``, in which case *params* must be omitted.
        """
        retry_decorator = with_retry(
            self._retry_config,
            retryable_exceptions=(RateLimitedError, ProviderTransportError),
            max_attempts=self._config.max_rate_limit_retries,
            default_retry_after=self._config.default_retry_after_seconds,
        )

        @retry_decorator
        async def _get() -> dict[str, Any]:
            return await self._get_once(path_or_url, params, eventual_consistency)

        return await _get()

    async def _get_once(
        self,
        path_or_url: str,
        params: dict[str, Any] | None,
        eventual_consistency: bool,
    ) -> dict[str, Any]:
        assert self._client is not None, "Client not started"
        token = await self.get_token()
        url = path_or_url if path_or_url.startswith("https://") else f"{self._config.base_url}{path_or_url}"
        headers = {"Authorization": f"Bearer {token}", "Accept": "application/json"}
        if eventual_consistency:
            headers["ConsistencyLevel"] = "eventual"

        try:
            response = await self._client.get(url, params=params, headers=headers)
        except httpx.TransportError as exc:
            raise ProviderTransportError(f"graph request failed: {exc}") from exc

        if response.status_code == 429:
            retry_after = _parse_retry_after(response.headers.get("Retry-After"))
            logger.warning("graph_rate_limited", url=url, retry_after=retry_after)
            raise RateLimitedError(retry_after)
        if response.status_code == 401:
            self.invalidate_token()
            raise ProviderTransportError("graph rejected the access token")
        if response.status_code >= 500:
            raise ProviderTransportError(f"graph returned {response.status_code}")
        if response.status_code == 400 and "InefficientFilter" in response.text:
            raise InefficientFilterError(response.status_code, response.text)
        if response.status_code >= 400:
            raise ProviderError(response.status_code, response.text)

        return response.json()
