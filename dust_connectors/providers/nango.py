from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Callable

import httpx

from dust_connectors.core.config import Settings, get_settings, require_setting
from dust_connectors.core.errors import AuthExpiredError, ProviderError, TransientProviderError
from dust_connectors.services.resilience import retry_async
from dust_connectors.services.telemetry import record_external_call


logger = logging.getLogger(__name__)


class TokenCache:
    # Short-TTL memoization of access tokens, owned by whoever builds the broker.
    def __init__(self, ttl_s: float, time_source: Callable[[], float] | None = None) -> None:
        self._ttl_s = max(0.0, float(ttl_s))
        self._time = time_source or time.monotonic
        self._entries: dict[str, tuple[float, str]] = {}
        self._lock = asyncio.Lock()

    async def get(self, key: str) -> str | None:
        async with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            expires_at, value = entry
            if expires_at <= self._time():
                self._entries.pop(key, None)
                return None
            return value

    async def set(self, key: str, value: str) -> None:
        if self._ttl_s <= 0:
            return
        async with self._lock:
            self._entries[key] = (self._time() + self._ttl_s, value)

    async def evict(self, key: str) -> None:
        async with self._lock:
            self._entries.pop(key, None)

    def __len__(self) -> int:
        return len(self._entries)


class CredentialBroker:
    """Resolve provider access tokens from Nango connections.

    A deleted upstream connection surfaces as AuthExpiredError: the calling
    sync run stops, but the connector can recover through re-authorization.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        cache: TokenCache | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._cache = cache or TokenCache(self._settings.token_cache_ttl_s)
        self._client = http_client

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is not None:
            return self._client
        timeout_s = self._settings.ext_call_timeout_ms / 1000.0
        self._client = httpx.AsyncClient(timeout=timeout_s)
        return self._client

    def _headers(self) -> dict[str, str]:
        secret = self._settings.nango_secret_key or require_setting("nango_secret_key")
        return {"Authorization": f"Bearer {secret}"}

    def _provider_config_key(self) -> str:
        return self._settings.nango_slack_connector_id or require_setting("nango_slack_connector_id")

    async def _request(self, method: str, connection_id: str, *, params: dict[str, str]) -> httpx.Response:
        url = f"{self._settings.nango_server_url.rstrip('/')}/connection/{connection_id}"
        client = self._get_client()
        headers = self._headers()

        async def _once() -> httpx.Response:
            try:
                response = await client.request(method, url, params=params, headers=headers)
            except (httpx.TimeoutException, httpx.NetworkError) as exc:
                raise TransientProviderError("Nango request failed", code="network_error") from exc
            if response.status_code == 429 or response.status_code >= 500:
                raise TransientProviderError(
                    f"Nango returned HTTP {response.status_code}",
                    status_code=response.status_code,
                    retry_after=float(response.headers["Retry-After"]) if "Retry-After" in response.headers else None,
                )
            return response

        start = time.monotonic()
        try:
            response = await retry_async(_once)
        except Exception:
            record_external_call(integration="nango", latency_ms=(time.monotonic() - start) * 1000.0, success=False)
            raise
        success = response.status_code < 400
        record_external_call(integration="nango", latency_ms=(time.monotonic() - start) * 1000.0, success=success)
        if response.status_code == 404:
            raise AuthExpiredError(f"Nango connection {connection_id} was deleted; re-authorization required")
        if response.status_code >= 400:
            raise ProviderError(f"Nango returned HTTP {response.status_code}", code="nango_error")
        return response

    async def get_connection(self, connection_id: str, *, refresh_token: bool = False) -> dict[str, Any]:
        response = await self._request(
            "GET",
            connection_id,
            params={
                "provider_config_key": self._provider_config_key(),
                "force_refresh": "true" if refresh_token else "false",
            },
        )
        return response.json()

    async def get_access_token(self, connection_id: str) -> str:
        cached = await self._cache.get(connection_id)
        if cached is not None:
            return cached
        connection = await self.get_connection(connection_id)
        token = (connection.get("credentials") or {}).get("access_token")
        if not token:
            raise AuthExpiredError(f"Nango connection {connection_id} has no access token")
        await self._cache.set(connection_id, token)
        return token

    async def get_connection_team_id(self, connection_id: str) -> str | None:
        # Slack OAuth responses carry the installing team under credentials.raw.
        connection = await self.get_connection(connection_id)
        raw = (connection.get("credentials") or {}).get("raw") or {}
        team = raw.get("team") or connection.get("team") or {}
        return team.get("id")

    async def revoke(self, connection_id: str) -> None:
        await self._cache.evict(connection_id)
        try:
            await self._request(
                "DELETE",
                connection_id,
                params={"provider_config_key": self._provider_config_key()},
            )
        except AuthExpiredError:
            # Already gone upstream; revocation is complete.
            logger.info("nango_connection_already_deleted connection_id=%s", connection_id)
