from __future__ import annotations

import logging
import time
from typing import Any

import httpx

from dust_connectors.core.config import get_settings
from dust_connectors.core.errors import ProviderError, TransientProviderError
from dust_connectors.services.resilience import retry_async
from dust_connectors.services.telemetry import record_external_call


logger = logging.getLogger(__name__)


class DataSourceClient:
    """Push and remove documents in a workspace data source of the search index."""

    def __init__(
        self,
        *,
        workspace_id: str,
        api_key: str,
        data_source_name: str,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._workspace_id = workspace_id
        self._api_key = api_key
        self._data_source_name = data_source_name
        self._client = http_client
        self._owns_client = False

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is not None:
            return self._client
        timeout_s = get_settings().ext_call_timeout_ms / 1000.0
        self._client = httpx.AsyncClient(timeout=timeout_s)
        self._owns_client = True
        return self._client

    async def aclose(self) -> None:
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None
            self._owns_client = False

    def _document_url(self, document_id: str) -> str:
        base = get_settings().dust_api_url.rstrip("/")
        return (
            f"{base}/api/v1/w/{self._workspace_id}/data_sources/"
            f"{self._data_source_name}/documents/{document_id}"
        )

    async def _send(self, method: str, document_id: str, payload: dict[str, Any] | None = None) -> httpx.Response:
        client = self._get_client()
        url = self._document_url(document_id)
        headers = {"Authorization": f"Bearer {self._api_key}"}

        async def _once() -> httpx.Response:
            try:
                response = await client.request(method, url, json=payload, headers=headers)
            except (httpx.TimeoutException, httpx.NetworkError) as exc:
                raise TransientProviderError("Data source request failed", code="network_error") from exc
            if response.status_code == 429 or response.status_code >= 500:
                raise TransientProviderError(
                    f"Data source returned HTTP {response.status_code}",
                    status_code=response.status_code,
                )
            return response

        start = time.monotonic()
        try:
            response = await retry_async(_once)
        except Exception:
            record_external_call(integration="data_source", latency_ms=(time.monotonic() - start) * 1000.0, success=False)
            raise
        record_external_call(
            integration="data_source",
            latency_ms=(time.monotonic() - start) * 1000.0,
            success=response.status_code < 400 or response.status_code == 404,
        )
        return response

    async def upsert_document(
        self,
        document_id: str,
        *,
        text: str,
        source_url: str | None = None,
        timestamp_ms: int | None = None,
        tags: list[str] | None = None,
        parents: list[str] | None = None,
    ) -> None:
        response = await self._send(
            "POST",
            document_id,
            {
                "text": text,
                "source_url": source_url,
                "timestamp": timestamp_ms,
                "tags": tags or [],
                "parents": parents or [],
            },
        )
        if response.status_code >= 400:
            raise ProviderError(
                f"Data source upsert failed with HTTP {response.status_code}",
                code="data_source_upsert_failed",
            )
        logger.debug("data_source_upsert document_id=%s", document_id)

    async def delete_document(self, document_id: str) -> None:
        # A missing document is already deleted from the index's point of view.
        response = await self._send("DELETE", document_id)
        if response.status_code == 404:
            return
        if response.status_code >= 400:
            raise ProviderError(
                f"Data source delete failed with HTTP {response.status_code}",
                code="data_source_delete_failed",
            )
