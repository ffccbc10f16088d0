from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass
from typing import Any, AsyncIterator, Union

import httpx

from dust_connectors.core.config import get_settings
from dust_connectors.core.errors import ProviderError, TransientProviderError
from dust_connectors.services.telemetry import record_external_call


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ChatMessageCreate:
    role: str
    message: str


@dataclass(frozen=True)
class ChatMessageTokens:
    text: str


@dataclass(frozen=True)
class ChatSessionUpdate:
    session_sid: str


ChatEvent = Union[ChatMessageCreate, ChatMessageTokens, ChatSessionUpdate]


def parse_chat_event(raw: dict[str, Any]) -> ChatEvent | None:
    # Unknown event types are skipped so new server events stay compatible.
    event_type = raw.get("type")
    if event_type == "chat_message_create":
        message = raw.get("message") or {}
        return ChatMessageCreate(role=str(message.get("role") or ""), message=str(message.get("message") or ""))
    if event_type == "chat_message_tokens":
        return ChatMessageTokens(text=str(raw.get("text") or ""))
    if event_type == "chat_session_update":
        session = raw.get("session") or {}
        return ChatSessionUpdate(session_sid=str(session.get("sId") or ""))
    return None


class DustAPI:
    """Workspace-scoped client for the assistant chat API."""

    def __init__(self, *, workspace_id: str, api_key: str, http_client: httpx.AsyncClient | None = None) -> None:
        self._workspace_id = workspace_id
        self._api_key = api_key
        self._client = http_client
        self._owns_client = False

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is not None:
            return self._client
        # Streams outlive a single request timeout; only bound the connect phase.
        self._client = httpx.AsyncClient(timeout=httpx.Timeout(None, connect=10.0))
        self._owns_client = True
        return self._client

    async def aclose(self) -> None:
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None
            self._owns_client = False

    def conversation_url(self, session_sid: str) -> str:
        base = get_settings().dust_api_url.rstrip("/")
        return f"{base}/w/{self._workspace_id}/u/chat/{session_sid}"

    async def new_chat_streamed(self, message: str, timezone: str) -> AsyncIterator[ChatEvent]:
        base = get_settings().dust_api_url.rstrip("/")
        url = f"{base}/api/v1/w/{self._workspace_id}/chats"
        headers = {"Authorization": f"Bearer {self._api_key}", "Accept": "text/event-stream"}
        client = self._get_client()
        start = time.monotonic()
        success = False
        try:
            async with client.stream(
                "POST",
                url,
                json={"user_message": message, "timezone": timezone},
                headers=headers,
            ) as response:
                if response.status_code >= 500:
                    raise TransientProviderError(
                        f"Dust chat returned HTTP {response.status_code}",
                        status_code=response.status_code,
                    )
                if response.status_code >= 400:
                    raise ProviderError(f"Dust chat returned HTTP {response.status_code}", code="dust_api_error")
                async for line in response.aiter_lines():
                    if not line.startswith("data:"):
                        continue
                    data = line[len("data:"):].strip()
                    if not data:
                        continue
                    try:
                        raw = json.loads(data)
                    except json.JSONDecodeError:
                        logger.warning("dust_chat_invalid_event workspace_id=%s", self._workspace_id)
                        continue
                    event = parse_chat_event(raw)
                    if event is not None:
                        yield event
            success = True
        except (httpx.TimeoutException, httpx.NetworkError) as exc:
            raise TransientProviderError("Dust chat stream failed", code="network_error") from exc
        finally:
            record_external_call(
                integration="dust_api",
                latency_ms=(time.monotonic() - start) * 1000.0,
                success=success,
            )
