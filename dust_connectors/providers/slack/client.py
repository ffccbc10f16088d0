from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any

import httpx

from dust_connectors.core.config import get_settings
from dust_connectors.core.errors import (
    AuthExpiredError,
    NotFoundError,
    ProviderError,
    TransientProviderError,
)
from dust_connectors.services.resilience import RetryPolicy, default_retry_policy, retry_async
from dust_connectors.services.telemetry import increment_counter, record_external_call


logger = logging.getLogger(__name__)

# Slack error codes meaning the token can no longer be used.
AUTH_ERROR_CODES = frozenset(
    {
        "invalid_auth",
        "not_authed",
        "token_revoked",
        "token_expired",
        "account_inactive",
        "missing_scope",
    }
)
NOT_FOUND_ERROR_CODES = frozenset({"channel_not_found", "user_not_found", "thread_not_found"})
TRANSIENT_ERROR_CODES = frozenset({"ratelimited", "internal_error", "fatal_error", "service_unavailable"})


@dataclass(frozen=True)
class SlackChannel:
    id: str
    name: str
    is_member: bool = False
    is_archived: bool = False


@dataclass(frozen=True)
class ChannelPage:
    channels: list[SlackChannel]
    # None once the last page has been returned.
    next_cursor: str | None


@dataclass(frozen=True)
class SlackMessage:
    ts: str
    text: str
    user: str | None = None
    thread_ts: str | None = None
    reply_count: int = 0
    subtype: str | None = None

    @property
    def is_thread_root(self) -> bool:
        return bool(self.thread_ts) and self.thread_ts == self.ts and self.reply_count > 0

    @property
    def is_thread_reply(self) -> bool:
        return bool(self.thread_ts) and self.thread_ts != self.ts


@dataclass(frozen=True)
class MessagePage:
    messages: list[SlackMessage]
    next_cursor: str | None
    has_more: bool = False


def _channel_from_payload(raw: dict[str, Any]) -> SlackChannel:
    return SlackChannel(
        id=str(raw["id"]),
        name=str(raw.get("name") or raw["id"]),
        is_member=bool(raw.get("is_member", False)),
        is_archived=bool(raw.get("is_archived", False)),
    )


def _message_from_payload(raw: dict[str, Any]) -> SlackMessage:
    return SlackMessage(
        ts=str(raw["ts"]),
        text=str(raw.get("text") or ""),
        user=raw.get("user") or raw.get("bot_id"),
        thread_ts=raw.get("thread_ts"),
        reply_count=int(raw.get("reply_count") or 0),
        subtype=raw.get("subtype"),
    )


def _next_cursor(payload: dict[str, Any]) -> str | None:
    cursor = (payload.get("response_metadata") or {}).get("next_cursor")
    return cursor or None


def _encode_params(params: dict[str, Any]) -> dict[str, str]:
    # Slack form-encoded calls take strings only; booleans are "true"/"false".
    encoded: dict[str, str] = {}
    for key, value in params.items():
        if value is None:
            continue
        if isinstance(value, bool):
            encoded[key] = "true" if value else "false"
        else:
            encoded[key] = str(value)
    return encoded


def _retryable(exc: Exception) -> bool:
    if isinstance(exc, TransientProviderError):
        return True
    return isinstance(exc, (httpx.TimeoutException, httpx.NetworkError, TimeoutError))


@dataclass
class SlackClient:
    """Slack Web API client bound to one access token.

    One instance lives for one sync run or bot answer; the bot user id and
    resolved user names are memoized on the instance, never globally.
    """

    access_token: str
    http_client: httpx.AsyncClient | None = None
    policy: RetryPolicy | None = None
    base_url: str | None = None
    _bot_user_id: str | None = field(default=None, init=False, repr=False)
    _user_names: dict[str, str] = field(default_factory=dict, init=False, repr=False)
    _owns_client: bool = field(default=False, init=False, repr=False)

    def _get_client(self) -> httpx.AsyncClient:
        if self.http_client is not None:
            return self.http_client
        # Reuse a single client per instance for connection pooling.
        timeout_s = get_settings().ext_call_timeout_ms / 1000.0
        self.http_client = httpx.AsyncClient(timeout=timeout_s)
        self._owns_client = True
        return self.http_client

    async def aclose(self) -> None:
        # Injected clients belong to the caller.
        if self._owns_client and self.http_client is not None:
            await self.http_client.aclose()
            self.http_client = None
            self._owns_client = False

    async def _call(self, method: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
        url = f"{(self.base_url or get_settings().slack_api_url).rstrip('/')}/{method}"
        data = _encode_params(params or {})
        headers = {"Authorization": f"Bearer {self.access_token}"}
        client = self._get_client()

        async def _once() -> dict[str, Any]:
            try:
                response = await client.post(url, data=data, headers=headers)
            except (httpx.TimeoutException, httpx.NetworkError) as exc:
                raise TransientProviderError(f"Slack {method} network failure", code="network_error") from exc
            if response.status_code == 429:
                increment_counter("slack_rate_limited_total")
                raise TransientProviderError(
                    f"Slack {method} rate limited",
                    code="ratelimited",
                    status_code=429,
                    retry_after=float(response.headers.get("Retry-After", "1")),
                )
            if response.status_code >= 500:
                raise TransientProviderError(
                    f"Slack {method} failed with HTTP {response.status_code}",
                    code="http_error",
                    status_code=response.status_code,
                )
            payload = response.json()
            if payload.get("ok") is True:
                return payload
            error = str(payload.get("error") or "unknown_error")
            if error in AUTH_ERROR_CODES:
                raise AuthExpiredError(f"Slack {method} rejected the token: {error}", code=error)
            if error in NOT_FOUND_ERROR_CODES:
                raise NotFoundError(f"Slack {method}: {error}")
            if error in TRANSIENT_ERROR_CODES:
                raise TransientProviderError(f"Slack {method}: {error}", code=error)
            raise ProviderError(f"Slack {method}: {error}", code=error)

        start = time.monotonic()
        try:
            payload = await retry_async(
                _once,
                policy=self.policy or default_retry_policy(),
                retryable=_retryable,
            )
        except TimeoutError as exc:
            record_external_call(integration="slack", latency_ms=(time.monotonic() - start) * 1000.0, success=False)
            raise TransientProviderError(f"Slack {method} timed out", code="timeout") from exc
        except Exception:
            record_external_call(integration="slack", latency_ms=(time.monotonic() - start) * 1000.0, success=False)
            raise
        record_external_call(integration="slack", latency_ms=(time.monotonic() - start) * 1000.0, success=True)
        return payload

    async def team_info(self) -> dict[str, Any]:
        payload = await self._call("team.info")
        team = payload.get("team") or {}
        if not team.get("id"):
            raise ProviderError("Could not get slack team id", code="missing_team")
        return team

    async def auth_test(self) -> dict[str, Any]:
        return await self._call("auth.test")

    async def list_channels(self, cursor: str | None = None, *, limit: int = 999) -> ChannelPage:
        payload = await self._call(
            "conversations.list",
            {
                "types": "public_channel",
                "exclude_archived": True,
                "limit": limit,
                "cursor": cursor,
            },
        )
        channels = [_channel_from_payload(raw) for raw in payload.get("channels") or []]
        return ChannelPage(channels=channels, next_cursor=_next_cursor(payload))

    async def get_channel(self, channel_id: str) -> SlackChannel:
        payload = await self._call("conversations.info", {"channel": channel_id})
        return _channel_from_payload(payload["channel"])

    async def channel_history(
        self,
        channel_id: str,
        *,
        oldest: str | None = None,
        latest: str | None = None,
        cursor: str | None = None,
        inclusive: bool = False,
        limit: int = 200,
    ) -> MessagePage:
        payload = await self._call(
            "conversations.history",
            {
                "channel": channel_id,
                "oldest": oldest,
                "latest": latest,
                "cursor": cursor,
                "inclusive": inclusive if (oldest or latest) else None,
                "limit": limit,
            },
        )
        return MessagePage(
            messages=[_message_from_payload(raw) for raw in payload.get("messages") or []],
            next_cursor=_next_cursor(payload),
            has_more=bool(payload.get("has_more")),
        )

    async def thread_replies(self, channel_id: str, thread_ts: str, cursor: str | None = None) -> MessagePage:
        payload = await self._call(
            "conversations.replies",
            {"channel": channel_id, "ts": thread_ts, "cursor": cursor, "limit": 200},
        )
        return MessagePage(
            messages=[_message_from_payload(raw) for raw in payload.get("messages") or []],
            next_cursor=_next_cursor(payload),
            has_more=bool(payload.get("has_more")),
        )

    async def join_channel(self, channel_id: str) -> SlackChannel:
        payload = await self._call("conversations.join", {"channel": channel_id})
        warning = payload.get("warning")
        if warning == "already_in_channel":
            logger.info("slack_join_channel_noop channel_id=%s", channel_id)
        return _channel_from_payload(payload["channel"])

    async def user_info(self, user_id: str) -> dict[str, Any]:
        payload = await self._call("users.info", {"user": user_id})
        return payload.get("user") or {}

    async def post_message(self, channel_id: str, text: str, *, thread_ts: str | None = None) -> str:
        payload = await self._call(
            "chat.postMessage",
            {"channel": channel_id, "text": text, "thread_ts": thread_ts, "mrkdwn": True},
        )
        return str(payload.get("ts") or "")

    async def update_message(self, channel_id: str, ts: str, text: str, *, thread_ts: str | None = None) -> None:
        await self._call(
            "chat.update",
            {"channel": channel_id, "ts": ts, "text": text, "thread_ts": thread_ts},
        )

    async def uninstall_app(self, *, client_id: str, client_secret: str) -> None:
        await self._call("apps.uninstall", {"client_id": client_id, "client_secret": client_secret})

    async def get_bot_user_id(self) -> str:
        # Memoized per token: the bot identity never changes for an install.
        if self._bot_user_id is None:
            payload = await self.auth_test()
            self._bot_user_id = str(payload.get("user_id") or "")
        return self._bot_user_id

    async def get_user_name(self, user_id: str) -> str:
        cached = self._user_names.get(user_id)
        if cached is not None:
            return cached
        user = await self.user_info(user_id)
        profile = user.get("profile") or {}
        name = profile.get("display_name") or user.get("name") or user_id
        self._user_names[user_id] = name
        return name
