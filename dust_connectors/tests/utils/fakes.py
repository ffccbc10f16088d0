from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, AsyncIterator

from arq.constants import in_progress_key_prefix

from dust_connectors.core.errors import AuthExpiredError, ProviderError
from dust_connectors.core.result import Err, Ok, Result
from dust_connectors.domain.models import Connector, SlackConfiguration
from dust_connectors.persistence.db import SessionLocal
from dust_connectors.persistence.repos import resources as resources_repo
from dust_connectors.providers import factory
from dust_connectors.providers.dust_api import ChatEvent
from dust_connectors.providers.slack.client import ChannelPage, MessagePage, SlackChannel, SlackMessage
from dust_connectors.services.sync import queue


class FakeSlackClient:
    """In-memory Slack workspace with the SlackClient surface used by the service."""

    def __init__(self, *, team_id: str = "T1", bot_user_id: str = "UBOT", page_size: int = 2) -> None:
        self.team_id = team_id
        self.bot_user_id = bot_user_id
        self.page_size = page_size
        self.channels: dict[str, SlackChannel] = {}
        self.messages: dict[str, list[SlackMessage]] = {}
        self.replies: dict[tuple[str, str], list[SlackMessage]] = {}
        self.users: dict[str, dict[str, Any]] = {}
        self.auth_error: Exception | None = None
        # Channel ids whose next history call raises, then clears.
        self.crash_on_history: dict[str, Exception] = {}
        self.history_calls: list[str] = []
        self.joined: list[str] = []
        self.posted: list[tuple[str, str, str | None]] = []
        self.updated: list[tuple[str, str, str]] = []
        self.uninstalled = 0
        self.closed = 0

    def add_channel(self, channel_id: str, name: str, *, is_member: bool = False) -> None:
        self.channels[channel_id] = SlackChannel(id=channel_id, name=name, is_member=is_member)
        self.messages.setdefault(channel_id, [])

    def add_message(self, channel_id: str, ts: str, text: str, *, user: str = "U1") -> SlackMessage:
        message = SlackMessage(ts=ts, text=text, user=user)
        self.messages.setdefault(channel_id, []).append(message)
        return message

    def add_thread(self, channel_id: str, root_ts: str, texts: list[str], *, user: str = "U1") -> None:
        # First text is the root; the rest become replies one second apart.
        root = SlackMessage(ts=root_ts, text=texts[0], user=user, thread_ts=root_ts, reply_count=len(texts) - 1)
        self.messages.setdefault(channel_id, []).append(root)
        replies = [
            SlackMessage(ts=f"{float(root_ts) + index:.6f}", text=text, user=user, thread_ts=root_ts)
            for index, text in enumerate(texts[1:], start=1)
        ]
        self.replies[(channel_id, root_ts)] = [root, *replies]

    def add_user(self, user_id: str, name: str, *, team_id: str | None = None, tz: str | None = None) -> None:
        self.users[user_id] = {
            "id": user_id,
            "name": name,
            "tz": tz,
            "profile": {"display_name": name, "email": f"{name}@example.com", "team": team_id or self.team_id},
        }

    async def team_info(self) -> dict[str, Any]:
        if self.auth_error is not None:
            raise self.auth_error
        return {"id": self.team_id, "name": "Test team"}

    async def auth_test(self) -> dict[str, Any]:
        if self.auth_error is not None:
            raise self.auth_error
        return {"ok": True, "user_id": self.bot_user_id, "team_id": self.team_id}

    async def list_channels(self, cursor: str | None = None, *, limit: int = 999) -> ChannelPage:
        ordered = sorted(self.channels.values(), key=lambda channel: channel.id)
        start = int(cursor or 0)
        end = start + self.page_size
        next_cursor = str(end) if end < len(ordered) else None
        return ChannelPage(channels=ordered[start:end], next_cursor=next_cursor)

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
        self.history_calls.append(channel_id)
        crash = self.crash_on_history.pop(channel_id, None)
        if crash is not None:
            raise crash

        def _keep(message: SlackMessage) -> bool:
            ts = float(message.ts)
            if oldest is not None and (ts < float(oldest) or (ts == float(oldest) and not inclusive)):
                return False
            if latest is not None and (ts > float(latest) or (ts == float(latest) and not inclusive)):
                return False
            return True

        kept = [message for message in self.messages.get(channel_id, []) if _keep(message)]
        # Slack returns newest first.
        kept.sort(key=lambda message: float(message.ts), reverse=True)
        return MessagePage(messages=kept, next_cursor=None)

    async def thread_replies(self, channel_id: str, thread_ts: str, cursor: str | None = None) -> MessagePage:
        return MessagePage(messages=list(self.replies.get((channel_id, thread_ts), [])), next_cursor=None)

    async def join_channel(self, channel_id: str) -> SlackChannel:
        self.joined.append(channel_id)
        channel = self.channels.get(channel_id) or SlackChannel(id=channel_id, name=channel_id)
        joined = SlackChannel(id=channel.id, name=channel.name, is_member=True)
        self.channels[channel_id] = joined
        return joined

    async def user_info(self, user_id: str) -> dict[str, Any]:
        return self.users.get(user_id) or {"id": user_id, "name": user_id, "profile": {}}

    async def get_bot_user_id(self) -> str:
        return self.bot_user_id

    async def get_user_name(self, user_id: str) -> str:
        user = self.users.get(user_id)
        return user["name"] if user else user_id

    async def post_message(self, channel_id: str, text: str, *, thread_ts: str | None = None) -> str:
        self.posted.append((channel_id, text, thread_ts))
        return f"9000.{len(self.posted):06d}"

    async def update_message(self, channel_id: str, ts: str, text: str, *, thread_ts: str | None = None) -> None:
        self.updated.append((channel_id, ts, text))

    async def uninstall_app(self, *, client_id: str, client_secret: str) -> None:
        self.uninstalled += 1

    async def aclose(self) -> None:
        self.closed += 1


class FakeDataSourceClient:
    def __init__(self) -> None:
        self.documents: dict[str, dict[str, Any]] = {}
        self.deleted: list[str] = []
        self.fail_deletes: set[str] = set()
        self.closed = 0

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
        self.documents[document_id] = {
            "text": text,
            "source_url": source_url,
            "timestamp": timestamp_ms,
            "tags": list(tags or []),
            "parents": list(parents or []),
        }

    async def delete_document(self, document_id: str) -> None:
        if document_id in self.fail_deletes:
            raise ProviderError(f"index unavailable for {document_id}", code="data_source_delete_failed")
        self.documents.pop(document_id, None)
        self.deleted.append(document_id)

    async def aclose(self) -> None:
        self.closed += 1


class FakeBroker:
    def __init__(self) -> None:
        self.tokens: dict[str, str] = {}
        self.team_ids: dict[str, str] = {}
        self.revoked: list[str] = []
        self.revoke_error: Exception | None = None

    def add_connection(self, connection_id: str, *, team_id: str = "T1") -> None:
        self.tokens[connection_id] = f"xoxb-{connection_id}"
        self.team_ids[connection_id] = team_id

    async def get_access_token(self, connection_id: str) -> str:
        token = self.tokens.get(connection_id)
        if token is None:
            raise AuthExpiredError(f"Nango connection {connection_id} was deleted; re-authorization required")
        return token

    async def get_connection_team_id(self, connection_id: str) -> str | None:
        if connection_id not in self.tokens:
            raise AuthExpiredError(f"Nango connection {connection_id} was deleted; re-authorization required")
        return self.team_ids.get(connection_id)

    async def revoke(self, connection_id: str) -> None:
        if self.revoke_error is not None:
            raise self.revoke_error
        self.revoked.append(connection_id)
        self.tokens.pop(connection_id, None)


class FakeDustAPI:
    def __init__(self, events: list[ChatEvent] | None = None) -> None:
        self.events = list(events or [])
        self.messages: list[tuple[str, str]] = []
        self.closed = 0

    def conversation_url(self, session_sid: str) -> str:
        return f"https://dust.test/w/ws/u/chat/{session_sid}"

    async def new_chat_streamed(self, message: str, timezone: str) -> AsyncIterator[ChatEvent]:
        self.messages.append((message, timezone))
        for event in self.events:
            yield event

    async def aclose(self) -> None:
        self.closed += 1


@dataclass
class FakeLauncher:
    calls: list[tuple[str, dict[str, Any]]] = field(default_factory=list)
    fail_kinds: set[str] = field(default_factory=set)

    def _record(self, kind: str, **kwargs: Any) -> Result[str]:
        self.calls.append((kind, kwargs))
        if kind in self.fail_kinds:
            return Err(ProviderError(f"could not launch {kind}", code="launch_failed"))
        return Ok(f"{kind}-{len(self.calls)}")

    def of_kind(self, kind: str) -> list[dict[str, Any]]:
        return [kwargs for name, kwargs in self.calls if name == kind]

    async def launch_sync_workflow(
        self,
        connector_id: str,
        *,
        channel_ids: list[str] | None = None,
        thread_ts: str | None = None,
        trigger_id: str | None = None,
    ) -> Result[str]:
        return self._record(
            "sync",
            connector_id=connector_id,
            channel_ids=channel_ids,
            thread_ts=thread_ts,
            trigger_id=trigger_id,
        )

    async def launch_bot_joined_workflow(self, connector_id: str, channel_id: str) -> Result[str]:
        return self._record("bot_joined", connector_id=connector_id, channel_id=channel_id)

    async def launch_garbage_collect_workflow(
        self, connector_id: str, removed_ids: list[str] | None = None
    ) -> Result[str]:
        return self._record("garbage_collect", connector_id=connector_id, removed_ids=removed_ids)

    async def launch_bot_answer(
        self, *, team_id: str, channel_id: str, user_id: str, message_ts: str, text: str
    ) -> Result[str]:
        return self._record(
            "bot_answer",
            team_id=team_id,
            channel_id=channel_id,
            user_id=user_id,
            message_ts=message_ts,
            text=text,
        )

    async def launch_teardown(self, team_id: str) -> Result[str]:
        return self._record("teardown", team_id=team_id)


@dataclass
class FakeProviders:
    slack: FakeSlackClient
    data_sources: FakeDataSourceClient
    broker: FakeBroker
    dust: FakeDustAPI


def install_fakes(monkeypatch, *, team_id: str = "T1") -> FakeProviders:
    # Route every provider lookup through the factory to in-memory fakes.
    providers = FakeProviders(
        slack=FakeSlackClient(team_id=team_id),
        data_sources=FakeDataSourceClient(),
        broker=FakeBroker(),
        dust=FakeDustAPI(),
    )

    async def _slack_for_connector(connector: Connector) -> FakeSlackClient:
        await providers.broker.get_access_token(connector.connection_id)
        return providers.slack

    monkeypatch.setattr(factory, "get_credential_broker", lambda: providers.broker)
    monkeypatch.setattr(factory, "get_slack_client", lambda _token: providers.slack)
    monkeypatch.setattr(factory, "slack_client_for_connector", _slack_for_connector)
    monkeypatch.setattr(factory, "get_data_source_client", lambda _connector: providers.data_sources)
    monkeypatch.setattr(factory, "get_dust_api", lambda _connector: providers.dust)
    return providers


async def seed_connector(
    connector_id: str,
    *,
    team_id: str = "T1",
    connection_id: str | None = None,
    state: str = "incremental_sync",
    bot_enabled: bool = False,
    default_permission: str = "read_write",
    channels: dict[str, tuple[str, str]] | None = None,
) -> None:
    """Insert a connector, its Slack configuration and mirror rows.

    ``channels`` maps channel id to (title, permission).
    """
    async with SessionLocal() as session:
        session.add(
            Connector(
                id=connector_id,
                type="slack",
                connection_id=connection_id or f"conn-{connector_id}",
                workspace_api_key="sk-test",
                workspace_id="ws-test",
                data_source_name="managed-slack",
                default_new_resource_permission=default_permission,
                state=state,
                gc_pending=False,
            )
        )
        session.add(SlackConfiguration(connector_id=connector_id, slack_team_id=team_id, bot_enabled=bot_enabled))
        await session.flush()
        for channel_id, (title, permission) in (channels or {}).items():
            await resources_repo.upsert(
                session,
                connector_id,
                resources_repo.ResourceInput(external_id=channel_id, title=title),
                default_permission=permission,
            )
        await session.commit()


def install_launcher(monkeypatch) -> FakeLauncher:
    # Services default to the queue module; record launches instead of running them.
    launcher = FakeLauncher()
    for name in (
        "launch_sync_workflow",
        "launch_bot_joined_workflow",
        "launch_garbage_collect_workflow",
        "launch_bot_answer",
        "launch_teardown",
    ):
        monkeypatch.setattr(queue, name, getattr(launcher, name))
    return launcher


class FakeArqRedis:
    """The slice of ArqRedis used by the queue: job ids, in-progress markers and the connector lock."""

    def __init__(self) -> None:
        self.jobs: dict[str, dict[str, Any]] = {}
        self.values: dict[str, bytes] = {}
        self.ttls: dict[str, int] = {}
        self.expire_calls: list[tuple[str, int]] = []

    def start(self, job_id: str) -> None:
        # What the worker writes when it picks a job up.
        self.values[f"{in_progress_key_prefix}{job_id}"] = b"1"

    def finish(self, job_id: str) -> None:
        self.values.pop(f"{in_progress_key_prefix}{job_id}", None)
        self.jobs.pop(job_id, None)

    async def enqueue_job(self, function: str, *args: Any, _job_id: str, _queue_name: str | None = None) -> Any:
        if _job_id in self.jobs:
            return None
        self.jobs[_job_id] = args[0]
        return object()

    async def exists(self, *keys: str) -> int:
        return sum(1 for key in keys if key in self.values)

    async def set(self, key: str, value: str, *, nx: bool = False, ex: int | None = None) -> bool | None:
        if nx and key in self.values:
            return None
        self.values[key] = value.encode("utf-8")
        if ex is not None:
            self.ttls[key] = ex
        return True

    async def get(self, key: str) -> bytes | None:
        return self.values.get(key)

    async def delete(self, *keys: str) -> int:
        removed = 0
        for key in keys:
            if self.values.pop(key, None) is not None:
                removed += 1
            self.ttls.pop(key, None)
        return removed

    async def expire(self, key: str, seconds: int) -> bool:
        if key not in self.values:
            return False
        self.ttls[key] = seconds
        self.expire_calls.append((key, seconds))
        return True


def install_queue_mode(monkeypatch) -> FakeArqRedis:
    # Worker mode against an in-memory pool instead of Redis.
    redis = FakeArqRedis()
    monkeypatch.setattr(queue, "_inline", lambda: False)

    async def _pool() -> FakeArqRedis:
        return redis

    monkeypatch.setattr(queue, "get_redis_pool", _pool)
    return redis
