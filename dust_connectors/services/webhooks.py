from __future__ import annotations

import hashlib
import hmac
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Protocol, Union, assert_never

from sqlalchemy.ext.asyncio import AsyncSession

from dust_connectors.core.result import Result
from dust_connectors.domain.models import Connector
from dust_connectors.domain.types import has_read
from dust_connectors.persistence.repos import connectors as connectors_repo
from dust_connectors.persistence.repos import resources as resources_repo
from dust_connectors.services.sync import queue
from dust_connectors.services.sync.state import accepts_triggers, mark_errored
from dust_connectors.services.telemetry import increment_counter


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ResourceChanged:
    team_id: str
    channel_id: str
    thread_ts: str | None = None
    event_id: str | None = None


@dataclass(frozen=True)
class ResourceCreated:
    team_id: str
    channel_id: str
    name: str


@dataclass(frozen=True)
class ResourceRenamed:
    team_id: str
    channel_id: str
    name: str


@dataclass(frozen=True)
class ResourceRemoved:
    team_id: str
    channel_id: str


@dataclass(frozen=True)
class MembershipChanged:
    team_id: str
    channel_id: str
    joined: bool


@dataclass(frozen=True)
class TeamUninstalled:
    team_id: str


@dataclass(frozen=True)
class BotMentioned:
    team_id: str
    channel_id: str
    user_id: str
    text: str
    message_ts: str


@dataclass(frozen=True)
class IgnoredEvent:
    reason: str


SlackEvent = Union[
    ResourceChanged,
    ResourceCreated,
    ResourceRenamed,
    ResourceRemoved,
    MembershipChanged,
    TeamUninstalled,
    BotMentioned,
    IgnoredEvent,
]


class IngressLauncher(Protocol):
    async def launch_sync_workflow(
        self,
        connector_id: str,
        *,
        channel_ids: list[str] | None = None,
        thread_ts: str | None = None,
        trigger_id: str | None = None,
    ) -> Result[str]: ...

    async def launch_bot_joined_workflow(self, connector_id: str, channel_id: str) -> Result[str]: ...

    async def launch_garbage_collect_workflow(
        self, connector_id: str, removed_ids: list[str] | None = None
    ) -> Result[str]: ...

    async def launch_bot_answer(
        self, *, team_id: str, channel_id: str, user_id: str, message_ts: str, text: str
    ) -> Result[str]: ...

    async def launch_teardown(self, team_id: str) -> Result[str]: ...


@dataclass
class DispatchSummary:
    launched: list[str] = field(default_factory=list)
    ignored_connectors: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)


def build_slack_signature(secret: str, timestamp: str, body: bytes) -> str:
    # Slack signs "v0:{timestamp}:{raw body}" with the app signing secret.
    base = b"v0:" + timestamp.encode("utf-8") + b":" + body
    return "v0=" + hmac.new(secret.encode("utf-8"), base, hashlib.sha256).hexdigest()


def verify_slack_signature(
    *,
    secret: str,
    timestamp: str | None,
    signature: str | None,
    body: bytes,
    max_age_s: int = 300,
    now: float | None = None,
) -> bool:
    if not timestamp or not signature:
        return False
    try:
        sent_at = int(timestamp)
    except ValueError:
        return False
    current = time.time() if now is None else now
    # Reject stale requests to block replays.
    if abs(current - sent_at) > max_age_s:
        return False
    expected = build_slack_signature(secret, timestamp, body)
    return hmac.compare_digest(expected, signature)


def verify_path_secret(expected: str | None, provided: str) -> bool:
    if not expected:
        return False
    return hmac.compare_digest(expected.encode("utf-8"), provided.encode("utf-8"))


def _bot_user_ids(payload: dict[str, Any]) -> set[str]:
    # Event payloads list the installation identities the event was delivered for.
    return {
        str(auth.get("user_id"))
        for auth in payload.get("authorizations") or []
        if auth.get("is_bot") and auth.get("user_id")
    }


def parse_slack_event(payload: dict[str, Any]) -> SlackEvent:
    if payload.get("type") != "event_callback":
        return IgnoredEvent(reason=f"unsupported payload type {payload.get('type')}")
    team_id = str(payload.get("team_id") or "")
    event = payload.get("event") or {}
    event_type = event.get("type")
    if not team_id:
        return IgnoredEvent(reason="missing team id")

    if event_type == "message":
        channel_id = event.get("channel")
        if not channel_id:
            return IgnoredEvent(reason="message without channel")
        nested = event.get("message") or event.get("previous_message") or {}
        thread_ts = event.get("thread_ts") or nested.get("thread_ts")
        return ResourceChanged(
            team_id=team_id,
            channel_id=str(channel_id),
            thread_ts=thread_ts,
            event_id=payload.get("event_id"),
        )
    if event_type == "channel_created":
        channel = event.get("channel") or {}
        if not channel.get("id"):
            return IgnoredEvent(reason="channel_created without channel")
        channel_id = str(channel["id"])
        return ResourceCreated(team_id=team_id, channel_id=channel_id, name=str(channel.get("name") or channel_id))
    if event_type == "channel_rename":
        channel = event.get("channel") or {}
        return ResourceRenamed(team_id=team_id, channel_id=str(channel.get("id")), name=str(channel.get("name")))
    if event_type in {"channel_deleted", "channel_archive"}:
        return ResourceRemoved(team_id=team_id, channel_id=str(event.get("channel")))
    if event_type in {"member_joined_channel", "member_left_channel"}:
        if str(event.get("user")) not in _bot_user_ids(payload):
            return IgnoredEvent(reason="membership change of a non-bot user")
        channel_type = event.get("channel_type")
        if channel_type and channel_type != "C":
            # Only public channels are mirrored.
            return IgnoredEvent(reason=f"membership change in non-public channel type {channel_type}")
        return MembershipChanged(
            team_id=team_id,
            channel_id=str(event.get("channel")),
            joined=event_type == "member_joined_channel",
        )
    if event_type == "channel_left":
        return MembershipChanged(team_id=team_id, channel_id=str(event.get("channel")), joined=False)
    if event_type in {"app_uninstalled", "tokens_revoked"}:
        return TeamUninstalled(team_id=team_id)
    if event_type == "app_mention":
        return BotMentioned(
            team_id=team_id,
            channel_id=str(event.get("channel")),
            user_id=str(event.get("user")),
            text=str(event.get("text") or ""),
            message_ts=str(event.get("ts")),
        )
    return IgnoredEvent(reason=f"unhandled event type {event_type}")


def _record(summary: DispatchSummary, result: Result[str], label: str) -> None:
    if result.is_ok():
        summary.launched.append(result.value)
    else:
        logger.error("webhook_launch_failed target=%s error=%s", label, result.error)
        summary.errors.append(label)


async def _connectors_for_team(session: AsyncSession, team_id: str) -> list[Connector]:
    connectors: list[Connector] = []
    for configuration in await connectors_repo.list_slack_configurations_for_team(session, team_id):
        connector = await connectors_repo.get_connector(session, configuration.connector_id)
        if connector is not None:
            connectors.append(connector)
    return connectors


async def dispatch_event(
    session: AsyncSession,
    event: SlackEvent,
    *,
    launcher: IngressLauncher | None = None,
) -> DispatchSummary:
    """Route one parsed event to every connector configured for its team.

    Only cheap mirror writes happen here; sync work is enqueued.
    """
    launcher = launcher or queue
    summary = DispatchSummary()
    if isinstance(event, IgnoredEvent):
        logger.debug("webhook_event_ignored reason=%s", event.reason)
        return summary

    connectors = await _connectors_for_team(session, event.team_id)
    if isinstance(event, TeamUninstalled):
        for connector in connectors:
            if connector.state != "errored":
                mark_errored(connector, error_type="oauth_token_revoked")
        await session.commit()
        if connectors:
            _record(summary, await launcher.launch_teardown(event.team_id), f"teardown:{event.team_id}")
        return summary
    if isinstance(event, BotMentioned):
        enabled = await connectors_repo.list_slack_configurations_for_team(session, event.team_id, bot_enabled=True)
        if enabled:
            result = await launcher.launch_bot_answer(
                team_id=event.team_id,
                channel_id=event.channel_id,
                user_id=event.user_id,
                message_ts=event.message_ts,
                text=event.text,
            )
            _record(summary, result, f"bot_answer:{event.channel_id}")
        return summary

    for connector in connectors:
        if not accepts_triggers(connector):
            # Paused and errored connectors ignore provider pushes.
            summary.ignored_connectors.append(connector.id)
            continue
        if isinstance(event, ResourceChanged):
            resource = await resources_repo.get_resource(session, connector.id, event.channel_id)
            if resource is None or not has_read(resource.permission):
                summary.ignored_connectors.append(connector.id)
                continue
            result = await launcher.launch_sync_workflow(
                connector.id,
                channel_ids=[event.channel_id],
                thread_ts=event.thread_ts,
                trigger_id=event.event_id,
            )
            _record(summary, result, f"sync:{connector.id}")
        elif isinstance(event, ResourceCreated):
            await _apply_created(session, connector, event, launcher, summary)
        elif isinstance(event, ResourceRenamed):
            resource = await resources_repo.get_resource(session, connector.id, event.channel_id)
            if resource is None:
                summary.ignored_connectors.append(connector.id)
                continue
            await resources_repo.upsert(
                session,
                connector.id,
                resources_repo.ResourceInput(
                    external_id=event.channel_id,
                    title=event.name,
                    resource_type=resource.resource_type,
                    parent_external_id=resource.parent_external_id,
                ),
                default_permission=resource.permission,
            )
            await session.commit()
        elif isinstance(event, ResourceRemoved):
            result = await launcher.launch_garbage_collect_workflow(connector.id, [event.channel_id])
            _record(summary, result, f"gc:{connector.id}")
        elif isinstance(event, MembershipChanged):
            await _apply_membership(session, connector, event, launcher, summary)
        else:
            assert_never(event)
    increment_counter("webhook_events_dispatched_total")
    return summary


async def _apply_membership(
    session: AsyncSession,
    connector: Connector,
    event: MembershipChanged,
    launcher: IngressLauncher,
    summary: DispatchSummary,
) -> None:
    resource = await resources_repo.get_resource(session, connector.id, event.channel_id)
    if event.joined:
        # Someone invited the bot: the channel takes the connector default unless already granted.
        if resource is None:
            resource = await resources_repo.upsert(
                session,
                connector.id,
                resources_repo.ResourceInput(external_id=event.channel_id, title=event.channel_id),
                default_permission=connector.default_new_resource_permission,
            )
        elif resource.permission == "none":
            await resources_repo.update_permission(session, resource, connector.default_new_resource_permission)
        await session.commit()
        if has_read(resource.permission):
            result = await launcher.launch_bot_joined_workflow(connector.id, event.channel_id)
            _record(summary, result, f"bot_joined:{connector.id}")
        return
    if resource is None:
        return
    was_readable = has_read(resource.permission)
    await resources_repo.update_permission(session, resource, "none")
    await session.commit()
    if was_readable:
        result = await launcher.launch_garbage_collect_workflow(connector.id)
        _record(summary, result, f"gc:{connector.id}")


async def _apply_created(
    session: AsyncSession,
    connector: Connector,
    event: ResourceCreated,
    launcher: IngressLauncher,
    summary: DispatchSummary,
) -> None:
    # New public channels take the connector default; readable ones are joined and ingested.
    if await resources_repo.get_resource(session, connector.id, event.channel_id) is not None:
        return
    resource = await resources_repo.upsert(
        session,
        connector.id,
        resources_repo.ResourceInput(external_id=event.channel_id, title=event.name),
        default_permission=connector.default_new_resource_permission,
    )
    await session.commit()
    if has_read(resource.permission):
        result = await launcher.launch_bot_joined_workflow(connector.id, event.channel_id)
        _record(summary, result, f"bot_joined:{connector.id}")
