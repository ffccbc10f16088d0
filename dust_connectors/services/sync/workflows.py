"""Slack sync workflows.

Every workflow is a plain coroutine run by the queue (arq worker or inline).
Side effects are idempotent per step: resource upserts are keyed by external
id, document upserts by document id, and channel steps are recorded in the
workflow step log so a retried run skips channels it already finished.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from dust_connectors.core.config import get_settings
from dust_connectors.core.errors import ProviderError, TransientProviderError
from dust_connectors.domain.models import ConnectorResource
from dust_connectors.domain.types import has_read
from dust_connectors.persistence.db import SessionLocal
from dust_connectors.persistence.repos import connectors as connectors_repo
from dust_connectors.persistence.repos import resources as resources_repo
from dust_connectors.persistence.repos import sync_state as sync_state_repo
from dust_connectors.providers import factory
from dust_connectors.providers.data_sources import DataSourceClient
from dust_connectors.providers.slack.client import SlackClient, SlackMessage
from dust_connectors.services.resilience import gather_bounded
from dust_connectors.services.sync import documents
from dust_connectors.services.sync.state import (
    accepts_triggers,
    mark_sync_started,
    mark_sync_succeeded,
)
from dust_connectors.services.telemetry import increment_counter


logger = logging.getLogger(__name__)


@dataclass
class SyncOutcome:
    status: str
    channels_synced: int = 0
    documents_upserted: int = 0
    documents_deleted: int = 0
    skipped_steps: list[str] = field(default_factory=list)


class GarbageCollectIncomplete(TransientProviderError):
    """Some index deletions failed; their mirror rows were kept for the retry."""


def _channel_step(channel_id: str) -> str:
    return f"channel:{channel_id}"


async def _halted(connector_id: str) -> bool:
    async with SessionLocal() as session:
        connector = await connectors_repo.get_connector(session, connector_id)
    return connector is None or not accepts_triggers(connector)


async def _team_id(connector_id: str) -> str:
    async with SessionLocal() as session:
        configuration = await connectors_repo.get_slack_configuration(session, connector_id)
    return configuration.slack_team_id if configuration else ""


async def _fetch_history(client: SlackClient, channel_id: str, **kwargs) -> list[SlackMessage]:
    messages: list[SlackMessage] = []
    cursor: str | None = None
    while True:
        page = await client.channel_history(channel_id, cursor=cursor, **kwargs)
        messages.extend(page.messages)
        if not page.next_cursor:
            return messages
        cursor = page.next_cursor


async def _fetch_thread(client: SlackClient, channel_id: str, thread_ts: str) -> list[SlackMessage]:
    messages: list[SlackMessage] = []
    cursor: str | None = None
    while True:
        page = await client.thread_replies(channel_id, thread_ts, cursor=cursor)
        messages.extend(page.messages)
        if not page.next_cursor:
            return messages
        cursor = page.next_cursor


async def _upsert(
    connector_id: str,
    data_sources: DataSourceClient,
    channel_id: str,
    document: documents.RenderedDocument,
) -> None:
    # Record the document row only once the index accepted it.
    await data_sources.upsert_document(
        document.document_id,
        text=document.text,
        source_url=document.source_url,
        timestamp_ms=document.timestamp_ms,
        tags=document.tags,
        parents=document.parents,
    )
    async with SessionLocal() as session:
        await resources_repo.record_document(
            session,
            connector_id,
            resource_external_id=channel_id,
            document_id=document.document_id,
            external_ts=document.latest_ts,
        )
        await session.commit()
    increment_counter("documents_upserted_total")


async def sync_thread(
    connector_id: str,
    client: SlackClient,
    data_sources: DataSourceClient,
    channel_id: str,
    thread_ts: str,
    *,
    team_id: str | None = None,
) -> int:
    async with SessionLocal() as session:
        resource = await resources_repo.get_resource(session, connector_id, channel_id)
    if resource is None or not has_read(resource.permission):
        logger.info("slack_sync_thread_skipped connector_id=%s channel_id=%s", connector_id, channel_id)
        return 0
    team_id = team_id if team_id is not None else await _team_id(connector_id)
    messages = await _fetch_thread(client, channel_id, thread_ts)
    if not messages:
        return 0
    document = await documents.render_thread(
        client,
        team_id=team_id,
        channel_id=channel_id,
        channel_name=resource.title,
        thread_ts=thread_ts,
        messages=messages,
    )
    await _upsert(connector_id, data_sources, channel_id, document)
    return 1


async def sync_channel(
    connector_id: str,
    client: SlackClient,
    data_sources: DataSourceClient,
    channel_id: str,
    *,
    is_member: bool | None = None,
    team_id: str | None = None,
) -> int:
    # Ingest messages newer than the channel cursor; the cursor moves after the whole batch.
    async with SessionLocal() as session:
        resource = await resources_repo.get_resource(session, connector_id, channel_id)
        cursor = await sync_state_repo.get_cursor(session, connector_id, channel_id)
    if resource is None or not has_read(resource.permission):
        logger.info("slack_sync_channel_skipped connector_id=%s channel_id=%s", connector_id, channel_id)
        return 0
    team_id = team_id if team_id is not None else await _team_id(connector_id)
    if is_member is False:
        # The bot must be a member of a channel to read its history.
        await client.join_channel(channel_id)

    new_messages = await _fetch_history(client, channel_id, oldest=cursor)
    new_messages = [m for m in new_messages if not m.is_thread_reply]
    if not new_messages:
        return 0

    upserted = 0
    weeks: dict[str, documents.WeekWindow] = {}
    for message in new_messages:
        if message.is_thread_root:
            thread = await _fetch_thread(client, channel_id, message.ts)
            document = await documents.render_thread(
                client,
                team_id=team_id,
                channel_id=channel_id,
                channel_name=resource.title,
                thread_ts=message.ts,
                messages=thread or [message],
            )
            await _upsert(connector_id, data_sources, channel_id, document)
            upserted += 1
        else:
            window = documents.week_window(message.ts)
            weeks[window.oldest_ts] = window

    for window in weeks.values():
        # Re-render the whole week so the document stays complete after partial batches.
        week_messages = await _fetch_history(
            client,
            channel_id,
            oldest=window.oldest_ts,
            latest=window.latest_ts,
            inclusive=True,
        )
        week_messages = [m for m in week_messages if not m.is_thread_root and not m.is_thread_reply]
        if not week_messages:
            continue
        document = await documents.render_week(
            client,
            team_id=team_id,
            channel_id=channel_id,
            channel_name=resource.title,
            window=window,
            messages=week_messages,
        )
        await _upsert(connector_id, data_sources, channel_id, document)
        upserted += 1

    newest = max(new_messages, key=lambda m: float(m.ts)).ts
    async with SessionLocal() as session:
        await sync_state_repo.set_cursor(session, connector_id, channel_id, newest)
        await session.commit()
    logger.info(
        "slack_sync_channel_done connector_id=%s channel_id=%s documents=%s cursor=%s",
        connector_id,
        channel_id,
        upserted,
        newest,
    )
    return upserted


async def _sync_channels(
    connector_id: str,
    workflow_id: str,
    client: SlackClient,
    data_sources: DataSourceClient,
    channel_ids: list[str],
    *,
    membership: dict[str, bool] | None = None,
    outcome: SyncOutcome,
) -> None:
    async with SessionLocal() as session:
        completed = await sync_state_repo.completed_steps(session, workflow_id)
    team_id = await _team_id(connector_id)
    pending: list[str] = []
    for channel_id in dict.fromkeys(channel_ids):
        if _channel_step(channel_id) in completed:
            outcome.skipped_steps.append(_channel_step(channel_id))
        else:
            pending.append(channel_id)

    async def _run(channel_id: str) -> int:
        # Re-read the state before every channel so a stop lands between steps.
        if await _halted(connector_id):
            outcome.status = "halted"
            return 0
        count = await sync_channel(
            connector_id,
            client,
            data_sources,
            channel_id,
            is_member=(membership or {}).get(channel_id),
            team_id=team_id,
        )
        async with SessionLocal() as session:
            await sync_state_repo.mark_step_completed(
                session,
                workflow_id=workflow_id,
                connector_id=connector_id,
                step_key=_channel_step(channel_id),
            )
            await session.commit()
        outcome.channels_synced += 1
        return count

    # One bound per run: all channel fetches of this connector share it.
    counts = await gather_bounded(pending, _run, limit=get_settings().sync_max_concurrency)
    outcome.documents_upserted += sum(counts)


async def _crawl_channels(connector_id: str, client: SlackClient, default_permission: str) -> dict[str, bool]:
    # Upsert each page as it arrives; returns channel id -> bot membership.
    membership: dict[str, bool] = {}
    cursor: str | None = None
    while True:
        page = await client.list_channels(cursor)
        async with SessionLocal() as session:
            await resources_repo.upsert_many(
                session,
                connector_id,
                [
                    resources_repo.ResourceInput(external_id=channel.id, title=channel.name)
                    for channel in page.channels
                ],
                default_permission=default_permission,
            )
            await session.commit()
        for channel in page.channels:
            membership[channel.id] = channel.is_member
        if not page.next_cursor:
            return membership
        cursor = page.next_cursor


async def run_sync_workflow(
    connector_id: str,
    workflow_id: str,
    channel_ids: list[str] | None = None,
    thread_ts: str | None = None,
) -> SyncOutcome:
    """Run a full sync (no channel_ids) or a sync scoped to channels or one thread.

    A stop or an error recorded while the run is in flight halts it between
    steps; the halted run leaves the connector state untouched.
    """
    full = channel_ids is None
    async with SessionLocal() as session:
        connector = await connectors_repo.get_connector(session, connector_id)
        if connector is None:
            logger.info("slack_sync_skipped_missing connector_id=%s", connector_id)
            return SyncOutcome(status="skipped")
        if not accepts_triggers(connector):
            logger.info("slack_sync_skipped_halted connector_id=%s state=%s", connector_id, connector.state)
            return SyncOutcome(status="skipped")
        mark_sync_started(connector, full=full)
        default_permission = connector.default_new_resource_permission
        await session.commit()

    client = await factory.slack_client_for_connector(connector)
    data_sources = factory.get_data_source_client(connector)
    outcome = SyncOutcome(status="succeeded")
    try:
        await _run_sync_steps(
            connector_id,
            workflow_id,
            client,
            data_sources,
            channel_ids=channel_ids,
            thread_ts=thread_ts,
            default_permission=default_permission,
            outcome=outcome,
        )
    finally:
        await factory.close_clients(client, data_sources)

    async with SessionLocal() as session:
        connector = await connectors_repo.get_connector(session, connector_id)
        if outcome.status == "halted" or connector is None or not accepts_triggers(connector):
            outcome.status = "halted"
        else:
            mark_sync_succeeded(connector, full=full)
        await sync_state_repo.clear_workflow(session, workflow_id)
        await session.commit()
    if outcome.status == "halted":
        logger.info(
            "slack_sync_halted connector_id=%s workflow_id=%s state=%s",
            connector_id,
            workflow_id,
            connector.state if connector is not None else "deleted",
        )
        return outcome
    logger.info(
        "slack_sync_done connector_id=%s workflow_id=%s full=%s channels=%s documents=%s",
        connector_id,
        workflow_id,
        full,
        outcome.channels_synced,
        outcome.documents_upserted,
    )
    return outcome


async def _run_sync_steps(
    connector_id: str,
    workflow_id: str,
    client: SlackClient,
    data_sources: DataSourceClient,
    *,
    channel_ids: list[str] | None,
    thread_ts: str | None,
    default_permission: str,
    outcome: SyncOutcome,
) -> None:
    if channel_ids is None:
        membership = await _crawl_channels(connector_id, client, default_permission)
        if await _halted(connector_id):
            outcome.status = "halted"
            return
        async with SessionLocal() as session:
            known = await resources_repo.list_by_connector(session, connector_id, parent_external_id=None)
        removed = [row.external_id for row in known if row.external_id not in membership]
        if removed:
            logger.info("slack_sync_channels_removed connector_id=%s count=%s", connector_id, len(removed))
            outcome.documents_deleted += await garbage_collect(connector_id, data_sources, removed_ids=removed)
        readable = [row.external_id for row in known if row.external_id in membership and has_read(row.permission)]
        await _sync_channels(
            connector_id,
            workflow_id,
            client,
            data_sources,
            readable,
            membership=membership,
            outcome=outcome,
        )
    elif thread_ts:
        for channel_id in channel_ids:
            outcome.documents_upserted += await sync_thread(connector_id, client, data_sources, channel_id, thread_ts)
    else:
        await _sync_channels(connector_id, workflow_id, client, data_sources, channel_ids, outcome=outcome)


async def _join_and_sync(
    connector_id: str,
    client: SlackClient,
    data_sources: DataSourceClient,
    resource: ConnectorResource,
) -> int:
    channel_id = resource.external_id
    channel = await client.join_channel(channel_id)
    if channel.name != resource.title:
        # Membership webhooks only carry the id; the join response has the real name.
        async with SessionLocal() as session:
            await resources_repo.upsert(
                session,
                connector_id,
                resources_repo.ResourceInput(
                    external_id=channel_id,
                    title=channel.name,
                    resource_type=resource.resource_type,
                    parent_external_id=resource.parent_external_id,
                ),
                default_permission=resource.permission,
            )
            await session.commit()
    return await sync_channel(connector_id, client, data_sources, channel_id, is_member=True)


async def run_bot_joined_workflow(connector_id: str, channel_id: str) -> SyncOutcome:
    # Read access was granted: make the bot a member, then ingest the channel history.
    async with SessionLocal() as session:
        connector = await connectors_repo.get_connector(session, connector_id)
        resource = await resources_repo.get_resource(session, connector_id, channel_id)
    if connector is None or not accepts_triggers(connector):
        return SyncOutcome(status="skipped")
    if resource is None or not has_read(resource.permission):
        return SyncOutcome(status="skipped")
    client = await factory.slack_client_for_connector(connector)
    data_sources = factory.get_data_source_client(connector)
    try:
        count = await _join_and_sync(connector_id, client, data_sources, resource)
    finally:
        await factory.close_clients(client, data_sources)
    logger.info("slack_bot_joined_done connector_id=%s channel_id=%s documents=%s", connector_id, channel_id, count)
    return SyncOutcome(status="succeeded", channels_synced=1, documents_upserted=count)


async def garbage_collect(
    connector_id: str,
    data_sources: DataSourceClient,
    *,
    removed_ids: list[str] | None = None,
) -> int:
    """Delete indexed documents of unreadable or removed resources.

    Each document row is deleted only after the index confirmed the deletion.
    Removed resources lose their mirror rows once none of their documents
    remain; unreadable resources keep their rows and get their cursor reset.
    """
    async with SessionLocal() as session:
        removed = set(await resources_repo.descendant_ids(session, connector_id, list(removed_ids or [])))
        rows = await resources_repo.list_by_connector(session, connector_id)
        unreadable = {row.external_id for row in rows if not has_read(row.permission)}
        targets = sorted(removed | unreadable)
        docs = await resources_repo.list_documents(session, connector_id, resource_external_ids=targets)

    deleted = 0
    failed: set[str] = set()
    for doc in docs:
        try:
            await data_sources.delete_document(doc.document_id)
        except ProviderError as exc:
            failed.add(doc.resource_external_id)
            logger.warning(
                "slack_gc_delete_failed connector_id=%s document_id=%s error=%s",
                connector_id,
                doc.document_id,
                exc,
            )
            continue
        async with SessionLocal() as session:
            await resources_repo.delete_document_row(session, connector_id, doc.document_id)
            await session.commit()
        deleted += 1

    async with SessionLocal() as session:
        cleaned = [rid for rid in targets if rid not in failed]
        await sync_state_repo.reset_cursors(session, connector_id, cleaned)
        purgeable = [rid for rid in removed if rid not in failed]
        if purgeable:
            await resources_repo.delete(session, connector_id, purgeable)
        await session.commit()
    increment_counter("documents_deleted_total", deleted)
    logger.info(
        "slack_gc_done connector_id=%s deleted=%s failed_resources=%s",
        connector_id,
        deleted,
        len(failed),
    )
    if failed:
        raise GarbageCollectIncomplete(
            f"Index deletion failed for {len(failed)} resources of connector {connector_id}",
            code="gc_incomplete",
        )
    return deleted


async def run_garbage_collect_workflow(connector_id: str, removed_ids: list[str] | None = None) -> SyncOutcome:
    async with SessionLocal() as session:
        connector = await connectors_repo.get_connector(session, connector_id)
        if connector is None:
            return SyncOutcome(status="skipped")
        connector.gc_pending = False
        await session.commit()
    data_sources = factory.get_data_source_client(connector)
    try:
        deleted = await garbage_collect(connector_id, data_sources, removed_ids=removed_ids)
    finally:
        await data_sources.aclose()
    return SyncOutcome(status="succeeded", documents_deleted=deleted)
