from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Protocol

from sqlalchemy.ext.asyncio import AsyncSession

from dust_connectors.core.config import get_settings
from dust_connectors.core.errors import InvalidRequestError, NotFoundError
from dust_connectors.core.result import Err, Ok, Result
from dust_connectors.domain.models import ConnectorResource
from dust_connectors.domain.types import has_read, is_connector_permission
from dust_connectors.persistence.repos import connectors as connectors_repo
from dust_connectors.persistence.repos import resources as resources_repo
from dust_connectors.services.resilience import gather_bounded
from dust_connectors.services.sync import queue
from dust_connectors.services.sync.documents import channel_url
from dust_connectors.services.sync.state import accepts_triggers


logger = logging.getLogger(__name__)


# Requested capability -> stored permissions that grant it.
_FILTER_EXPANSION: dict[str, frozenset[str]] = {
    "read": frozenset({"read", "read_write"}),
    "write": frozenset({"write", "read_write"}),
    "read_write": frozenset({"read_write"}),
}


class ResourceShape(Protocol):
    # Provider-specific view of a mirrored resource.
    @property
    def external_id(self) -> str: ...

    @property
    def title(self) -> str: ...

    @property
    def has_parent(self) -> bool: ...

    @property
    def source_url(self) -> str | None: ...

    @property
    def expandable(self) -> bool: ...


class WorkflowLauncher(Protocol):
    async def launch_bot_joined_workflow(self, connector_id: str, channel_id: str) -> Result[str]: ...

    async def launch_garbage_collect_workflow(
        self, connector_id: str, removed_ids: list[str] | None = None
    ) -> Result[str]: ...


@dataclass(frozen=True)
class SlackChannelShape:
    row: ConnectorResource
    team_id: str

    @property
    def external_id(self) -> str:
        return self.row.external_id

    @property
    def title(self) -> str:
        return self.row.title

    @property
    def has_parent(self) -> bool:
        return self.row.parent_external_id is not None

    @property
    def source_url(self) -> str | None:
        return channel_url(self.team_id, self.row.external_id)

    @property
    def expandable(self) -> bool:
        # Slack channels are leaves in the permission tree.
        return False


@dataclass(frozen=True)
class ConnectorResourceView:
    provider: str
    internal_id: str
    parent_internal_id: str | None
    type: str
    title: str
    source_url: str | None
    expandable: bool
    permission: str


@dataclass
class PermissionChangeSummary:
    updated: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    bot_joins_launched: list[str] = field(default_factory=list)
    gc_triggered: bool = False
    gc_deferred: bool = False


def expand_permission_filter(permission_filter: str | None) -> frozenset[str] | None:
    if permission_filter is None:
        return None
    expanded = _FILTER_EXPANSION.get(permission_filter)
    if expanded is None:
        raise InvalidRequestError(f"Invalid permission filter: {permission_filter}")
    return expanded


def _view(provider: str, shape: ResourceShape, row: ConnectorResource) -> ConnectorResourceView:
    return ConnectorResourceView(
        provider=provider,
        internal_id=shape.external_id,
        parent_internal_id=row.parent_external_id if shape.has_parent else None,
        type=row.resource_type,
        title=shape.title,
        source_url=shape.source_url,
        expandable=shape.expandable,
        permission=row.permission,
    )


async def list_permissions(
    session: AsyncSession,
    connector_id: str,
    *,
    parent_id: str | None = None,
    permission_filter: str | None = None,
) -> Result[list[ConnectorResourceView]]:
    try:
        permissions = expand_permission_filter(permission_filter)
    except InvalidRequestError as exc:
        return Err(exc)
    connector = await connectors_repo.get_connector(session, connector_id)
    if connector is None:
        return Err(NotFoundError("Connector not found"))
    configuration = await connectors_repo.get_slack_configuration(session, connector_id)
    if configuration is None:
        return Err(NotFoundError("Slack configuration not found"))
    # Without a parent, list root resources; with one, list its direct children.
    rows = await resources_repo.list_by_connector(
        session,
        connector_id,
        permissions=permissions,
        parent_external_id=parent_id,
    )
    return Ok(
        [
            _view(connector.type, SlackChannelShape(row=row, team_id=configuration.slack_team_id), row)
            for row in rows
        ]
    )


async def set_permissions(
    session: AsyncSession,
    connector_id: str,
    permissions: dict[str, str],
    *,
    launcher: WorkflowLauncher | None = None,
) -> Result[PermissionChangeSummary]:
    """Apply a batch of permission changes and launch their side effects.

    Rows are committed before any workflow is launched. Newly readable
    resources get a bot-join workflow; the first launch error aborts the batch.
    Revoked read access triggers garbage collection once for the whole batch.
    """
    launcher = launcher or queue
    invalid = sorted(value for value in set(permissions.values()) if not is_connector_permission(value))
    if invalid:
        return Err(InvalidRequestError(f"Invalid permissions: {', '.join(invalid)}"))
    connector = await connectors_repo.get_connector(session, connector_id)
    if connector is None:
        return Err(NotFoundError(f"Connector not found with id {connector_id}"))

    rows = {row.external_id: row for row in await resources_repo.get_many(session, connector_id, list(permissions))}
    summary = PermissionChangeSummary()
    granted: list[str] = []
    revoked = False
    for external_id, permission in permissions.items():
        row = rows.get(external_id)
        if row is None:
            logger.warning("permission_resource_not_found connector_id=%s external_id=%s", connector_id, external_id)
            summary.skipped.append(external_id)
            continue
        previous = row.permission
        if previous == permission:
            continue
        await resources_repo.update_permission(session, row, permission)
        summary.updated.append(external_id)
        if not has_read(previous) and has_read(permission):
            granted.append(external_id)
        elif has_read(previous) and not has_read(permission):
            revoked = True

    gc_mode = get_settings().gc_trigger_mode
    if revoked and gc_mode == "scheduled":
        connector.gc_pending = True
        summary.gc_deferred = True
    await session.commit()

    if granted and accepts_triggers(connector):

        async def _launch(channel_id: str) -> str:
            result = await launcher.launch_bot_joined_workflow(connector_id, channel_id)
            if result.is_err():
                raise result.error
            return channel_id

        try:
            summary.bot_joins_launched = await gather_bounded(
                granted,
                _launch,
                limit=get_settings().sync_max_concurrency,
            )
        except Exception as exc:  # noqa: BLE001 - launch errors abort the batch as a Result
            logger.warning("permission_bot_join_failed connector_id=%s error=%s", connector_id, exc)
            return Err(exc)

    if revoked and gc_mode != "scheduled":
        result = await launcher.launch_garbage_collect_workflow(connector_id)
        if result.is_err():
            return Err(result.error)
        summary.gc_triggered = True

    logger.info(
        "permissions_updated connector_id=%s updated=%s skipped=%s bot_joins=%s gc=%s",
        connector_id,
        len(summary.updated),
        len(summary.skipped),
        len(summary.bot_joins_launched),
        "deferred" if summary.gc_deferred else summary.gc_triggered,
    )
    return Ok(summary)


async def get_resources_titles(session: AsyncSession, connector_id: str, external_ids: list[str]) -> Result[dict[str, str]]:
    connector = await connectors_repo.get_connector(session, connector_id)
    if connector is None:
        return Err(NotFoundError("Connector not found"))
    return Ok(await resources_repo.titles(session, connector_id, external_ids))


async def get_resources_parents(
    session: AsyncSession,
    connector_id: str,
    external_ids: list[str],
) -> Result[dict[str, list[str]]]:
    connector = await connectors_repo.get_connector(session, connector_id)
    if connector is None:
        return Err(NotFoundError("Connector not found"))
    return Ok(await resources_repo.ancestors(session, connector_id, external_ids))
