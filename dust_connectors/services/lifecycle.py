"""Connector lifecycle: create, update, stop, resume, resync and delete.

Local rows change inside one transaction. External side effects (app
uninstall, Nango connection deletion) run after the commit, and their failure
is reported as ExternalRevokeError so the revoke can be retried on its own.
"""

from __future__ import annotations

import logging
from typing import Protocol
from uuid import uuid4

from sqlalchemy.ext.asyncio import AsyncSession

from dust_connectors.core.config import get_settings, require_setting
from dust_connectors.core.errors import (
    AuthExpiredError,
    ConnectorStateError,
    ConnectorsError,
    ExternalRevokeError,
    InvalidRequestError,
    NotFoundError,
    OAuthTargetMismatchError,
    ProviderNotSupportedError,
)
from dust_connectors.core.result import Err, Ok, Result
from dust_connectors.domain.models import Connector
from dust_connectors.domain.types import is_connector_permission, is_connector_provider
from dust_connectors.persistence.db import SessionLocal
from dust_connectors.persistence.repos import connectors as connectors_repo
from dust_connectors.persistence.repos import resources as resources_repo
from dust_connectors.persistence.repos import sync_state as sync_state_repo
from dust_connectors.providers import factory
from dust_connectors.services.sync import queue
from dust_connectors.services.sync.state import HALTED_STATES, mark_errored, mark_paused, mark_resumed


logger = logging.getLogger(__name__)


class SyncLauncher(Protocol):
    async def launch_sync_workflow(
        self,
        connector_id: str,
        *,
        channel_ids: list[str] | None = None,
        thread_ts: str | None = None,
        trigger_id: str | None = None,
    ) -> Result[str]: ...


async def create_connector(
    session: AsyncSession,
    provider: str,
    *,
    workspace_id: str,
    workspace_api_key: str,
    data_source_name: str,
    connection_id: str,
    launcher: SyncLauncher | None = None,
) -> Result[str]:
    if not is_connector_provider(provider):
        return Err(ProviderNotSupportedError(f"Connector provider {provider} is not supported"))
    launcher = launcher or queue
    # Validate credentials before any row exists so a failure leaves no partial state.
    try:
        token = await factory.get_credential_broker().get_access_token(connection_id)
        async with factory.slack_client(token) as client:
            team = await client.team_info()
    except ConnectorsError as exc:
        logger.warning("connector_create_validation_failed connection_id=%s error=%s", connection_id, exc)
        return Err(exc)

    connector_id = uuid4().hex
    await connectors_repo.create_connector(
        session,
        connector_id=connector_id,
        provider=provider,
        connection_id=connection_id,
        workspace_api_key=workspace_api_key,
        workspace_id=workspace_id,
        data_source_name=data_source_name,
        default_new_resource_permission="read_write",
    )
    await connectors_repo.create_slack_configuration(
        session,
        connector_id=connector_id,
        slack_team_id=str(team["id"]),
        bot_enabled=False,
    )
    await session.commit()
    logger.info("connector_created connector_id=%s provider=%s team_id=%s", connector_id, provider, team["id"])

    launch = await launcher.launch_sync_workflow(connector_id)
    if launch.is_err():
        return Err(launch.error)
    return Ok(connector_id)


async def get_connector(session: AsyncSession, connector_id: str) -> Result[Connector]:
    connector = await connectors_repo.get_connector(session, connector_id)
    if connector is None:
        return Err(NotFoundError("Connector not found"))
    return Ok(connector)


async def update_connector(
    session: AsyncSession,
    connector_id: str,
    *,
    connection_id: str | None = None,
    default_new_resource_permission: str | None = None,
) -> Result[str]:
    connector = await connectors_repo.get_connector(session, connector_id)
    if connector is None:
        return Err(NotFoundError("Connector not found"))
    configuration = await connectors_repo.get_slack_configuration(session, connector_id)
    if configuration is None:
        return Err(NotFoundError("Slack configuration not found"))
    if default_new_resource_permission and not is_connector_permission(default_new_resource_permission):
        return Err(InvalidRequestError(f"Invalid permission: {default_new_resource_permission}"))

    if connection_id:
        try:
            team_id = await factory.get_credential_broker().get_connection_team_id(connection_id)
        except ConnectorsError as exc:
            return Err(exc)
        if not team_id or team_id != configuration.slack_team_id:
            return Err(OAuthTargetMismatchError("Cannot change the Slack Team of a Data Source"))
        connector.connection_id = connection_id
    if default_new_resource_permission:
        connector.default_new_resource_permission = default_new_resource_permission
    await session.commit()
    logger.info("connector_updated connector_id=%s connection_changed=%s", connector_id, bool(connection_id))
    return Ok(connector.id)


async def stop_connector(session: AsyncSession, connector_id: str) -> Result[str]:
    connector = await connectors_repo.get_connector(session, connector_id)
    if connector is None:
        return Err(NotFoundError("Connector not found"))
    if connector.state == "paused":
        return Ok(connector.id)
    try:
        mark_paused(connector)
    except ConnectorStateError as exc:
        return Err(exc)
    await session.commit()
    return Ok(connector.id)


async def resume_connector(
    session: AsyncSession,
    connector_id: str,
    *,
    launcher: SyncLauncher | None = None,
) -> Result[str]:
    launcher = launcher or queue
    connector = await connectors_repo.get_connector(session, connector_id)
    if connector is None:
        return Err(NotFoundError("Connector not found"))
    if connector.state not in HALTED_STATES:
        return Ok(connector.id)
    # Credentials must be valid again before any sync restarts.
    try:
        token = await factory.get_credential_broker().get_access_token(connector.connection_id)
        async with factory.slack_client(token) as client:
            await client.auth_test()
    except AuthExpiredError as exc:
        if connector.state != "errored":
            mark_errored(connector, error_type="oauth_token_revoked")
            await session.commit()
        return Err(exc)
    except ConnectorsError as exc:
        return Err(exc)
    mark_resumed(connector)
    await session.commit()
    launch = await launcher.launch_sync_workflow(connector.id)
    if launch.is_err():
        return Err(launch.error)
    logger.info("connector_resumed connector_id=%s", connector_id)
    return Ok(connector.id)


async def sync_connector(
    session: AsyncSession,
    connector_id: str,
    *,
    launcher: SyncLauncher | None = None,
) -> Result[str]:
    # Force a full resync; identical pending requests coalesce into one job.
    launcher = launcher or queue
    connector = await connectors_repo.get_connector(session, connector_id)
    if connector is None:
        return Err(NotFoundError("Connector not found"))
    if connector.state in HALTED_STATES:
        return Err(ConnectorStateError(f"Connector is {connector.state}; resume it first"))
    return await launcher.launch_sync_workflow(connector.id)


async def revoke_external_authorization(
    connection_id: str,
    *,
    team_id: str | None = None,
    uninstall_app: bool = True,
) -> Result[None]:
    """Uninstall the Slack app (optional) and delete the Nango connection."""
    broker = factory.get_credential_broker()
    try:
        if uninstall_app:
            settings = get_settings()
            client_id = settings.slack_client_id or require_setting("slack_client_id")
            client_secret = settings.slack_client_secret or require_setting("slack_client_secret")
            token = await broker.get_access_token(connection_id)
            async with factory.slack_client(token) as client:
                await client.uninstall_app(client_id=client_id, client_secret=client_secret)
        await broker.revoke(connection_id)
    except ConnectorsError as exc:
        # Missing Slack app secrets surface here too; the operator retries once fixed.
        logger.error(
            "external_revoke_failed connection_id=%s team_id=%s error=%s",
            connection_id,
            team_id,
            exc,
        )
        return Err(
            ExternalRevokeError(
                f"Could not revoke the external authorization: {exc}",
                connection_id=connection_id,
                team_id=team_id,
            )
        )
    logger.info("external_revoke_done connection_id=%s team_id=%s", connection_id, team_id)
    return Ok(None)


async def _delete_local_rows(session: AsyncSession, connector_id: str) -> None:
    await resources_repo.delete_all_for_connector(session, connector_id)
    await sync_state_repo.delete_all_for_connector(session, connector_id)
    await connectors_repo.delete_connector_row(session, connector_id)


async def delete_connector(
    session: AsyncSession,
    connector_id: str,
    *,
    uninstall_app: bool = True,
) -> Result[None]:
    connector = await connectors_repo.get_connector(session, connector_id)
    if connector is None:
        return Err(NotFoundError("Connector not found"))
    configuration = await connectors_repo.get_slack_configuration(session, connector_id)
    connection_id = connector.connection_id
    team_id = configuration.slack_team_id if configuration else None
    # Count before deleting: the revoke only happens for the last connector of a team.
    live = await connectors_repo.count_slack_configurations_for_team(session, team_id) if team_id else 0
    await _delete_local_rows(session, connector_id)
    await session.commit()
    logger.info("connector_deleted connector_id=%s team_id=%s", connector_id, team_id)

    if team_id and live > 1:
        logger.info(
            "external_revoke_skipped connector_id=%s team_id=%s active_configurations=%s",
            connector_id,
            team_id,
            live - 1,
        )
        return Ok(None)
    return await revoke_external_authorization(connection_id, team_id=team_id, uninstall_app=uninstall_app)


async def retry_external_revoke(
    session: AsyncSession,
    connection_id: str,
    *,
    team_id: str | None = None,
) -> Result[None]:
    # Re-run only the external part; local rows are already gone.
    if team_id and await connectors_repo.count_slack_configurations_for_team(session, team_id) > 0:
        logger.info("external_revoke_retry_skipped team_id=%s reason=live_configurations", team_id)
        return Ok(None)
    return await revoke_external_authorization(connection_id, team_id=team_id)


async def teardown_uninstalled(team_id: str) -> Result[list[str]]:
    """Delete every connector of a team whose Slack app was uninstalled."""
    deleted: list[str] = []
    async with SessionLocal() as session:
        configurations = await connectors_repo.list_slack_configurations_for_team(session, team_id)
        connectors = [
            connector
            for configuration in configurations
            if (connector := await connectors_repo.get_connector(session, configuration.connector_id)) is not None
        ]
        for connector in connectors:
            if connector.state != "errored":
                mark_errored(connector, error_type="oauth_token_revoked")
        await session.commit()

        failures: list[ExternalRevokeError] = []
        for connector in connectors:
            connection_id = connector.connection_id
            await _delete_local_rows(session, connector.id)
            await session.commit()
            deleted.append(connector.id)
            # The app is already gone upstream; only the Nango connection remains.
            result = await revoke_external_authorization(connection_id, team_id=team_id, uninstall_app=False)
            if result.is_err():
                failures.append(result.error)
    logger.info("team_teardown_done team_id=%s connectors=%s revoke_failures=%s", team_id, len(deleted), len(failures))
    if failures:
        return Err(failures[0])
    return Ok(deleted)
