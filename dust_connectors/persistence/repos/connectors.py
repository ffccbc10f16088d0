from __future__ import annotations

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from dust_connectors.domain.models import ChatBotMessage, Connector, SlackConfiguration


async def get_connector(session: AsyncSession, connector_id: str) -> Connector | None:
    result = await session.execute(select(Connector).where(Connector.id == connector_id))
    return result.scalar_one_or_none()


async def create_connector(
    session: AsyncSession,
    *,
    connector_id: str,
    provider: str,
    connection_id: str,
    workspace_api_key: str,
    workspace_id: str,
    data_source_name: str,
    default_new_resource_permission: str,
) -> Connector:
    # Rows are added to the caller's transaction; commit stays with the caller.
    connector = Connector(
        id=connector_id,
        type=provider,
        connection_id=connection_id,
        workspace_api_key=workspace_api_key,
        workspace_id=workspace_id,
        data_source_name=data_source_name,
        default_new_resource_permission=default_new_resource_permission,
        state="idle",
        gc_pending=False,
    )
    session.add(connector)
    return connector


async def list_connectors(
    session: AsyncSession,
    *,
    states: set[str] | None = None,
    gc_pending: bool | None = None,
) -> list[Connector]:
    stmt = select(Connector)
    if states:
        stmt = stmt.where(Connector.state.in_(sorted(states)))
    if gc_pending is not None:
        stmt = stmt.where(Connector.gc_pending.is_(gc_pending))
    result = await session.execute(stmt.order_by(Connector.created_at, Connector.id))
    return list(result.scalars().all())


async def delete_connector_row(session: AsyncSession, connector_id: str) -> None:
    await session.execute(delete(ChatBotMessage).where(ChatBotMessage.connector_id == connector_id))
    await session.execute(delete(SlackConfiguration).where(SlackConfiguration.connector_id == connector_id))
    await session.execute(delete(Connector).where(Connector.id == connector_id))


async def create_slack_configuration(
    session: AsyncSession,
    *,
    connector_id: str,
    slack_team_id: str,
    bot_enabled: bool = False,
) -> SlackConfiguration:
    configuration = SlackConfiguration(
        connector_id=connector_id,
        slack_team_id=slack_team_id,
        bot_enabled=bot_enabled,
    )
    session.add(configuration)
    return configuration


async def get_slack_configuration(session: AsyncSession, connector_id: str) -> SlackConfiguration | None:
    result = await session.execute(
        select(SlackConfiguration).where(SlackConfiguration.connector_id == connector_id)
    )
    return result.scalar_one_or_none()


async def list_slack_configurations_for_team(
    session: AsyncSession,
    slack_team_id: str,
    *,
    bot_enabled: bool | None = None,
) -> list[SlackConfiguration]:
    # Stable ordering keeps webhook fan-out deterministic.
    stmt = select(SlackConfiguration).where(SlackConfiguration.slack_team_id == slack_team_id)
    if bot_enabled is not None:
        stmt = stmt.where(SlackConfiguration.bot_enabled.is_(bot_enabled))
    result = await session.execute(stmt.order_by(SlackConfiguration.id))
    return list(result.scalars().all())


async def count_slack_configurations_for_team(session: AsyncSession, slack_team_id: str) -> int:
    result = await session.execute(
        select(func.count())
        .select_from(SlackConfiguration)
        .where(SlackConfiguration.slack_team_id == slack_team_id)
    )
    return int(result.scalar() or 0)
