from __future__ import annotations

from datetime import datetime
from typing import TypeVar

from fastapi import APIRouter, Body, Depends, Query
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from sqlalchemy.ext.asyncio import AsyncSession

from dust_connectors.apps.api.deps import get_db, require_api_secret
from dust_connectors.core.result import Result
from dust_connectors.domain.models import Connector
from dust_connectors.services import bot, lifecycle, permissions


router = APIRouter(prefix="/connectors", tags=["connectors"], dependencies=[Depends(require_api_secret)])

T = TypeVar("T")


class CamelModel(BaseModel):
    # The front service speaks camelCase JSON.
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ConnectorCreateRequest(CamelModel):
    workspace_id: str = Field(min_length=1)
    workspace_api_key: str = Field(min_length=1, alias="workspaceAPIKey")
    data_source_name: str = Field(min_length=1)
    connection_id: str = Field(min_length=1)


class ConnectorUpdateRequest(CamelModel):
    connection_id: str | None = None
    default_new_resource_permission: str | None = None


class ConnectorResponse(CamelModel):
    id: str
    type: str
    workspace_id: str
    data_source_name: str
    state: str
    error_type: str | None
    last_sync_status: str | None
    last_sync_start_time: datetime | None
    last_sync_finished_time: datetime | None
    last_sync_successful_time: datetime | None
    first_successful_sync_time: datetime | None
    default_new_resource_permission: str


class ConnectorIdResponse(CamelModel):
    connector_id: str


class WorkflowResponse(CamelModel):
    workflow_id: str


class DeleteResponse(CamelModel):
    success: bool


class ResourceResponse(CamelModel):
    provider: str
    internal_id: str
    parent_internal_id: str | None
    type: str
    title: str
    source_url: str | None
    expandable: bool
    permission: str


class PermissionsResponse(CamelModel):
    resources: list[ResourceResponse]


class ResourceIdsRequest(CamelModel):
    resource_internal_ids: list[str]


class ResourceParentsResponse(CamelModel):
    resources: dict[str, list[str]]


class ResourceTitlesResponse(CamelModel):
    resources: dict[str, str]


class BotEnabledRequest(CamelModel):
    bot_enabled: bool


class BotEnabledResponse(CamelModel):
    bot_enabled: bool


def _unwrap(result: Result[T]) -> T:
    # Expected failures travel as Err values; the exception handlers map their types.
    if result.is_err():
        raise result.error
    return result.value


def _to_response(connector: Connector) -> ConnectorResponse:
    return ConnectorResponse(
        id=connector.id,
        type=connector.type,
        workspace_id=connector.workspace_id,
        data_source_name=connector.data_source_name,
        state=connector.state,
        error_type=connector.error_type,
        last_sync_status=connector.last_sync_status,
        last_sync_start_time=connector.last_sync_started_at,
        last_sync_finished_time=connector.last_sync_finished_at,
        last_sync_successful_time=connector.last_sync_success_at,
        first_successful_sync_time=connector.first_sync_completed_at,
        default_new_resource_permission=connector.default_new_resource_permission,
    )


async def _load(db: AsyncSession, connector_id: str) -> ConnectorResponse:
    return _to_response(_unwrap(await lifecycle.get_connector(db, connector_id)))


@router.post("/create/{provider}", response_model=ConnectorResponse)
async def create_connector(
    provider: str,
    payload: ConnectorCreateRequest,
    db: AsyncSession = Depends(get_db),
) -> ConnectorResponse:
    connector_id = _unwrap(
        await lifecycle.create_connector(
            db,
            provider,
            workspace_id=payload.workspace_id,
            workspace_api_key=payload.workspace_api_key,
            data_source_name=payload.data_source_name,
            connection_id=payload.connection_id,
        )
    )
    return await _load(db, connector_id)


@router.post("/update/{connector_id}", response_model=ConnectorIdResponse)
async def update_connector(
    connector_id: str,
    payload: ConnectorUpdateRequest,
    db: AsyncSession = Depends(get_db),
) -> ConnectorIdResponse:
    updated = _unwrap(
        await lifecycle.update_connector(
            db,
            connector_id,
            connection_id=payload.connection_id,
            default_new_resource_permission=payload.default_new_resource_permission,
        )
    )
    return ConnectorIdResponse(connector_id=updated)


@router.post("/stop/{connector_id}", response_model=ConnectorIdResponse)
async def stop_connector(connector_id: str, db: AsyncSession = Depends(get_db)) -> ConnectorIdResponse:
    return ConnectorIdResponse(connector_id=_unwrap(await lifecycle.stop_connector(db, connector_id)))


@router.post("/resume/{connector_id}", response_model=ConnectorIdResponse)
async def resume_connector(connector_id: str, db: AsyncSession = Depends(get_db)) -> ConnectorIdResponse:
    return ConnectorIdResponse(connector_id=_unwrap(await lifecycle.resume_connector(db, connector_id)))


@router.delete("/delete/{connector_id}", response_model=DeleteResponse)
async def delete_connector(connector_id: str, db: AsyncSession = Depends(get_db)) -> DeleteResponse:
    # A failed external revoke surfaces as 502 after local rows are already gone.
    _unwrap(await lifecycle.delete_connector(db, connector_id))
    return DeleteResponse(success=True)


@router.post("/sync/{connector_id}", response_model=WorkflowResponse)
async def sync_connector(connector_id: str, db: AsyncSession = Depends(get_db)) -> WorkflowResponse:
    return WorkflowResponse(workflow_id=_unwrap(await lifecycle.sync_connector(db, connector_id)))


@router.get("/{connector_id}", response_model=ConnectorResponse)
async def get_connector(connector_id: str, db: AsyncSession = Depends(get_db)) -> ConnectorResponse:
    return await _load(db, connector_id)


@router.get("/{connector_id}/permissions", response_model=PermissionsResponse)
async def get_connector_permissions(
    connector_id: str,
    parent_id: str | None = Query(default=None, alias="parentId"),
    permission_filter: str | None = Query(default=None, alias="filter"),
    db: AsyncSession = Depends(get_db),
) -> PermissionsResponse:
    views = _unwrap(
        await permissions.list_permissions(
            db,
            connector_id,
            parent_id=parent_id,
            permission_filter=permission_filter,
        )
    )
    return PermissionsResponse(
        resources=[
            ResourceResponse(
                provider=view.provider,
                internal_id=view.internal_id,
                parent_internal_id=view.parent_internal_id,
                type=view.type,
                title=view.title,
                source_url=view.source_url,
                expandable=view.expandable,
                permission=view.permission,
            )
            for view in views
        ]
    )


@router.post("/{connector_id}/permissions", response_model=ConnectorIdResponse)
async def set_connector_permissions(
    connector_id: str,
    payload: dict[str, str] = Body(...),
    db: AsyncSession = Depends(get_db),
) -> ConnectorIdResponse:
    # Body is a plain map of resource external id to permission.
    _unwrap(await permissions.set_permissions(db, connector_id, payload))
    return ConnectorIdResponse(connector_id=connector_id)


@router.post("/{connector_id}/resources/parents", response_model=ResourceParentsResponse)
async def get_resources_parents(
    connector_id: str,
    payload: ResourceIdsRequest,
    db: AsyncSession = Depends(get_db),
) -> ResourceParentsResponse:
    parents = _unwrap(await permissions.get_resources_parents(db, connector_id, payload.resource_internal_ids))
    return ResourceParentsResponse(resources=parents)


@router.post("/{connector_id}/resources/titles", response_model=ResourceTitlesResponse)
async def get_resources_titles(
    connector_id: str,
    payload: ResourceIdsRequest,
    db: AsyncSession = Depends(get_db),
) -> ResourceTitlesResponse:
    titles = _unwrap(await permissions.get_resources_titles(db, connector_id, payload.resource_internal_ids))
    return ResourceTitlesResponse(resources=titles)


@router.get("/{connector_id}/bot_enabled", response_model=BotEnabledResponse)
async def get_bot_enabled(connector_id: str, db: AsyncSession = Depends(get_db)) -> BotEnabledResponse:
    return BotEnabledResponse(bot_enabled=_unwrap(await bot.get_bot_enabled(db, connector_id)))


@router.post("/{connector_id}/bot_enabled", response_model=BotEnabledResponse)
async def set_bot_enabled(
    connector_id: str,
    payload: BotEnabledRequest,
    db: AsyncSession = Depends(get_db),
) -> BotEnabledResponse:
    return BotEnabledResponse(bot_enabled=_unwrap(await bot.toggle_bot(db, connector_id, payload.bot_enabled)))
