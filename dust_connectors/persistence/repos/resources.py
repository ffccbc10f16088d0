"""Resource mirror store.

Persists the mapping of external provider objects (channels, pages, files) to
local permission/metadata rows. Every mutation runs inside the caller's
session so connector creation and teardown stay atomic with sibling rows.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable

from sqlalchemy import delete as sa_delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from dust_connectors.domain.models import ConnectorResource, SyncCursor, SyncedDocument


class _AnyParent:
    def __repr__(self) -> str:
        return "ANY_PARENT"


# Sentinel distinguishing "no parent filter" from "root resources only" (None).
ANY_PARENT = _AnyParent()


@dataclass(frozen=True)
class ResourceInput:
    # Provider-neutral description of a discovered external resource.
    external_id: str
    title: str
    resource_type: str = "channel"
    parent_external_id: str | None = None


async def upsert_many(
    session: AsyncSession,
    connector_id: str,
    resources: Iterable[ResourceInput],
    *,
    default_permission: str,
) -> list[ConnectorResource]:
    # Key rows by (connector_id, external_id); repeated calls converge to one row.
    by_id: dict[str, ResourceInput] = {}
    for resource in resources:
        # Later entries for the same id win, matching last-write-wins ordering.
        by_id[resource.external_id] = resource
    if not by_id:
        return []
    existing = {
        row.external_id: row
        for row in await get_many(session, connector_id, list(by_id))
    }
    rows: list[ConnectorResource] = []
    for external_id, resource in by_id.items():
        row = existing.get(external_id)
        if row is None:
            row = ConnectorResource(
                connector_id=connector_id,
                external_id=external_id,
                parent_external_id=resource.parent_external_id,
                resource_type=resource.resource_type,
                title=resource.title,
                permission=default_permission,
            )
            session.add(row)
        else:
            # Permission is owned by the permission engine; only metadata follows the provider.
            if row.title != resource.title:
                row.title = resource.title
            if row.parent_external_id != resource.parent_external_id:
                row.parent_external_id = resource.parent_external_id
            if row.resource_type != resource.resource_type:
                row.resource_type = resource.resource_type
        rows.append(row)
    await session.flush()
    return rows


async def upsert(
    session: AsyncSession,
    connector_id: str,
    resource: ResourceInput,
    *,
    default_permission: str,
) -> ConnectorResource:
    rows = await upsert_many(session, connector_id, [resource], default_permission=default_permission)
    return rows[0]


async def get_resource(session: AsyncSession, connector_id: str, external_id: str) -> ConnectorResource | None:
    result = await session.execute(
        select(ConnectorResource).where(
            ConnectorResource.connector_id == connector_id,
            ConnectorResource.external_id == external_id,
        )
    )
    return result.scalar_one_or_none()


async def get_many(session: AsyncSession, connector_id: str, external_ids: list[str]) -> list[ConnectorResource]:
    if not external_ids:
        return []
    result = await session.execute(
        select(ConnectorResource).where(
            ConnectorResource.connector_id == connector_id,
            ConnectorResource.external_id.in_(external_ids),
        )
    )
    return list(result.scalars().all())


async def list_by_connector(
    session: AsyncSession,
    connector_id: str,
    *,
    permissions: Iterable[str] | None = None,
    parent_external_id: str | None | _AnyParent = ANY_PARENT,
) -> list[ConnectorResource]:
    stmt = select(ConnectorResource).where(ConnectorResource.connector_id == connector_id)
    if permissions is not None:
        stmt = stmt.where(ConnectorResource.permission.in_(sorted(set(permissions))))
    if parent_external_id is None:
        stmt = stmt.where(ConnectorResource.parent_external_id.is_(None))
    elif not isinstance(parent_external_id, _AnyParent):
        stmt = stmt.where(ConnectorResource.parent_external_id == parent_external_id)
    # Newest first, then title, so the UI lists freshly discovered resources on top.
    stmt = stmt.order_by(
        ConnectorResource.created_at.desc(),
        ConnectorResource.title.asc(),
        ConnectorResource.id.desc(),
    )
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def update_permission(session: AsyncSession, resource: ConnectorResource, permission: str) -> None:
    # The only write path for the permission column.
    resource.permission = permission
    await session.flush()


async def descendant_ids(session: AsyncSession, connector_id: str, external_ids: list[str]) -> list[str]:
    # Walk the parent linkage breadth-first so children go with their parent.
    collected: list[str] = list(dict.fromkeys(external_ids))
    seen = set(collected)
    frontier = list(collected)
    while frontier:
        result = await session.execute(
            select(ConnectorResource.external_id).where(
                ConnectorResource.connector_id == connector_id,
                ConnectorResource.parent_external_id.in_(frontier),
            )
        )
        frontier = [child for child in result.scalars().all() if child not in seen]
        seen.update(frontier)
        collected.extend(frontier)
    return collected


async def delete(session: AsyncSession, connector_id: str, external_ids: list[str]) -> list[str]:
    # Delete resources with all descendants, their document rows and cursors in one transaction.
    if not external_ids:
        return []
    doomed = await descendant_ids(session, connector_id, external_ids)
    await session.execute(
        sa_delete(SyncedDocument).where(
            SyncedDocument.connector_id == connector_id,
            SyncedDocument.resource_external_id.in_(doomed),
        )
    )
    await session.execute(
        sa_delete(SyncCursor).where(
            SyncCursor.connector_id == connector_id,
            SyncCursor.resource_external_id.in_(doomed),
        )
    )
    await session.execute(
        sa_delete(ConnectorResource).where(
            ConnectorResource.connector_id == connector_id,
            ConnectorResource.external_id.in_(doomed),
        )
    )
    return doomed


async def delete_all_for_connector(session: AsyncSession, connector_id: str) -> None:
    await session.execute(sa_delete(SyncedDocument).where(SyncedDocument.connector_id == connector_id))
    await session.execute(sa_delete(SyncCursor).where(SyncCursor.connector_id == connector_id))
    await session.execute(sa_delete(ConnectorResource).where(ConnectorResource.connector_id == connector_id))


async def titles(session: AsyncSession, connector_id: str, external_ids: list[str]) -> dict[str, str]:
    return {row.external_id: row.title for row in await get_many(session, connector_id, external_ids)}


async def ancestors(session: AsyncSession, connector_id: str, external_ids: list[str]) -> dict[str, list[str]]:
    # Map each id to its ancestor chain, nearest parent first.
    parent_of: dict[str, str | None] = {}
    frontier = set(external_ids)
    while frontier:
        rows = await get_many(session, connector_id, sorted(frontier))
        for row in rows:
            parent_of[row.external_id] = row.parent_external_id
        # Ids unknown to the mirror yield no row and terminate their chain.
        frontier = {
            row.parent_external_id
            for row in rows
            if row.parent_external_id and row.parent_external_id not in parent_of
        }
    chains: dict[str, list[str]] = {}
    for external_id in external_ids:
        chain: list[str] = []
        current = parent_of.get(external_id)
        while current and current not in chain and current != external_id:
            chain.append(current)
            current = parent_of.get(current)
        chains[external_id] = chain
    return chains


async def list_documents(
    session: AsyncSession,
    connector_id: str,
    *,
    resource_external_ids: list[str] | None = None,
) -> list[SyncedDocument]:
    stmt = select(SyncedDocument).where(SyncedDocument.connector_id == connector_id)
    if resource_external_ids is not None:
        stmt = stmt.where(SyncedDocument.resource_external_id.in_(resource_external_ids))
    result = await session.execute(stmt.order_by(SyncedDocument.id))
    return list(result.scalars().all())


async def record_document(
    session: AsyncSession,
    connector_id: str,
    *,
    resource_external_id: str,
    document_id: str,
    external_ts: str | None,
) -> SyncedDocument:
    # Idempotent per document id; re-ingesting the same document only bumps its ts.
    result = await session.execute(
        select(SyncedDocument).where(
            SyncedDocument.connector_id == connector_id,
            SyncedDocument.document_id == document_id,
        )
    )
    row = result.scalar_one_or_none()
    if row is None:
        row = SyncedDocument(
            connector_id=connector_id,
            resource_external_id=resource_external_id,
            document_id=document_id,
            external_ts=external_ts,
        )
        session.add(row)
    else:
        row.external_ts = external_ts
    await session.flush()
    return row


async def delete_document_row(session: AsyncSession, connector_id: str, document_id: str) -> None:
    await session.execute(
        sa_delete(SyncedDocument).where(
            SyncedDocument.connector_id == connector_id,
            SyncedDocument.document_id == document_id,
        )
    )
