from __future__ import annotations

import pytest

from dust_connectors.persistence.db import SessionLocal
from dust_connectors.persistence.repos import resources as resources_repo
from dust_connectors.persistence.repos import sync_state as sync_state_repo
from dust_connectors.tests.utils.fakes import seed_connector


ResourceInput = resources_repo.ResourceInput


@pytest.mark.asyncio
async def test_upsert_is_idempotent_and_keeps_permission() -> None:
    await seed_connector("c1")
    async with SessionLocal() as session:
        await resources_repo.upsert(session, "c1", ResourceInput("C1", "general"), default_permission="read")
        await session.commit()
    async with SessionLocal() as session:
        row = await resources_repo.get_resource(session, "c1", "C1")
        await resources_repo.update_permission(session, row, "none")
        await session.commit()
    async with SessionLocal() as session:
        # Re-discovery updates metadata only.
        await resources_repo.upsert(session, "c1", ResourceInput("C1", "general-renamed"), default_permission="read")
        await session.commit()
        rows = await resources_repo.list_by_connector(session, "c1")
    assert len(rows) == 1
    assert rows[0].title == "general-renamed"
    assert rows[0].permission == "none"


@pytest.mark.asyncio
async def test_ancestors_titles_and_children() -> None:
    await seed_connector("c1")
    async with SessionLocal() as session:
        await resources_repo.upsert_many(
            session,
            "c1",
            [
                ResourceInput("root", "Root", resource_type="folder"),
                ResourceInput("mid", "Mid", resource_type="folder", parent_external_id="root"),
                ResourceInput("leaf", "Leaf", resource_type="file", parent_external_id="mid"),
            ],
            default_permission="read",
        )
        await session.commit()
    async with SessionLocal() as session:
        chains = await resources_repo.ancestors(session, "c1", ["leaf", "root", "ghost"])
        titles = await resources_repo.titles(session, "c1", ["leaf", "ghost"])
        roots = await resources_repo.list_by_connector(session, "c1", parent_external_id=None)
        children = await resources_repo.list_by_connector(session, "c1", parent_external_id="root")
    assert chains == {"leaf": ["mid", "root"], "root": [], "ghost": []}
    assert titles == {"leaf": "Leaf"}
    assert [row.external_id for row in roots] == ["root"]
    assert [row.external_id for row in children] == ["mid"]


@pytest.mark.asyncio
async def test_delete_cascades_to_descendants_documents_and_cursors() -> None:
    await seed_connector("c1")
    async with SessionLocal() as session:
        await resources_repo.upsert_many(
            session,
            "c1",
            [
                ResourceInput("root", "Root", resource_type="folder"),
                ResourceInput("child", "Child", resource_type="file", parent_external_id="root"),
                ResourceInput("other", "Other"),
            ],
            default_permission="read",
        )
        await resources_repo.record_document(
            session, "c1", resource_external_id="child", document_id="doc-child", external_ts="1.0"
        )
        await resources_repo.record_document(
            session, "c1", resource_external_id="other", document_id="doc-other", external_ts="1.0"
        )
        await sync_state_repo.set_cursor(session, "c1", "child", "1.0")
        await session.commit()

    async with SessionLocal() as session:
        doomed = await resources_repo.delete(session, "c1", ["root"])
        await session.commit()
    assert sorted(doomed) == ["child", "root"]

    async with SessionLocal() as session:
        remaining = await resources_repo.list_by_connector(session, "c1")
        docs = await resources_repo.list_documents(session, "c1")
        cursor = await sync_state_repo.get_cursor(session, "c1", "child")
    assert [row.external_id for row in remaining] == ["other"]
    assert [doc.document_id for doc in docs] == ["doc-other"]
    assert cursor is None


@pytest.mark.asyncio
async def test_cursor_only_moves_forward() -> None:
    await seed_connector("c1", channels={"C1": ("general", "read")})
    async with SessionLocal() as session:
        await sync_state_repo.set_cursor(session, "c1", "C1", "1700000100.000000")
        await sync_state_repo.set_cursor(session, "c1", "C1", "1700000050.000000")
        await session.commit()
        assert await sync_state_repo.get_cursor(session, "c1", "C1") == "1700000100.000000"
