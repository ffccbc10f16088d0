from __future__ import annotations

import pytest

from dust_connectors.core.config import get_settings
from dust_connectors.core.errors import InvalidRequestError, NotFoundError
from dust_connectors.persistence.db import SessionLocal
from dust_connectors.persistence.repos import connectors as connectors_repo
from dust_connectors.persistence.repos import resources as resources_repo
from dust_connectors.services import permissions
from dust_connectors.tests.utils.fakes import FakeLauncher, seed_connector


_CHANNELS = {
    "A": ("alpha", "read"),
    "B": ("bravo", "write"),
    "C": ("charlie", "read_write"),
    "D": ("delta", "none"),
}


async def _list(connector_id: str, permission_filter: str | None) -> set[str]:
    async with SessionLocal() as session:
        result = await permissions.list_permissions(session, connector_id, permission_filter=permission_filter)
    assert result.is_ok()
    return {view.internal_id for view in result.value}


@pytest.mark.asyncio
async def test_list_permissions_filter_expansion() -> None:
    await seed_connector("c1", channels=_CHANNELS)
    assert await _list("c1", "read") == {"A", "C"}
    assert await _list("c1", "write") == {"B", "C"}
    assert await _list("c1", "read_write") == {"C"}
    assert await _list("c1", None) == {"A", "B", "C", "D"}


@pytest.mark.asyncio
async def test_list_permissions_view_and_errors() -> None:
    await seed_connector("c1", team_id="T9", channels={"A": ("alpha", "read")})
    async with SessionLocal() as session:
        result = await permissions.list_permissions(session, "c1")
        bad_filter = await permissions.list_permissions(session, "c1", permission_filter="none")
        missing = await permissions.list_permissions(session, "nope")
    view = result.value[0]
    assert view.provider == "slack"
    assert view.title == "alpha"
    assert view.type == "channel"
    assert view.parent_internal_id is None
    assert view.expandable is False
    assert view.source_url == "https://app.slack.com/client/T9/A"
    assert isinstance(bad_filter.error, InvalidRequestError)
    assert isinstance(missing.error, NotFoundError)


@pytest.mark.asyncio
async def test_granting_read_launches_one_bot_join_per_channel() -> None:
    await seed_connector("c1", channels=_CHANNELS)
    launcher = FakeLauncher()
    async with SessionLocal() as session:
        result = await permissions.set_permissions(
            session, "c1", {"B": "read_write", "D": "read", "A": "read_write"}, launcher=launcher
        )
    assert result.is_ok()
    assert sorted(result.value.updated) == ["A", "B", "D"]
    # A already had read access: only B and D are newly readable.
    assert sorted(call["channel_id"] for call in launcher.of_kind("bot_joined")) == ["B", "D"]
    assert launcher.of_kind("garbage_collect") == []

    # Applying the same map again changes nothing and launches nothing.
    async with SessionLocal() as session:
        again = await permissions.set_permissions(
            session, "c1", {"B": "read_write", "D": "read", "A": "read_write"}, launcher=launcher
        )
    assert again.value.updated == []
    assert len(launcher.of_kind("bot_joined")) == 2


@pytest.mark.asyncio
async def test_revoking_read_triggers_single_garbage_collect() -> None:
    await seed_connector("c1", channels=_CHANNELS)
    launcher = FakeLauncher()
    async with SessionLocal() as session:
        result = await permissions.set_permissions(session, "c1", {"A": "none", "C": "write"}, launcher=launcher)
    assert result.value.gc_triggered
    assert len(launcher.of_kind("garbage_collect")) == 1
    async with SessionLocal() as session:
        rows = {row.external_id: row.permission for row in await resources_repo.list_by_connector(session, "c1")}
    assert rows["A"] == "none"
    assert rows["C"] == "write"


@pytest.mark.asyncio
async def test_scheduled_gc_mode_defers_to_tick(monkeypatch) -> None:
    monkeypatch.setenv("GC_TRIGGER_MODE", "scheduled")
    get_settings.cache_clear()
    await seed_connector("c1", channels=_CHANNELS)
    launcher = FakeLauncher()
    async with SessionLocal() as session:
        result = await permissions.set_permissions(session, "c1", {"A": "none"}, launcher=launcher)
    assert result.value.gc_deferred
    assert launcher.of_kind("garbage_collect") == []
    async with SessionLocal() as session:
        connector = await connectors_repo.get_connector(session, "c1")
    assert connector.gc_pending is True


@pytest.mark.asyncio
async def test_unknown_ids_are_skipped_and_invalid_values_rejected() -> None:
    await seed_connector("c1", channels=_CHANNELS)
    launcher = FakeLauncher()
    async with SessionLocal() as session:
        result = await permissions.set_permissions(session, "c1", {"ghost": "read"}, launcher=launcher)
        invalid = await permissions.set_permissions(session, "c1", {"A": "owner"}, launcher=launcher)
    assert result.value.skipped == ["ghost"]
    assert launcher.calls == []
    assert isinstance(invalid.error, InvalidRequestError)


@pytest.mark.asyncio
async def test_launch_failure_is_returned_after_rows_committed() -> None:
    await seed_connector("c1", channels=_CHANNELS)
    launcher = FakeLauncher(fail_kinds={"bot_joined"})
    async with SessionLocal() as session:
        result = await permissions.set_permissions(session, "c1", {"D": "read"}, launcher=launcher)
    assert result.is_err()
    async with SessionLocal() as session:
        row = await resources_repo.get_resource(session, "c1", "D")
    assert row.permission == "read"


@pytest.mark.asyncio
async def test_paused_connector_updates_rows_without_side_effects() -> None:
    await seed_connector("c1", state="paused", channels=_CHANNELS)
    launcher = FakeLauncher()
    async with SessionLocal() as session:
        result = await permissions.set_permissions(session, "c1", {"D": "read"}, launcher=launcher)
    assert result.value.updated == ["D"]
    assert launcher.of_kind("bot_joined") == []
