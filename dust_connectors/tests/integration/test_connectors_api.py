from __future__ import annotations

import pytest
from httpx import ASGITransport, AsyncClient

from dust_connectors.apps.api.main import create_app
from dust_connectors.core.errors import ProviderError
from dust_connectors.persistence.db import SessionLocal
from dust_connectors.persistence.repos import resources as resources_repo
from dust_connectors.tests.utils.fakes import install_fakes, install_launcher, seed_connector


_AUTH = {"Authorization": "Bearer test-api-secret"}


def _client() -> AsyncClient:
    return AsyncClient(transport=ASGITransport(app=create_app()), base_url="http://test")


@pytest.mark.asyncio
async def test_requests_without_the_api_secret_are_rejected() -> None:
    async with _client() as client:
        missing = await client.get("/connectors/c1")
        wrong = await client.get("/connectors/c1", headers={"Authorization": "Bearer nope"})
        health = await client.get("/health")
    assert missing.status_code == 401
    assert missing.json()["error"]["type"] == "unauthorized"
    assert wrong.status_code == 401
    assert health.json() == {"status": "ok"}


@pytest.mark.asyncio
async def test_create_then_get_connector(monkeypatch) -> None:
    fakes = install_fakes(monkeypatch)
    fakes.broker.add_connection("conn-1")
    launcher = install_launcher(monkeypatch)
    async with _client() as client:
        created = await client.post(
            "/connectors/create/slack",
            headers=_AUTH,
            json={
                "workspaceId": "ws1",
                "workspaceAPIKey": "sk",
                "dataSourceName": "managed-slack",
                "connectionId": "conn-1",
            },
        )
        body = created.json()
        fetched = await client.get(f"/connectors/{body['id']}", headers=_AUTH)
    assert created.status_code == 200
    assert body["type"] == "slack"
    assert body["state"] == "idle"
    assert body["defaultNewResourcePermission"] == "read_write"
    assert fetched.json()["workspaceId"] == "ws1"
    assert len(launcher.of_kind("sync")) == 1


@pytest.mark.asyncio
async def test_create_rejects_unknown_provider_and_bad_body(monkeypatch) -> None:
    install_fakes(monkeypatch)
    install_launcher(monkeypatch)
    async with _client() as client:
        unknown = await client.post(
            "/connectors/create/notion",
            headers=_AUTH,
            json={"workspaceId": "ws1", "workspaceAPIKey": "sk", "dataSourceName": "ds", "connectionId": "c"},
        )
        incomplete = await client.post("/connectors/create/slack", headers=_AUTH, json={"workspaceId": "ws1"})
    assert unknown.status_code == 400
    assert unknown.json()["error"]["type"] == "connector_provider_not_supported"
    assert incomplete.status_code == 400
    assert incomplete.json()["error"]["type"] == "invalid_request_error"


@pytest.mark.asyncio
async def test_unknown_connector_returns_not_found_envelope() -> None:
    async with _client() as client:
        response = await client.get("/connectors/missing", headers=_AUTH)
    assert response.status_code == 404
    assert response.json() == {
        "error": {"type": "connector_not_found", "message": "Connector not found"}
    }


@pytest.mark.asyncio
async def test_permissions_roundtrip(monkeypatch) -> None:
    launcher = install_launcher(monkeypatch)
    await seed_connector(
        "c1",
        channels={"A": ("alpha", "read"), "B": ("bravo", "write"), "D": ("delta", "none")},
    )
    async with _client() as client:
        readable = await client.get("/connectors/c1/permissions", params={"filter": "read"}, headers=_AUTH)
        updated = await client.post("/connectors/c1/permissions", headers=_AUTH, json={"D": "read", "A": "none"})
        everything = await client.get("/connectors/c1/permissions", headers=_AUTH)
        bad = await client.get("/connectors/c1/permissions", params={"filter": "none"}, headers=_AUTH)

    assert [resource["internalId"] for resource in readable.json()["resources"]] == ["A"]
    resource = readable.json()["resources"][0]
    assert resource["provider"] == "slack"
    assert resource["sourceUrl"] == "https://app.slack.com/client/T1/A"
    assert resource["parentInternalId"] is None
    assert updated.json() == {"connectorId": "c1"}
    permissions = {item["internalId"]: item["permission"] for item in everything.json()["resources"]}
    assert permissions == {"A": "none", "B": "write", "D": "read"}
    assert [call["channel_id"] for call in launcher.of_kind("bot_joined")] == ["D"]
    assert len(launcher.of_kind("garbage_collect")) == 1
    assert bad.status_code == 400


@pytest.mark.asyncio
async def test_resource_titles_and_parents() -> None:
    await seed_connector("c1")
    async with SessionLocal() as session:
        await resources_repo.upsert_many(
            session,
            "c1",
            [
                resources_repo.ResourceInput("root", "Root", resource_type="folder"),
                resources_repo.ResourceInput("leaf", "Leaf", resource_type="file", parent_external_id="root"),
            ],
            default_permission="read",
        )
        await session.commit()
    async with _client() as client:
        titles = await client.post(
            "/connectors/c1/resources/titles",
            headers=_AUTH,
            json={"resourceInternalIds": ["leaf", "ghost"]},
        )
        parents = await client.post(
            "/connectors/c1/resources/parents",
            headers=_AUTH,
            json={"resourceInternalIds": ["leaf"]},
        )
        children = await client.get("/connectors/c1/permissions", params={"parentId": "root"}, headers=_AUTH)
    assert titles.json() == {"resources": {"leaf": "Leaf"}}
    assert parents.json() == {"resources": {"leaf": ["root"]}}
    assert [item["internalId"] for item in children.json()["resources"]] == ["leaf"]


@pytest.mark.asyncio
async def test_bot_enabled_toggle() -> None:
    await seed_connector("c1")
    async with _client() as client:
        initial = await client.get("/connectors/c1/bot_enabled", headers=_AUTH)
        toggled = await client.post("/connectors/c1/bot_enabled", headers=_AUTH, json={"botEnabled": True})
        after = await client.get("/connectors/c1/bot_enabled", headers=_AUTH)
        missing = await client.get("/connectors/nope/bot_enabled", headers=_AUTH)
    assert initial.json() == {"botEnabled": False}
    assert toggled.json() == {"botEnabled": True}
    assert after.json() == {"botEnabled": True}
    assert missing.status_code == 404


@pytest.mark.asyncio
async def test_stop_sync_and_delete(monkeypatch) -> None:
    fakes = install_fakes(monkeypatch)
    fakes.broker.add_connection("conn-c1")
    launcher = install_launcher(monkeypatch)
    await seed_connector("c1")
    async with _client() as client:
        synced = await client.post("/connectors/sync/c1", headers=_AUTH)
        stopped = await client.post("/connectors/stop/c1", headers=_AUTH)
        blocked = await client.post("/connectors/sync/c1", headers=_AUTH)
        deleted = await client.delete("/connectors/delete/c1", headers=_AUTH)
        gone = await client.get("/connectors/c1", headers=_AUTH)
    assert synced.json() == {"workflowId": "sync-1"}
    assert stopped.json() == {"connectorId": "c1"}
    assert blocked.status_code == 409
    assert deleted.json() == {"success": True}
    assert gone.status_code == 404
    assert fakes.broker.revoked == ["conn-c1"]
    assert len(launcher.of_kind("sync")) == 1


@pytest.mark.asyncio
async def test_delete_with_failed_revoke_is_bad_gateway(monkeypatch) -> None:
    fakes = install_fakes(monkeypatch)
    fakes.broker.add_connection("conn-c1")
    fakes.broker.revoke_error = ProviderError("nango down", code="nango_error")
    await seed_connector("c1")
    async with _client() as client:
        response = await client.delete("/connectors/delete/c1", headers=_AUTH)
        gone = await client.get("/connectors/c1", headers=_AUTH)
    assert response.status_code == 502
    assert response.json()["error"]["type"] == "external_revoke_failed"
    # Local rows are removed before the external revoke runs.
    assert gone.status_code == 404


@pytest.mark.asyncio
async def test_ops_metrics_requires_secret_and_reports_counters() -> None:
    async with _client() as client:
        await client.get("/health")
        anonymous = await client.get("/ops/metrics")
        metrics = await client.get("/ops/metrics", headers=_AUTH)
    assert anonymous.status_code == 401
    body = metrics.json()
    assert body["queue_depth"] == 0
    assert body["requests"]["count"] >= 1
