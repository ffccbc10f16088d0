from __future__ import annotations

from urllib.parse import parse_qs

import httpx
import pytest

from dust_connectors.core.errors import AuthExpiredError, NotFoundError, ProviderError, TransientProviderError
from dust_connectors.providers.slack.client import SlackClient, SlackMessage
from dust_connectors.services.resilience import RetryPolicy


_POLICY = RetryPolicy(timeout_ms=1000, max_attempts=3, backoff_ms=1)


def _client(handler) -> SlackClient:
    return SlackClient(
        access_token="xoxb-test",
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
        policy=_POLICY,
        base_url="https://slack.test/api",
    )


@pytest.mark.asyncio
async def test_list_channels_sends_form_params_and_parses_page() -> None:
    seen: dict = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["path"] = request.url.path
        seen["auth"] = request.headers["Authorization"]
        seen["form"] = parse_qs(request.content.decode())
        return httpx.Response(
            200,
            json={
                "ok": True,
                "channels": [{"id": "C1", "name": "general", "is_member": True}],
                "response_metadata": {"next_cursor": "abc"},
            },
        )

    page = await _client(handler).list_channels()
    assert seen["path"] == "/api/conversations.list"
    assert seen["auth"] == "Bearer xoxb-test"
    assert seen["form"]["exclude_archived"] == ["true"]
    assert "cursor" not in seen["form"]
    assert page.next_cursor == "abc"
    assert page.channels[0].name == "general"
    assert page.channels[0].is_member is True


@pytest.mark.asyncio
async def test_rate_limit_is_retried_after_retry_after() -> None:
    calls = {"count": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["count"] += 1
        if calls["count"] == 1:
            return httpx.Response(429, headers={"Retry-After": "0"})
        return httpx.Response(200, json={"ok": True, "user_id": "UBOT"})

    client = _client(handler)
    assert await client.get_bot_user_id() == "UBOT"
    # Memoized on the instance.
    assert await client.get_bot_user_id() == "UBOT"
    assert calls["count"] == 2


@pytest.mark.asyncio
async def test_persistent_server_errors_surface_as_transient() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(503)

    with pytest.raises(TransientProviderError) as exc_info:
        await _client(handler).auth_test()
    assert exc_info.value.status_code == 503


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("error", "expected"),
    [
        ("invalid_auth", AuthExpiredError),
        ("token_revoked", AuthExpiredError),
        ("channel_not_found", NotFoundError),
        ("is_archived", ProviderError),
    ],
)
async def test_error_codes_are_mapped(error: str, expected: type[Exception]) -> None:
    calls = {"count": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["count"] += 1
        return httpx.Response(200, json={"ok": False, "error": error})

    with pytest.raises(expected):
        await _client(handler).join_channel("C1")
    # Permanent failures are never retried.
    assert calls["count"] == 1


@pytest.mark.asyncio
async def test_team_info_requires_team_id() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"ok": True, "team": {}})

    with pytest.raises(ProviderError):
        await _client(handler).team_info()


@pytest.mark.asyncio
async def test_user_names_are_cached_per_instance() -> None:
    calls = {"count": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["count"] += 1
        return httpx.Response(200, json={"ok": True, "user": {"name": "ann", "profile": {"display_name": "Ann"}}})

    client = _client(handler)
    assert await client.get_user_name("U1") == "Ann"
    assert await client.get_user_name("U1") == "Ann"
    assert calls["count"] == 1


def test_thread_classification() -> None:
    assert SlackMessage(ts="1.0", text="", thread_ts="1.0", reply_count=2).is_thread_root
    assert not SlackMessage(ts="1.0", text="", thread_ts="1.0", reply_count=0).is_thread_root
    assert SlackMessage(ts="2.0", text="", thread_ts="1.0").is_thread_reply
    assert not SlackMessage(ts="2.0", text="").is_thread_reply


@pytest.mark.asyncio
async def test_aclose_only_closes_clients_it_created() -> None:
    injected = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(200)))
    borrowed = SlackClient(access_token="xoxb-test", http_client=injected)
    await borrowed.aclose()
    assert not injected.is_closed
    await injected.aclose()

    owned = SlackClient(access_token="xoxb-test")
    created = owned._get_client()
    await owned.aclose()
    assert created.is_closed
    assert owned.http_client is None
