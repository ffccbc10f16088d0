from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator

from dust_connectors.core.config import get_settings
from dust_connectors.domain.models import Connector
from dust_connectors.providers.data_sources import DataSourceClient
from dust_connectors.providers.dust_api import DustAPI
from dust_connectors.providers.nango import CredentialBroker, TokenCache
from dust_connectors.providers.slack.client import SlackClient


_broker: CredentialBroker | None = None


def get_credential_broker() -> CredentialBroker:
    # One broker per process; its token cache is the only shared credential state.
    global _broker
    if _broker is None:
        settings = get_settings()
        _broker = CredentialBroker(settings=settings, cache=TokenCache(settings.token_cache_ttl_s))
    return _broker


def reset_credential_broker() -> None:
    global _broker
    _broker = None


def get_slack_client(access_token: str) -> SlackClient:
    return SlackClient(access_token=access_token)


@asynccontextmanager
async def slack_client(access_token: str) -> AsyncIterator[SlackClient]:
    # One-off calls outside a workflow run.
    client = get_slack_client(access_token)
    try:
        yield client
    finally:
        await client.aclose()


async def slack_client_for_connector(connector: Connector) -> SlackClient:
    # Resolve the token at call time so rotated connections take effect immediately.
    token = await get_credential_broker().get_access_token(connector.connection_id)
    return get_slack_client(token)


def get_data_source_client(connector: Connector) -> DataSourceClient:
    return DataSourceClient(
        workspace_id=connector.workspace_id,
        api_key=connector.workspace_api_key,
        data_source_name=connector.data_source_name,
    )


def get_dust_api(connector: Connector) -> DustAPI:
    return DustAPI(workspace_id=connector.workspace_id, api_key=connector.workspace_api_key)


async def close_clients(*clients) -> None:
    for client in clients:
        if client is not None:
            await client.aclose()
