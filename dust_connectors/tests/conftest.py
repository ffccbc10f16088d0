from __future__ import annotations

import os
import tempfile

# Settings are read at import time by the engine; point them at a throwaway database first.
_TEST_DB_DIR = tempfile.mkdtemp(prefix="dust-connectors-tests-")
os.environ.setdefault("DATABASE_URL", f"sqlite+aiosqlite:///{_TEST_DB_DIR}/connectors.db")
os.environ.setdefault("SYNC_EXECUTION_MODE", "inline")
os.environ.setdefault("SYNC_MAX_CONCURRENCY", "1")
os.environ.setdefault("CONNECTORS_API_SECRET", "test-api-secret")
os.environ.setdefault("WEBHOOK_SECRET", "test-webhook-secret")
os.environ.setdefault("SLACK_SIGNING_SECRET", "test-signing-secret")
os.environ.setdefault("SLACK_CLIENT_ID", "test-client-id")
os.environ.setdefault("SLACK_CLIENT_SECRET", "test-client-secret")
os.environ.setdefault("NANGO_SECRET_KEY", "test-nango-secret")
os.environ.setdefault("NANGO_SLACK_CONNECTOR_ID", "slack")

import pytest  # noqa: E402

from dust_connectors.core.config import get_settings  # noqa: E402
from dust_connectors.domain.models import Base  # noqa: E402
from dust_connectors.persistence.db import engine  # noqa: E402
from dust_connectors.providers import factory  # noqa: E402
from dust_connectors.services.telemetry import reset_telemetry  # noqa: E402


@pytest.fixture(autouse=True)
async def fresh_schema() -> None:
    # Every test starts from empty tables; disposing keeps connections off closed loops.
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    yield
    await engine.dispose()


@pytest.fixture(autouse=True)
def reset_process_state() -> None:
    # Settings overrides and the broker singleton must not leak across tests.
    yield
    get_settings.cache_clear()
    factory.reset_credential_broker()
    reset_telemetry()
