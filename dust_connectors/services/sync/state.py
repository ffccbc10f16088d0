from __future__ import annotations

import logging
from datetime import datetime, timezone

from dust_connectors.core.errors import ConnectorStateError
from dust_connectors.domain.models import Connector


logger = logging.getLogger(__name__)


# Allowed connector state transitions; deletion removes the row and is not a state.
ALLOWED_TRANSITIONS: dict[str, frozenset[str]] = {
    "idle": frozenset({"full_sync", "paused", "errored"}),
    "full_sync": frozenset({"full_sync", "incremental_sync", "paused", "errored"}),
    "incremental_sync": frozenset({"full_sync", "incremental_sync", "paused", "errored"}),
    "paused": frozenset({"idle", "incremental_sync", "errored"}),
    "errored": frozenset({"idle", "incremental_sync", "errored"}),
}

# States in which webhooks, timers and permission side effects are ignored.
HALTED_STATES = frozenset({"paused", "errored"})


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def can_transition(current: str, target: str) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, frozenset())


def transition(connector: Connector, target: str) -> None:
    current = connector.state
    if not can_transition(current, target):
        raise ConnectorStateError(f"Connector {connector.id} cannot move from {current} to {target}")
    if current != target:
        logger.info("connector_state_transition connector_id=%s from=%s to=%s", connector.id, current, target)
    connector.state = target


def accepts_triggers(connector: Connector) -> bool:
    return connector.state not in HALTED_STATES


def mark_sync_started(connector: Connector, *, full: bool) -> None:
    # Scoped runs keep the current state; only a full crawl moves to full_sync.
    if full:
        transition(connector, "full_sync")
    connector.last_sync_started_at = _utc_now()


def mark_sync_succeeded(connector: Connector, *, full: bool) -> None:
    now = _utc_now()
    if connector.state in HALTED_STATES:
        # Halted while the run was in flight; keep the recorded error.
        connector.last_sync_finished_at = now
        return
    # Only a run still in full_sync moves on; a resumed connector restarted its own sync.
    if full and connector.state == "full_sync":
        transition(connector, "incremental_sync")
    connector.last_sync_status = "succeeded"
    connector.last_sync_finished_at = now
    connector.last_sync_success_at = now
    connector.error_type = None
    if full and connector.first_sync_completed_at is None:
        connector.first_sync_completed_at = now


def mark_sync_failed(connector: Connector, *, error_type: str) -> None:
    # Transient failures keep the state so the queue retry can resume the run.
    connector.last_sync_status = "failed"
    connector.last_sync_finished_at = _utc_now()
    connector.error_type = error_type


def mark_errored(connector: Connector, *, error_type: str) -> None:
    transition(connector, "errored")
    connector.error_type = error_type
    connector.last_sync_status = "failed"
    connector.last_sync_finished_at = _utc_now()


def mark_paused(connector: Connector) -> None:
    transition(connector, "paused")
    connector.paused_at = _utc_now()


def mark_resumed(connector: Connector) -> None:
    # Resumed connectors go back to incremental mode once a first sync completed.
    target = "incremental_sync" if connector.first_sync_completed_at is not None else "idle"
    transition(connector, target)
    connector.paused_at = None
    connector.error_type = None
