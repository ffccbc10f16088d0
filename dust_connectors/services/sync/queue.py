from __future__ import annotations

import asyncio
import contextlib
import hashlib
import logging
import time
from dataclasses import dataclass
from typing import Any, Literal
from uuid import uuid4

from arq import Retry, create_pool
from arq.connections import RedisSettings
from arq.constants import in_progress_key_prefix
from pydantic import BaseModel

from dust_connectors.core.config import get_settings
from dust_connectors.core.errors import AuthExpiredError, ConnectorsError, TransientProviderError
from dust_connectors.core.result import Err, Ok, Result
from dust_connectors.domain.types import has_read
from dust_connectors.persistence.db import SessionLocal
from dust_connectors.persistence.repos import connectors as connectors_repo
from dust_connectors.persistence.repos import resources as resources_repo
from dust_connectors.persistence.repos import sync_state as sync_state_repo
from dust_connectors.services.sync import workflows
from dust_connectors.services.sync.state import accepts_triggers, mark_errored, mark_sync_failed
from dust_connectors.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

_redis_pool = None
_redis_pool_loop = None
_redis_lock = asyncio.Lock()
LOCK_PREFIX = "connectors:sync-lock:"
WORKER_HEARTBEAT_KEY = "connectors:worker:heartbeat"

# Workflows that mutate a connector's mirror or index share its single-flight lock.
LOCKED_KINDS = frozenset({"sync", "bot_joined", "garbage_collect"})

WorkflowKind = Literal["sync", "bot_joined", "garbage_collect", "bot_answer", "teardown"]


class WorkflowPayload(BaseModel):
    # Job schema shared by the API, the cron tick and the worker.
    kind: WorkflowKind
    connector_id: str | None = None
    workflow_id: str
    channel_ids: list[str] | None = None
    thread_ts: str | None = None
    removed_ids: list[str] | None = None
    team_id: str | None = None
    user_id: str | None = None
    message_ts: str | None = None
    text: str | None = None


@dataclass
class ConnectorLock:
    key: str
    token: str
    redis: Any | None
    local: asyncio.Lock | None


_local_locks: dict[tuple[int, str], asyncio.Lock] = {}


def _queue_key(queue_name: str) -> str:
    return f"arq:queue:{queue_name}"


def _inline() -> bool:
    return get_settings().sync_execution_mode.lower() == "inline"


def _job_id(kind: str, *parts: Any) -> str:
    # Identical triggers map to the same job id so arq drops duplicates while one is pending.
    digest = hashlib.sha256(repr(parts).encode("utf-8")).hexdigest()[:16]
    return f"{kind}-{digest}"


def _follow_up_id(job_id: str) -> str:
    return f"{job_id}-next"


async def get_redis_pool():
    # Cache the Redis pool to avoid reconnecting on every enqueue.
    global _redis_pool, _redis_pool_loop
    current_loop = asyncio.get_running_loop()
    if _redis_pool is not None and _redis_pool_loop == current_loop:
        return _redis_pool
    if _redis_pool is not None and _redis_pool_loop != current_loop:
        # Drop loop-bound pools to avoid cross-loop errors in tests.
        _redis_pool = None
    async with _redis_lock:
        if _redis_pool is None:
            settings = get_settings()
            _redis_pool = await create_pool(
                RedisSettings.from_dsn(settings.redis_url),
                default_queue_name=settings.sync_queue_name,
            )
            _redis_pool_loop = current_loop
    return _redis_pool


async def get_queue_depth() -> int | None:
    # None signals Redis unavailability to the ops endpoint.
    settings = get_settings()
    if _inline():
        return 0
    try:
        redis = await get_redis_pool()
        return int(await redis.zcard(_queue_key(settings.sync_queue_name)))
    except Exception:  # noqa: BLE001 - ops endpoints handle degraded Redis
        return None


async def set_worker_heartbeat() -> None:
    if _inline():
        return
    redis = await get_redis_pool()
    await redis.set(WORKER_HEARTBEAT_KEY, str(time.time()))


def _lock_ttl_s() -> int:
    return max(5, int(get_settings().sync_lock_ttl_s))


def _lock_refresh_interval_s() -> float:
    return _lock_ttl_s() / 3


def _decode(value: Any) -> str:
    return value.decode("utf-8") if isinstance(value, (bytes, bytearray)) else str(value or "")


async def acquire_connector_lock(connector_id: str) -> ConnectorLock | None:
    # Single-flight per connector: a second run for the same connector is deferred.
    key = f"{LOCK_PREFIX}{connector_id}"
    token = uuid4().hex
    if not _inline():
        redis = await get_redis_pool()
        acquired = await redis.set(key, token, nx=True, ex=_lock_ttl_s())
        if not acquired:
            return None
        return ConnectorLock(key=key, token=token, redis=redis, local=None)

    # Inline runs wait their turn on an in-process lock scoped to the running loop.
    loop_key = (id(asyncio.get_running_loop()), connector_id)
    lock = _local_locks.setdefault(loop_key, asyncio.Lock())
    await lock.acquire()
    return ConnectorLock(key=key, token=token, redis=None, local=lock)


async def release_connector_lock(lock: ConnectorLock) -> None:
    # Release only if this run still owns the token to avoid clobbering a newer holder.
    if lock.local is not None:
        if lock.local.locked():
            lock.local.release()
        return
    if lock.redis is None:
        return
    if _decode(await lock.redis.get(lock.key)) == lock.token:
        await lock.redis.delete(lock.key)


async def refresh_connector_lock(lock: ConnectorLock) -> bool:
    # Extend the TTL only while this run still owns the token.
    if lock.redis is None:
        return True
    if _decode(await lock.redis.get(lock.key)) != lock.token:
        return False
    await lock.redis.expire(lock.key, _lock_ttl_s())
    return True


async def _keep_lock_alive(lock: ConnectorLock) -> None:
    # Runs longer than the TTL keep the lock until they finish.
    while True:
        await asyncio.sleep(_lock_refresh_interval_s())
        try:
            owned = await refresh_connector_lock(lock)
        except Exception as exc:  # noqa: BLE001 - the next beat retries
            logger.warning("connector_lock_refresh_failed key=%s error=%s", lock.key, exc)
            continue
        if not owned:
            logger.warning("connector_lock_lost key=%s", lock.key)
            return


async def _execute(payload: WorkflowPayload) -> Any:
    if payload.kind == "sync":
        return await workflows.run_sync_workflow(
            payload.connector_id,
            payload.workflow_id,
            channel_ids=payload.channel_ids,
            thread_ts=payload.thread_ts,
        )
    if payload.kind == "bot_joined":
        return await workflows.run_bot_joined_workflow(payload.connector_id, (payload.channel_ids or [""])[0])
    if payload.kind == "garbage_collect":
        return await workflows.run_garbage_collect_workflow(payload.connector_id, payload.removed_ids)
    if payload.kind == "bot_answer":
        from dust_connectors.services.bot import answer_bot_message

        return await answer_bot_message(
            team_id=payload.team_id or "",
            channel_id=(payload.channel_ids or [""])[0],
            user_id=payload.user_id or "",
            message_ts=payload.message_ts or "",
            text=payload.text or "",
        )
    if payload.kind == "teardown":
        from dust_connectors.services.lifecycle import teardown_uninstalled

        return await teardown_uninstalled(payload.team_id or "")
    raise ValueError(f"Unknown workflow kind: {payload.kind}")


async def _record_failure(payload: WorkflowPayload, exc: Exception, *, halt: bool) -> None:
    # Persist the terminal outcome so operators see why the connector stopped syncing.
    if payload.connector_id is None:
        return
    async with SessionLocal() as session:
        connector = await connectors_repo.get_connector(session, payload.connector_id)
        if connector is None:
            return
        if halt and connector.state != "errored":
            mark_errored(connector, error_type="oauth_token_revoked")
        elif payload.kind == "garbage_collect":
            # Hand leftover deletions to the next scheduled tick.
            connector.gc_pending = True
        elif payload.kind == "sync":
            mark_sync_failed(connector, error_type=type(exc).__name__)
        await sync_state_repo.clear_workflow(session, payload.workflow_id)
        await session.commit()


async def process_workflow_job(payload: WorkflowPayload, *, attempt: int, max_retries: int) -> dict[str, Any]:
    # Centralize execution so worker and inline mode share locking and retry behavior.
    lock: ConnectorLock | None = None
    if payload.kind in LOCKED_KINDS and payload.connector_id:
        lock = await acquire_connector_lock(payload.connector_id)
        if lock is None:
            increment_counter("workflow_deferred_total")
            logger.info(
                "workflow_deferred kind=%s connector_id=%s workflow_id=%s",
                payload.kind,
                payload.connector_id,
                payload.workflow_id,
            )
            raise Retry(defer=get_settings().sync_defer_seconds)
    keeper = asyncio.create_task(_keep_lock_alive(lock)) if lock is not None and lock.redis is not None else None
    try:
        outcome = await _execute(payload)
    except AuthExpiredError as exc:
        # Bad credentials are never retried; resume re-validates them.
        logger.warning(
            "workflow_auth_expired kind=%s connector_id=%s error=%s",
            payload.kind,
            payload.connector_id,
            exc,
        )
        await _record_failure(payload, exc, halt=True)
        increment_counter("workflow_failed_total")
        return {"status": "errored", "error": str(exc)}
    except TransientProviderError as exc:
        if attempt < max_retries:
            logger.info(
                "workflow_retry kind=%s connector_id=%s attempt=%s error=%s",
                payload.kind,
                payload.connector_id,
                attempt,
                exc,
            )
            raise Retry(defer=exc.retry_after or attempt * 5) from exc
        logger.exception("workflow_failed kind=%s connector_id=%s", payload.kind, payload.connector_id)
        await _record_failure(payload, exc, halt=False)
        increment_counter("workflow_failed_total")
        return {"status": "failed", "error": str(exc)}
    except ConnectorsError as exc:
        logger.exception("workflow_failed kind=%s connector_id=%s", payload.kind, payload.connector_id)
        await _record_failure(payload, exc, halt=False)
        increment_counter("workflow_failed_total")
        return {"status": "failed", "error": str(exc)}
    finally:
        if keeper is not None:
            keeper.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await keeper
        if lock is not None:
            await release_connector_lock(lock)
    increment_counter("workflow_succeeded_total")
    return {"status": getattr(outcome, "status", "succeeded")}


async def _run_inline_job(payload: WorkflowPayload, *, max_retries: int) -> dict[str, Any]:
    # Inline mode mimics worker retries without requiring Redis.
    attempt = 1
    while True:
        try:
            return await process_workflow_job(payload, attempt=attempt, max_retries=max_retries)
        except Retry:
            attempt += 1
            continue


async def _enqueue(redis, payload: WorkflowPayload) -> tuple[str, Any]:
    settings = get_settings()
    job_id = payload.workflow_id
    job = await redis.enqueue_job(
        "run_workflow",
        payload.model_dump(),
        _job_id=job_id,
        _queue_name=settings.sync_queue_name,
    )
    if job is None and await redis.exists(in_progress_key_prefix + job_id):
        # The matching job already started and may have read stale inputs; queue one run after it.
        job_id = _follow_up_id(job_id)
        job = await redis.enqueue_job(
            "run_workflow",
            payload.model_copy(update={"workflow_id": job_id}).model_dump(),
            _job_id=job_id,
            _queue_name=settings.sync_queue_name,
        )
        if job is not None:
            logger.info("workflow_follow_up_enqueued kind=%s job_id=%s", payload.kind, job_id)
    return job_id, job


async def enqueue_workflow(payload: WorkflowPayload) -> Result[str]:
    settings = get_settings()
    job_id = payload.workflow_id
    if _inline():
        await _run_inline_job(payload, max_retries=settings.sync_max_retries)
        return Ok(job_id)
    try:
        redis = await get_redis_pool()
        job_id, job = await _enqueue(redis, payload)
    except Exception as exc:  # noqa: BLE001 - launch failures are returned to the caller
        logger.exception("workflow_enqueue_failed kind=%s connector_id=%s", payload.kind, payload.connector_id)
        return Err(exc)
    if job is None:
        # Same job id already pending: the trigger coalesces into it.
        increment_counter("workflow_coalesced_total")
    return Ok(job_id)


async def launch_sync_workflow(
    connector_id: str,
    *,
    channel_ids: list[str] | None = None,
    thread_ts: str | None = None,
    trigger_id: str | None = None,
) -> Result[str]:
    scope = sorted(set(channel_ids)) if channel_ids is not None else None
    workflow_id = _job_id("slack-sync", connector_id, scope, thread_ts, trigger_id)
    return await enqueue_workflow(
        WorkflowPayload(
            kind="sync",
            connector_id=connector_id,
            workflow_id=workflow_id,
            channel_ids=scope,
            thread_ts=thread_ts,
        )
    )


async def launch_bot_joined_workflow(connector_id: str, channel_id: str) -> Result[str]:
    return await enqueue_workflow(
        WorkflowPayload(
            kind="bot_joined",
            connector_id=connector_id,
            workflow_id=_job_id("slack-bot-joined", connector_id, channel_id),
            channel_ids=[channel_id],
        )
    )


async def launch_garbage_collect_workflow(connector_id: str, removed_ids: list[str] | None = None) -> Result[str]:
    removed = sorted(set(removed_ids or []))
    return await enqueue_workflow(
        WorkflowPayload(
            kind="garbage_collect",
            connector_id=connector_id,
            workflow_id=_job_id("slack-gc", connector_id, removed),
            removed_ids=removed or None,
        )
    )


async def launch_bot_answer(
    *,
    team_id: str,
    channel_id: str,
    user_id: str,
    message_ts: str,
    text: str,
) -> Result[str]:
    return await enqueue_workflow(
        WorkflowPayload(
            kind="bot_answer",
            workflow_id=_job_id("slack-bot-answer", team_id, channel_id, message_ts),
            team_id=team_id,
            channel_ids=[channel_id],
            user_id=user_id,
            message_ts=message_ts,
            text=text,
        )
    )


async def launch_teardown(team_id: str) -> Result[str]:
    return await enqueue_workflow(
        WorkflowPayload(kind="teardown", workflow_id=_job_id("slack-teardown", team_id), team_id=team_id)
    )


def _full_sync_failed(connector) -> bool:
    # A retry already in flight has started_at past finished_at.
    if connector.last_sync_status != "failed" or connector.last_sync_finished_at is None:
        return False
    started = connector.last_sync_started_at
    return started is None or connector.last_sync_finished_at >= started


async def run_scheduled_tick(*, tick_id: str | None = None) -> dict[str, int]:
    """Periodic trigger.

    Launches an incremental sync of readable channels for synced connectors,
    relaunches full syncs that ended in failure and runs deferred GC.
    """
    settings = get_settings()
    interval_s = max(60, settings.incremental_sync_interval_minutes * 60)
    tick_id = tick_id or str(int(time.time()) // interval_s)
    async with SessionLocal() as session:
        connectors = await connectors_repo.list_connectors(session, states={"incremental_sync"})
        stalled = [
            connector
            for connector in await connectors_repo.list_connectors(session, states={"full_sync"})
            if _full_sync_failed(connector)
        ]
        gc_pending = await connectors_repo.list_connectors(session, gc_pending=True)
        readable: dict[str, list[str]] = {}
        for connector in connectors:
            rows = await resources_repo.list_by_connector(session, connector.id)
            readable[connector.id] = [row.external_id for row in rows if has_read(row.permission)]

    synced = 0
    for connector in connectors:
        if not accepts_triggers(connector) or not readable.get(connector.id):
            continue
        result = await launch_sync_workflow(connector.id, channel_ids=readable[connector.id], trigger_id=f"tick:{tick_id}")
        if result.is_ok():
            synced += 1
    for connector in stalled:
        logger.info("scheduled_full_sync_relaunch connector_id=%s error_type=%s", connector.id, connector.error_type)
        result = await launch_sync_workflow(connector.id, trigger_id=f"tick:{tick_id}")
        if result.is_ok():
            synced += 1
    collected = 0
    for connector in gc_pending:
        result = await launch_garbage_collect_workflow(connector.id)
        if result.is_ok():
            collected += 1
    logger.info("scheduled_tick_done tick_id=%s syncs=%s gc=%s", tick_id, synced, collected)
    return {"syncs_launched": synced, "gc_launched": collected}
