from __future__ import annotations

import asyncio
import logging

from arq import cron
from arq.connections import RedisSettings

from dust_connectors.core.config import get_settings, validate_runtime_settings
from dust_connectors.core.logging import configure_logging
from dust_connectors.services.sync.queue import (
    WorkflowPayload,
    process_workflow_job,
    run_scheduled_tick,
    set_worker_heartbeat,
)


logger = logging.getLogger(__name__)


async def run_workflow(ctx, payload: dict) -> dict:
    # Parse and validate payloads in the worker to enforce schema contracts.
    job_payload = WorkflowPayload.model_validate(payload)
    settings = get_settings()
    attempt = ctx.get("job_try", 1)
    return await process_workflow_job(
        job_payload,
        attempt=attempt,
        max_retries=settings.sync_max_retries,
    )


async def scheduled_tick(ctx) -> dict:
    return await run_scheduled_tick()


def _tick_minutes(interval_minutes: int) -> set[int]:
    # arq cron matches wall-clock minutes; intervals above an hour run hourly.
    step = min(max(1, interval_minutes), 60)
    return set(range(0, 60, step))


async def _heartbeat_loop() -> None:
    # Emit heartbeats on a fixed interval for ops health reporting.
    settings = get_settings()
    while True:
        await set_worker_heartbeat()
        await asyncio.sleep(settings.worker_heartbeat_interval_s)


async def _startup(ctx) -> None:
    configure_logging()
    validate_runtime_settings()
    ctx["heartbeat_task"] = asyncio.create_task(_heartbeat_loop())
    logger.info("sync_worker_started queue=%s", get_settings().sync_queue_name)


async def _shutdown(ctx) -> None:
    # Cancel the heartbeat task to avoid dangling coroutines on exit.
    task = ctx.get("heartbeat_task")
    if task:
        task.cancel()


class WorkerSettings:
    # Keep worker configuration as class attributes for arq CLI compatibility.
    settings = get_settings()
    redis_settings = RedisSettings.from_dsn(settings.redis_url)
    queue_name = settings.sync_queue_name
    # Lock deferrals also consume tries; leave room to wait out a full lock lifetime.
    max_tries = settings.sync_max_retries + settings.sync_lock_ttl_s // max(1, settings.sync_defer_seconds)
    functions = [run_workflow]
    cron_jobs = [
        cron(
            scheduled_tick,
            minute=_tick_minutes(settings.incremental_sync_interval_minutes),
            run_at_startup=False,
            unique=True,
        )
    ]
    # Job ids must be reusable right after completion so later triggers are not dropped.
    keep_result = 0
    on_startup = _startup
    on_shutdown = _shutdown
