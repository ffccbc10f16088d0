from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Iterable, TypeVar

from dust_connectors.core.config import get_settings
from dust_connectors.core.errors import TransientProviderError
from dust_connectors.services.telemetry import increment_counter


logger = logging.getLogger(__name__)


T = TypeVar("T")
R = TypeVar("R")

TransientException = (TimeoutError, OSError)


def _default_retryable(exc: Exception) -> bool:
    # Retry only transient network/timeout/5xx/rate-limit failures by default.
    if isinstance(exc, (TransientProviderError, *TransientException)):
        return True
    status = getattr(exc, "status_code", None)
    if isinstance(status, int) and (status >= 500 or status == 429):
        return True
    return False


@dataclass(frozen=True)
class RetryPolicy:
    # Centralize external retry behavior for deterministic policy changes.
    timeout_ms: int
    max_attempts: int
    backoff_ms: int
    max_retry_after_s: float = 120.0


def default_retry_policy() -> RetryPolicy:
    settings = get_settings()
    return RetryPolicy(
        timeout_ms=settings.ext_call_timeout_ms,
        max_attempts=settings.ext_retry_max_attempts,
        backoff_ms=settings.ext_retry_backoff_ms,
        max_retry_after_s=float(settings.provider_rate_limit_max_wait_s),
    )


def backoff_seconds(policy: RetryPolicy, attempt: int, exc: Exception | None = None) -> float:
    # Provider-specified Retry-After wins over exponential backoff, capped by policy.
    retry_after = getattr(exc, "retry_after", None)
    if isinstance(retry_after, (int, float)) and retry_after >= 0:
        return min(float(retry_after), policy.max_retry_after_s)
    jitter = random.uniform(0.5, 1.5)
    return (policy.backoff_ms / 1000.0) * (2 ** (attempt - 1)) * jitter


async def retry_async(
    func: Callable[[], Awaitable[Any]],
    *,
    policy: RetryPolicy | None = None,
    retryable: Callable[[Exception], bool] | None = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> Any:
    # Retry helper with jittered backoff for transient failures only.
    policy = policy or default_retry_policy()
    retryable = retryable or _default_retryable
    attempt = 1
    while True:
        try:
            return await asyncio.wait_for(func(), timeout=policy.timeout_ms / 1000.0)
        except Exception as exc:  # noqa: BLE001 - caller handles non-transient failures
            if attempt >= max(policy.max_attempts, 1) or not retryable(exc):
                raise
            # Track retry volume so operators can detect retry storms.
            increment_counter("external_retries_total")
            delay = backoff_seconds(policy, attempt, exc)
            logger.info("external_retry attempt=%s delay_s=%.2f error=%s", attempt, delay, type(exc).__name__)
            await sleep(delay)
            attempt += 1


async def gather_bounded(
    items: Iterable[T],
    func: Callable[[T], Awaitable[R]],
    *,
    limit: int,
) -> list[R]:
    # Run func over items with at most `limit` in flight; the first failure cancels the rest.
    semaphore = asyncio.Semaphore(max(1, limit))

    async def _run(item: T) -> R:
        async with semaphore:
            return await func(item)

    tasks = [asyncio.ensure_future(_run(item)) for item in items]
    try:
        return list(await asyncio.gather(*tasks))
    except BaseException:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise
