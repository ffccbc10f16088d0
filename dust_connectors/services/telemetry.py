from __future__ import annotations

import math
import time
from collections import defaultdict, deque
from dataclasses import dataclass
from typing import Deque


@dataclass(frozen=True)
class RequestSample:
    ts: float
    path: str
    status_code: int
    latency_ms: float


@dataclass(frozen=True)
class ExternalCallSample:
    ts: float
    integration: str
    latency_ms: float
    success: bool


_request_samples: Deque[RequestSample] = deque(maxlen=20000)
_external_samples: Deque[ExternalCallSample] = deque(maxlen=10000)
_counters: dict[str, int] = defaultdict(int)


def record_request(*, path: str, status_code: int, latency_ms: float) -> None:
    # Track request latency and status for the ops endpoint.
    _request_samples.append(
        RequestSample(ts=time.time(), path=path, status_code=status_code, latency_ms=latency_ms)
    )


def record_external_call(*, integration: str, latency_ms: float, success: bool) -> None:
    # Capture external call latency and outcomes (slack, nango, data sources).
    _external_samples.append(
        ExternalCallSample(
            ts=time.time(),
            integration=integration,
            latency_ms=latency_ms,
            success=success,
        )
    )


def increment_counter(name: str, value: int = 1) -> None:
    _counters[name] += value


def _p95(latencies: list[float]) -> float:
    idx = max(0, math.ceil(0.95 * len(latencies)) - 1)
    return latencies[idx]


def request_stats(window_s: int) -> dict[str, float | int | None]:
    cutoff = time.time() - window_s
    samples = [sample for sample in _request_samples if sample.ts >= cutoff]
    if not samples:
        return {"count": 0, "errors_5xx": 0, "p95_ms": None}
    latencies = sorted(sample.latency_ms for sample in samples)
    return {
        "count": len(samples),
        "errors_5xx": sum(1 for sample in samples if sample.status_code >= 500),
        "p95_ms": _p95(latencies),
    }


def external_stats_by_integration(window_s: int) -> dict[str, dict[str, float | int]]:
    # Aggregate external call latency and failures per integration in the window.
    cutoff = time.time() - window_s
    grouped: dict[str, list[ExternalCallSample]] = defaultdict(list)
    for sample in _external_samples:
        if sample.ts >= cutoff:
            grouped[sample.integration].append(sample)
    result: dict[str, dict[str, float | int]] = {}
    for integration, samples in grouped.items():
        latencies = sorted(sample.latency_ms for sample in samples)
        result[integration] = {
            "count": len(samples),
            "failures": sum(1 for sample in samples if not sample.success),
            "p95_ms": _p95(latencies),
            "max_ms": latencies[-1],
        }
    return result


def counters_snapshot() -> dict[str, int]:
    return dict(_counters)


def reset_telemetry() -> None:
    # Tests reset process-local samples between cases.
    _request_samples.clear()
    _external_samples.clear()
    _counters.clear()
