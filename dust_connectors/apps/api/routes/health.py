from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from dust_connectors.apps.api.deps import require_api_secret
from dust_connectors.services.sync import queue
from dust_connectors.services.telemetry import (
    counters_snapshot,
    external_stats_by_integration,
    request_stats,
)

router = APIRouter(tags=["health"])

_METRICS_WINDOW_S = 300


class HealthResponse(BaseModel):
    status: str


class MetricsResponse(BaseModel):
    window_s: int
    queue_depth: int | None
    requests: dict[str, Any]
    external_calls: dict[str, dict[str, Any]]
    counters: dict[str, int]


@router.get("/health", response_model=HealthResponse)
async def health() -> HealthResponse:
    return HealthResponse(status="ok")


@router.get("/ops/metrics", response_model=MetricsResponse, dependencies=[Depends(require_api_secret)])
async def ops_metrics() -> MetricsResponse:
    # queue_depth is None while Redis is unreachable.
    return MetricsResponse(
        window_s=_METRICS_WINDOW_S,
        queue_depth=await queue.get_queue_depth(),
        requests=request_stats(_METRICS_WINDOW_S),
        external_calls=external_stats_by_integration(_METRICS_WINDOW_S),
        counters=counters_snapshot(),
    )
