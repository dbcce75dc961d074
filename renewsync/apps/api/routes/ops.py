from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel

from renewsync.apps.api.deps import get_controller
from renewsync.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from renewsync.apps.api.response import SuccessEnvelope, success_response
from renewsync.persistence.db import pool_stats
from renewsync.services.renewal.controller import RenewalQueueController
from renewsync.services.telemetry import (
    counters_snapshot,
    external_latency_by_integration,
    gauges_snapshot,
    request_latency_by_path,
)


router = APIRouter(prefix="/ops", tags=["ops"], responses=DEFAULT_ERROR_RESPONSES)


class OpsMetricsResponse(BaseModel):
    window_s: int
    counters: dict[str, int]
    gauges: dict[str, float]
    requests: dict[str, dict[str, float | None]]
    external_calls: dict[str, dict[str, float | None]]
    renewal_queue: dict[str, int]
    db_pool: dict[str, int | None]


@router.get("/metrics", response_model=SuccessEnvelope[OpsMetricsResponse])
async def ops_metrics(
    request: Request,
    window_s: int = Query(default=300, ge=10, le=86400),
    controller: RenewalQueueController = Depends(get_controller),
) -> dict:
    # In-process counters only; each process reports its own view.
    payload: dict[str, Any] = OpsMetricsResponse(
        window_s=window_s,
        counters=counters_snapshot(),
        gauges=gauges_snapshot(),
        requests=request_latency_by_path(window_s),
        external_calls=external_latency_by_integration(window_s),
        renewal_queue=controller.counts(),
        db_pool=pool_stats(),
    ).model_dump()
    return success_response(request=request, data=payload)
