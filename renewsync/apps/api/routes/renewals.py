from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request, Response, status
from pydantic import BaseModel

from renewsync.apps.api.deps import get_controller
from renewsync.apps.api.errors import http_error
from renewsync.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from renewsync.apps.api.response import SuccessEnvelope, get_request_id, success_response
from renewsync.core.errors import SystemNotFoundError
from renewsync.services.audit import record_event
from renewsync.services.renewal.controller import (
    CancelOutcome,
    ForceOutcome,
    RenewalQueueController,
)


router = APIRouter(prefix="/renewals", tags=["renewals"], responses=DEFAULT_ERROR_RESPONSES)


class QueueItemResponse(BaseModel):
    system_id: str
    external_id: str
    status: str
    enqueued_at: datetime | None
    started_at: datetime | None
    completed_at: datetime | None
    attempts: int
    last_error: str | None
    error_code: str | None
    next_attempt_at: datetime | None
    expiry_anchor: datetime | None
    forced: bool
    cancel_requested: bool
    needs_attention: bool
    reason: str | None
    states: list[str]


class ForceRenewResponse(BaseModel):
    outcome: str
    item: QueueItemResponse


class CancelResponse(BaseModel):
    system_id: str
    outcome: str


class QueueStatusResponse(BaseModel):
    is_running: bool
    last_check_at: str | None = None
    next_check_at: str | None = None
    items: list[QueueItemResponse]
    counts: dict[str, int]
    total: int
    in_flight: int
    max_concurrency: int


class ScheduledRenewalResponse(BaseModel):
    system_id: str
    external_id: str
    nearest_expiry: datetime | None
    window_opens_at: datetime | None
    seconds_until_window: int
    due: bool
    last_renewed_at: datetime | None
    queue_status: str | None


class ScheduledRenewalsResponse(BaseModel):
    items: list[ScheduledRenewalResponse]


def _dump(model: BaseModel) -> dict[str, Any]:
    return model.model_dump(mode="json")


@router.post(
    "/{system_id}/force",
    response_model=SuccessEnvelope[ForceRenewResponse],
    status_code=status.HTTP_202_ACCEPTED,
)
async def force_renew(
    system_id: str,
    request: Request,
    response: Response,
    controller: RenewalQueueController = Depends(get_controller),
) -> dict:
    try:
        result = await controller.force_renew(system_id)
    except SystemNotFoundError as exc:
        raise http_error(exc) from exc
    # Only a newly created item is "accepted"; an existing one is reported as-is.
    if result.outcome != ForceOutcome.ENQUEUED:
        response.status_code = status.HTTP_200_OK
    await record_event(
        actor_type="operator",
        actor_id=None,
        event_type="renewal.force_requested",
        outcome=result.outcome.value,
        resource_type="system",
        resource_id=result.item.system_id,
        request_id=get_request_id(request),
    )
    payload = ForceRenewResponse(
        outcome=result.outcome.value,
        item=QueueItemResponse(**result.item.as_dict()),
    )
    return success_response(request=request, data=_dump(payload))


@router.delete("/{system_id}", response_model=SuccessEnvelope[CancelResponse])
async def cancel_renewal(
    system_id: str,
    request: Request,
    controller: RenewalQueueController = Depends(get_controller),
) -> dict:
    outcome = controller.cancel(system_id)
    if outcome == CancelOutcome.NOT_FOUND:
        raise HTTPException(
            status_code=404,
            detail={"code": "QUEUE_ITEM_NOT_FOUND", "message": f"no queue item for {system_id}"},
        )
    await record_event(
        actor_type="operator",
        actor_id=None,
        event_type="renewal.cancel_requested",
        outcome=outcome.value,
        resource_type="system",
        resource_id=system_id,
        request_id=get_request_id(request),
    )
    payload = CancelResponse(system_id=system_id, outcome=outcome.value)
    return success_response(request=request, data=_dump(payload))


@router.get("/queue", response_model=SuccessEnvelope[QueueStatusResponse])
async def queue_status(
    request: Request,
    controller: RenewalQueueController = Depends(get_controller),
) -> dict:
    payload = QueueStatusResponse(**controller.queue_status())
    return success_response(request=request, data=_dump(payload))


@router.get("/scheduled", response_model=SuccessEnvelope[ScheduledRenewalsResponse])
async def scheduled_renewals(
    request: Request,
    controller: RenewalQueueController = Depends(get_controller),
) -> dict:
    rows = await controller.scheduled_renewals()
    payload = ScheduledRenewalsResponse(items=[ScheduledRenewalResponse(**row) for row in rows])
    return success_response(request=request, data=_dump(payload))
