from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel

from renewsync.apps.api.deps import get_reconciliation_service
from renewsync.apps.api.errors import http_error
from renewsync.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from renewsync.apps.api.response import SuccessEnvelope, get_request_id, success_response
from renewsync.core.errors import IntegrationUnavailableError, PartnerApiError, StaleSnapshotError
from renewsync.services.audit import record_event
from renewsync.services.reconciliation import ReconciliationService, SyncOutcome


router = APIRouter(prefix="/reconciliation", tags=["reconciliation"], responses=DEFAULT_ERROR_RESPONSES)


class ReconciliationEntryResponse(BaseModel):
    entity_type: str
    key: str
    classification: str
    divergent_fields: list[str]


class ReconciliationReportResponse(BaseModel):
    generated_at: datetime
    local_taken_at: datetime
    api_taken_at: datetime
    counts: dict[str, int]
    entries: list[ReconciliationEntryResponse]


class PushRequest(BaseModel):
    usernames: list[str] | None = None
    delete_api_only: bool = False


class PushSystemsRequest(BaseModel):
    system_ids: list[str] | None = None


class SyncOutcomeResponse(BaseModel):
    entity_type: str
    key: str
    outcome: str
    detail: str | None = None


class SyncResponse(BaseModel):
    outcomes: list[SyncOutcomeResponse]
    summary: dict[str, int]


def _sync_payload(outcomes: list[SyncOutcome]) -> dict:
    summary: dict[str, int] = {}
    for outcome in outcomes:
        summary[outcome.outcome] = summary.get(outcome.outcome, 0) + 1
    payload = SyncResponse(
        outcomes=[SyncOutcomeResponse(**outcome.as_dict()) for outcome in outcomes],
        summary=summary,
    )
    return payload.model_dump(mode="json")


@router.get("/report", response_model=SuccessEnvelope[ReconciliationReportResponse])
async def reconciliation_report(
    request: Request,
    refresh: bool = Query(default=False),
    service: ReconciliationService = Depends(get_reconciliation_service),
) -> dict:
    try:
        report = await service.report(refresh=refresh)
    except (IntegrationUnavailableError, PartnerApiError, StaleSnapshotError) as exc:
        raise http_error(exc) from exc
    payload = ReconciliationReportResponse(**report.as_dict())
    return success_response(request=request, data=payload.model_dump(mode="json"))


@router.post("/push", response_model=SuccessEnvelope[SyncResponse])
async def push_points(
    request: Request,
    body: PushRequest | None = None,
    service: ReconciliationService = Depends(get_reconciliation_service),
) -> dict:
    body = body or PushRequest()
    try:
        outcomes = await service.push_points(body.usernames, delete_api_only=body.delete_api_only)
    except (IntegrationUnavailableError, PartnerApiError) as exc:
        raise http_error(exc) from exc
    data = _sync_payload(outcomes)
    await record_event(
        actor_type="operator",
        actor_id=None,
        event_type="reconciliation.push",
        outcome="completed",
        resource_type="partner_users",
        request_id=get_request_id(request),
        metadata={"summary": data["summary"], "delete_api_only": body.delete_api_only},
    )
    return success_response(request=request, data=data)


@router.post("/push-systems", response_model=SuccessEnvelope[SyncResponse])
async def push_systems(
    request: Request,
    body: PushSystemsRequest | None = None,
    service: ReconciliationService = Depends(get_reconciliation_service),
) -> dict:
    body = body or PushSystemsRequest()
    try:
        outcomes = await service.push_systems(body.system_ids)
    except (IntegrationUnavailableError, PartnerApiError) as exc:
        raise http_error(exc) from exc
    data = _sync_payload(outcomes)
    await record_event(
        event_type="reconciliation.push_systems",
        outcome="completed",
        resource_type="partner_systems",
        request_id=get_request_id(request),
        metadata={"summary": data["summary"]},
    )
    return success_response(request=request, data=data)


@router.post("/pull", response_model=SuccessEnvelope[SyncResponse])
async def pull_systems(
    request: Request,
    service: ReconciliationService = Depends(get_reconciliation_service),
) -> dict:
    try:
        outcomes = await service.pull_systems()
    except (IntegrationUnavailableError, PartnerApiError) as exc:
        raise http_error(exc) from exc
    data = _sync_payload(outcomes)
    await record_event(
        actor_type="operator",
        actor_id=None,
        event_type="reconciliation.pull",
        outcome="completed",
        resource_type="systems",
        request_id=get_request_id(request),
        metadata={"summary": data["summary"]},
    )
    return success_response(request=request, data=data)
