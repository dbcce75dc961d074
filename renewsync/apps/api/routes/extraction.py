from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel, Field
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from renewsync.apps.api.deps import get_db
from renewsync.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from renewsync.apps.api.response import SuccessEnvelope, success_response
from renewsync.core.errors import CredentialsNotFoundError
from renewsync.services.audit import add_extraction_audit, list_extraction_audits
from renewsync.services.extraction import RawCapture, extract_credentials


router = APIRouter(prefix="/extraction", tags=["extraction"], responses=DEFAULT_ERROR_RESPONSES)


class CaptureRequest(BaseModel):
    text: str = Field(min_length=1)
    # Where the text came from, e.g. "extension" or "operator".
    source: str = "operator"
    system_id: str | None = None
    # Dry runs parse without writing an audit row.
    record: bool = True


class ExtractionResponse(BaseModel):
    username: str
    password: str
    expires_at: str | None
    method: str
    raw_text_digest: str


@router.post("/captures", response_model=SuccessEnvelope[ExtractionResponse])
async def submit_capture(
    body: CaptureRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> dict:
    try:
        result = extract_credentials(RawCapture(text=body.text, source=body.source))
    except CredentialsNotFoundError as exc:
        raise HTTPException(
            status_code=422,
            detail={
                "code": exc.code,
                "message": exc.message,
                "attempted": list(exc.attempted),
            },
        ) from exc
    if body.record:
        add_extraction_audit(
            db,
            system_id=body.system_id,
            source=body.source,
            username=result.username,
            password=result.password,
            expires_at=result.expires_at,
            method=result.method.value,
            raw_text_digest=result.raw_text_digest,
        )
        try:
            await db.commit()
        except SQLAlchemyError as exc:
            await db.rollback()
            raise HTTPException(
                status_code=503,
                detail={"code": "DATABASE_ERROR", "message": "failed to record extraction"},
            ) from exc
    payload = ExtractionResponse(**result.as_dict())
    return success_response(request=request, data=payload.model_dump())


class ExtractionAuditItem(BaseModel):
    occurred_at: datetime
    system_id: str | None
    source: str
    username: str
    expires_at: str | None
    method: str
    raw_text_digest: str


class ExtractionAuditList(BaseModel):
    items: list[ExtractionAuditItem]


@router.get("/audits", response_model=SuccessEnvelope[ExtractionAuditList])
async def list_audits(
    request: Request,
    system_id: str | None = None,
    limit: int = Query(default=50, ge=1, le=500),
    db: AsyncSession = Depends(get_db),
) -> dict:
    # Passwords stay in the table; the listing is for tracing which capture produced what.
    rows = await list_extraction_audits(db, system_id=system_id, limit=limit)
    payload = ExtractionAuditList(
        items=[
            ExtractionAuditItem(
                occurred_at=row.occurred_at,
                system_id=row.system_id,
                source=row.source,
                username=row.username,
                expires_at=row.expires_at,
                method=row.method,
                raw_text_digest=row.raw_text_digest,
            )
            for row in rows
        ]
    )
    return success_response(request=request, data=payload.model_dump(mode="json"))
