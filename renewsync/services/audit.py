from __future__ import annotations

from datetime import datetime
import logging
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from renewsync.core.errors import DatabaseError
from renewsync.core.timeutil import utc_now
from renewsync.domain.models import AuditEvent, ExtractionAudit
from renewsync.persistence.db import SessionLocal


logger = logging.getLogger(__name__)

REDACTED = "[REDACTED]"
# Key fragments whose values never reach the audit table; "text" covers raw panel captures.
_SENSITIVE_FRAGMENTS = ("password", "secret", "token", "api_key", "authorization", "text", "content")


def _is_sensitive(key: str) -> bool:
    lowered = key.lower()
    return any(fragment in lowered for fragment in _SENSITIVE_FRAGMENTS)


def sanitize_metadata(value: Any) -> Any:
    """Replace the value of every sensitive-looking key, at any depth."""
    if isinstance(value, dict):
        return {
            str(key): REDACTED if _is_sensitive(str(key)) else sanitize_metadata(item)
            for key, item in value.items()
        }
    if isinstance(value, (list, tuple)):
        return [sanitize_metadata(item) for item in value]
    return value


async def record_event(
    *,
    event_type: str,
    outcome: str,
    actor_type: str = "operator",
    actor_id: str | None = None,
    resource_type: str | None = None,
    resource_id: str | None = None,
    request_id: str | None = None,
    metadata: dict[str, Any] | None = None,
    error_code: str | None = None,
    occurred_at: datetime | None = None,
    best_effort: bool = True,
) -> bool:
    # Own transaction: a failed audit write never rolls back the action being audited.
    row = AuditEvent(
        occurred_at=occurred_at or utc_now(),
        actor_type=actor_type,
        actor_id=actor_id,
        event_type=event_type,
        outcome=outcome,
        resource_type=resource_type,
        resource_id=resource_id,
        request_id=request_id,
        metadata_json=sanitize_metadata(metadata or {}),
        error_code=error_code,
    )
    async with SessionLocal() as session:
        session.add(row)
        try:
            await session.commit()
        except SQLAlchemyError as exc:
            await session.rollback()
            if not best_effort:
                raise DatabaseError(f"failed to write audit event {event_type}") from exc
            logger.warning(
                "audit_event_write_failed event_type=%s request_id=%s",
                event_type,
                request_id,
                exc_info=exc,
            )
            return False
    return True


def add_extraction_audit(
    session: AsyncSession,
    *,
    system_id: str | None,
    source: str,
    username: str,
    password: str,
    expires_at: str | None,
    method: str,
    raw_text_digest: str,
    occurred_at: datetime | None = None,
) -> ExtractionAudit:
    # Staged in the caller's transaction so the audit row commits with the credential it describes.
    row = ExtractionAudit(
        occurred_at=occurred_at or utc_now(),
        system_id=system_id,
        source=source,
        username=username,
        password=password,
        expires_at=expires_at,
        method=method,
        raw_text_digest=raw_text_digest,
    )
    session.add(row)
    return row


async def list_extraction_audits(
    session: AsyncSession, *, system_id: str | None = None, limit: int = 50
) -> list[ExtractionAudit]:
    stmt = select(ExtractionAudit).order_by(ExtractionAudit.occurred_at.desc(), ExtractionAudit.id.desc())
    if system_id is not None:
        stmt = stmt.where(ExtractionAudit.system_id == system_id)
    result = await session.execute(stmt.limit(limit))
    return list(result.scalars().all())
