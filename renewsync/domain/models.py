from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


# Use JSONB on Postgres while keeping SQLite test databases working.
JsonType = JSON().with_variant(JSONB(), "postgresql")

POINT_STATUS_ACTIVE = "active"
POINT_STATUS_INACTIVE = "inactive"

POINT_SOURCE_LOCAL = "local"
POINT_SOURCE_API = "api"
POINT_SOURCE_BOTH = "both"


class Base(DeclarativeBase):
    pass


class System(Base):
    __tablename__ = "systems"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    # Identifier used by the partner API and the panel for this provisioning account.
    system_id: Mapped[str] = mapped_column(String, unique=True, index=True)
    # Panel session credentials; never exposed through the operator API.
    panel_username: Mapped[str] = mapped_column(String)
    panel_password: Mapped[str] = mapped_column(String)
    active_point_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    max_point_capacity: Mapped[int] = mapped_column(Integer, default=100, nullable=False)
    auto_renewal_enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    renewal_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_renewed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class Point(Base):
    __tablename__ = "points"
    __table_args__ = (
        Index("ix_points_system_status_expires", "system_id", "status", "expires_at"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    system_id: Mapped[str] = mapped_column(String, ForeignKey("systems.id"), index=True)
    username: Mapped[str] = mapped_column(String, index=True)
    password: Mapped[str] = mapped_column(String)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    status: Mapped[str] = mapped_column(String, default=POINT_STATUS_ACTIVE, nullable=False)
    # Which surfaces are known to hold this point: local, api or both.
    source: Mapped[str] = mapped_column(String, default=POINT_SOURCE_LOCAL, nullable=False)
    partner_user_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    renewed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class ExtractionAudit(Base):
    __tablename__ = "extraction_audits"

    # Audit sink for extracted credentials; raw captured text is never stored.
    id: Mapped[int] = mapped_column(
        BigInteger().with_variant(Integer(), "sqlite"), primary_key=True, autoincrement=True
    )
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    system_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    source: Mapped[str] = mapped_column(String)
    username: Mapped[str] = mapped_column(String)
    password: Mapped[str] = mapped_column(String)
    expires_at: Mapped[str | None] = mapped_column(String, nullable=True)
    method: Mapped[str] = mapped_column(String)
    raw_text_digest: Mapped[str] = mapped_column(String, index=True)


class AuditEvent(Base):
    __tablename__ = "audit_events"
    __table_args__ = (
        Index("ix_audit_events_event_type_occurred_at", "event_type", "occurred_at"),
    )

    id: Mapped[int] = mapped_column(
        BigInteger().with_variant(Integer(), "sqlite"), primary_key=True, autoincrement=True
    )
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    actor_type: Mapped[str] = mapped_column(String)
    actor_id: Mapped[str | None] = mapped_column(String, nullable=True)
    event_type: Mapped[str] = mapped_column(String)
    outcome: Mapped[str] = mapped_column(String)
    resource_type: Mapped[str | None] = mapped_column(String, nullable=True)
    resource_id: Mapped[str | None] = mapped_column(String, nullable=True)
    request_id: Mapped[str | None] = mapped_column(String, nullable=True)
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column(JsonType, nullable=True)
    error_code: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
