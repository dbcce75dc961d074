"""init

Revision ID: 0001_init
Revises:
Create Date: 2026-10-19 09:00:00.000000
"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "0001_init"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "systems",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("system_id", sa.String(), nullable=False),
        sa.Column("panel_username", sa.String(), nullable=False),
        sa.Column("panel_password", sa.String(), nullable=False),
        sa.Column("active_point_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_point_capacity", sa.Integer(), nullable=False, server_default="100"),
        sa.Column("auto_renewal_enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("renewal_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_renewed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_systems_system_id", "systems", ["system_id"], unique=True)

    op.create_table(
        "points",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("system_id", sa.String(), sa.ForeignKey("systems.id"), nullable=False),
        sa.Column("username", sa.String(), nullable=False),
        sa.Column("password", sa.String(), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("status", sa.String(), nullable=False, server_default="active"),
        sa.Column("source", sa.String(), nullable=False, server_default="local"),
        sa.Column("partner_user_id", sa.Integer(), nullable=True),
        sa.Column("renewed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_points_system_id", "points", ["system_id"])
    op.create_index("ix_points_username", "points", ["username"])
    # Serves the renewal scan: nearest active expiry per system.
    op.create_index("ix_points_system_status_expires", "points", ["system_id", "status", "expires_at"])

    op.create_table(
        "extraction_audits",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("system_id", sa.String(), nullable=True),
        sa.Column("source", sa.String(), nullable=False),
        sa.Column("username", sa.String(), nullable=False),
        sa.Column("password", sa.String(), nullable=False),
        sa.Column("expires_at", sa.String(), nullable=True),
        sa.Column("method", sa.String(), nullable=False),
        sa.Column("raw_text_digest", sa.String(), nullable=False),
    )
    op.create_index("ix_extraction_audits_occurred_at", "extraction_audits", ["occurred_at"])
    op.create_index("ix_extraction_audits_system_id", "extraction_audits", ["system_id"])
    op.create_index("ix_extraction_audits_raw_text_digest", "extraction_audits", ["raw_text_digest"])

    op.create_table(
        "audit_events",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("actor_type", sa.String(), nullable=False),
        sa.Column("actor_id", sa.String(), nullable=True),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("outcome", sa.String(), nullable=False),
        sa.Column("resource_type", sa.String(), nullable=True),
        sa.Column("resource_id", sa.String(), nullable=True),
        sa.Column("request_id", sa.String(), nullable=True),
        sa.Column("metadata_json", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("error_code", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_audit_events_occurred_at", "audit_events", ["occurred_at"])
    op.create_index(
        "ix_audit_events_event_type_occurred_at",
        "audit_events",
        ["event_type", "occurred_at"],
    )


def downgrade() -> None:
    op.drop_index("ix_audit_events_event_type_occurred_at", table_name="audit_events")
    op.drop_index("ix_audit_events_occurred_at", table_name="audit_events")
    op.drop_table("audit_events")
    op.drop_index("ix_extraction_audits_raw_text_digest", table_name="extraction_audits")
    op.drop_index("ix_extraction_audits_system_id", table_name="extraction_audits")
    op.drop_index("ix_extraction_audits_occurred_at", table_name="extraction_audits")
    op.drop_table("extraction_audits")
    op.drop_index("ix_points_system_status_expires", table_name="points")
    op.drop_index("ix_points_username", table_name="points")
    op.drop_index("ix_points_system_id", table_name="points")
    op.drop_table("points")
    op.drop_index("ix_systems_system_id", table_name="systems")
    op.drop_table("systems")
