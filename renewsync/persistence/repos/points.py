from __future__ import annotations

from datetime import datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from renewsync.core.timeutil import as_utc
from renewsync.domain.models import (
    POINT_SOURCE_LOCAL,
    POINT_STATUS_ACTIVE,
    Point,
)


async def create_point(
    session: AsyncSession,
    *,
    id: str,
    system_id: str,
    username: str,
    password: str,
    expires_at: datetime,
    status: str = POINT_STATUS_ACTIVE,
    source: str = POINT_SOURCE_LOCAL,
    partner_user_id: int | None = None,
) -> Point:
    point = Point(
        id=id,
        system_id=system_id,
        username=username,
        password=password,
        expires_at=as_utc(expires_at),
        status=status,
        source=source,
        partner_user_id=partner_user_id,
    )
    session.add(point)
    return point


async def list_points(session: AsyncSession, *, system_id: str | None = None) -> list[Point]:
    stmt = select(Point)
    if system_id is not None:
        stmt = stmt.where(Point.system_id == system_id)
    result = await session.execute(stmt.order_by(Point.username, Point.id))
    return list(result.scalars().all())


async def get_nearest_expiring_point(session: AsyncSession, system_id: str) -> Point | None:
    # The renewal target is the active point closest to expiry.
    result = await session.execute(
        select(Point)
        .where(Point.system_id == system_id, Point.status == POINT_STATUS_ACTIVE)
        .order_by(Point.expires_at, Point.id)
        .limit(1)
    )
    return result.scalar_one_or_none()


def apply_renewal(
    point: Point,
    *,
    username: str,
    password: str,
    expires_at: datetime,
    renewed_at: datetime,
) -> None:
    # Supersede the credential in place; points are never deleted.
    point.username = username
    point.password = password
    point.expires_at = as_utc(expires_at)
    point.status = POINT_STATUS_ACTIVE
    point.renewed_at = as_utc(renewed_at)


async def get_point(session: AsyncSession, id: str) -> Point | None:
    result = await session.execute(select(Point).where(Point.id == id))
    return result.scalar_one_or_none()
