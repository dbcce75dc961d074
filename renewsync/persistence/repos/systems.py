from __future__ import annotations

from datetime import datetime

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from renewsync.core.timeutil import as_utc
from renewsync.domain.models import POINT_STATUS_ACTIVE, Point, System


async def create_system(
    session: AsyncSession,
    *,
    id: str,
    system_id: str,
    panel_username: str,
    panel_password: str,
    max_point_capacity: int = 100,
    auto_renewal_enabled: bool = True,
    expires_at: datetime | None = None,
) -> System:
    # Create the row explicitly so renewal bookkeeping starts from known defaults.
    system = System(
        id=id,
        system_id=system_id,
        panel_username=panel_username,
        panel_password=panel_password,
        active_point_count=0,
        max_point_capacity=max_point_capacity,
        auto_renewal_enabled=auto_renewal_enabled,
        renewal_count=0,
        expires_at=as_utc(expires_at),
    )
    session.add(system)
    return system


async def get_system(session: AsyncSession, id: str) -> System | None:
    result = await session.execute(select(System).where(System.id == id))
    return result.scalar_one_or_none()


async def get_system_by_external_id(session: AsyncSession, system_id: str) -> System | None:
    result = await session.execute(select(System).where(System.system_id == system_id))
    return result.scalar_one_or_none()


async def list_systems(session: AsyncSession) -> list[System]:
    result = await session.execute(select(System).order_by(System.system_id, System.id))
    return list(result.scalars().all())


async def list_renewal_candidates(session: AsyncSession) -> list[tuple[System, datetime]]:
    # Pair each auto-renewing system with its nearest active point expiry.
    nearest = (
        select(Point.system_id, func.min(Point.expires_at).label("nearest_expiry"))
        .where(Point.status == POINT_STATUS_ACTIVE)
        .group_by(Point.system_id)
        .subquery()
    )
    stmt = (
        select(System, nearest.c.nearest_expiry)
        .join(nearest, nearest.c.system_id == System.id)
        .where(System.auto_renewal_enabled.is_(True))
        .order_by(nearest.c.nearest_expiry, System.id)
    )
    result = await session.execute(stmt)
    return [(system, as_utc(expiry)) for system, expiry in result.all()]


async def count_active_points(session: AsyncSession, id: str) -> int:
    result = await session.execute(
        select(func.count())
        .select_from(Point)
        .where(Point.system_id == id, Point.status == POINT_STATUS_ACTIVE)
    )
    return int(result.scalar() or 0)


async def record_renewal(session: AsyncSession, system: System, *, renewed_at: datetime) -> None:
    # Bump renewal bookkeeping and refresh the cached active point count.
    system.last_renewed_at = as_utc(renewed_at)
    system.renewal_count = int(system.renewal_count or 0) + 1
    system.active_point_count = await count_active_points(session, system.id)
