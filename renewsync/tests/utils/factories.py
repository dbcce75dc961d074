from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from renewsync.core.config import Settings
from renewsync.domain.models import POINT_STATUS_ACTIVE, Point, System
from renewsync.persistence.db import SessionLocal
from renewsync.persistence.repos.points import create_point
from renewsync.persistence.repos.systems import create_system


NOW = datetime(2025, 10, 1, 12, 0, tzinfo=timezone.utc)

SCENARIO_CAPTURE = "USUÁRIO: 1234567890\nSENHA: AB12CD34\nVENCIMENTO: 10/10/2025 10:00:00"


def make_settings(**overrides: Any) -> Settings:
    # Fast, deterministic defaults for tests; fake sleeps make the waits free.
    values: dict[str, Any] = {
        "panel_provider": "fake",
        "panel_step_settle_s": 1.0,
        "panel_nav_max_attempts": 1,
        "panel_nav_backoff_ms": 0,
        "panel_result_poll_interval_s": 0.5,
        "panel_result_timeout_s": 15.0,
        "panel_manual_grace_s": 45.0,
        "renewal_lead_time_minutes": 3 * 24 * 60,
        "renewal_backoff_base_s": 30.0,
        "renewal_backoff_max_s": 900.0,
        "renewal_max_attempts": 3,
        "renewal_max_concurrency": 2,
        "partner_sync_on_renewal": True,
        "scheduler_enabled": False,
    }
    values.update(overrides)
    return Settings(**values)


class FakeClock:
    """Monotonic clock whose sleep advances time instead of waiting."""

    def __init__(self, start: float = 0.0) -> None:
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds
        await asyncio.sleep(0)


class WallClock:
    def __init__(self, now: datetime = NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


async def seed_system(
    *,
    system_id: str | None = None,
    id: str | None = None,
    panel_username: str = "panel-user",
    panel_password: str = "panel-pass",
    auto_renewal_enabled: bool = True,
    last_renewed_at: datetime | None = None,
    active_point_count: int | None = None,
) -> System:
    async with SessionLocal() as session:
        system = await create_system(
            session,
            id=id or f"sys-{uuid4().hex[:8]}",
            system_id=system_id or str(uuid4().int)[:6],
            panel_username=panel_username,
            panel_password=panel_password,
            auto_renewal_enabled=auto_renewal_enabled,
        )
        system.last_renewed_at = last_renewed_at
        if active_point_count is not None:
            system.active_point_count = active_point_count
        await session.commit()
        return system


async def seed_point(
    system: System,
    *,
    expires_at: datetime,
    username: str | None = None,
    password: str = "old-pass",
    status: str = POINT_STATUS_ACTIVE,
) -> Point:
    async with SessionLocal() as session:
        point = await create_point(
            session,
            id=f"pt-{uuid4().hex[:8]}",
            system_id=system.id,
            username=username or f"user-{uuid4().hex[:6]}",
            password=password,
            expires_at=expires_at,
            status=status,
        )
        await session.commit()
        return point
