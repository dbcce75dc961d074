from __future__ import annotations

from typing import AsyncGenerator

from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncSession

from renewsync.persistence.db import get_session
from renewsync.services.reconciliation import ReconciliationService
from renewsync.services.renewal.controller import RenewalQueueController


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    async with get_session() as session:
        yield session


def get_controller(request: Request) -> RenewalQueueController:
    # The controller is process-wide; it owns the queue and the per-system locks.
    return request.app.state.renewal_controller


def get_reconciliation_service(request: Request) -> ReconciliationService:
    return request.app.state.reconciliation_service
