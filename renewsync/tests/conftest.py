from __future__ import annotations

import asyncio
import os
from pathlib import Path
import tempfile

# Point the engine at a throwaway SQLite file before renewsync.persistence.db is imported.
_TEST_DB = Path(tempfile.gettempdir()) / f"renewsync-test-{os.getpid()}.sqlite3"
os.environ.setdefault("DATABASE_URL", f"sqlite+aiosqlite:///{_TEST_DB}")
os.environ.setdefault("PANEL_PROVIDER", "fake")
os.environ.setdefault("SCHEDULER_ENABLED", "false")

import pytest  # noqa: E402
from sqlalchemy import delete  # noqa: E402

from renewsync.core.config import get_settings  # noqa: E402
from renewsync.domain.models import AuditEvent, Base, ExtractionAudit, Point, System  # noqa: E402
from renewsync.persistence.db import SessionLocal, engine  # noqa: E402
from renewsync.services.telemetry import reset_telemetry  # noqa: E402


@pytest.fixture(scope="session", autouse=True)
def create_schema() -> None:
    # Build the schema once per session on a private loop, then release its connections.
    async def _create() -> None:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.drop_all)
            await conn.run_sync(Base.metadata.create_all)
        await engine.dispose()

    asyncio.run(_create())
    yield
    _TEST_DB.unlink(missing_ok=True)


@pytest.fixture(autouse=True)
async def reset_state_between_tests() -> None:
    reset_telemetry()
    yield
    async with SessionLocal() as session:
        await session.execute(delete(ExtractionAudit))
        await session.execute(delete(AuditEvent))
        await session.execute(delete(Point))
        await session.execute(delete(System))
        await session.commit()
    # Dispose the async engine to prevent cross-loop connection reuse between tests.
    await engine.dispose()
    get_settings.cache_clear()
