from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from renewsync.core.config import get_settings


def _build_engine(url: str) -> AsyncEngine:
    options: dict[str, Any] = {"pool_pre_ping": True}
    if not url.startswith("sqlite"):
        settings = get_settings()
        options.update(
            pool_size=max(1, settings.db_pool_size),
            max_overflow=max(0, settings.db_max_overflow),
            pool_timeout=30,
            pool_recycle=1800,
        )
    return create_async_engine(url, **options)


engine = _build_engine(get_settings().database_url)
SessionLocal = async_sessionmaker(engine, expire_on_commit=False)


@asynccontextmanager
async def get_session() -> AsyncIterator[AsyncSession]:
    async with SessionLocal() as session:
        yield session


def pool_stats() -> dict[str, int | None]:
    # SQLite's pool classes lack some of these counters; report them as None.
    pool = engine.sync_engine.pool
    stats: dict[str, int | None] = {}
    for key, attr in (("size", "size"), ("checked_out", "checkedout"), ("checked_in", "checkedin"), ("overflow", "overflow")):
        counter = getattr(pool, attr, None)
        stats[key] = int(counter()) if callable(counter) else None
    return stats
