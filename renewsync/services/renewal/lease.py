from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Any
from uuid import uuid4

from renewsync.core.config import get_settings
from renewsync.services.resilience import get_resilience_redis


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RunLease:
    key: str
    token: str
    # None when REDIS_URL is unset and only the process-local lock applies.
    redis: Any | None = None


def run_lease_key(system_id: str) -> str:
    return f"{get_settings().renewal_lease_prefix}:{system_id}"


async def acquire_run_lease(system_id: str) -> RunLease | None:
    """Take the cross-process lease for one system, or return None when another process holds it."""
    key = run_lease_key(system_id)
    token = uuid4().hex
    redis = await get_resilience_redis()
    if redis is None:
        return RunLease(key=key, token=token)
    acquired = await redis.set(key, token, nx=True, ex=get_settings().renewal_lease_ttl_s)
    if not acquired:
        return None
    return RunLease(key=key, token=token, redis=redis)


async def release_run_lease(lease: RunLease) -> None:
    if lease.redis is None:
        return
    # Only the holder may release; an expired lease may already belong to someone else.
    current = await lease.redis.get(lease.key)
    if current == lease.token:
        await lease.redis.delete(lease.key)
    else:
        logger.warning("renewal_run_lease_lost key=%s", lease.key)
