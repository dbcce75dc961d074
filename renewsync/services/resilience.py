from __future__ import annotations

import asyncio
from dataclasses import dataclass, replace
from enum import Enum
import logging
import random
import time
from typing import Any, Awaitable, Callable

from redis.asyncio import Redis

from renewsync.core.config import get_settings
from renewsync.core.errors import IntegrationUnavailableError
from renewsync.services.telemetry import increment_counter, set_gauge


logger = logging.getLogger(__name__)

_redis_client: tuple[asyncio.AbstractEventLoop, Redis] | None = None


async def get_resilience_redis() -> Redis | None:
    # Breaker state is shared through Redis only when REDIS_URL is set; clients are bound to one loop.
    global _redis_client
    url = get_settings().redis_url
    if not url:
        return None
    loop = asyncio.get_running_loop()
    if _redis_client is not None and _redis_client[0] is loop:
        return _redis_client[1]
    client = Redis.from_url(url, encoding="utf-8", decode_responses=True)
    _redis_client = (loop, client)
    return client


def _is_transient(exc: Exception) -> bool:
    if isinstance(exc, (TimeoutError, OSError)):
        return True
    status_code = getattr(exc, "status_code", None)
    return isinstance(status_code, int) and status_code >= 500


@dataclass(frozen=True)
class RetryPolicy:
    timeout_ms: int
    max_attempts: int
    backoff_ms: int


def default_retry_policy() -> RetryPolicy:
    settings = get_settings()
    return RetryPolicy(
        timeout_ms=settings.ext_call_timeout_ms,
        max_attempts=settings.ext_retry_max_attempts,
        backoff_ms=settings.ext_retry_backoff_ms,
    )


def _backoff_seconds(policy: RetryPolicy, attempt: int) -> float:
    # Exponential in the attempt number, jittered to +/-50%.
    base = (policy.backoff_ms / 1000.0) * (2 ** (attempt - 1))
    return base * random.uniform(0.5, 1.5)


async def retry_async(
    func: Callable[[], Awaitable[Any]],
    *,
    policy: RetryPolicy | None = None,
    retryable: Callable[[Exception], bool] | None = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> Any:
    """Await ``func`` under a per-attempt timeout, retrying transient failures.

    Non-retryable errors and the error from the final attempt propagate unchanged.
    """
    policy = policy or default_retry_policy()
    should_retry = retryable or _is_transient
    attempts = max(1, policy.max_attempts)
    timeout_s = policy.timeout_ms / 1000.0
    for attempt in range(1, attempts + 1):
        try:
            return await asyncio.wait_for(func(), timeout=timeout_s)
        except Exception as exc:  # noqa: BLE001 - re-raised unless retryable
            if attempt == attempts or not should_retry(exc):
                raise
            increment_counter("external_retries_total")
            await sleep(_backoff_seconds(policy, attempt))


class BreakerPhase(str, Enum):
    CLOSED = "closed"
    HALF_OPEN = "half_open"
    OPEN = "open"


_PHASE_GAUGE = {BreakerPhase.CLOSED: 0.0, BreakerPhase.HALF_OPEN: 0.5, BreakerPhase.OPEN: 1.0}


@dataclass(frozen=True)
class CircuitBreakerConfig:
    failure_threshold: int
    open_seconds: int
    half_open_trials: int


@dataclass
class BreakerSnapshot:
    phase: BreakerPhase = BreakerPhase.CLOSED
    consecutive_failures: int = 0
    opened_at: float | None = None
    probes: int = 0

    def to_mapping(self) -> dict[str, str]:
        return {
            "phase": self.phase.value,
            "consecutive_failures": str(self.consecutive_failures),
            "opened_at": "" if self.opened_at is None else repr(self.opened_at),
            "probes": str(self.probes),
        }

    @classmethod
    def from_mapping(cls, raw: dict[str, str]) -> "BreakerSnapshot":
        opened_at = raw.get("opened_at") or None
        return cls(
            phase=BreakerPhase(raw.get("phase", BreakerPhase.CLOSED.value)),
            consecutive_failures=int(raw.get("consecutive_failures") or 0),
            opened_at=float(opened_at) if opened_at else None,
            probes=int(raw.get("probes") or 0),
        )


class CircuitBreaker:
    """Consecutive-failure breaker with a bounded number of half-open probes.

    State lives in-process unless a Redis client is supplied, in which case
    every process calling the same integration shares one breaker.
    """

    def __init__(
        self,
        name: str,
        *,
        redis: Redis | None = None,
        config: CircuitBreakerConfig | None = None,
        time_source: Callable[[], float] | None = None,
    ) -> None:
        settings = get_settings()
        self._name = name
        self._redis = redis
        self._config = config or CircuitBreakerConfig(
            failure_threshold=settings.cb_failure_threshold,
            open_seconds=settings.cb_open_seconds,
            half_open_trials=settings.cb_half_open_trials,
        )
        self._clock = time_source or time.monotonic
        self._redis_key = f"{settings.cb_redis_prefix}:{name}"
        self._snapshot = BreakerSnapshot()

    @property
    def name(self) -> str:
        return self._name

    async def _read(self) -> BreakerSnapshot:
        if self._redis is not None:
            raw = await self._redis.hgetall(self._redis_key)
            if raw:
                return BreakerSnapshot.from_mapping(raw)
        return replace(self._snapshot)

    async def _write(self, snapshot: BreakerSnapshot) -> None:
        self._snapshot = snapshot
        if self._redis is None:
            return
        await self._redis.hset(self._redis_key, mapping=snapshot.to_mapping())
        # Abandoned breakers expire instead of pinning an integration open forever.
        await self._redis.expire(self._redis_key, max(self._config.open_seconds * 4, 60))

    def _move(self, snapshot: BreakerSnapshot, target: BreakerPhase) -> BreakerSnapshot:
        if snapshot.phase != target:
            logger.warning(
                "circuit_breaker_transition name=%s from=%s to=%s",
                self._name,
                snapshot.phase.value,
                target.value,
            )
            increment_counter(f"circuit_breaker_transition_total.{self._name}.{target.value}")
            set_gauge(f"circuit_breaker_state.{self._name}", _PHASE_GAUGE[target])
        opened_at = self._clock() if target == BreakerPhase.OPEN else None
        return BreakerSnapshot(phase=target, opened_at=opened_at)

    def _unavailable(self) -> IntegrationUnavailableError:
        return IntegrationUnavailableError(f"{self._name} is temporarily unavailable")

    async def state(self) -> str:
        return (await self._read()).phase.value

    async def before_call(self) -> BreakerSnapshot:
        """Admit a call or raise IntegrationUnavailableError while the breaker is open."""
        snapshot = await self._read()
        if snapshot.phase == BreakerPhase.OPEN:
            opened_at = snapshot.opened_at or 0.0
            if self._clock() - opened_at < self._config.open_seconds:
                raise self._unavailable()
            snapshot = self._move(snapshot, BreakerPhase.HALF_OPEN)
        if snapshot.phase == BreakerPhase.HALF_OPEN:
            if snapshot.probes >= self._config.half_open_trials:
                await self._write(snapshot)
                raise self._unavailable()
            snapshot.probes += 1
            await self._write(snapshot)
        return snapshot

    async def record_success(self) -> None:
        snapshot = await self._read()
        if snapshot.phase != BreakerPhase.CLOSED:
            await self._write(self._move(snapshot, BreakerPhase.CLOSED))
        elif snapshot.consecutive_failures:
            await self._write(BreakerSnapshot())

    async def record_failure(self) -> None:
        snapshot = await self._read()
        if snapshot.phase == BreakerPhase.HALF_OPEN:
            # A failed probe re-opens immediately.
            await self._write(self._move(snapshot, BreakerPhase.OPEN))
            return
        snapshot.consecutive_failures += 1
        if snapshot.consecutive_failures >= self._config.failure_threshold:
            snapshot = self._move(snapshot, BreakerPhase.OPEN)
        await self._write(snapshot)


@dataclass
class BulkheadLease:
    bulkhead: "Bulkhead"
    released: bool = False

    def release(self) -> None:
        # Idempotent so finally-blocks can release unconditionally.
        if not self.released:
            self.released = True
            self.bulkhead._release()  # noqa: SLF001


class Bulkhead:
    """Non-blocking concurrency cap: a full bulkhead rejects rather than queues."""

    def __init__(self, name: str, limit: int) -> None:
        self._name = name
        self._limit = max(1, limit)
        self._in_use = 0

    @property
    def name(self) -> str:
        return self._name

    @property
    def limit(self) -> int:
        return self._limit

    @property
    def in_use(self) -> int:
        return self._in_use

    def try_acquire(self) -> BulkheadLease | None:
        if self._in_use >= self._limit:
            return None
        self._in_use += 1
        set_gauge(f"bulkhead_in_use.{self._name}", float(self._in_use))
        return BulkheadLease(self)

    def _release(self) -> None:
        self._in_use = max(0, self._in_use - 1)
        set_gauge(f"bulkhead_in_use.{self._name}", float(self._in_use))
