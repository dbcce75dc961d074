from __future__ import annotations

import pytest

from renewsync.core.errors import IntegrationUnavailableError
from renewsync.services.resilience import (
    Bulkhead,
    CircuitBreaker,
    CircuitBreakerConfig,
    RetryPolicy,
    retry_async,
)
from renewsync.services.telemetry import counters_snapshot, gauges_snapshot


class _Clock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


@pytest.mark.asyncio
async def test_breaker_opens_then_half_opens_after_cooldown() -> None:
    clock = _Clock()
    breaker = CircuitBreaker(
        "partner_api",
        config=CircuitBreakerConfig(failure_threshold=2, open_seconds=30, half_open_trials=1),
        time_source=clock,
    )

    await breaker.record_failure()
    assert await breaker.state() == "closed"
    await breaker.record_failure()
    assert await breaker.state() == "open"

    with pytest.raises(IntegrationUnavailableError):
        await breaker.before_call()

    clock.now = 31.0
    await breaker.before_call()
    assert await breaker.state() == "half_open"
    # Trial budget exhausted while the first probe is outstanding.
    with pytest.raises(IntegrationUnavailableError):
        await breaker.before_call()

    await breaker.record_success()
    assert await breaker.state() == "closed"
    assert counters_snapshot()["circuit_breaker_transition_total.partner_api.open"] == 1
    assert gauges_snapshot()["circuit_breaker_state.partner_api"] == 0.0


@pytest.mark.asyncio
async def test_half_open_failure_reopens_breaker() -> None:
    clock = _Clock()
    breaker = CircuitBreaker(
        "panel",
        config=CircuitBreakerConfig(failure_threshold=1, open_seconds=10, half_open_trials=1),
        time_source=clock,
    )
    await breaker.record_failure()
    clock.now = 11.0
    await breaker.before_call()

    await breaker.record_failure()

    assert await breaker.state() == "open"


@pytest.mark.asyncio
async def test_retry_async_retries_only_retryable_errors() -> None:
    calls = {"count": 0}
    sleeps: list[float] = []

    async def _sleep(seconds: float) -> None:
        sleeps.append(seconds)

    async def _flaky() -> str:
        calls["count"] += 1
        if calls["count"] < 3:
            raise TimeoutError("slow")
        return "ok"

    policy = RetryPolicy(timeout_ms=1000, max_attempts=3, backoff_ms=100)
    assert await retry_async(_flaky, policy=policy, sleep=_sleep) == "ok"
    assert len(sleeps) == 2
    assert counters_snapshot()["external_retries_total"] == 2

    async def _broken() -> None:
        raise ValueError("bad input")

    with pytest.raises(ValueError):
        await retry_async(_broken, policy=policy, sleep=_sleep)
    assert len(sleeps) == 2


def test_bulkhead_rejects_when_saturated() -> None:
    bulkhead = Bulkhead("renewal", 1)

    lease = bulkhead.try_acquire()
    assert lease is not None
    assert bulkhead.try_acquire() is None
    assert bulkhead.in_use == 1

    lease.release()
    lease.release()
    assert bulkhead.in_use == 0
    assert bulkhead.try_acquire() is not None
