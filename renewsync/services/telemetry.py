from __future__ import annotations

from collections import Counter, deque
from dataclasses import dataclass
import math
import time
from typing import Deque, Iterable


@dataclass(frozen=True)
class _Sample:
    ts: float
    # Request path or integration name, depending on the buffer.
    key: str
    latency_ms: float
    ok: bool


_requests: Deque[_Sample] = deque(maxlen=20000)
_external_calls: Deque[_Sample] = deque(maxlen=10000)
_counters: Counter[str] = Counter()
_gauges: dict[str, float] = {}


def record_request(*, path: str, status_code: int, latency_ms: float) -> None:
    _requests.append(_Sample(time.time(), path, latency_ms, status_code < 500))


def record_external_call(*, integration: str, latency_ms: float, success: bool) -> None:
    _external_calls.append(_Sample(time.time(), integration, latency_ms, success))


def increment_counter(name: str, value: int = 1) -> None:
    _counters[name] += value


def set_gauge(name: str, value: float) -> None:
    _gauges[name] = value


def _summarize(samples: Iterable[_Sample], window_s: int) -> dict[str, dict[str, float | None]]:
    """Group samples newer than ``window_s`` by key into p95/max latency and failure count."""
    cutoff = time.time() - window_s
    grouped: dict[str, list[_Sample]] = {}
    for sample in samples:
        if sample.ts >= cutoff:
            grouped.setdefault(sample.key, []).append(sample)
    summary: dict[str, dict[str, float | None]] = {}
    for key, group in grouped.items():
        latencies = sorted(sample.latency_ms for sample in group)
        rank = max(0, math.ceil(0.95 * len(latencies)) - 1)
        summary[key] = {
            "p95": latencies[rank],
            "max": latencies[-1],
            "failures": float(sum(not sample.ok for sample in group)),
        }
    return summary


def request_latency_by_path(window_s: int) -> dict[str, dict[str, float | None]]:
    # Server errors count as failures; 4xx are the caller's problem.
    return _summarize(list(_requests), window_s)


def external_latency_by_integration(window_s: int) -> dict[str, dict[str, float | None]]:
    return _summarize(list(_external_calls), window_s)


def counters_snapshot() -> dict[str, int]:
    return dict(_counters)


def gauges_snapshot() -> dict[str, float]:
    return dict(_gauges)


def reset_telemetry() -> None:
    _requests.clear()
    _external_calls.clear()
    _counters.clear()
    _gauges.clear()
