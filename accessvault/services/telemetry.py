from __future__ import annotations

import time
from collections import Counter, defaultdict, deque
from dataclasses import dataclass
from typing import Deque


@dataclass(frozen=True)
class ProviderCall:
    ts: float
    provider: str
    operation: str
    latency_ms: float
    success: bool


# Process-local; the health endpoint reports a rolling window of provider calls.
_provider_calls: Deque[ProviderCall] = deque(maxlen=10000)
_counters: Counter[str] = Counter()


def record_external_call(*, provider: str, operation: str, latency_ms: float, success: bool) -> None:
    _provider_calls.append(
        ProviderCall(ts=time.time(), provider=provider, operation=operation, latency_ms=latency_ms, success=success)
    )
    if not success:
        _counters[f"provider.{provider}.{operation}.failed"] += 1


def record_request(*, path: str, status_code: int, latency_ms: float) -> None:
    # Only status classes are kept; paths carry ids and would explode cardinality.
    _counters[f"http.responses.{status_code // 100}xx"] += 1
    if latency_ms > 5000:
        _counters["http.slow_requests"] += 1


def increment_counter(name: str, value: int = 1) -> None:
    _counters[name] += value


def _p95(values: list[float]) -> float:
    ordered = sorted(values)
    return ordered[min(len(ordered) - 1, int(round(0.95 * (len(ordered) - 1))))]


def external_call_summary(window_s: int = 300) -> dict[str, dict[str, float]]:
    # Per-provider call volume, error rate and latency over the trailing window.
    cutoff = time.time() - window_s
    by_provider: dict[str, list[ProviderCall]] = defaultdict(list)
    for call in _provider_calls:
        if call.ts >= cutoff:
            by_provider[call.provider].append(call)
    summary: dict[str, dict[str, float]] = {}
    for provider, calls in by_provider.items():
        latencies = [call.latency_ms for call in calls]
        summary[provider] = {
            "calls": float(len(calls)),
            "error_rate": sum(1 for call in calls if not call.success) / len(calls),
            "avg_latency_ms": sum(latencies) / len(latencies),
            "p95_latency_ms": _p95(latencies),
        }
    return summary


def counters_snapshot() -> dict[str, int]:
    return dict(_counters)


def reset_telemetry() -> None:
    _provider_calls.clear()
    _counters.clear()
