from __future__ import annotations

import math
import time
from collections import defaultdict, deque
from dataclasses import dataclass
from typing import Deque


@dataclass(frozen=True)
class DeliverySample:
    ts: float
    channel: str
    latency_ms: float
    outcome: str


_delivery_samples: Deque[DeliverySample] = deque(maxlen=10000)
_counters: dict[str, int] = defaultdict(int)
_gauges: dict[str, float] = {}


def increment_counter(name: str, value: int = 1) -> None:
    # Store counters for ops summaries; names follow <thing>_total.
    _counters[name] += value


def set_gauge(name: str, value: float) -> None:
    _gauges[name] = float(value)


def record_delivery(*, channel: str, latency_ms: float, outcome: str) -> None:
    # Capture channel latency and outcome per adapter invocation.
    _delivery_samples.append(
        DeliverySample(ts=time.time(), channel=channel, latency_ms=latency_ms, outcome=outcome)
    )


def counters_snapshot() -> dict[str, int]:
    return dict(_counters)


def gauges_snapshot() -> dict[str, float]:
    return dict(_gauges)


def delivery_latency_by_channel(window_s: int) -> dict[str, dict[str, float | None]]:
    # Aggregate p50/p95/max per channel for samples inside the window.
    cutoff = time.time() - window_s
    by_channel: dict[str, list[float]] = defaultdict(list)
    for sample in _delivery_samples:
        if sample.ts < cutoff:
            continue
        by_channel[sample.channel].append(sample.latency_ms)
    result: dict[str, dict[str, float | None]] = {}
    for channel, latencies in by_channel.items():
        latencies.sort()
        p50_idx = max(0, math.ceil(0.5 * len(latencies)) - 1)
        p95_idx = max(0, math.ceil(0.95 * len(latencies)) - 1)
        result[channel] = {
            "p50": latencies[p50_idx],
            "p95": latencies[p95_idx],
            "max": latencies[-1],
        }
    return result


def reset_telemetry() -> None:
    # Tests reset process-local telemetry between cases.
    _delivery_samples.clear()
    _counters.clear()
    _gauges.clear()
