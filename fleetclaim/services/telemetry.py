from __future__ import annotations

import math
import time
from collections import defaultdict, deque
from dataclasses import dataclass
from typing import Deque


@dataclass(frozen=True)
class ExternalCallSample:
    ts: float
    integration: str
    latency_ms: float
    success: bool


_external_samples: Deque[ExternalCallSample] = deque(maxlen=5000)


def record_external_call(*, integration: str, latency_ms: float, success: bool) -> None:
    # Capture vendor/weather/email call latency and outcomes.
    _external_samples.append(
        ExternalCallSample(
            ts=time.time(),
            integration=integration,
            latency_ms=latency_ms,
            success=success,
        )
    )


def _p95(latencies: list[float]) -> float:
    latencies.sort()
    idx = max(0, math.ceil(0.95 * len(latencies)) - 1)
    return latencies[idx]


def external_calls_since(since: float) -> dict[str, dict[str, float]]:
    """Per-integration call count, failures and latency for samples at or after ``since``."""
    by_integration: dict[str, list[ExternalCallSample]] = defaultdict(list)
    for sample in _external_samples:
        if sample.ts >= since:
            by_integration[sample.integration].append(sample)
    summary: dict[str, dict[str, float]] = {}
    for integration, samples in sorted(by_integration.items()):
        latencies = [sample.latency_ms for sample in samples]
        summary[integration] = {
            "calls": float(len(samples)),
            "failures": float(sum(1 for sample in samples if not sample.success)),
            "p95_ms": round(_p95(latencies), 1),
            "max_ms": round(max(latencies), 1),
        }
    return summary


def reset_telemetry() -> None:
    # Tests reset process-local samples between cases.
    _external_samples.clear()
