from __future__ import annotations

import time
from collections import defaultdict, deque
from dataclasses import dataclass
from typing import Deque


@dataclass(frozen=True)
class OperationSample:
    ts: float
    operation: str
    tenant_id: str | None
    latency_ms: float
    success: bool


_operation_samples: Deque[OperationSample] = deque(maxlen=10000)
_counters: dict[str, int] = defaultdict(int)
_gauges: dict[str, float] = {}


def record_operation(*, operation: str, tenant_id: str | None, latency_ms: float, success: bool) -> None:
    # Capture lifecycle operation latency and outcome per tenant.
    _operation_samples.append(
        OperationSample(
            ts=time.time(),
            operation=operation,
            tenant_id=tenant_id,
            latency_ms=latency_ms,
            success=success,
        )
    )


def increment_counter(name: str, value: int = 1) -> None:
    _counters[name] += value


def set_gauge(name: str, value: float) -> None:
    _gauges[name] = value


def get_counter(name: str) -> int:
    return _counters.get(name, 0)


def get_gauge(name: str) -> float | None:
    return _gauges.get(name)


def snapshot() -> dict[str, dict]:
    operations: dict[str, dict[str, int]] = defaultdict(lambda: {"ok": 0, "failed": 0})
    for sample in _operation_samples:
        operations[sample.operation]["ok" if sample.success else "failed"] += 1
    return {"counters": dict(_counters), "gauges": dict(_gauges), "operations": dict(operations)}


def reset() -> None:
    # Allow tests to start from clean counters.
    _operation_samples.clear()
    _counters.clear()
    _gauges.clear()
