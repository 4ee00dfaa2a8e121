"""In-process metrics for PairGate.

Counters track lifecycle events; histograms track latencies in
milliseconds. Names in use:

    codes.generated, codes.redeemed, codes.revoked, codes.expired,
    codes.collision, codes.redeem.lost_race
    relationships.created, relationships.terminated
    sessions.started, sessions.ended, sessions.expired
    gate.allowed, gate.denied
    actions.recorded, actions.dropped
    engine.read_retry
    store.conditional_put.conflict, store.timeout, store.failure
    store.<operation>.duration_ms, db.query.count, db.query.duration_ms
    rate_limit.rejected
"""

import time
from contextlib import contextmanager
from dataclasses import dataclass
from threading import Lock
from typing import Any, Iterator, Optional


@dataclass
class LatencyStats:
    """Running summary of observed durations."""

    count: int = 0
    total: float = 0.0
    minimum: Optional[float] = None
    maximum: Optional[float] = None

    def add(self, value: float) -> None:
        self.count += 1
        self.total += value
        self.minimum = value if self.minimum is None else min(self.minimum, value)
        self.maximum = value if self.maximum is None else max(self.maximum, value)

    def as_dict(self) -> dict[str, Any]:
        return {
            "count": self.count,
            "min": self.minimum,
            "max": self.maximum,
            "avg": self.total / self.count if self.count else 0.0,
        }


class MetricsRegistry:
    """Thread-safe counters and latency histograms, exposed on /v1/metrics."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._counters: dict[str, float] = {}
        self._latencies: dict[str, LatencyStats] = {}

    def inc_counter(self, name: str, amount: float = 1.0) -> None:
        with self._lock:
            self._counters[name] = self._counters.get(name, 0.0) + amount

    def observe(self, name: str, value_ms: float) -> None:
        with self._lock:
            self._latencies.setdefault(name, LatencyStats()).add(value_ms)

    @contextmanager
    def timed(self, name: str) -> Iterator[None]:
        """Observe the wall time of the enclosed block under ``name``."""
        started = time.perf_counter()
        try:
            yield
        finally:
            self.observe(name, (time.perf_counter() - started) * 1000.0)

    def counter_value(self, name: str) -> float:
        with self._lock:
            return self._counters.get(name, 0.0)

    def reset(self) -> None:
        with self._lock:
            self._counters.clear()
            self._latencies.clear()

    def snapshot(self) -> dict[str, Any]:
        with self._lock:
            return {
                "counters": dict(self._counters),
                "latencies_ms": {name: stats.as_dict() for name, stats in self._latencies.items()},
            }


metrics = MetricsRegistry()
