"""Bounded in-memory metrics sink for engine runtime counters and histograms."""

from __future__ import annotations

import threading
import time
from collections import Counter, deque
from dataclasses import dataclass, field
from typing import Literal

DEFAULT_CAPACITY = 1000

Aggregation = Literal["sum", "avg", "max", "min", "count"]


@dataclass(frozen=True, slots=True)
class MetricsEvent:
    """One recorded metric point; ``timestamp`` is epoch milliseconds."""

    name: str
    value: float
    timestamp: int
    tags: dict[str, str] = field(default_factory=dict, hash=False)


class MetricsCollector:
    """Append-only ring buffer; the oldest event is evicted once full."""

    def __init__(self, capacity: int = DEFAULT_CAPACITY) -> None:
        if capacity <= 0:
            raise ValueError(f"Metrics capacity must be > 0, got {capacity!r}")
        self._capacity = capacity
        self._events: deque[MetricsEvent] = deque(maxlen=capacity)
        self._lock = threading.Lock()

    @property
    def capacity(self) -> int:
        return self._capacity

    def increment(self, name: str, tags: dict[str, str] | None = None) -> None:
        self._record(f"{name}.count", 1, tags)

    def histogram(self, name: str, value: float, tags: dict[str, str] | None = None) -> None:
        self._record(name, value, tags)

    def get_metrics(self) -> tuple[MetricsEvent, ...]:
        with self._lock:
            return tuple(self._events)

    def clear(self) -> None:
        with self._lock:
            self._events.clear()

    def aggregate(self, name: str, aggregation: Aggregation) -> float:
        """Aggregate the stored values of one metric name; 0 when absent."""

        values = [event.value for event in self.get_metrics() if event.name == name]
        if not values:
            return 0.0
        if aggregation == "sum":
            return float(sum(values))
        if aggregation == "avg":
            return sum(values) / len(values)
        if aggregation == "max":
            return float(max(values))
        if aggregation == "min":
            return float(min(values))
        if aggregation == "count":
            return float(len(values))
        raise ValueError(f"Unsupported aggregation: {aggregation!r}")

    def _record(self, name: str, value: float, tags: dict[str, str] | None) -> None:
        event = MetricsEvent(
            name=name,
            value=value,
            timestamp=int(time.time() * 1000),
            tags=dict(tags or {}),
        )
        with self._lock:
            self._events.append(event)


def render_metrics_lines(events: tuple[MetricsEvent, ...]) -> list[str]:
    """Human readable per-name summary used by CLI commands."""

    if not events:
        return ["Metrics: none recorded"]

    counts = Counter[str]()
    totals: dict[str, float] = {}
    for event in events:
        counts[event.name] += 1
        totals[event.name] = totals.get(event.name, 0.0) + event.value

    lines = [f"Metrics ({len(events)} events):"]
    for name in sorted(counts):
        total = totals[name]
        if name.endswith(".count"):
            lines.append(f"- {name}: {int(total)}")
            continue
        lines.append(f"- {name}: n={counts[name]} avg={total / counts[name]:.1f}")
    return lines


metrics = MetricsCollector()
