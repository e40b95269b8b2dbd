"""Aggregation of agent metrics into time buckets with summaries."""

from __future__ import annotations

import re
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import ROUND_FLOOR, ROUND_HALF_UP, Decimal
from typing import Callable, Iterable

from .models import AgentMetric, AgentMetrics, MetricSummary

_RFC3339 = re.compile(
    r"^(\d{4}-\d{2}-\d{2})[Tt](\d{2}:\d{2}:\d{2})(?:\.(\d+))?([Zz]|[+-]\d{2}:\d{2})$"
)
_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def _parse_ns(ts: str) -> int:
    """Parse an RFC 3339 timestamp into Unix nanoseconds; 0 if invalid."""
    m = _RFC3339.match(ts)
    if not m:
        return 0
    date, clock, frac, zone = m.groups()
    zone = "+00:00" if zone in ("Z", "z") else zone
    try:
        dt = datetime.fromisoformat(f"{date}T{clock}{zone}")
    except ValueError:
        return 0
    seconds = int((dt - _EPOCH).total_seconds())
    nanos = int((frac or "0")[:9].ljust(9, "0"))
    return seconds * 1_000_000_000 + nanos


def _format_ns(ns: int) -> str:
    seconds, nanos = divmod(ns, 1_000_000_000)
    dt = datetime.fromtimestamp(seconds, tz=timezone.utc)
    base = dt.strftime("%Y-%m-%dT%H:%M:%S")
    if nanos:
        base += "." + f"{nanos:09d}".rstrip("0")
    return base + "Z"


def _datetime_ns(t: datetime) -> int:
    if t.tzinfo is None:
        t = t.replace(tzinfo=timezone.utc)
    delta = t - _EPOCH
    return (delta.days * 86400 + delta.seconds) * 1_000_000_000 + delta.microseconds * 1000


@dataclass
class _Bucket:
    time_ns: int
    agent_id: str
    counters: dict[str, list[int]] = field(default_factory=dict)
    summaries: list[MetricSummary] = field(default_factory=list)

    def summary(self, name: str) -> MetricSummary:
        for s in self.summaries:
            if s.name == name:
                return s
        s = MetricSummary(name=name)
        self.summaries.append(s)
        return s

    def to_agent_metrics(self) -> AgentMetrics:
        return AgentMetrics(agent_id=self.agent_id, timestamp=_format_ns(self.time_ns), metrics=self.summaries)


def _average(data: list[int]) -> float:
    total = sum((Decimal(d) for d in data), Decimal(0))
    return float((total / Decimal(len(data))).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))


def _p95(data: list[int]) -> float:
    if not data:
        return 0.0
    if len(data) == 1:
        return float(data[0])
    k95 = int((Decimal(len(data)) * Decimal("0.95")).to_integral_value(rounding=ROUND_FLOOR))
    data.sort()
    return float(data[k95 - 1])


class MetricsAggregator:
    """Collects agent metrics into buckets and summarises them when flushed."""

    def __init__(self, bucket_interval: float, clock: Callable[[], float] = time.monotonic) -> None:
        self._interval_ns = int(round(bucket_interval * 1_000_000_000))
        if self._interval_ns <= 0:
            raise ValueError("bucket interval must be positive")
        self.bucket_interval = bucket_interval
        self._clock = clock
        self._last_flush = clock()
        self._buckets: list[_Bucket] = []
        self._lock = threading.Lock()

    def _closest_ns(self, ns: int) -> int:
        return ns - ns % self._interval_ns

    def find_closest_bucket_time(self, t: datetime) -> datetime:
        """The start of the bucket containing t, e.g. 15:15:15 -> 15:15:00 per minute."""
        ns = self._closest_ns(_datetime_ns(t))
        seconds, nanos = divmod(ns, 1_000_000_000)
        return datetime.fromtimestamp(seconds, tz=timezone.utc).replace(microsecond=nanos // 1000)

    def _find_bucket(self, agent_id: str, ns: int) -> _Bucket:
        bucket_ns = self._closest_ns(ns)
        for b in self._buckets:
            if b.agent_id == agent_id and b.time_ns == bucket_ns:
                return b
        b = _Bucket(time_ns=bucket_ns, agent_id=agent_id)
        self._buckets.append(b)
        return b

    def add_agent_metrics(self, metrics: Iterable[AgentMetric]) -> None:
        with self._lock:
            for m in metrics:
                bucket = self._find_bucket(m.agent_id, _parse_ns(m.timestamp))
                bucket.counters.setdefault(m.name, []).append(int(m.value) % 2**32)

    def _drain(self) -> list[AgentMetrics]:
        self._last_flush = self._clock()
        buckets, self._buckets = self._buckets, []
        buckets.sort(key=lambda b: b.time_ns)
        for b in buckets:
            for name, data in b.counters.items():
                if not data:
                    continue
                s = b.summary(name)
                s.count = len(data)
                s.average = _average(data)
                s.max = float(max(0, *data))
                s.p95 = _p95(data)
                s.sum = float(sum(data))
        return [b.to_agent_metrics() for b in buckets]

    def force_flush(self) -> list[AgentMetrics]:
        with self._lock:
            return self._drain()

    def try_flush(self) -> tuple[list[AgentMetrics], bool]:
        """Flush if a bucket interval has passed since the last flush."""
        with self._lock:
            if self._clock() - self._last_flush < self.bucket_interval:
                return [], False
            return self._drain(), True