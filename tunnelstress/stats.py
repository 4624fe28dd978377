"""Thread-safe latency and traffic statistics for stress-test tunnels."""

from __future__ import annotations

import math
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from itertools import accumulate
from typing import Iterable, NamedTuple, Optional, Union

FINE_LATENCY_BUCKETS = 1000
MEDIUM_LATENCY_BUCKETS = 990
COARSE_LATENCY_BUCKETS = 990
LATENCY_BUCKET_COUNT = (
    FINE_LATENCY_BUCKETS + MEDIUM_LATENCY_BUCKETS + COARSE_LATENCY_BUCKETS + 1
)

_MEDIUM_LIMIT_MICROS = 100_000
_COARSE_LIMIT_MICROS = 10_000_000
_ONE_MICROSECOND = timedelta(microseconds=1)


def latency_bucket(micros: int) -> int:
    """Return the histogram bucket index for a latency in microseconds."""
    if micros < 0:
        raise ValueError("latency must not be negative")
    if micros < FINE_LATENCY_BUCKETS:
        return int(micros)
    if micros < _MEDIUM_LIMIT_MICROS:
        return FINE_LATENCY_BUCKETS + (micros - FINE_LATENCY_BUCKETS) // 100
    if micros < _COARSE_LIMIT_MICROS:
        return (
            FINE_LATENCY_BUCKETS
            + MEDIUM_LATENCY_BUCKETS
            + (micros - _MEDIUM_LIMIT_MICROS) // 10_000
        )
    return LATENCY_BUCKET_COUNT - 1


def _check_index(idx: int) -> None:
    if not 0 <= idx < LATENCY_BUCKET_COUNT:
        raise IndexError(f"bucket index {idx} out of range")


def bucket_upper_micros(idx: int) -> int:
    """Return the upper bound, in microseconds, reported for a bucket."""
    _check_index(idx)
    if idx < FINE_LATENCY_BUCKETS:
        return idx
    if idx < FINE_LATENCY_BUCKETS + MEDIUM_LATENCY_BUCKETS:
        return 1000 + (idx - FINE_LATENCY_BUCKETS + 1) * 100
    if idx < LATENCY_BUCKET_COUNT - 1:
        offset = idx - FINE_LATENCY_BUCKETS - MEDIUM_LATENCY_BUCKETS + 1
        return _MEDIUM_LIMIT_MICROS + offset * 10_000
    return _COARSE_LIMIT_MICROS


def bucket_midpoint_micros(idx: int) -> float:
    """Return the representative latency, in microseconds, of a bucket."""
    _check_index(idx)
    if idx < FINE_LATENCY_BUCKETS:
        return float(idx)
    if idx < FINE_LATENCY_BUCKETS + MEDIUM_LATENCY_BUCKETS:
        lower = 1000 + (idx - FINE_LATENCY_BUCKETS) * 100
        return float(lower + 50)
    if idx < LATENCY_BUCKET_COUNT - 1:
        offset = idx - FINE_LATENCY_BUCKETS - MEDIUM_LATENCY_BUCKETS
        lower = _MEDIUM_LIMIT_MICROS + offset * 10_000
        return float(lower + 5000)
    return float(_COARSE_LIMIT_MICROS)


def _micros_to_millis(micros: float) -> float:
    return micros / 1000.0


@dataclass(frozen=True)
class StatsSnapshot:
    """A consistent copy of one tunnel's counters."""

    latency_hist: tuple
    samples: int
    sum_micros: int
    min_micros: int
    max_micros: int
    bytes_sent: int
    bytes_recv: int
    errors: int
    start: Optional[datetime]
    end: Optional[datetime]


class Stats:
    """Counters for one tunnel; every method is safe to call from many threads."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._hist = [0] * LATENCY_BUCKET_COUNT
        self._samples = 0
        self._sum_micros = 0
        self._min_micros: Optional[int] = None
        self._max_micros = 0
        self.bytes_sent = 0
        self.bytes_recv = 0
        self.errors = 0
        self.start: Optional[datetime] = None
        self.end: Optional[datetime] = None

    def record_rtt(self, rtt: Union[timedelta, float]) -> None:
        """Record one round-trip time, given as a timedelta or in seconds."""
        if not isinstance(rtt, timedelta):
            rtt = timedelta(seconds=rtt)
        micros = max(0, rtt // _ONE_MICROSECOND)
        with self._lock:
            self._hist[latency_bucket(micros)] += 1
            self._samples += 1
            self._sum_micros += micros
            if self._min_micros is None or micros < self._min_micros:
                self._min_micros = micros
            if micros > self._max_micros:
                self._max_micros = micros

    def record_error(self) -> None:
        with self._lock:
            self.errors += 1

    def add_sent(self, n: int) -> None:
        with self._lock:
            self.bytes_sent += n

    def add_recv(self, n: int) -> None:
        with self._lock:
            self.bytes_recv += n

    def mark_start(self, t: datetime) -> None:
        with self._lock:
            self.start = t

    def mark_end(self, t: datetime) -> None:
        with self._lock:
            self.end = t

    def snapshot(self) -> StatsSnapshot:
        """Return a copy of all counters taken under one lock."""
        with self._lock:
            return StatsSnapshot(
                latency_hist=tuple(self._hist),
                samples=self._samples,
                sum_micros=self._sum_micros,
                min_micros=self._min_micros or 0,
                max_micros=self._max_micros,
                bytes_sent=self.bytes_sent,
                bytes_recv=self.bytes_recv,
                errors=self.errors,
                start=self.start,
                end=self.end,
            )


class Percentiles(NamedTuple):
    min: float
    max: float
    avg: float
    p50: float
    p95: float
    p98: float
    p99: float


class TailPercentiles(NamedTuple):
    tail5: float
    tail2: float


@dataclass
class AggregateStats:
    """Combined statistics of many tunnels; latencies are reported in ms."""

    tunnel_count: int = 0
    latency_hist: list = field(default_factory=lambda: [0] * LATENCY_BUCKET_COUNT)
    total_samples: int = 0
    total_latency_micros: int = 0
    min_latency_micros: int = 0
    max_latency_micros: int = 0
    total_bytes_sent: int = 0
    total_bytes_recv: int = 0
    total_errors: int = 0
    duration: timedelta = timedelta(0)

    def percentiles(self) -> Percentiles:
        if self.total_samples == 0:
            return Percentiles(0.0, 0.0, 0.0, 0.0, 0.0, 0.0, 0.0)
        return Percentiles(
            min=_micros_to_millis(self.min_latency_micros),
            max=_micros_to_millis(self.max_latency_micros),
            avg=self.total_latency_micros / self.total_samples / 1000.0,
            p50=self._percentile(0.50),
            p95=self._percentile(0.95),
            p98=self._percentile(0.98),
            p99=self._percentile(0.99),
        )

    def tail_percentiles(self) -> TailPercentiles:
        if self.total_samples == 0:
            return TailPercentiles(0.0, 0.0)
        return TailPercentiles(self._tail_avg(0.05), self._tail_avg(0.02))

    def latency_variance(self) -> float:
        """Standard deviation of the latency in milliseconds, from the histogram."""
        if self.total_samples < 2:
            return 0.0
        avg = self.total_latency_micros / self.total_samples
        sum_sq_diff = sum(
            (bucket_midpoint_micros(i) - avg) ** 2 * count
            for i, count in enumerate(self.latency_hist)
            if count
        )
        return math.sqrt(sum_sq_diff / self.total_samples) / 1000.0

    def _percentile(self, p: float) -> float:
        threshold = max(1, math.ceil(p * self.total_samples))
        for i, seen in enumerate(accumulate(self.latency_hist)):
            if seen >= threshold:
                return _micros_to_millis(
                    min(bucket_upper_micros(i), self.max_latency_micros)
                )
        return _micros_to_millis(self.max_latency_micros)

    def _tail_avg(self, fraction: float) -> float:
        if fraction <= 0 or fraction >= 1:
            return 0.0
        target = max(1, math.ceil(fraction * self.total_samples))
        count = 0
        total = 0.0
        for i in reversed(range(len(self.latency_hist))):
            if count >= target:
                break
            bucket_count = self.latency_hist[i]
            if not bucket_count:
                continue
            take = min(bucket_count, target - count)
            representative = min(
                bucket_midpoint_micros(i), float(self.max_latency_micros)
            )
            total += representative * take
            count += take
        if count == 0:
            return 0.0
        return total / count / 1000.0


def aggregate(all_stats: Iterable[Optional[Stats]]) -> AggregateStats:
    """Combine the statistics of several tunnels; None entries are skipped."""
    all_stats = list(all_stats)
    agg = AggregateStats(tunnel_count=len(all_stats))
    earliest: Optional[datetime] = None
    latest: Optional[datetime] = None

    for stats in all_stats:
        if stats is None:
            continue
        snap = stats.snapshot()
        agg.latency_hist = [a + b for a, b in zip(agg.latency_hist, snap.latency_hist)]
        agg.total_samples += snap.samples
        agg.total_latency_micros += snap.sum_micros
        agg.total_bytes_sent += snap.bytes_sent
        agg.total_bytes_recv += snap.bytes_recv
        agg.total_errors += snap.errors

        if snap.samples > 0 and (
            agg.min_latency_micros == 0 or snap.min_micros < agg.min_latency_micros
        ):
            agg.min_latency_micros = snap.min_micros
        agg.max_latency_micros = max(agg.max_latency_micros, snap.max_micros)

        if earliest is None or (snap.start is not None and snap.start < earliest):
            earliest = snap.start
        if snap.end is not None and (latest is None or snap.end > latest):
            latest = snap.end

    if earliest is not None and latest is not None:
        agg.duration = latest - earliest
    return agg