"""Metric types held by the sink registries.

Metric Types:
    - Counter: Integer total that can be adjusted up or down
    - Gauge: Point-in-time integer value
    - GaugeFloat: Point-in-time floating point value
    - Histogram: Distribution of integer values over a decaying reservoir
    - Timer: Histogram of durations (nanoseconds) plus throughput rates

Every metric produces an immutable snapshot, and every snapshot renders
itself to the field map written for its point. The flush path only ever
calls ``fields()`` and never inspects concrete types.

Design Principles:
    1. Producers never block on I/O: all operations are in-memory
    2. Thread-safe: each metric guards its state with its own lock
    3. Snapshots are copies: concurrent updates cannot corrupt them
"""

from __future__ import annotations

import heapq
import math
import random
import threading
import time
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import timedelta
from enum import Enum
from typing import Any, Callable, Iterator

import numpy as np


# =============================================================================
# Metric Types
# =============================================================================


class MetricType(Enum):
    """Types of metrics."""

    COUNTER = "counter"
    GAUGE = "gauge"
    GAUGE_FLOAT = "gauge_float"
    HISTOGRAM = "histogram"
    TIMER = "timer"
    NOOP = "noop"


PERCENTILES = (0.5, 0.75, 0.95, 0.99, 0.999)
PERCENTILE_FIELDS = ("p50", "p75", "p95", "p99", "p999")

FieldMap = dict[str, Any]


# =============================================================================
# Snapshots
# =============================================================================


@dataclass(frozen=True)
class CounterSnapshot:
    """Point-in-time copy of a counter."""

    count: int

    def fields(self) -> FieldMap:
        return {"count": self.count}


@dataclass(frozen=True)
class GaugeSnapshot:
    """Point-in-time copy of a gauge (integer or float)."""

    value: int | float

    def fields(self) -> FieldMap:
        return {"value": self.value}


@dataclass(frozen=True)
class SampleSnapshot:
    """Point-in-time copy of a reservoir sample.

    Attributes:
        count: Total number of values ever recorded, not only those
            still held in the reservoir.
        values: Values held in the reservoir when the copy was taken.
    """

    count: int
    values: tuple[int, ...]

    def min(self) -> int:
        return min(self.values) if self.values else 0

    def max(self) -> int:
        return max(self.values) if self.values else 0

    def mean(self) -> float:
        if not self.values:
            return 0.0
        return float(np.mean(self.values))

    def stddev(self) -> float:
        if not self.values:
            return 0.0
        return float(np.std(self.values))

    def percentiles(self, ps: tuple[float, ...] | list[float]) -> list[float]:
        """Compute percentiles using the (n + 1) * p rank.

        Ranks falling outside the sample are clamped to its minimum or
        maximum, ranks between two values are linearly interpolated.

        Args:
            ps: Percentiles as fractions (0.0-1.0).

        Returns:
            One value per requested percentile.
        """
        if not self.values:
            return [0.0] * len(ps)
        result = np.percentile(
            np.asarray(self.values, dtype=np.float64),
            [p * 100.0 for p in ps],
            method="weibull",
        )
        return [float(v) for v in result]

    def fields(self) -> FieldMap:
        values: FieldMap = {
            "count": self.count,
            "min": self.min(),
            "max": self.max(),
            "mean": self.mean(),
            "stddev": self.stddev(),
        }
        for name, value in zip(PERCENTILE_FIELDS, self.percentiles(PERCENTILES)):
            values[name] = value
        return values


@dataclass(frozen=True)
class MeterSnapshot:
    """Point-in-time copy of a meter. Rates are events per second."""

    count: int
    rate1: float
    rate5: float
    rate15: float
    rate_mean: float


@dataclass(frozen=True)
class TimerSnapshot:
    """Point-in-time copy of a timer."""

    sample: SampleSnapshot
    meter: MeterSnapshot

    @property
    def count(self) -> int:
        return self.sample.count

    def fields(self) -> FieldMap:
        values = self.sample.fields()
        values["1m.rate"] = self.meter.rate1
        values["5m.rate"] = self.meter.rate5
        values["15m.rate"] = self.meter.rate15
        values["mean.rate"] = self.meter.rate_mean
        return values


# =============================================================================
# Reservoir Sample
# =============================================================================


class ExpDecaySample:
    """Exponentially decaying reservoir sample.

    Keeps a fixed-size, statistically representative sample biased towards
    the last five minutes of data (forward decay priority sampling).

    Example:
        >>> sample = ExpDecaySample()
        >>> sample.update(42)
        >>> sample.snapshot().count
        1
    """

    RESCALE_THRESHOLD = 3600.0

    def __init__(
        self,
        reservoir_size: int = 1028,
        alpha: float = 0.015,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize sample.

        Args:
            reservoir_size: Maximum number of values retained.
            alpha: Decay factor; higher values bias towards recent data.
            clock: Monotonic clock in seconds.
        """
        if reservoir_size <= 0:
            raise ValueError("reservoir_size must be positive")
        self._reservoir_size = reservoir_size
        self._alpha = alpha
        self._clock = clock
        self._lock = threading.Lock()
        self._values: list[tuple[float, int]] = []
        self._count = 0
        self._t0 = clock()
        self._t1 = self._t0 + self.RESCALE_THRESHOLD

    def update(self, value: int) -> None:
        """Record a value."""
        with self._lock:
            now = self._clock()
            self._count += 1
            if now > self._t1:
                self._rescale(now)
            # 1 - random() lies in (0, 1], never zero
            priority = math.exp(self._alpha * (now - self._t0)) / (1.0 - random.random())
            item = (priority, value)
            if len(self._values) >= self._reservoir_size:
                heapq.heappushpop(self._values, item)
            else:
                heapq.heappush(self._values, item)

    def _rescale(self, now: float) -> None:
        old_t0 = self._t0
        self._t0 = now
        self._t1 = now + self.RESCALE_THRESHOLD
        factor = math.exp(-self._alpha * (now - old_t0))
        self._values = [(priority * factor, value) for priority, value in self._values]
        heapq.heapify(self._values)

    def clear(self) -> None:
        with self._lock:
            self._values = []
            self._count = 0
            self._t0 = self._clock()
            self._t1 = self._t0 + self.RESCALE_THRESHOLD

    def snapshot(self) -> SampleSnapshot:
        with self._lock:
            return SampleSnapshot(
                count=self._count,
                values=tuple(value for _, value in self._values),
            )


# =============================================================================
# Meter
# =============================================================================


class EWMA:
    """Exponentially weighted moving average of a per-second rate.

    Not thread-safe on its own; the owning Meter serialises access.
    """

    TICK_INTERVAL = 5.0

    def __init__(self, alpha: float) -> None:
        self._alpha = alpha
        self._rate = 0.0
        self._uncounted = 0
        self._initialized = False

    @classmethod
    def for_minutes(cls, minutes: float) -> "EWMA":
        """Create an EWMA averaging over the given number of minutes."""
        return cls(1.0 - math.exp(-cls.TICK_INTERVAL / 60.0 / minutes))

    def update(self, n: int) -> None:
        self._uncounted += n

    def tick(self) -> None:
        instant_rate = self._uncounted / self.TICK_INTERVAL
        self._uncounted = 0
        if self._initialized:
            self._rate += self._alpha * (instant_rate - self._rate)
        else:
            self._rate = instant_rate
            self._initialized = True

    def rate(self) -> float:
        return self._rate


class Meter:
    """Counts events and tracks 1, 5 and 15 minute moving rates.

    Ticks are applied lazily whenever the meter is marked or read, so no
    background thread is needed.
    """

    def __init__(self, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._count = 0
        self._start = clock()
        self._last_tick = self._start
        self._m1 = EWMA.for_minutes(1)
        self._m5 = EWMA.for_minutes(5)
        self._m15 = EWMA.for_minutes(15)

    def _tick_if_necessary(self) -> None:
        elapsed = self._clock() - self._last_tick
        if elapsed < EWMA.TICK_INTERVAL:
            return
        ticks = int(elapsed // EWMA.TICK_INTERVAL)
        self._last_tick += ticks * EWMA.TICK_INTERVAL
        for _ in range(ticks):
            self._m1.tick()
            self._m5.tick()
            self._m15.tick()

    def mark(self, n: int = 1) -> None:
        """Record n events."""
        with self._lock:
            self._tick_if_necessary()
            self._count += n
            self._m1.update(n)
            self._m5.update(n)
            self._m15.update(n)

    def snapshot(self) -> MeterSnapshot:
        with self._lock:
            self._tick_if_necessary()
            elapsed = self._clock() - self._start
            return MeterSnapshot(
                count=self._count,
                rate1=self._m1.rate(),
                rate5=self._m5.rate(),
                rate15=self._m15.rate(),
                rate_mean=self._count / elapsed if elapsed > 0 else 0.0,
            )


# =============================================================================
# Metric Base Class
# =============================================================================


class Metric(ABC):
    """Abstract base class for registry metrics."""

    def __init__(self) -> None:
        self._lock = threading.Lock()

    @property
    @abstractmethod
    def type(self) -> MetricType:
        """Get metric type."""
        pass

    @abstractmethod
    def snapshot(self) -> Any:
        """Take an immutable point-in-time copy."""
        pass

    def fields(self) -> FieldMap:
        """Render the current state as the field map of a point."""
        return self.snapshot().fields()


# =============================================================================
# Counter
# =============================================================================


class Counter(Metric):
    """Integer counter.

    Example:
        >>> requests = Counter()
        >>> requests.inc()
        >>> requests.inc(5)
        >>> requests.count()
        6
    """

    def __init__(self) -> None:
        super().__init__()
        self._count = 0

    @property
    def type(self) -> MetricType:
        return MetricType.COUNTER

    def inc(self, delta: int = 1) -> None:
        """Increment counter by delta."""
        with self._lock:
            self._count += int(delta)

    def dec(self, delta: int = 1) -> None:
        """Decrement counter by delta."""
        with self._lock:
            self._count -= int(delta)

    def clear(self) -> None:
        with self._lock:
            self._count = 0

    def count(self) -> int:
        with self._lock:
            return self._count

    def snapshot(self) -> CounterSnapshot:
        return CounterSnapshot(count=self.count())


# =============================================================================
# Gauges
# =============================================================================


class Gauge(Metric):
    """Point-in-time integer value that can go up or down.

    Example:
        >>> connections = Gauge()
        >>> connections.set(10)
        >>> connections.incr()
        >>> connections.decr(3)
        >>> connections.value()
        8
    """

    def __init__(self) -> None:
        super().__init__()
        self._value = 0

    @property
    def type(self) -> MetricType:
        return MetricType.GAUGE

    def set(self, value: int) -> None:
        with self._lock:
            self._value = int(value)

    def incr(self, delta: int = 1) -> None:
        with self._lock:
            self._value += int(delta)

    def decr(self, delta: int = 1) -> None:
        with self._lock:
            self._value -= int(delta)

    def value(self) -> int:
        with self._lock:
            return self._value

    @contextmanager
    def track_inprogress(self) -> Iterator[None]:
        """Increment on entry, decrement on exit."""
        self.incr()
        try:
            yield
        finally:
            self.decr()

    def snapshot(self) -> GaugeSnapshot:
        return GaugeSnapshot(value=self.value())


class GaugeFloat(Metric):
    """Point-in-time floating point value."""

    def __init__(self) -> None:
        super().__init__()
        self._value = 0.0

    @property
    def type(self) -> MetricType:
        return MetricType.GAUGE_FLOAT

    def set(self, value: float) -> None:
        with self._lock:
            self._value = float(value)

    def value(self) -> float:
        with self._lock:
            return self._value

    def snapshot(self) -> GaugeSnapshot:
        return GaugeSnapshot(value=self.value())


# =============================================================================
# Histogram
# =============================================================================


class Histogram(Metric):
    """Distribution of integer values.

    Example:
        >>> sizes = Histogram()
        >>> sizes.update(512)
        >>> sizes.snapshot().count
        1
    """

    def __init__(self, sample: ExpDecaySample | None = None) -> None:
        super().__init__()
        self._sample = sample or ExpDecaySample()

    @property
    def type(self) -> MetricType:
        return MetricType.HISTOGRAM

    def update(self, value: int) -> None:
        self._sample.update(int(value))

    def clear(self) -> None:
        self._sample.clear()

    def snapshot(self) -> SampleSnapshot:
        return self._sample.snapshot()


# =============================================================================
# Timer
# =============================================================================


def duration_to_ns(duration: float | timedelta) -> int:
    """Convert seconds (or a timedelta) to integer nanoseconds."""
    if isinstance(duration, timedelta):
        duration = duration.total_seconds()
    return int(round(duration * 1e9))


class Timer(Metric):
    """Duration distribution plus throughput rates.

    Durations are stored as integer nanoseconds.

    Example:
        >>> latency = Timer()
        >>> latency.record(0.25)
        >>> with latency.time():
        ...     process_request()
    """

    def __init__(
        self,
        sample: ExpDecaySample | None = None,
        meter: Meter | None = None,
    ) -> None:
        super().__init__()
        self._sample = sample or ExpDecaySample()
        self._meter = meter or Meter()

    @property
    def type(self) -> MetricType:
        return MetricType.TIMER

    def timing(self, nanoseconds: int) -> None:
        """Record a duration given in nanoseconds."""
        self._sample.update(int(nanoseconds))
        self._meter.mark(1)

    def record(self, duration: float | timedelta) -> None:
        """Record a duration given in seconds or as a timedelta."""
        self.timing(duration_to_ns(duration))

    def update_since(self, start: float) -> None:
        """Record the time elapsed since a ``time.perf_counter()`` value."""
        self.record(time.perf_counter() - start)

    @contextmanager
    def time(self) -> Iterator[None]:
        """Context manager to measure duration."""
        start = time.perf_counter()
        try:
            yield
        finally:
            self.update_since(start)

    def snapshot(self) -> TimerSnapshot:
        return TimerSnapshot(
            sample=self._sample.snapshot(),
            meter=self._meter.snapshot(),
        )


# =============================================================================
# No-op Metric
# =============================================================================


class NoopMetric(Metric):
    """Accepts every producer call and discards it.

    Returned for dropped paths, type conflicts and accessors used after the
    sink was closed. It is never registered, so it never produces a point.
    """

    @property
    def type(self) -> MetricType:
        return MetricType.NOOP

    def inc(self, delta: int = 1) -> None:
        pass

    def dec(self, delta: int = 1) -> None:
        pass

    def clear(self) -> None:
        pass

    def count(self) -> int:
        return 0

    def set(self, value: float) -> None:
        pass

    def incr(self, delta: int = 1) -> None:
        pass

    def decr(self, delta: int = 1) -> None:
        pass

    def value(self) -> int:
        return 0

    def update(self, value: int) -> None:
        pass

    def timing(self, nanoseconds: int) -> None:
        pass

    def record(self, duration: float | timedelta) -> None:
        pass

    def update_since(self, start: float) -> None:
        pass

    @contextmanager
    def time(self) -> Iterator[None]:
        yield

    @contextmanager
    def track_inprogress(self) -> Iterator[None]:
        yield

    def snapshot(self) -> CounterSnapshot:
        return CounterSnapshot(count=0)

    def fields(self) -> FieldMap:
        return {}


NOOP_METRIC = NoopMetric()


METRIC_CLASSES: dict[MetricType, type[Metric]] = {
    MetricType.COUNTER: Counter,
    MetricType.GAUGE: Gauge,
    MetricType.GAUGE_FLOAT: GaugeFloat,
    MetricType.HISTOGRAM: Histogram,
    MetricType.TIMER: Timer,
}


def new_metric(kind: MetricType) -> Metric:
    """Create a fresh metric of the given type."""
    try:
        return METRIC_CLASSES[kind]()
    except KeyError:
        raise ValueError(f"Cannot create metric of type {kind.value}") from None
