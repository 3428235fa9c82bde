"""
Thread-safe metric aggregation for load runs.

Every virtual user records samples into a shared :class:`MetricsRegistry`.
Metrics are declared up front and keep a running aggregate that can be
read at any time through an immutable snapshot:

- :class:`Trend`: numeric distribution (latencies in milliseconds) with
  exact percentile queries.
- :class:`Rate`: fraction of boolean samples that are true.
- :class:`Counter`: cumulative sum, also reported per second of run.
- :class:`Gauge`: last observed value plus its min/max.

A metric may have tagged sub-metrics such as
``http_req_failed{name:CreateTeam}``.  A sample recorded with tags is
folded into its parent and into every declared sub-metric whose selector
is contained in those tags.

Key Concepts Demonstrated:
- Per-metric locks held only for an append/increment, so recording from
  many threads never waits on a reader
- Copy-then-compute snapshots that never mutate the aggregate
- Explicit metric handles instead of module-level globals
"""

from __future__ import annotations

import math
import re
import threading
import time
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from enum import Enum
from typing import Any, ClassVar

from review_load.errors import ConfigError, MetricKindError, UnknownMetricError


class MetricKind(str, Enum):
    """The four supported metric kinds."""

    TREND = "trend"
    RATE = "rate"
    COUNTER = "counter"
    GAUGE = "gauge"


# Statistics each kind can answer; "p" stands for p(N).
SUPPORTED_STATS: dict[MetricKind, frozenset[str]] = {
    MetricKind.TREND: frozenset({"count", "min", "max", "avg", "med", "p"}),
    MetricKind.RATE: frozenset({"rate", "count", "passes", "fails"}),
    MetricKind.COUNTER: frozenset({"count", "rate"}),
    MetricKind.GAUGE: frozenset({"value", "min", "max"}),
}

_METRIC_KEY_RE = re.compile(r"^\s*([A-Za-z_][\w.]*)\s*(?:\{(.*)\})?\s*$")


def parse_metric_key(key: str) -> tuple[str, tuple[tuple[str, str], ...]]:
    """
    Split ``name{tag:value,...}`` into the metric name and its tag selector.

    Args:
        key: A plain metric name or a sub-metric key.

    Returns:
        ``(name, ((tag, value), ...))``; the selector is empty for plain
        names.

    Raises:
        ConfigError: If the key is not a valid metric name or selector.
    """
    match = _METRIC_KEY_RE.match(key)
    if match is None:
        raise ConfigError(f"Invalid metric name: {key!r}")

    name, raw_selector = match.group(1), match.group(2)
    if raw_selector is None:
        return name, ()

    pairs: list[tuple[str, str]] = []
    for part in raw_selector.split(","):
        tag, sep, value = part.partition(":")
        if not sep or not tag.strip():
            raise ConfigError(f"Invalid tag selector in metric name: {key!r}")
        pairs.append((tag.strip(), value.strip()))
    if not pairs:
        raise ConfigError(f"Empty tag selector in metric name: {key!r}")
    return name, tuple(pairs)


def format_metric_key(name: str, selector: Sequence[tuple[str, str]]) -> str:
    """Build the canonical ``name{tag:value,...}`` form of a metric key."""
    if not selector:
        return name
    inner = ",".join(f"{tag}:{value}" for tag, value in selector)
    return f"{name}{{{inner}}}"


def percentile(sorted_values: Sequence[float], pct: float) -> float:
    """
    Return the *pct* percentile of an already sorted, non-empty sequence.

    Uses linear interpolation between the closest ranks: the position is
    ``pct / 100 * (n - 1)`` and fractional positions blend the two
    neighbouring samples.  ``p(0)`` is the minimum and ``p(100)`` the
    maximum.

    Raises:
        ValueError: If the sequence is empty or *pct* is outside 0..100.
    """
    if not sorted_values:
        raise ValueError("percentile of an empty sample set")
    if not 0.0 <= pct <= 100.0:
        raise ValueError(f"percentile must be within 0..100, got {pct}")

    position = (pct / 100.0) * (len(sorted_values) - 1)
    lower = math.floor(position)
    upper = math.ceil(position)
    if lower == upper:
        return float(sorted_values[lower])
    fraction = position - lower
    low_value = sorted_values[lower]
    return float(low_value + (sorted_values[upper] - low_value) * fraction)


# =====================================================================
# Snapshots
# =====================================================================


@dataclass(frozen=True)
class TrendSnapshot:
    """Point-in-time view of a :class:`Trend`; ``values`` are sorted."""

    name: str
    values: tuple[float, ...]

    kind: ClassVar[MetricKind] = MetricKind.TREND

    @property
    def count(self) -> int:
        return len(self.values)

    @property
    def has_data(self) -> bool:
        return bool(self.values)

    def percentile(self, pct: float) -> float | None:
        if not self.values:
            return None
        return percentile(self.values, pct)

    def stat(self, stat: str, argument: float | None = None) -> float | None:
        """Return a statistic by name, or ``None`` when there is no data."""
        if stat == "count":
            return float(self.count)
        if not self.values:
            return None
        if stat == "min":
            return self.values[0]
        if stat == "max":
            return self.values[-1]
        if stat == "avg":
            return sum(self.values) / len(self.values)
        if stat == "med":
            return percentile(self.values, 50.0)
        if stat == "p":
            if argument is None:
                raise MetricKindError("p() needs a percentile argument")
            return percentile(self.values, argument)
        raise MetricKindError(f"Trend metric {self.name!r} has no stat {stat!r}")

    def as_dict(self) -> dict[str, Any]:
        return {
            "type": self.kind.value,
            "count": self.count,
            "min": self.stat("min"),
            "max": self.stat("max"),
            "avg": self.stat("avg"),
            "med": self.stat("med"),
            "p(90)": self.percentile(90),
            "p(95)": self.percentile(95),
            "p(99)": self.percentile(99),
        }


@dataclass(frozen=True)
class RateSnapshot:
    """Point-in-time view of a :class:`Rate`."""

    name: str
    passes: int
    total: int

    kind: ClassVar[MetricKind] = MetricKind.RATE

    @property
    def count(self) -> int:
        return self.total

    @property
    def fails(self) -> int:
        return self.total - self.passes

    @property
    def has_data(self) -> bool:
        return self.total > 0

    @property
    def rate(self) -> float | None:
        if self.total == 0:
            return None
        return self.passes / self.total

    def stat(self, stat: str, argument: float | None = None) -> float | None:
        if stat == "rate":
            return self.rate
        if stat == "count":
            return float(self.total)
        if stat == "passes":
            return float(self.passes)
        if stat == "fails":
            return float(self.fails)
        raise MetricKindError(f"Rate metric {self.name!r} has no stat {stat!r}")

    def as_dict(self) -> dict[str, Any]:
        return {
            "type": self.kind.value,
            "rate": self.rate,
            "passes": self.passes,
            "fails": self.fails,
        }


@dataclass(frozen=True)
class CounterSnapshot:
    """Point-in-time view of a :class:`Counter`."""

    name: str
    total: float
    elapsed_seconds: float

    kind: ClassVar[MetricKind] = MetricKind.COUNTER

    @property
    def count(self) -> float:
        return self.total

    @property
    def has_data(self) -> bool:
        return self.total > 0

    def stat(self, stat: str, argument: float | None = None) -> float | None:
        if stat == "count":
            return float(self.total)
        if stat == "rate":
            if self.elapsed_seconds <= 0:
                return None
            return self.total / self.elapsed_seconds
        raise MetricKindError(f"Counter metric {self.name!r} has no stat {stat!r}")

    def as_dict(self) -> dict[str, Any]:
        return {"type": self.kind.value, "count": self.total, "rate": self.stat("rate")}


@dataclass(frozen=True)
class GaugeSnapshot:
    """Point-in-time view of a :class:`Gauge`."""

    name: str
    value: float | None
    minimum: float | None
    maximum: float | None

    kind: ClassVar[MetricKind] = MetricKind.GAUGE

    @property
    def has_data(self) -> bool:
        return self.value is not None

    def stat(self, stat: str, argument: float | None = None) -> float | None:
        if stat == "value":
            return self.value
        if stat == "min":
            return self.minimum
        if stat == "max":
            return self.maximum
        raise MetricKindError(f"Gauge metric {self.name!r} has no stat {stat!r}")

    def as_dict(self) -> dict[str, Any]:
        return {
            "type": self.kind.value,
            "value": self.value,
            "min": self.minimum,
            "max": self.maximum,
        }


Snapshot = TrendSnapshot | RateSnapshot | CounterSnapshot | GaugeSnapshot


# =====================================================================
# Metrics
# =====================================================================


class Metric:
    """
    Base class for a named, thread-safe running aggregate.

    Subclasses implement ``_fold`` (called with the lock held) and
    ``_snapshot``.  Sub-metrics are attached at declaration time and kept
    in an immutable tuple so recording threads can iterate them without
    locking.
    """

    kind: ClassVar[MetricKind]

    def __init__(self, name: str):
        self.name = name
        self._lock = threading.Lock()
        self._submetrics: tuple[tuple[tuple[tuple[str, str], ...], Metric], ...] = ()

    def add(self, value: Any, tags: Mapping[str, Any] | None = None) -> None:
        """Record one sample, folding it into matching sub-metrics as well."""
        sample = self._coerce(value)
        with self._lock:
            self._fold(sample)
        if not tags or not self._submetrics:
            return
        for selector, submetric in self._submetrics:
            if all(tag in tags and str(tags[tag]) == expected for tag, expected in selector):
                submetric.add(sample)

    def snapshot(self, elapsed_seconds: float = 0.0) -> Snapshot:
        with self._lock:
            return self._snapshot(elapsed_seconds)

    def _attach(self, selector: tuple[tuple[str, str], ...], submetric: Metric) -> None:
        self._submetrics = self._submetrics + ((selector, submetric),)

    def _coerce(self, value: Any) -> Any:
        return value

    def _fold(self, value: Any) -> None:  # pragma: no cover - abstract
        raise NotImplementedError

    def _snapshot(self, elapsed_seconds: float) -> Snapshot:  # pragma: no cover - abstract
        raise NotImplementedError

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.name}>"


class Trend(Metric):
    """Distribution of numeric samples (milliseconds for latencies)."""

    kind = MetricKind.TREND

    def __init__(self, name: str):
        super().__init__(name)
        self._values: list[float] = []

    def _coerce(self, value: Any) -> float:
        return float(value)

    def _fold(self, value: float) -> None:
        self._values.append(value)

    def snapshot(self, elapsed_seconds: float = 0.0) -> TrendSnapshot:
        # Copy under the lock, sort outside it.
        with self._lock:
            values = list(self._values)
        values.sort()
        return TrendSnapshot(name=self.name, values=tuple(values))


class Rate(Metric):
    """Fraction of boolean samples that are true."""

    kind = MetricKind.RATE

    def __init__(self, name: str):
        super().__init__(name)
        self._passes = 0
        self._total = 0

    def _coerce(self, value: Any) -> bool:
        return bool(value)

    def _fold(self, value: bool) -> None:
        self._total += 1
        if value:
            self._passes += 1

    def _snapshot(self, elapsed_seconds: float) -> RateSnapshot:
        return RateSnapshot(name=self.name, passes=self._passes, total=self._total)


class Counter(Metric):
    """Cumulative sum of samples."""

    kind = MetricKind.COUNTER

    def __init__(self, name: str):
        super().__init__(name)
        self._total = 0.0

    def add(self, value: Any = 1, tags: Mapping[str, Any] | None = None) -> None:
        super().add(value, tags)

    def _coerce(self, value: Any) -> float:
        number = float(value)
        if number < 0:
            raise ValueError(f"Counter {self.name!r} cannot be decremented")
        return number

    def _fold(self, value: float) -> None:
        self._total += value

    def _snapshot(self, elapsed_seconds: float) -> CounterSnapshot:
        return CounterSnapshot(
            name=self.name, total=self._total, elapsed_seconds=elapsed_seconds
        )


class Gauge(Metric):
    """Last observed value, plus the smallest and largest seen."""

    kind = MetricKind.GAUGE

    def __init__(self, name: str):
        super().__init__(name)
        self._value: float | None = None
        self._min: float | None = None
        self._max: float | None = None

    def _coerce(self, value: Any) -> float:
        return float(value)

    def _fold(self, value: float) -> None:
        self._value = value
        self._min = value if self._min is None else min(self._min, value)
        self._max = value if self._max is None else max(self._max, value)

    def _snapshot(self, elapsed_seconds: float) -> GaugeSnapshot:
        return GaugeSnapshot(
            name=self.name, value=self._value, minimum=self._min, maximum=self._max
        )


_KIND_TO_CLASS: dict[MetricKind, type[Metric]] = {
    MetricKind.TREND: Trend,
    MetricKind.RATE: Rate,
    MetricKind.COUNTER: Counter,
    MetricKind.GAUGE: Gauge,
}


# =====================================================================
# Registry
# =====================================================================


class MetricsRegistry:
    """
    Named collection of metrics shared by every virtual user of a run.

    All metrics must be declared before samples are recorded against
    them.  Declaration is idempotent for the same kind; recording to an
    undeclared name raises :class:`UnknownMetricError`.

    Args:
        clock: Monotonic clock used for per-second counter rates.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._started = clock()
        self._lock = threading.Lock()
        self._metrics: dict[str, Metric] = {}

    # ---- declaration ---------------------------------------------------

    def trend(self, name: str) -> Trend:
        return self._declare(name, MetricKind.TREND)  # type: ignore[return-value]

    def rate(self, name: str) -> Rate:
        return self._declare(name, MetricKind.RATE)  # type: ignore[return-value]

    def counter(self, name: str) -> Counter:
        return self._declare(name, MetricKind.COUNTER)  # type: ignore[return-value]

    def gauge(self, name: str) -> Gauge:
        return self._declare(name, MetricKind.GAUGE)  # type: ignore[return-value]

    def _declare(self, name: str, kind: MetricKind) -> Metric:
        base_name, selector = parse_metric_key(name)
        if selector:
            raise ConfigError(
                f"Declare sub-metric {name!r} with declare_submetric(), not as a new metric"
            )

        with self._lock:
            existing = self._metrics.get(base_name)
            if existing is not None:
                if existing.kind is not kind:
                    raise MetricKindError(
                        f"Metric {base_name!r} already declared as {existing.kind.value}, "
                        f"not {kind.value}"
                    )
                return existing

            metric = _KIND_TO_CLASS[kind](base_name)
            self._metrics[base_name] = metric
            return metric

    def declare_submetric(self, key: str) -> Metric:
        """
        Declare (or return) the tagged sub-metric described by *key*.

        A plain name simply returns the declared metric.  The sub-metric has
        the same kind as its parent and only receives samples whose tags
        contain every pair in the selector.

        Raises:
            UnknownMetricError: If the parent metric has not been declared.
        """
        base_name, selector = parse_metric_key(key)
        canonical = format_metric_key(base_name, selector)

        with self._lock:
            existing = self._metrics.get(canonical)
            if existing is not None:
                return existing

            parent = self._metrics.get(base_name)
            if parent is None:
                raise UnknownMetricError(base_name)

            submetric = _KIND_TO_CLASS[parent.kind](canonical)
            parent._attach(selector, submetric)
            self._metrics[canonical] = submetric
            return submetric

    # ---- recording -------------------------------------------------------

    def get(self, name: str) -> Metric:
        base_name, selector = parse_metric_key(name)
        metric = self._metrics.get(format_metric_key(base_name, selector))
        if metric is None:
            raise UnknownMetricError(name)
        return metric

    def record(self, name: str, value: Any, tags: Mapping[str, Any] | None = None) -> None:
        """Record *value* against the declared metric *name*."""
        self.get(name).add(value, tags)

    # ---- reading ---------------------------------------------------------

    def elapsed(self) -> float:
        return max(0.0, self._clock() - self._started)

    def names(self) -> list[str]:
        with self._lock:
            return list(self._metrics)

    def snapshot(self, name: str) -> Snapshot:
        return self.get(name).snapshot(self.elapsed())

    def snapshot_all(self) -> dict[str, Snapshot]:
        """Snapshot every metric and sub-metric, keyed by canonical name."""
        elapsed = self.elapsed()
        with self._lock:
            metrics = list(self._metrics.values())
        return {metric.name: metric.snapshot(elapsed) for metric in metrics}

    def __contains__(self, name: object) -> bool:
        if not isinstance(name, str):
            return False
        try:
            self.get(name)
        except (UnknownMetricError, ConfigError):
            return False
        return True


# =====================================================================
# Built-in metrics
# =====================================================================


@dataclass(frozen=True)
class HttpMetrics:
    """Handles for the metrics every HTTP request feeds."""

    reqs: Counter
    duration: Trend
    failed: Rate


@dataclass(frozen=True)
class RunMetrics:
    """Handles the scheduler feeds while virtual users run."""

    iterations: Counter
    iteration_duration: Trend
    vus: Gauge


def declare_builtin_metrics(registry: MetricsRegistry) -> tuple[HttpMetrics, RunMetrics]:
    """Declare the built-in request and run metrics on *registry*."""
    http = HttpMetrics(
        reqs=registry.counter("http_reqs"),
        duration=registry.trend("http_req_duration"),
        failed=registry.rate("http_req_failed"),
    )
    run = RunMetrics(
        iterations=registry.counter("iterations"),
        iteration_duration=registry.trend("iteration_duration"),
        vus=registry.gauge("vus"),
    )
    registry.rate("checks")
    return http, run
