"""
Unit tests for metric aggregation.

Covers percentile math, rate arithmetic, sub-metric routing, declaration
errors and concurrent recording.
"""

from __future__ import annotations

import threading

import pytest

from review_load.errors import ConfigError, MetricKindError, UnknownMetricError
from review_load.metrics import (
    MetricKind,
    MetricsRegistry,
    format_metric_key,
    parse_metric_key,
    percentile,
)


pytestmark = pytest.mark.unit


# -----------------------------------------------------------------------------
# Percentiles
# -----------------------------------------------------------------------------

class TestPercentile:
    """Linear interpolation between closest ranks."""

    def test_p95_of_one_to_hundred(self):
        values = [float(v) for v in range(1, 101)]
        assert percentile(values, 95) == pytest.approx(95.05)

    def test_p99_9_of_one_to_hundred(self):
        values = [float(v) for v in range(1, 101)]
        assert percentile(values, 99.9) == pytest.approx(99.901)

    def test_median_of_even_count_interpolates(self):
        assert percentile([1.0, 2.0, 3.0, 4.0], 50) == pytest.approx(2.5)

    def test_bounds_are_min_and_max(self):
        values = [3.0, 7.0, 11.0]
        assert percentile(values, 0) == 3.0
        assert percentile(values, 100) == 11.0

    def test_single_sample_is_every_percentile(self):
        assert percentile([42.0], 0) == 42.0
        assert percentile([42.0], 99.9) == 42.0

    def test_empty_sequence_raises(self):
        with pytest.raises(ValueError):
            percentile([], 50)

    @pytest.mark.parametrize("pct", [-1, 100.5])
    def test_out_of_range_percentile_raises(self, pct):
        with pytest.raises(ValueError):
            percentile([1.0], pct)


class TestTrend:

    def test_snapshot_is_sorted_and_answers_stats(self):
        # Arrange
        registry = MetricsRegistry()
        trend = registry.trend("latency")
        for value in (30, 10, 20):
            trend.add(value)

        # Act
        snapshot = registry.snapshot("latency")

        # Assert
        assert snapshot.values == (10.0, 20.0, 30.0)
        assert snapshot.stat("min") == 10.0
        assert snapshot.stat("max") == 30.0
        assert snapshot.stat("avg") == pytest.approx(20.0)
        assert snapshot.stat("med") == pytest.approx(20.0)
        assert snapshot.stat("count") == 3.0

    def test_empty_trend_has_no_data(self):
        registry = MetricsRegistry()
        registry.trend("latency")

        snapshot = registry.snapshot("latency")

        assert not snapshot.has_data
        assert snapshot.percentile(95) is None
        assert snapshot.stat("avg") is None

    def test_snapshot_does_not_change_after_later_samples(self):
        registry = MetricsRegistry()
        trend = registry.trend("latency")
        trend.add(5)

        before = registry.snapshot("latency")
        trend.add(50)
        after = registry.snapshot("latency")

        assert before.values == (5.0,)
        assert after.values == (5.0, 50.0)

    def test_unknown_stat_raises(self):
        registry = MetricsRegistry()
        registry.trend("latency").add(1)

        with pytest.raises(MetricKindError):
            registry.snapshot("latency").stat("rate")


class TestRate:

    @pytest.mark.parametrize(
        "samples, expected",
        [
            ([False] * 10, 0.0),
            ([True, False] * 5, 0.5),
            ([True] * 10, 1.0),
        ],
    )
    def test_rate_is_fraction_of_true_samples(self, samples, expected):
        registry = MetricsRegistry()
        rate = registry.rate("failed")
        for sample in samples:
            rate.add(sample)

        snapshot = registry.snapshot("failed")

        assert snapshot.rate == pytest.approx(expected)
        assert snapshot.total == 10
        assert snapshot.passes + snapshot.fails == 10

    def test_rate_without_samples_is_none(self):
        registry = MetricsRegistry()
        registry.rate("failed")

        snapshot = registry.snapshot("failed")

        assert snapshot.rate is None
        assert not snapshot.has_data


class TestCounterAndGauge:

    def test_counter_accumulates_and_reports_per_second(self):
        now = [100.0]
        registry = MetricsRegistry(clock=lambda: now[0])
        counter = registry.counter("http_reqs")
        counter.add()
        counter.add(3)
        now[0] = 102.0

        snapshot = registry.snapshot("http_reqs")

        assert snapshot.total == 4
        assert snapshot.stat("rate") == pytest.approx(2.0)

    def test_counter_rejects_negative_values(self):
        registry = MetricsRegistry()
        with pytest.raises(ValueError):
            registry.counter("http_reqs").add(-1)

    def test_gauge_tracks_last_min_and_max(self):
        registry = MetricsRegistry()
        gauge = registry.gauge("vus")
        for value in (2, 5, 1):
            gauge.add(value)

        snapshot = registry.snapshot("vus")

        assert snapshot.value == 1
        assert snapshot.minimum == 1
        assert snapshot.maximum == 5


# -----------------------------------------------------------------------------
# Registry
# -----------------------------------------------------------------------------

class TestRegistry:

    def test_redeclaring_same_kind_returns_same_metric(self):
        registry = MetricsRegistry()
        assert registry.trend("latency") is registry.trend("latency")

    def test_redeclaring_as_other_kind_raises(self):
        registry = MetricsRegistry()
        registry.trend("latency")

        with pytest.raises(MetricKindError):
            registry.rate("latency")

    def test_recording_undeclared_metric_raises(self):
        registry = MetricsRegistry()

        with pytest.raises(UnknownMetricError) as exc_info:
            registry.record("nope", 1)

        assert "nope" in str(exc_info.value)

    def test_submetric_of_undeclared_parent_raises(self):
        registry = MetricsRegistry()
        with pytest.raises(UnknownMetricError):
            registry.declare_submetric("nope{name:CreateTeam}")

    def test_declaring_selector_as_plain_metric_raises(self):
        registry = MetricsRegistry()
        with pytest.raises(ConfigError):
            registry.rate("failed{name:CreateTeam}")

    def test_contains(self, registry):
        assert "http_req_duration" in registry
        assert "missing" not in registry
        assert 42 not in registry


class TestSubmetrics:
    """Tagged samples fold into the parent and every matching sub-metric."""

    def test_tagged_sample_reaches_matching_submetric_only(self, registry, http_metrics):
        # Arrange
        registry.declare_submetric("http_req_failed{name:CreateTeam}")
        registry.declare_submetric("http_req_failed{name:Reassign}")

        # Act
        http_metrics.failed.add(True, tags={"name": "CreateTeam", "status": "500"})
        http_metrics.failed.add(False, tags={"name": "CreateTeam", "status": "201"})
        http_metrics.failed.add(False, tags={"name": "Reassign", "status": "200"})

        # Assert
        snapshots = registry.snapshot_all()
        assert snapshots["http_req_failed"].total == 3
        assert snapshots["http_req_failed{name:CreateTeam}"].rate == pytest.approx(0.5)
        assert snapshots["http_req_failed{name:Reassign}"].rate == 0.0

    def test_multi_tag_selector_needs_every_pair(self, registry, http_metrics):
        registry.declare_submetric("http_req_duration{name:Reassign,status:409}")

        http_metrics.duration.add(10, tags={"name": "Reassign", "status": "200"})
        http_metrics.duration.add(20, tags={"name": "Reassign", "status": "409"})

        snapshot = registry.snapshot("http_req_duration{name:Reassign,status:409}")
        assert snapshot.values == (20.0,)

    def test_untagged_sample_skips_submetrics(self, registry, http_metrics):
        registry.declare_submetric("http_req_failed{name:CreatePR}")

        http_metrics.failed.add(True)

        assert registry.snapshot("http_req_failed{name:CreatePR}").total == 0

    def test_submetric_key_whitespace_is_canonicalised(self, registry):
        metric = registry.declare_submetric("http_req_failed{ name : CreatePR }")

        assert metric.name == "http_req_failed{name:CreatePR}"
        assert registry.declare_submetric("http_req_failed{name:CreatePR}") is metric
        assert metric.kind is MetricKind.RATE


class TestMetricKeys:

    def test_parse_plain_name(self):
        assert parse_metric_key("http_reqs") == ("http_reqs", ())

    def test_parse_and_format_selector(self):
        name, selector = parse_metric_key("http_req_failed{name:CreateTeam,method:POST}")

        assert name == "http_req_failed"
        assert selector == (("name", "CreateTeam"), ("method", "POST"))
        assert format_metric_key(name, selector) == "http_req_failed{name:CreateTeam,method:POST}"

    @pytest.mark.parametrize("key", ["", "9lives", "failed{name}", "failed{:x}"])
    def test_invalid_keys_raise(self, key):
        with pytest.raises(ConfigError):
            parse_metric_key(key)


# -----------------------------------------------------------------------------
# Concurrency
# -----------------------------------------------------------------------------

def test_concurrent_recording_loses_no_samples(registry, http_metrics):
    # Arrange
    registry.declare_submetric("http_req_failed{name:CreateTeam}")
    threads_count, per_thread = 8, 500
    start = threading.Barrier(threads_count)

    def record():
        start.wait()
        for i in range(per_thread):
            http_metrics.reqs.add(1, tags={"name": "CreateTeam"})
            http_metrics.duration.add(i, tags={"name": "CreateTeam"})
            http_metrics.failed.add(i % 2 == 0, tags={"name": "CreateTeam"})

    threads = [threading.Thread(target=record) for _ in range(threads_count)]

    # Act
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    # Assert
    snapshots = registry.snapshot_all()
    expected = threads_count * per_thread
    assert snapshots["http_reqs"].total == expected
    assert snapshots["http_req_duration"].count == expected
    assert snapshots["http_req_failed"].total == expected
    assert snapshots["http_req_failed"].rate == pytest.approx(0.5)
    assert snapshots["http_req_failed{name:CreateTeam}"].total == expected


def test_snapshots_taken_during_recording_are_monotonic(registry, http_metrics):
    stop = threading.Event()

    def record():
        while not stop.is_set():
            http_metrics.duration.add(1.0)

    writer = threading.Thread(target=record)
    writer.start()
    try:
        counts = [registry.snapshot("http_req_duration").count for _ in range(50)]
    finally:
        stop.set()
        writer.join()

    assert counts == sorted(counts)
