"""Tests for labelled metric vectors."""

from __future__ import annotations

import logging

from influxsink.codec import decode_name, encode_name
from influxsink.metrics import NOOP_METRIC, Counter, MetricType, Timer
from influxsink.registry import MetricsRegistry
from influxsink.vectors import NOOP_VECTOR, MetricVector


def make_vector(registry, kind=MetricType.COUNTER, labels=("method", "status"), **kwargs):
    options = dict(
        base_path="http.requests",
        name="http.requests",
        tag_keys=(),
        tag_values=(),
        label_names=labels,
    )
    options.update(kwargs)
    return MetricVector(registry, kind, **options)


class TestMetricVector:
    """Tests for MetricVector."""

    def test_nothing_registered_until_used(self):
        """Test a vector registers no metric on creation."""
        registry = MetricsRegistry()
        make_vector(registry)

        assert len(registry) == 0

    def test_distinct_combinations(self):
        """Test each label combination gets its own entry."""
        registry = MetricsRegistry()
        vector = make_vector(registry)

        vector.with_labels("GET", "200").inc()
        vector.with_labels("POST", "500").inc(2)

        assert len(registry) == 2
        key = encode_name("http.requests", ["method", "status"], ["POST", "500"])
        assert registry.get(key).count() == 2

    def test_same_combination_same_metric(self):
        """Test repeated label values share one metric."""
        registry = MetricsRegistry()
        vector = make_vector(registry)

        first = vector.with_labels("GET", "200")
        second = vector.with_labels("GET", "200")

        assert first is second
        assert isinstance(first, Counter)

    def test_label_count_mismatch(self):
        """Test the wrong number of values yields the no-op metric."""
        registry = MetricsRegistry()
        vector = make_vector(registry)

        assert vector.with_labels("GET") is NOOP_METRIC
        assert vector.with_labels("GET", "200", "extra") is NOOP_METRIC
        assert len(registry) == 0

    def test_mapped_tags_are_kept(self):
        """Test tags from the path mapping precede the labels."""
        registry = MetricsRegistry()
        vector = make_vector(
            registry,
            kind=MetricType.TIMER,
            labels=("route",),
            name="input_received",
            tag_keys=("label",),
            tag_values=("kafka",),
        )

        metric = vector.with_labels("/users")

        assert isinstance(metric, Timer)
        (key,) = registry.keys()
        assert decode_name(key) == ("input_received", {"label": "kafka", "route": "/users"})

    def test_values_are_stringified(self):
        """Test non-string label values are accepted."""
        registry = MetricsRegistry()
        vector = make_vector(registry, labels=("status",))

        vector.with_labels(404).inc()

        (key,) = registry.keys()
        assert decode_name(key)[1] == {"status": "404"}

    def test_inactive_vector(self):
        """Test an inactive vector hands out the no-op metric."""
        registry = MetricsRegistry()
        vector = make_vector(registry, is_active=lambda: False)

        assert vector.with_labels("GET", "200") is NOOP_METRIC
        assert len(registry) == 0

    def test_type_conflict(self):
        """Test a combination already registered as another type."""
        registry = MetricsRegistry()
        key = encode_name("http.requests", ["method", "status"], ["GET", "200"])
        registry.get_or_register(key, Timer)
        vector = make_vector(registry)

        assert vector.with_labels("GET", "200") is NOOP_METRIC

    def test_type_conflict_logged_once(self, caplog):
        """Test repeated use of a conflicting combination warns only once."""
        registry = MetricsRegistry()
        key = encode_name("http.requests", ["method", "status"], ["GET", "200"])
        registry.get_or_register(key, Timer)
        vector = make_vector(registry)

        with caplog.at_level(logging.WARNING, logger="influxsink.vectors"):
            for _ in range(3):
                assert vector.with_labels("GET", "200") is NOOP_METRIC

        assert caplog.text.count("ignoring use as counter") == 1

    def test_unencodable_label_value(self, caplog):
        """Test a label value that cannot be encoded yields the no-op metric."""
        registry = MetricsRegistry()
        vector = make_vector(registry)

        with caplog.at_level(logging.WARNING, logger="influxsink.vectors"):
            assert vector.with_labels("GET", "bad\udcff") is NOOP_METRIC

        assert len(registry) == 0
        assert "Unusable label values for 'http.requests'" in caplog.text
        assert vector.with_labels("GET", "200") is not NOOP_METRIC


class TestNoopVector:
    """Tests for NoopVector."""

    def test_always_noop(self):
        """Test every combination is the no-op metric."""
        assert NOOP_VECTOR.with_labels("a", "b") is NOOP_METRIC
        assert NOOP_VECTOR.with_labels() is NOOP_METRIC
