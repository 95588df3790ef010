"""Tests for the InfluxSink facade and its lifecycle.

Tests cover:
- Construction failures
- Accessors, vectors and path mapping
- Background flushing and health checks
- Shutdown with a final flush
- Global sink management
"""

from __future__ import annotations

import gc
import logging

import pytest

from influxsink.config import SinkConfig
from influxsink.errors import ConfigError, SinkConstructionError, TransportError
from influxsink.mapping import IdentityPathMapping
from influxsink.metrics import NOOP_METRIC, Counter, Gauge, GaugeFloat, Histogram, Timer
from influxsink.sink import InfluxSink, SinkState, configure_sink, get_sink, reset_sink
from influxsink.transport import BatchPoints, BatchPointsConfig
from influxsink.vectors import NOOP_VECTOR
from tests.mocks import RecordingClientFactory, wait_for


def with_options(config: SinkConfig, **changes) -> SinkConfig:
    data = config.to_dict(mask_secrets=False)
    data.update(changes)
    return SinkConfig.from_dict(data)


# =============================================================================
# Construction Tests
# =============================================================================


class TestSinkConstruction:
    """Tests for sink construction."""

    def test_starts_running(self, sink_config, client_factory):
        """Test a valid configuration yields a running sink."""
        sink = InfluxSink(sink_config, client_factory=client_factory)
        try:
            assert sink.state is SinkState.RUNNING
            assert sink.is_running
            assert len(client_factory.clients) == 1
        finally:
            sink.close()

    @pytest.mark.parametrize(
        "changes,message",
        [
            ({"interval": "soon"}, "failed to parse interval"),
            ({"ping_interval": "0s"}, "failed to parse ping interval"),
            ({"timeout": "x"}, "failed to parse timeout interval"),
            ({"path_mapping": "no arrow"}, "failed to init path mapping"),
            ({"precision": "fortnight"}, "unknown precision"),
            ({"include": {"runtime": "never"}}, "failed to parse runtime interval"),
        ],
    )
    def test_invalid_settings(self, sink_config, client_factory, changes, message):
        """Test invalid settings abort construction with the cause chained."""
        config = with_options(sink_config, **changes)

        with pytest.raises(SinkConstructionError, match=message) as exc_info:
            InfluxSink(config, client_factory=client_factory)

        assert str(exc_info.value).startswith("failed to create metrics sink:")
        assert isinstance(exc_info.value.__cause__, ConfigError)

    def test_unsupported_scheme(self, sink_config):
        """Test the default client builder rejects unknown protocols."""
        config = with_options(sink_config, url="tcp://localhost:8086")

        with pytest.raises(SinkConstructionError, match="protocol needs to be"):
            InfluxSink(config)

    def test_unparsable_url(self, sink_config):
        """Test a URL with a non-numeric port aborts construction."""
        config = with_options(sink_config, url="http://127.0.0.1:notaport")

        with pytest.raises(SinkConstructionError, match="problem parsing url") as exc_info:
            InfluxSink(config)

        assert isinstance(exc_info.value.__cause__, ConfigError)

    def test_client_build_failure(self, sink_config, client_factory):
        """Test a failing client factory aborts construction."""
        client_factory.fail = True

        with pytest.raises(SinkConstructionError) as exc_info:
            InfluxSink(sink_config, client_factory=client_factory)

        assert isinstance(exc_info.value.__cause__, TransportError)

    def test_failed_construction_leaves_gc_hook_uninstalled(self, sink_config):
        """Test nothing keeps running after a failed construction."""
        config = with_options(sink_config, include={"debug_gc": "1h"})
        factory = RecordingClientFactory()
        factory.fail = True
        callbacks = list(gc.callbacks)

        with pytest.raises(SinkConstructionError):
            InfluxSink(config, client_factory=factory)

        assert gc.callbacks == callbacks


# =============================================================================
# Accessor Tests
# =============================================================================


@pytest.fixture
def sink(sink_config, client_factory):
    sink = InfluxSink(sink_config, client_factory=client_factory)
    yield sink
    sink.close()


class TestSinkAccessors:
    """Tests for metric accessors."""

    def test_accessor_types(self, sink):
        """Test each accessor returns its metric type."""
        assert isinstance(sink.counter("a"), Counter)
        assert isinstance(sink.gauge("b"), Gauge)
        assert isinstance(sink.gauge_float("c"), GaugeFloat)
        assert isinstance(sink.timer("d"), Timer)
        assert isinstance(sink.histogram("e"), Histogram)

    def test_same_path_same_metric(self, sink):
        """Test accessors are idempotent per path."""
        assert sink.counter("requests") is sink.counter("requests")
        assert len(sink.registry) == 1

    def test_type_conflict(self, sink):
        """Test a path used as two types yields the no-op metric."""
        sink.counter("requests").inc()

        assert sink.timer("requests") is NOOP_METRIC
        assert sink.counter("requests").count() == 1

    def test_vectors(self, sink):
        """Test vectors register one metric per label combination."""
        requests = sink.counter_vector("http.requests", ["method"])
        latency = sink.timer_vector("http.latency", ["method"])

        requests.with_labels("GET").inc()
        requests.with_labels("POST").inc()
        latency.with_labels("GET").record(0.1)

        assert len(sink.registry) == 3
        assert isinstance(sink.gauge_vector("g", ["x"]).with_labels("1"), Gauge)
        assert isinstance(sink.gauge_float_vector("f", ["x"]).with_labels("1"), GaugeFloat)
        assert isinstance(sink.histogram_vector("h", ["x"]).with_labels("1"), Histogram)

    def test_unencodable_names_yield_noop(self, sink, caplog):
        """Test paths and label values that cannot be encoded never raise."""
        with caplog.at_level(logging.WARNING):
            assert sink.counter("bad\udcff") is NOOP_METRIC
            assert sink.counter_vector("http.requests", ["method"]).with_labels("\udcff") is NOOP_METRIC
            assert sink.timer_vector("bad\udcff", ["method"]).with_labels("GET") is NOOP_METRIC

        assert len(sink.registry) == 0
        assert "Unusable metric name" in caplog.text

    def test_repeated_type_conflict_logged_once(self, sink, caplog):
        """Test a hot path used with the wrong type does not flood the log."""
        sink.counter("requests").inc()

        with caplog.at_level(logging.WARNING):
            for _ in range(10):
                sink.timer("requests").record(0.1)

        assert caplog.text.count("ignoring use as timer") == 1

    def test_dropped_path(self, sink_config, client_factory):
        """Test a path dropped by the mapping is never registered or written."""
        config = with_options(sink_config, path_mapping="secret\\..* -> drop")
        with InfluxSink(config, client_factory=client_factory) as sink:
            counter = sink.counter("secret.tokens")
            counter.inc()

            assert counter is NOOP_METRIC
            assert sink.counter_vector("secret.calls", ["x"]) is NOOP_VECTOR
            assert len(sink.registry) == 0
            assert sink.flush() is True

        assert client_factory.current.points() == []

    def test_mapped_tags(self, sink_config, client_factory):
        """Test tags from the path mapping reach the written point."""
        config = with_options(
            sink_config,
            path_mapping="input\\.(?P<label>[^.]+)\\.received -> input_received",
        )
        with InfluxSink(config, client_factory=client_factory) as sink:
            sink.counter("input.kafka.received").inc(4)
            sink.flush()

        (point, *_) = client_factory.current.points()
        assert point.measurement == "input_received"
        assert point.tags == {"label": "kafka"}
        assert point.fields == {"count": 4}

    def test_custom_path_mapping(self, sink_config, client_factory):
        """Test a mapping object can replace the configured expression."""

        class UpperMapping(IdentityPathMapping):
            def map_path(self, path):
                return path.upper(), ("source",), ("test",)

        with InfluxSink(sink_config, client_factory=client_factory, path_mapping=UpperMapping()) as sink:
            sink.gauge("queue.depth").set(3)

            assert sink.registry.keys() == ["QUEUE.DEPTH?source=test"]

    def test_failing_mapping_yields_noop(self, sink_config, client_factory, caplog):
        """Test a mapping that raises never reaches the caller."""

        class BrokenMapping(IdentityPathMapping):
            def map_path(self, path):
                raise RuntimeError("mapping exploded")

        with InfluxSink(sink_config, client_factory=client_factory, path_mapping=BrokenMapping()) as sink:
            with caplog.at_level(logging.ERROR):
                assert sink.counter("x") is NOOP_METRIC

        assert "mapping exploded" in caplog.text


# =============================================================================
# Flush Tests
# =============================================================================


class TestSinkFlushing:
    """Tests for background and explicit flushing."""

    def test_periodic_flush(self, sink_config, client_factory):
        """Test counter increments appear in a flushed batch."""
        config = with_options(sink_config, interval="10ms", tags={"hostname": "web-1"})
        sink = InfluxSink(config, client_factory=client_factory)
        try:
            counter = sink.counter("requests.total")
            for _ in range(3):
                counter.inc()

            def flushed_three():
                return any(
                    p.fields == {"count": 3} and p.tags == {"hostname": "web-1"}
                    for p in client_factory.current.points_named("requests.total")
                )

            assert wait_for(flushed_three)
        finally:
            sink.close()

    def test_failed_ping_recreates_client(self, sink_config):
        """Test flushing continues on a new client after a failed ping."""
        factory = RecordingClientFactory(fail_pings=1000)
        config = with_options(sink_config, interval="20ms", ping_interval="10ms")
        sink = InfluxSink(config, client_factory=factory)
        try:
            sink.counter("requests").inc()

            assert wait_for(lambda: len(factory.clients) >= 2)
            assert wait_for(lambda: len(factory.clients[1].batches) >= 1)
            assert factory.clients[0].closed is True
            assert sink.connection.rebuild_count >= 1
        finally:
            sink.close()

    def test_flush_failure_is_reported(self, sink_config, caplog):
        """Test a failed explicit flush returns False and logs."""
        factory = RecordingClientFactory(fail_writes=1)
        with InfluxSink(sink_config, client_factory=factory) as sink:
            sink.counter("requests").inc()

            with caplog.at_level(logging.ERROR):
                assert sink.flush() is False
            assert sink.flush() is True

        assert "failed to send metrics data" in caplog.text

    def test_line_break_in_label_skips_point(self, sink_config, client_factory):
        """Test a label value with a line break cannot forge extra points."""
        with InfluxSink(sink_config, client_factory=client_factory) as sink:
            sink.counter("requests").inc()
            errors = sink.counter_vector("errors", ["reason"])
            errors.with_labels("boom\nforged value=1i").inc()
            assert sink.flush() is True

        points = client_factory.current.points()
        assert points
        assert {p.measurement for p in points} == {"requests"}

    def test_write_settings(self, sink_config, client_factory):
        """Test batches carry the configured database and precision."""
        config = with_options(sink_config, precision="ms", retention_policy="autogen")
        with InfluxSink(config, client_factory=client_factory) as sink:
            sink.counter("requests").inc()
            sink.flush()

        batch_config = client_factory.current.batches[0].config
        assert batch_config == BatchPointsConfig(
            database="metrics",
            precision="ms",
            retention_policy="autogen",
        )


# =============================================================================
# Shutdown Tests
# =============================================================================


class TestSinkClose:
    """Tests for sink shutdown."""

    def test_close_flushes_once(self, sink_config, client_factory):
        """Test close performs exactly one final write and closes the client."""
        sink = InfluxSink(sink_config, client_factory=client_factory)
        sink.counter("requests").inc(2)
        client = client_factory.current

        sink.close()

        assert client.write_attempts == 1
        (point,) = client.points()
        assert point.fields == {"count": 2}
        assert client.closed is True
        assert sink.state is SinkState.CLOSED

    def test_writes_rejected_after_close(self, sink_config, client_factory):
        """Test the connection refuses writes once closed."""
        sink = InfluxSink(sink_config, client_factory=client_factory)
        sink.close()

        with pytest.raises(TransportError):
            sink.connection.write(BatchPoints(BatchPointsConfig()))

    def test_close_is_idempotent(self, sink_config, client_factory):
        """Test a second close does nothing."""
        sink = InfluxSink(sink_config, client_factory=client_factory)
        client = client_factory.current

        sink.close()
        sink.close()

        assert client.write_attempts == 1

    def test_accessors_after_close(self, sink_config, client_factory):
        """Test accessors and existing vectors go quiet after close."""
        sink = InfluxSink(sink_config, client_factory=client_factory)
        vector = sink.counter_vector("requests", ["method"])
        sink.close()

        assert sink.counter("requests") is NOOP_METRIC
        assert sink.timer_vector("latency", ["method"]) is NOOP_VECTOR
        assert vector.with_labels("GET") is NOOP_METRIC
        assert sink.flush() is False
        assert len(sink.registry) == 0

    def test_final_flush_failure_is_logged(self, sink_config, caplog):
        """Test a failing final flush does not raise."""
        factory = RecordingClientFactory(fail_writes=1)
        sink = InfluxSink(sink_config, client_factory=factory)
        sink.counter("requests").inc()

        with caplog.at_level(logging.ERROR):
            sink.close()

        assert "Failed to send metrics data" in caplog.text
        assert factory.current.closed is True

    def test_context_manager(self, sink_config, client_factory):
        """Test leaving the context closes the sink."""
        with InfluxSink(sink_config, client_factory=client_factory) as sink:
            assert sink.is_running

        assert sink.state is SinkState.CLOSED


# =============================================================================
# Runtime Metrics Tests
# =============================================================================


class TestSinkRuntimeMetrics:
    """Tests for optional runtime and GC metrics."""

    def test_runtime_metrics_published(self, sink_config, client_factory):
        """Test runtime gauges are captured and flushed."""
        config = with_options(sink_config, include={"runtime": "1h"})
        with InfluxSink(config, client_factory=client_factory) as sink:
            assert wait_for(lambda: sink.runtime_registry.get("runtime.memory.rss").value() > 0)
            sink.flush()

        (rss, *_) = client_factory.current.points_named("runtime.memory.rss")
        assert rss.fields["value"] > 0
        assert len(sink.registry) == 0

    def test_runtime_metrics_mapped(self, sink_config, client_factory):
        """Test runtime metric paths go through the mapping."""
        config = with_options(
            sink_config,
            include={"runtime": "1h"},
            path_mapping="runtime\\..* -> drop",
        )
        with InfluxSink(config, client_factory=client_factory) as sink:
            sink.flush()

        assert all(
            not p.measurement.startswith("runtime.")
            for p in client_factory.current.points()
        )

    def test_gc_hook_lifecycle(self, sink_config, client_factory):
        """Test the GC hook is installed while running and removed on close."""
        config = with_options(sink_config, include={"debug_gc": "1h"})
        before = len(gc.callbacks)
        sink = InfluxSink(config, client_factory=client_factory)
        try:
            assert len(gc.callbacks) == before + 1
            assert "debug.gc.gen0.count" in sink.runtime_registry
            gc.collect()
            assert sink.runtime_registry.get("debug.gc.pause").snapshot().count >= 1
        finally:
            sink.close()

        assert len(gc.callbacks) == before


# =============================================================================
# Global Sink Tests
# =============================================================================


class TestGlobalSink:
    """Tests for process-wide sink helpers."""

    def test_get_before_configure(self):
        """Test get_sink requires configuration."""
        reset_sink()

        with pytest.raises(RuntimeError):
            get_sink()

    def test_configure_and_reset(self, client_factory):
        """Test configuring, replacing and resetting the global sink."""
        first = configure_sink(
            client_factory=client_factory,
            url="http://localhost:8086",
            interval="1h",
            ping_interval="1h",
        )
        assert get_sink() is first

        second = configure_sink(
            SinkConfig(url="http://localhost:8086", interval="1h", ping_interval="1h"),
            client_factory=client_factory,
        )
        assert first.state is SinkState.CLOSED
        assert get_sink() is second

        reset_sink()
        assert second.state is SinkState.CLOSED
        with pytest.raises(RuntimeError):
            get_sink()
