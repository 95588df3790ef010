"""InfluxDB metrics sink.

Architecture:
    InfluxSink
         |
         +---> PathMapping + codec  (path -> registry key)
         +---> MetricsRegistry      (application metrics)
         +---> MetricsRegistry      (runtime metrics, optional capture)
         |
         v
    FlushScheduler ---> RegistryPublisher ---> ConnectionManager ---> InfluxDB

Lifecycle:
    CONSTRUCTING -> RUNNING -> CLOSED

Usage:
    >>> from influxsink import InfluxSink, SinkConfig
    >>>
    >>> sink = InfluxSink(SinkConfig(url="http://localhost:8086", db="metrics"))
    >>> sink.counter("requests.total").inc()
    >>> sink.timer_vector("request.latency", ["route"]).with_labels("/users").record(0.12)
    >>> sink.close()
"""

from __future__ import annotations

import logging
import threading
from enum import Enum
from typing import Any, Sequence

from influxsink.codec import encode_name
from influxsink.config import SinkConfig, parse_duration
from influxsink.connection import ClientFactory, ConnectionManager
from influxsink.errors import ConfigError, PublishError, SinkConstructionError
from influxsink.mapping import PathMapping, create_path_mapping
from influxsink.metrics import NOOP_METRIC, Metric, MetricType
from influxsink.registry import MetricsRegistry
from influxsink.runtime import GCMetrics, PeriodicCapture, RuntimeMetrics
from influxsink.scheduler import FlushScheduler, RegistryPublisher
from influxsink.transport import BatchPointsConfig
from influxsink.vectors import NOOP_VECTOR, MetricVector, NoopVector, get_or_register_typed

logger = logging.getLogger(__name__)


class SinkState(Enum):
    """Lifecycle states of a sink."""

    CONSTRUCTING = "constructing"
    RUNNING = "running"
    CLOSED = "closed"


def _parse_positive(value: str, what: str) -> float:
    try:
        seconds = parse_duration(value)
    except ConfigError as e:
        raise ConfigError(f"failed to parse {what}: {e}") from e
    if seconds <= 0:
        raise ConfigError(f"failed to parse {what}: must be positive, got {value!r}")
    return seconds


class InfluxSink:
    """Registry of application metrics periodically flushed to InfluxDB.

    Accessors never raise and never block on I/O. A path dropped by the
    path mapping, a path already registered as another metric type, or any
    accessor used after close() yields a metric that discards its values.

    Example:
        >>> with InfluxSink(config) as sink:
        ...     sink.counter("requests.total").inc()
        ...     sink.gauge("queue.depth").set(12)
    """

    def __init__(
        self,
        config: SinkConfig | None = None,
        *,
        client_factory: ClientFactory | None = None,
        path_mapping: PathMapping | None = None,
    ) -> None:
        """Initialize and start the sink.

        Args:
            config: Sink configuration.
            client_factory: Builds the transport client from the config,
                replacing the scheme-based default.
            path_mapping: Mapping to use instead of compiling
                config.path_mapping.

        Raises:
            SinkConstructionError: If any setting is invalid or the client
                cannot be built. Nothing is left running.
        """
        self._config = config or SinkConfig()
        self._state = SinkState.CONSTRUCTING
        self._lock = threading.Lock()
        self._registry = MetricsRegistry()
        self._runtime_registry = MetricsRegistry()
        self._captures: list[PeriodicCapture] = []
        self._gc_metrics: GCMetrics | None = None

        try:
            self._setup(client_factory, path_mapping)
        except Exception as e:
            raise SinkConstructionError(f"failed to create metrics sink: {e}") from e

        for capture in self._captures:
            capture.start()
        self._scheduler.start()
        self._state = SinkState.RUNNING

        logger.info(
            f"Metrics sink started: url={self._config.url}, db={self._config.db}, "
            f"interval={self._interval}s, ping_interval={self._ping_interval}s"
        )

    def _setup(
        self,
        client_factory: ClientFactory | None,
        path_mapping: PathMapping | None,
    ) -> None:
        config = self._config

        if path_mapping is None:
            try:
                path_mapping = create_path_mapping(config.path_mapping)
            except ConfigError as e:
                raise ConfigError(f"failed to init path mapping: {e}") from e
        self._path_mapping = path_mapping

        self._interval = _parse_positive(config.interval, "interval")
        self._ping_interval = _parse_positive(config.ping_interval, "ping interval")
        self._timeout = _parse_positive(config.timeout, "timeout interval")

        runtime_interval = None
        if config.include.runtime:
            runtime_interval = _parse_positive(config.include.runtime, "runtime interval")
        gc_interval = None
        if config.include.debug_gc:
            gc_interval = _parse_positive(config.include.debug_gc, "debug_gc interval")

        batch_config = BatchPointsConfig(
            database=config.db,
            precision=config.precision,
            retention_policy=config.retention_policy,
            write_consistency=config.write_consistency,
        )

        if runtime_interval is not None:
            runtime = RuntimeMetrics(self._runtime_registry)
            self._captures.append(
                PeriodicCapture(runtime.capture, runtime_interval, name="influxsink-runtime")
            )
        if gc_interval is not None:
            self._gc_metrics = GCMetrics(self._runtime_registry)
            self._captures.append(
                PeriodicCapture(self._gc_metrics.capture, gc_interval, name="influxsink-gc")
            )

        self._connection = ConnectionManager(config, client_factory=client_factory)
        self._connection.build()

        self._publisher = RegistryPublisher(
            self._connection,
            self._registry,
            self._runtime_registry,
            self._path_mapping,
            batch_config,
            global_tags=config.tags,
            ping_timeout=self._timeout,
        )
        self._scheduler = FlushScheduler(
            self._publisher.publish,
            self._publisher.health_check,
            interval=self._interval,
            ping_interval=self._ping_interval,
        )

        if self._gc_metrics is not None:
            self._gc_metrics.install()

    # -------------------------------------------------------------------------
    # Properties
    # -------------------------------------------------------------------------

    @property
    def state(self) -> SinkState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._state is SinkState.RUNNING

    @property
    def config(self) -> SinkConfig:
        return self._config

    @property
    def registry(self) -> MetricsRegistry:
        """Application metrics registry."""
        return self._registry

    @property
    def runtime_registry(self) -> MetricsRegistry:
        """Runtime and GC metrics registry."""
        return self._runtime_registry

    @property
    def connection(self) -> ConnectionManager:
        return self._connection

    # -------------------------------------------------------------------------
    # Accessors
    # -------------------------------------------------------------------------

    def _map(self, path: str) -> tuple[str, tuple[str, ...], tuple[str, ...]]:
        try:
            name, keys, values = self._path_mapping.map_path(path)
        except Exception as e:
            logger.error(f"Failed to map metric path '{path}': {e}")
            return "", (), ()
        if len(keys) != len(values):
            logger.error(f"Path mapping for '{path}' returned mismatched tags")
            return "", (), ()
        return name, tuple(keys), tuple(values)

    def _metric(self, path: str, kind: MetricType) -> Metric:
        if self._state is not SinkState.RUNNING:
            logger.debug(f"Metric '{path}' requested from a {self._state.value} sink")
            return NOOP_METRIC

        name, keys, values = self._map(path)
        if not name:
            return NOOP_METRIC
        try:
            key = encode_name(name, keys, values)
        except ValueError as e:
            logger.warning(f"Unusable metric name for {path!r}: {e}")
            return NOOP_METRIC
        return get_or_register_typed(self._registry, key, kind)

    def _vector(
        self,
        path: str,
        label_names: Sequence[str],
        kind: MetricType,
    ) -> MetricVector | NoopVector:
        if self._state is not SinkState.RUNNING:
            logger.debug(f"Metric vector '{path}' requested from a {self._state.value} sink")
            return NOOP_VECTOR

        name, keys, values = self._map(path)
        if not name:
            return NOOP_VECTOR
        return MetricVector(
            self._registry,
            kind,
            base_path=path,
            name=name,
            tag_keys=keys,
            tag_values=values,
            label_names=label_names,
            is_active=lambda: self._state is SinkState.RUNNING,
        )

    def counter(self, path: str) -> Any:
        """Get the counter for a path."""
        return self._metric(path, MetricType.COUNTER)

    def counter_vector(self, path: str, label_names: Sequence[str]) -> MetricVector | NoopVector:
        """Get a counter family for a path with the given label names."""
        return self._vector(path, label_names, MetricType.COUNTER)

    def gauge(self, path: str) -> Any:
        """Get the integer gauge for a path."""
        return self._metric(path, MetricType.GAUGE)

    def gauge_vector(self, path: str, label_names: Sequence[str]) -> MetricVector | NoopVector:
        return self._vector(path, label_names, MetricType.GAUGE)

    def gauge_float(self, path: str) -> Any:
        """Get the floating point gauge for a path."""
        return self._metric(path, MetricType.GAUGE_FLOAT)

    def gauge_float_vector(
        self,
        path: str,
        label_names: Sequence[str],
    ) -> MetricVector | NoopVector:
        return self._vector(path, label_names, MetricType.GAUGE_FLOAT)

    def timer(self, path: str) -> Any:
        """Get the timer for a path."""
        return self._metric(path, MetricType.TIMER)

    def timer_vector(self, path: str, label_names: Sequence[str]) -> MetricVector | NoopVector:
        return self._vector(path, label_names, MetricType.TIMER)

    def histogram(self, path: str) -> Any:
        """Get the histogram for a path."""
        return self._metric(path, MetricType.HISTOGRAM)

    def histogram_vector(
        self,
        path: str,
        label_names: Sequence[str],
    ) -> MetricVector | NoopVector:
        return self._vector(path, label_names, MetricType.HISTOGRAM)

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def flush(self) -> bool:
        """Publish the registries now.

        Returns:
            True if the batch was written.
        """
        if self._state is not SinkState.RUNNING:
            return False
        try:
            self._publisher.publish()
            return True
        except PublishError as e:
            logger.error(f"Failed to send metrics data: {e}")
            return False

    def close(self) -> None:
        """Stop publishing, flush one last time and close the client.

        Calling close() again has no effect.
        """
        with self._lock:
            if self._state is SinkState.CLOSED:
                return
            self._state = SinkState.CLOSED

        self._scheduler.stop()
        for capture in self._captures:
            capture.stop()
        if self._gc_metrics is not None:
            self._gc_metrics.uninstall()

        try:
            self._publisher.publish()
        except Exception as e:
            logger.error(f"Failed to send metrics data: {e}")

        try:
            self._connection.close()
        except Exception as e:
            logger.warning(f"Failed to close metrics client: {e}")

        logger.info("Metrics sink closed")

    def __enter__(self) -> "InfluxSink":
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()


# =============================================================================
# Global Sink Management
# =============================================================================

_global_sink: InfluxSink | None = None
_lock = threading.Lock()


def configure_sink(
    config: SinkConfig | None = None,
    *,
    client_factory: ClientFactory | None = None,
    **kwargs: Any,
) -> InfluxSink:
    """Configure the process-wide sink, closing any previous one.

    Args:
        config: Sink configuration; built from kwargs when omitted.
        client_factory: Optional transport client builder.
        **kwargs: SinkConfig fields.

    Returns:
        The new sink.
    """
    global _global_sink

    with _lock:
        if _global_sink:
            _global_sink.close()
            _global_sink = None

        _global_sink = InfluxSink(
            config or SinkConfig(**kwargs),
            client_factory=client_factory,
        )
        return _global_sink


def get_sink() -> InfluxSink:
    """Get the process-wide sink.

    Raises:
        RuntimeError: If configure_sink() has not been called.
    """
    with _lock:
        if _global_sink is None:
            raise RuntimeError("Metrics sink is not configured, call configure_sink() first")
        return _global_sink


def reset_sink() -> None:
    """Close and forget the process-wide sink."""
    global _global_sink

    with _lock:
        if _global_sink:
            _global_sink.close()
            _global_sink = None
