"""In-process metrics registry flushed periodically to InfluxDB.

Features:
    - Counters, gauges, timers and histograms created on first use
    - Tagged (vector) metrics materialised lazily per label combination
    - Path mapping to rename, tag or drop metrics
    - Background flushing with connection health checks and client
      recreation
    - Optional process runtime and garbage collector metrics
    - Graceful shutdown with a final flush

Usage:
    >>> from influxsink import InfluxSink, SinkConfig
    >>>
    >>> sink = InfluxSink(SinkConfig(
    ...     url="http://localhost:8086",
    ...     db="metrics",
    ...     interval="10s",
    ...     tags={"hostname": "web-1"},
    ... ))
    >>> sink.counter("requests.total").inc()
    >>> requests = sink.counter_vector("http.requests", ["method", "status"])
    >>> requests.with_labels("GET", "200").inc()
    >>> with sink.timer("db.query").time():
    ...     run_query()
    >>> sink.close()
"""

from influxsink.codec import decode_name, encode_name
from influxsink.config import IncludeConfig, SinkConfig, TLSConfig, parse_duration
from influxsink.connection import ConnectionManager, create_client
from influxsink.errors import (
    ClientClosedError,
    ConfigError,
    ConfigValidationError,
    PathMappingError,
    PointError,
    PublishError,
    SinkConstructionError,
    SinkError,
    TransportError,
)
from influxsink.mapping import (
    IdentityPathMapping,
    PathMapping,
    RulePathMapping,
    create_path_mapping,
)
from influxsink.metrics import (
    NOOP_METRIC,
    Counter,
    Gauge,
    GaugeFloat,
    Histogram,
    Metric,
    MetricType,
    NoopMetric,
    Timer,
)
from influxsink.registry import MetricsRegistry
from influxsink.scheduler import FlushScheduler, RegistryPublisher
from influxsink.sink import InfluxSink, SinkState, configure_sink, get_sink, reset_sink
from influxsink.transport import (
    BatchPoints,
    BatchPointsConfig,
    HTTPClient,
    InfluxClient,
    Point,
    UDPClient,
)
from influxsink.vectors import MetricVector, NoopVector

__version__ = "0.1.0"

__all__ = [
    # Sink
    "InfluxSink",
    "SinkState",
    "configure_sink",
    "get_sink",
    "reset_sink",
    # Configuration
    "SinkConfig",
    "TLSConfig",
    "IncludeConfig",
    "parse_duration",
    # Metrics
    "Metric",
    "MetricType",
    "Counter",
    "Gauge",
    "GaugeFloat",
    "Histogram",
    "Timer",
    "NoopMetric",
    "NOOP_METRIC",
    "MetricVector",
    "NoopVector",
    "MetricsRegistry",
    # Codec and mapping
    "encode_name",
    "decode_name",
    "PathMapping",
    "IdentityPathMapping",
    "RulePathMapping",
    "create_path_mapping",
    # Publication
    "FlushScheduler",
    "RegistryPublisher",
    "ConnectionManager",
    "create_client",
    "InfluxClient",
    "HTTPClient",
    "UDPClient",
    "Point",
    "BatchPoints",
    "BatchPointsConfig",
    # Errors
    "SinkError",
    "ConfigError",
    "ConfigValidationError",
    "PathMappingError",
    "TransportError",
    "ClientClosedError",
    "PointError",
    "PublishError",
    "SinkConstructionError",
]
