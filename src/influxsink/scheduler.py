"""Background publication of registry contents.

Architecture:
    FlushScheduler (one daemon thread, two deadlines)
         |
         +---> every interval:      RegistryPublisher.publish()
         |                              registries -> BatchPoints -> write
         |
         +---> every ping_interval: RegistryPublisher.health_check()
                                        ping, rebuild client on failure

Errors never escape the loop: each failed cycle is logged and its data is
dropped.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Callable

from influxsink.codec import decode_name
from influxsink.connection import ConnectionManager
from influxsink.errors import PointError, PublishError, TransportError
from influxsink.mapping import PathMapping
from influxsink.metrics import Metric
from influxsink.registry import MetricsRegistry
from influxsink.transport import BatchPoints, BatchPointsConfig, Point

logger = logging.getLogger(__name__)


# =============================================================================
# Publisher
# =============================================================================


class RegistryPublisher:
    """Turns registry snapshots into batches and writes them.

    Application metrics are keyed by encoded name and carry their own tags.
    Runtime metrics are keyed by plain path and mapped without tags; a path
    mapped to an empty name is skipped. Global tags override tags decoded
    from a metric's key.
    """

    def __init__(
        self,
        connection: ConnectionManager,
        registry: MetricsRegistry,
        runtime_registry: MetricsRegistry,
        path_mapping: PathMapping,
        batch_config: BatchPointsConfig,
        *,
        global_tags: dict[str, str] | None = None,
        ping_timeout: float = 5.0,
    ) -> None:
        self._connection = connection
        self._registry = registry
        self._runtime_registry = runtime_registry
        self._path_mapping = path_mapping
        self._batch_config = batch_config
        self._global_tags = dict(global_tags or {})
        self._ping_timeout = ping_timeout

    def _add_point(
        self,
        batch: BatchPoints,
        name: str,
        tags: dict[str, str],
        metric: Metric,
        now_ns: int,
    ) -> None:
        merged = dict(tags)
        merged.update(self._global_tags)
        try:
            batch.add_point(Point(name, merged, metric.fields(), now_ns))
        except PointError as e:
            logger.debug(f"Problem formatting metrics on {name}: {e}")

    def collect(self, now_ns: int | None = None) -> BatchPoints:
        """Build one batch from both registries.

        Args:
            now_ns: Timestamp for every point, defaults to the current time.

        Returns:
            Batch with one point per publishable registry entry.
        """
        if now_ns is None:
            now_ns = time.time_ns()
        batch = BatchPoints(self._batch_config)

        for key, metric in self._registry:
            name, tags = decode_name(key)
            self._add_point(batch, name, tags, metric, now_ns)

        for path, metric in self._runtime_registry:
            name = self._path_mapping.map_path_no_tags(path)
            if name:
                self._add_point(batch, name, {}, metric, now_ns)

        return batch

    def publish(self) -> None:
        """Collect and write one batch.

        Raises:
            PublishError: If the write fails.
        """
        batch = self.collect()
        try:
            self._connection.write(batch)
        except TransportError as e:
            raise PublishError(f"failed to send metrics data: {e}") from e
        logger.debug(f"Published {len(batch)} metrics")

    def health_check(self) -> bool:
        """Ping the endpoint, recreating the client if the ping fails.

        Returns:
            True if the ping succeeded.
        """
        try:
            rtt, version = self._connection.ping(self._ping_timeout)
        except TransportError as e:
            logger.warning(f"Unable to ping influx endpoint: {e}")
            try:
                self._connection.rebuild()
            except Exception as e:
                logger.error(f"Unable to recreate client: {e}")
            return False

        logger.debug(f"Pinged influx endpoint in {rtt * 1000:.1f}ms (version {version or 'unknown'})")
        return True


# =============================================================================
# Scheduler
# =============================================================================


class FlushScheduler:
    """Runs flush and ping callbacks on independent intervals.

    A single daemon thread waits on a stop event until the nearer of the
    two deadlines. Missed deadlines are skipped rather than replayed.

    Example:
        >>> scheduler = FlushScheduler(
        ...     publisher.publish,
        ...     publisher.health_check,
        ...     interval=60.0,
        ...     ping_interval=20.0,
        ... )
        >>> scheduler.start()
        >>> scheduler.stop()
    """

    def __init__(
        self,
        on_flush: Callable[[], object],
        on_ping: Callable[[], object],
        *,
        interval: float,
        ping_interval: float,
        name: str = "influxsink-flush",
    ) -> None:
        """Initialize scheduler.

        Args:
            on_flush: Called every interval seconds.
            on_ping: Called every ping_interval seconds.
            interval: Flush interval in seconds.
            ping_interval: Ping interval in seconds.
            name: Thread name.
        """
        if interval <= 0:
            raise ValueError("interval must be positive")
        if ping_interval <= 0:
            raise ValueError("ping_interval must be positive")
        self._on_flush = on_flush
        self._on_ping = on_ping
        self._interval = interval
        self._ping_interval = ping_interval
        self._name = name
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        """Start the background thread."""
        if self._thread is not None:
            return

        self._stop.clear()
        self._thread = threading.Thread(
            target=self._loop,
            name=self._name,
            daemon=True,
        )
        self._thread.start()

    def stop(self, timeout: float | None = None) -> bool:
        """Signal the loop to exit and wait for it.

        Args:
            timeout: Maximum seconds to wait, None waits for an in-flight
                flush or ping to finish.

        Returns:
            True if the thread exited.
        """
        self._stop.set()
        thread, self._thread = self._thread, None
        if thread is None:
            return True
        thread.join(timeout)
        if thread.is_alive():
            logger.warning(f"Thread {self._name} did not stop within {timeout}s")
            return False
        return True

    def _loop(self) -> None:
        clock = time.monotonic
        start = clock()
        next_flush = start + self._interval
        next_ping = start + self._ping_interval

        while True:
            wait = min(next_flush, next_ping) - clock()
            if self._stop.wait(max(wait, 0.0)):
                return

            now = clock()
            if now >= next_flush:
                self._run(self._on_flush, "flush")
                next_flush = _advance(next_flush, self._interval, clock())
            if now >= next_ping:
                self._run(self._on_ping, "health check")
                next_ping = _advance(next_ping, self._ping_interval, clock())

    def _run(self, callback: Callable[[], object], what: str) -> None:
        try:
            callback()
        except Exception as e:
            logger.error(f"Metrics {what} failed: {e}")


def _advance(deadline: float, interval: float, now: float) -> float:
    deadline += interval
    if deadline <= now:
        deadline = now + interval
    return deadline
