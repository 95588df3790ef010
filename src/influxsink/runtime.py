"""Optional process and garbage collector metrics.

Tracks:
- Process memory (rss, vms) and CPU time
- Thread count and open file descriptors
- Per-generation garbage collector statistics and collection pauses

Captured values land in the sink's runtime registry, which is keyed by
plain paths and mapped without tags at flush time. Capturing may be
relatively expensive, so each group runs on its own configurable interval.
"""

from __future__ import annotations

import gc
import logging
import threading
import time
from typing import Any, Callable

import psutil

from influxsink.metrics import Gauge, GaugeFloat, Timer
from influxsink.registry import MetricsRegistry

logger = logging.getLogger(__name__)


class RuntimeMetrics:
    """Process memory, CPU, thread and file descriptor gauges."""

    def __init__(self, registry: MetricsRegistry, process: psutil.Process | None = None) -> None:
        """Initialize runtime metrics.

        Args:
            registry: Runtime registry to register the gauges in.
            process: Process to inspect (defaults to the current one).
        """
        self._process = process or psutil.Process()

        self.memory_rss = registry.get_or_register("runtime.memory.rss", Gauge)
        self.memory_vms = registry.get_or_register("runtime.memory.vms", Gauge)
        self.cpu_user = registry.get_or_register("runtime.cpu.user", GaugeFloat)
        self.cpu_system = registry.get_or_register("runtime.cpu.system", GaugeFloat)
        self.threads = registry.get_or_register("runtime.threads", Gauge)
        self.open_fds = registry.get_or_register("runtime.fds", Gauge)
        self.capture_time = registry.get_or_register("runtime.capture", Timer)

    def capture(self) -> None:
        """Collect current process metrics."""
        with self.capture_time.time():
            with self._process.oneshot():
                memory = self._process.memory_info()
                self.memory_rss.set(memory.rss)
                self.memory_vms.set(memory.vms)

                cpu = self._process.cpu_times()
                self.cpu_user.set(cpu.user)
                self.cpu_system.set(cpu.system)

                self.threads.set(self._process.num_threads())

                # Open file descriptors (POSIX only)
                if hasattr(self._process, "num_fds"):
                    self.open_fds.set(self._process.num_fds())


class GCMetrics:
    """Garbage collector statistics per generation, plus pause times.

    Pause times are recorded by a ``gc.callbacks`` hook that is active
    between install() and uninstall().
    """

    def __init__(self, registry: MetricsRegistry) -> None:
        self._registry = registry
        self._generations = len(gc.get_stats())
        self._gauges: dict[str, Any] = {}
        for gen in range(self._generations):
            for stat in ("collections", "collected", "uncollectable", "count"):
                path = f"debug.gc.gen{gen}.{stat}"
                self._gauges[path] = registry.get_or_register(path, Gauge)
        self.pause = registry.get_or_register("debug.gc.pause", Timer)
        self._pause_start: float | None = None
        self._installed = False

    def install(self) -> None:
        """Start recording collection pauses."""
        if not self._installed:
            gc.callbacks.append(self._on_gc)
            self._installed = True

    def uninstall(self) -> None:
        """Stop recording collection pauses."""
        if self._installed:
            if self._on_gc in gc.callbacks:
                gc.callbacks.remove(self._on_gc)
            self._installed = False

    def _on_gc(self, phase: str, info: dict[str, Any]) -> None:
        if phase == "start":
            self._pause_start = time.perf_counter()
        elif phase == "stop" and self._pause_start is not None:
            self.pause.record(time.perf_counter() - self._pause_start)
            self._pause_start = None

    def capture(self) -> None:
        """Collect current garbage collector statistics."""
        for gen, stats in enumerate(gc.get_stats()):
            for stat in ("collections", "collected", "uncollectable"):
                self._gauges[f"debug.gc.gen{gen}.{stat}"].set(stats.get(stat, 0))
        for gen, count in enumerate(gc.get_count()):
            gauge = self._gauges.get(f"debug.gc.gen{gen}.count")
            if gauge is not None:
                gauge.set(count)


class PeriodicCapture:
    """Runs a capture function immediately and then every interval.

    Example:
        >>> capture = PeriodicCapture(runtime.capture, interval=60.0)
        >>> capture.start()
        >>> capture.stop()
    """

    def __init__(
        self,
        capture: Callable[[], None],
        interval: float,
        *,
        name: str = "influxsink-capture",
    ) -> None:
        if interval <= 0:
            raise ValueError("interval must be positive")
        self._capture = capture
        self._interval = interval
        self._name = name
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self._thread is not None:
            return

        self._stop.clear()
        self._thread = threading.Thread(
            target=self._loop,
            name=self._name,
            daemon=True,
        )
        self._thread.start()

    def stop(self, timeout: float | None = 5.0) -> None:
        self._stop.set()
        if self._thread:
            self._thread.join(timeout=timeout)
            self._thread = None

    def _loop(self) -> None:
        while not self._stop.is_set():
            try:
                self._capture()
            except Exception as e:
                logger.warning(f"Capture in {self._name} failed: {e}")

            self._stop.wait(self._interval)
