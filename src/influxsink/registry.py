"""Thread-safe registry of live metrics keyed by encoded name."""

from __future__ import annotations

import threading
from typing import Callable, Iterator

from influxsink.metrics import Metric


class MetricsRegistry:
    """Central registry for metrics.

    Registration is idempotent: asking twice for the same key returns the
    metric created by the first request, so producers may call accessors
    on every use instead of caching references.

    Example:
        >>> registry = MetricsRegistry()
        >>> first = registry.get_or_register("requests", Counter)
        >>> registry.get_or_register("requests", Counter) is first
        True
    """

    def __init__(self) -> None:
        """Initialize registry."""
        self._metrics: dict[str, Metric] = {}
        self._conflicts: set[str] = set()
        self._lock = threading.Lock()

    def get_or_register(self, key: str, factory: Callable[[], Metric]) -> Metric:
        """Get the metric registered under key, creating it if missing.

        The factory runs while the registry lock is held, so it is invoked
        at most once per key even when callers race on first access.

        Args:
            key: Encoded metric key.
            factory: Zero-argument callable creating the metric.

        Returns:
            The registered metric.
        """
        with self._lock:
            metric = self._metrics.get(key)
            if metric is None:
                metric = factory()
                self._metrics[key] = metric
            return metric

    def get(self, key: str) -> Metric | None:
        """Get a registered metric by key."""
        with self._lock:
            return self._metrics.get(key)

    def unregister(self, key: str) -> bool:
        """Unregister a metric.

        Returns:
            True if unregistered, False if not found.
        """
        with self._lock:
            self._conflicts.discard(key)
            return self._metrics.pop(key, None) is not None

    def note_conflict(self, key: str) -> bool:
        """Record a type conflict on key.

        Returns:
            True the first time key is reported, False afterwards.
        """
        with self._lock:
            if key in self._conflicts:
                return False
            self._conflicts.add(key)
            return True

    def each(self, fn: Callable[[str, Metric], None]) -> None:
        """Call fn for every registered metric.

        Iterates over a copy taken under the lock, so fn may itself use the
        registry. Metrics registered during the walk may be missed.
        """
        with self._lock:
            items = list(self._metrics.items())
        for key, metric in items:
            fn(key, metric)

    def keys(self) -> list[str]:
        with self._lock:
            return list(self._metrics)

    def clear(self) -> None:
        """Remove all registered metrics."""
        with self._lock:
            self._metrics.clear()
            self._conflicts.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._metrics)

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._metrics

    def __iter__(self) -> Iterator[tuple[str, Metric]]:
        with self._lock:
            items = list(self._metrics.items())
        return iter(items)
