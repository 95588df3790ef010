"""Lazily materialised metric families parameterised by labels."""

from __future__ import annotations

import logging
from typing import Callable, Sequence

from influxsink.codec import encode_name
from influxsink.metrics import NOOP_METRIC, Metric, MetricType, new_metric
from influxsink.registry import MetricsRegistry

logger = logging.getLogger(__name__)


def get_or_register_typed(
    registry: MetricsRegistry,
    key: str,
    kind: MetricType,
) -> Metric:
    """Get or create the metric under key, requiring it to be of kind.

    A key already holding a metric of another type yields the no-op metric,
    since the same path cannot be both a counter and a timer. The conflict
    is logged once per key.
    """
    metric = registry.get_or_register(key, lambda: new_metric(kind))
    if metric.type is not kind:
        if registry.note_conflict(key):
            logger.warning(
                f"Metric '{key}' is registered as {metric.type.value}, "
                f"ignoring use as {kind.value}"
            )
        return NOOP_METRIC
    return metric


class MetricVector:
    """A metric family with one registry entry per label combination.

    Nothing is registered until with_labels() is first called for a given
    combination, so unused combinations never appear in flushed output.

    Example:
        >>> requests = sink.counter_vector("http.requests", ["method"])
        >>> requests.with_labels("GET").inc()
    """

    def __init__(
        self,
        registry: MetricsRegistry,
        kind: MetricType,
        *,
        base_path: str,
        name: str,
        tag_keys: Sequence[str],
        tag_values: Sequence[str],
        label_names: Sequence[str],
        is_active: Callable[[], bool] | None = None,
    ) -> None:
        """Initialize vector.

        Args:
            registry: Registry holding the materialised metrics.
            kind: Type of metric created per combination.
            base_path: Unmapped path the vector was requested for.
            name: Mapped measurement name.
            tag_keys: Tag keys produced by the path mapping.
            tag_values: Tag values produced by the path mapping.
            label_names: Label names filled in by with_labels().
            is_active: Returns False once the owning sink is closed.
        """
        self._registry = registry
        self._kind = kind
        self._base_path = base_path
        self._name = name
        self._label_names = tuple(label_names)
        self._tag_keys = tuple(tag_keys) + self._label_names
        self._tag_values = tuple(tag_values)
        self._is_active = is_active

    @property
    def kind(self) -> MetricType:
        return self._kind

    @property
    def label_names(self) -> tuple[str, ...]:
        return self._label_names

    def with_labels(self, *values: str) -> Metric:
        """Get the metric for one combination of label values.

        Args:
            *values: One value per label name, in label order.

        Returns:
            The metric for the combination, or the no-op metric when the
            number of values is wrong, a value cannot be encoded or the
            sink is closed.
        """
        if self._is_active is not None and not self._is_active():
            return NOOP_METRIC

        if len(values) != len(self._label_names):
            logger.warning(
                f"Label mismatch for '{self._base_path}': "
                f"expected {len(self._label_names)} values, got {len(values)}"
            )
            return NOOP_METRIC

        try:
            key = encode_name(
                self._name,
                self._tag_keys,
                self._tag_values + tuple(str(v) for v in values),
            )
        except ValueError as e:
            logger.warning(f"Unusable label values for '{self._base_path}': {e}")
            return NOOP_METRIC
        return get_or_register_typed(self._registry, key, self._kind)

    def __repr__(self) -> str:
        return (
            f"MetricVector(kind={self._kind.value}, path={self._base_path!r}, "
            f"labels={list(self._label_names)})"
        )


class NoopVector:
    """Vector for a dropped path: every combination is the no-op metric."""

    def __init__(self, kind: MetricType = MetricType.NOOP) -> None:
        self._kind = kind

    @property
    def kind(self) -> MetricType:
        return self._kind

    def with_labels(self, *values: str) -> Metric:
        return NOOP_METRIC


NOOP_VECTOR = NoopVector()
