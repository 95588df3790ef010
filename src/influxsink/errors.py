"""Exception hierarchy for influxsink.

Errors fall into three groups:
    - Construction errors (ConfigError, PathMappingError,
      SinkConstructionError) abort sink startup.
    - Transport errors (TransportError and subclasses) are raised by the
      clients and logged by the flush loop.
    - PublishError wraps any failure of a single flush cycle.

None of these ever reach code that records metric values.
"""

from __future__ import annotations


class SinkError(Exception):
    """Base error for the metrics sink."""

    pass


# =============================================================================
# Configuration Errors
# =============================================================================


class ConfigError(SinkError):
    """Invalid sink configuration."""

    pass


class ConfigValidationError(ConfigError):
    """Configuration validation error."""

    def __init__(self, errors: list[str]) -> None:
        self.errors = errors
        super().__init__(f"Configuration validation failed: {', '.join(errors)}")


class PathMappingError(ConfigError):
    """A path mapping rule could not be parsed."""

    def __init__(self, message: str, line: int | None = None) -> None:
        self.line = line
        if line is not None:
            message = f"line {line}: {message}"
        super().__init__(message)


# =============================================================================
# Transport Errors
# =============================================================================


class TransportError(SinkError):
    """A write or ping against the endpoint failed."""

    def __init__(self, message: str, status: int | None = None) -> None:
        self.status = status
        super().__init__(message)


class ClientClosedError(TransportError):
    """The client was used after close()."""

    def __init__(self, message: str = "client is closed") -> None:
        super().__init__(message)


class PointError(TransportError):
    """A point cannot be rendered to line protocol."""

    pass


# =============================================================================
# Lifecycle Errors
# =============================================================================


class PublishError(SinkError):
    """A flush cycle failed."""

    pass


class SinkConstructionError(SinkError):
    """The sink could not be constructed.

    The underlying cause is always chained as ``__cause__``.
    """

    pass
