"""Ownership of the single transport client used for publication."""

from __future__ import annotations

import logging
import threading
from typing import Callable

from influxsink.config import SinkConfig, parse_duration
from influxsink.errors import ClientClosedError, ConfigError
from influxsink.transport import BatchPoints, HTTPClient, InfluxClient, UDPClient, parse_url

logger = logging.getLogger(__name__)

DEFAULT_UDP_PORT = 8089

ClientFactory = Callable[[SinkConfig], InfluxClient]


def create_client(config: SinkConfig) -> InfluxClient:
    """Build the transport client selected by the URL scheme.

    Raises:
        ConfigError: If the URL cannot be parsed or its scheme is not
            http, https or udp.
        TransportError: If the client cannot be created.
    """
    parsed = parse_url(config.url)
    timeout = parse_duration(config.timeout)

    if parsed.scheme == "https":
        ssl_context = config.tls.ssl_context() if config.tls.enabled else None
        return HTTPClient(
            config.url,
            username=config.username,
            password=config.password,
            ssl_context=ssl_context,
            timeout=timeout,
        )
    elif parsed.scheme == "http":
        return HTTPClient(
            config.url,
            username=config.username,
            password=config.password,
            timeout=timeout,
        )
    elif parsed.scheme == "udp":
        if not parsed.hostname:
            raise ConfigError(f"missing host in UDP address {config.url!r}")
        return UDPClient(
            parsed.hostname,
            parsed.port or DEFAULT_UDP_PORT,
            timeout=timeout,
        )
    raise ConfigError(f"protocol needs to be http, https or udp and is {parsed.scheme!r}")


class ConnectionManager:
    """Holds exactly one live client and rebuilds it on demand.

    Ping, write, rebuild and close are serialised by one lock, so the
    client is never used by two operations at once.

    Example:
        >>> manager = ConnectionManager(config)
        >>> manager.build()
        >>> manager.write(batch)
        >>> manager.close()
    """

    def __init__(
        self,
        config: SinkConfig,
        *,
        client_factory: ClientFactory | None = None,
    ) -> None:
        """Initialize connection manager.

        Args:
            config: Sink configuration.
            client_factory: Replaces the scheme-based client builder.
        """
        self._config = config
        self._client_factory = client_factory or create_client
        self._client: InfluxClient | None = None
        self._lock = threading.RLock()
        self._closed = False
        self._rebuilds = 0

    @property
    def client(self) -> InfluxClient | None:
        return self._client

    @property
    def is_closed(self) -> bool:
        return self._closed

    @property
    def rebuild_count(self) -> int:
        return self._rebuilds

    def build(self) -> InfluxClient:
        """Create the initial client.

        Raises:
            ConfigError: For an unsupported URL scheme.
            TransportError: If the client cannot be created.
        """
        with self._lock:
            if self._closed:
                raise ClientClosedError("connection manager is closed")
            self._client = self._client_factory(self._config)
            return self._client

    def rebuild(self) -> InfluxClient:
        """Replace the client with a freshly built one.

        On failure the previous client is kept and the error re-raised.
        """
        with self._lock:
            if self._closed:
                raise ClientClosedError("connection manager is closed")
            new_client = self._client_factory(self._config)
            old_client, self._client = self._client, new_client
            self._rebuilds += 1

        if old_client is not None:
            try:
                old_client.close()
            except Exception as e:
                logger.debug(f"Failed to close replaced client: {e}")
        logger.info("Recreated metrics client")
        return new_client

    def _require_client(self) -> InfluxClient:
        if self._closed:
            raise ClientClosedError()
        if self._client is None:
            raise ClientClosedError("client has not been built")
        return self._client

    def ping(self, timeout: float) -> tuple[float, str]:
        with self._lock:
            return self._require_client().ping(timeout)

    def write(self, batch: BatchPoints) -> None:
        with self._lock:
            self._require_client().write(batch)

    def close(self) -> None:
        """Close the client; later writes raise ClientClosedError."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            client, self._client = self._client, None

        if client is not None:
            client.close()
