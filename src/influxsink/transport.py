"""InfluxDB 1.x point-write transport.

Points are rendered to line protocol and sent either to the HTTP ``/write``
endpoint or as UDP datagrams:

    <measurement>[,<tag>=<value>...] <field>=<value>[,<field>=<value>...] [<timestamp>]

Clients raise TransportError for every failed operation and
ClientClosedError once closed. They are not safe for concurrent use; the
ConnectionManager serialises access.
"""

from __future__ import annotations

import base64
import http.client
import json
import math
import numbers
import socket
import ssl
import time
import urllib.error
import urllib.request
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable
from urllib.parse import SplitResult, urlencode, urlsplit

from influxsink.errors import ClientClosedError, ConfigError, PointError, TransportError

DEFAULT_USER_AGENT = "influxsink"
DEFAULT_UDP_PAYLOAD_SIZE = 512

PRECISION_DIVISORS: dict[str, int] = {
    "n": 1,
    "ns": 1,
    "u": 1_000,
    "us": 1_000,
    "ms": 1_000_000,
    "s": 1_000_000_000,
    "m": 60_000_000_000,
    "h": 3_600_000_000_000,
}

# Precision names accepted by the /write endpoint
_WIRE_PRECISION = {"ns": "n", "us": "u"}

WRITE_CONSISTENCIES = ("", "any", "one", "quorum", "all")


# =============================================================================
# Line Protocol
# =============================================================================


def parse_url(url: str) -> SplitResult:
    """Split a URL and check that its port is numeric.

    Raises:
        ConfigError: If the URL cannot be parsed.
    """
    try:
        parsed = urlsplit(url)
        parsed.port  # raises ValueError for a bad port
    except ValueError as e:
        raise ConfigError(f"problem parsing url {url!r}: {e}") from e
    return parsed


def _escape(value: str, chars: str) -> str:
    for char in chars:
        value = value.replace(char, f"\\{char}")
    return value


def _check_line_breaks(value: str, what: str) -> None:
    if "\n" in value or "\r" in value:
        raise PointError(f"{what} {value!r} contains a line break")


def escape_measurement(value: str) -> str:
    return _escape(value, ", ")


def escape_key(value: str) -> str:
    """Escape a tag key, tag value or field key."""
    return _escape(value, ",= ")


def format_field_value(value: Any) -> str:
    """Render a field value.

    Raises:
        PointError: If the value is not representable.
    """
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, numbers.Integral):
        return f"{int(value)}i"
    if isinstance(value, numbers.Real):
        value = float(value)
        if not math.isfinite(value):
            raise PointError(f"non-finite float value {value!r} is not supported")
        return repr(value)
    if isinstance(value, str):
        escaped = value.replace("\\", "\\\\").replace('"', '\\"')
        return f'"{escaped}"'
    raise PointError(f"unsupported field type {type(value).__name__}")


@dataclass
class Point:
    """One timestamped, tagged record of field values.

    Attributes:
        measurement: Measurement name.
        tags: Tag set; empty values are omitted on the wire.
        fields: Field values (int, float, bool or str).
        time_ns: Epoch timestamp in nanoseconds, None lets the server
            assign one.
    """

    measurement: str
    tags: dict[str, str] = field(default_factory=dict)
    fields: dict[str, Any] = field(default_factory=dict)
    time_ns: int | None = None

    def to_line(self, precision: str = "ns") -> str:
        """Render the point as a line protocol line.

        Raises:
            PointError: If the point has no measurement, no fields, a line
                break in a name or an unrepresentable field value.
        """
        if not self.measurement:
            raise PointError("point has an empty measurement name")
        if not self.fields:
            raise PointError(f"point '{self.measurement}' has no fields")
        _check_line_breaks(self.measurement, "measurement")
        for key, value in self.tags.items():
            _check_line_breaks(key, "tag key")
            _check_line_breaks(value, "tag value")
        for key in self.fields:
            _check_line_breaks(key, "field key")

        parts = [escape_measurement(self.measurement)]
        for key in sorted(self.tags):
            value = self.tags[key]
            if key and value:
                parts.append(f"{escape_key(key)}={escape_key(value)}")
        line = ",".join(parts)

        field_parts = [
            f"{escape_key(key)}={format_field_value(self.fields[key])}"
            for key in sorted(self.fields)
        ]
        line = f"{line} {','.join(field_parts)}"

        if self.time_ns is not None:
            line = f"{line} {self.time_ns // precision_divisor(precision)}"
        return line


def precision_divisor(precision: str) -> int:
    try:
        return PRECISION_DIVISORS[precision]
    except KeyError:
        raise ConfigError(f"unknown precision {precision!r}") from None


# =============================================================================
# Batches
# =============================================================================


@dataclass(frozen=True)
class BatchPointsConfig:
    """Settings shared by every point of a batch."""

    database: str = ""
    precision: str = "ns"
    retention_policy: str = ""
    write_consistency: str = ""

    def __post_init__(self) -> None:
        precision_divisor(self.precision)
        if self.write_consistency not in WRITE_CONSISTENCIES:
            raise ConfigError(
                f"write consistency must be one of any, one, quorum, all "
                f"and is {self.write_consistency!r}"
            )


class BatchPoints:
    """A batch of points rendered with one precision.

    Points are rendered when added, so a point that cannot be formatted is
    rejected by add_point() without affecting the rest of the batch.
    """

    def __init__(self, config: BatchPointsConfig) -> None:
        self._config = config
        self._points: list[Point] = []
        self._lines: list[str] = []

    @property
    def config(self) -> BatchPointsConfig:
        return self._config

    @property
    def points(self) -> list[Point]:
        return list(self._points)

    def add_point(self, point: Point) -> None:
        """Add a point.

        Raises:
            PointError: If the point cannot be rendered.
        """
        line = point.to_line(self._config.precision)
        self._points.append(point)
        self._lines.append(line)

    def lines(self) -> list[str]:
        return list(self._lines)

    def __len__(self) -> int:
        return len(self._points)


# =============================================================================
# Clients
# =============================================================================


@runtime_checkable
class InfluxClient(Protocol):
    """Capability used by the connection manager."""

    def ping(self, timeout: float) -> tuple[float, str]:
        """Check the endpoint, returning (round trip seconds, version)."""
        ...

    def write(self, batch: BatchPoints) -> None:
        """Write a batch of points."""
        ...

    def close(self) -> None:
        """Release the client's resources."""
        ...


class HTTPClient:
    """Client for the InfluxDB 1.x HTTP API.

    Example:
        >>> client = HTTPClient("http://localhost:8086", timeout=5.0)
        >>> rtt, version = client.ping(timeout=1.0)
        >>> client.write(batch)
    """

    def __init__(
        self,
        url: str,
        *,
        username: str = "",
        password: str = "",
        ssl_context: ssl.SSLContext | None = None,
        timeout: float = 5.0,
        user_agent: str = DEFAULT_USER_AGENT,
    ) -> None:
        """Initialize HTTP client.

        Args:
            url: Base URL, e.g. http://localhost:8086.
            username: Basic auth user (optional).
            password: Basic auth password.
            ssl_context: TLS context for https URLs.
            timeout: Timeout for writes in seconds.
            user_agent: User-Agent header value.
        """
        parsed = parse_url(url)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ConfigError(f"invalid HTTP address {url!r}")

        self._url = url.rstrip("/")
        self._username = username
        self._password = password
        self._ssl_context = ssl_context
        self._timeout = timeout
        self._user_agent = user_agent
        self._closed = False

    @property
    def url(self) -> str:
        return self._url

    def _headers(self) -> dict[str, str]:
        headers = {"User-Agent": self._user_agent}
        if self._username:
            token = base64.b64encode(
                f"{self._username}:{self._password}".encode("utf-8")
            ).decode("ascii")
            headers["Authorization"] = f"Basic {token}"
        return headers

    def _request(
        self,
        method: str,
        path: str,
        *,
        timeout: float,
        query: dict[str, str] | None = None,
        data: bytes | None = None,
    ) -> tuple[int, Any]:
        if self._closed:
            raise ClientClosedError()

        url = f"{self._url}{path}"
        if query:
            url = f"{url}?{urlencode(query)}"

        headers = self._headers()
        if data is not None:
            headers["Content-Type"] = "text/plain; charset=utf-8"

        request = urllib.request.Request(url, data=data, method=method, headers=headers)
        try:
            with urllib.request.urlopen(
                request,
                timeout=timeout,
                context=self._ssl_context,
            ) as response:
                response.read()
                return response.status, response.headers
        except urllib.error.HTTPError as e:
            raise TransportError(_error_message(e.code, e.read()), status=e.code) from e
        except (urllib.error.URLError, OSError) as e:
            reason = getattr(e, "reason", e)
            raise TransportError(f"{method} {self._url}{path} failed: {reason}") from e
        except (ValueError, http.client.HTTPException) as e:
            raise TransportError(f"{method} {self._url}{path} failed: {e!r}") from e

    def ping(self, timeout: float) -> tuple[float, str]:
        start = time.perf_counter()
        _, headers = self._request("GET", "/ping", timeout=timeout)
        return time.perf_counter() - start, headers.get("X-Influxdb-Version", "")

    def write(self, batch: BatchPoints) -> None:
        if self._closed:
            raise ClientClosedError()
        lines = batch.lines()
        if not lines:
            return

        config = batch.config
        query = {
            "db": config.database,
            "precision": _WIRE_PRECISION.get(config.precision, config.precision),
        }
        if config.retention_policy:
            query["rp"] = config.retention_policy
        if config.write_consistency:
            query["consistency"] = config.write_consistency

        self._request(
            "POST",
            "/write",
            timeout=self._timeout,
            query=query,
            data="\n".join(lines).encode("utf-8"),
        )

    def close(self) -> None:
        self._closed = True


def _error_message(status: int, body: bytes) -> str:
    text = body.decode("utf-8", errors="replace").strip()
    try:
        text = json.loads(text).get("error", text)
    except (ValueError, AttributeError):
        pass
    if not text:
        return f"server responded with status {status}"
    return f"server responded with status {status}: {text}"


class UDPClient:
    """Client writing line protocol as UDP datagrams.

    Lines are packed into datagrams of at most payload_size bytes; a line
    longer than that is sent on its own. UDP has no health endpoint, so
    ping() always succeeds.
    """

    def __init__(
        self,
        host: str,
        port: int,
        *,
        payload_size: int = DEFAULT_UDP_PAYLOAD_SIZE,
        timeout: float = 5.0,
    ) -> None:
        """Initialize UDP client.

        Raises:
            TransportError: If the address cannot be resolved.
        """
        self._address = f"{host}:{port}"
        self._payload_size = payload_size
        try:
            family, socktype, proto, _, sockaddr = socket.getaddrinfo(
                host, port, type=socket.SOCK_DGRAM
            )[0]
            self._socket = socket.socket(family, socktype, proto)
            self._socket.settimeout(timeout)
            self._socket.connect(sockaddr)
        except OSError as e:
            raise TransportError(f"cannot open UDP socket to {self._address}: {e}") from e
        self._closed = False

    @property
    def address(self) -> str:
        return self._address

    def ping(self, timeout: float) -> tuple[float, str]:
        if self._closed:
            raise ClientClosedError()
        return 0.0, ""

    def _datagrams(self, lines: list[str]) -> list[bytes]:
        datagrams: list[bytes] = []
        current = b""
        for line in lines:
            encoded = line.encode("utf-8")
            if current and len(current) + 1 + len(encoded) > self._payload_size:
                datagrams.append(current)
                current = b""
            current = encoded if not current else current + b"\n" + encoded
        if current:
            datagrams.append(current)
        return datagrams

    def write(self, batch: BatchPoints) -> None:
        if self._closed:
            raise ClientClosedError()
        try:
            for datagram in self._datagrams(batch.lines()):
                self._socket.send(datagram)
        except OSError as e:
            raise TransportError(f"UDP write to {self._address} failed: {e}") from e

    def close(self) -> None:
        if not self._closed:
            self._closed = True
            self._socket.close()
