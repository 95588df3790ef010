"""Configuration for the InfluxDB metrics sink.

Durations are Go-style strings ("1m", "20s", "1m30s", "250ms") or bare
numbers of seconds, so configuration files stay readable.

Usage:
    >>> config = SinkConfig.from_file("metrics.yaml")
    >>> errors = config.validate()
    >>>
    >>> config = SinkConfig(
    ...     url="http://localhost:8086",
    ...     db="metrics",
    ...     interval="10s",
    ...     tags={"hostname": "web-1"},
    ... )
"""

from __future__ import annotations

import dataclasses
import json
import math
import os
import re
import ssl
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any
from urllib.parse import urlsplit

import yaml

from influxsink.errors import ConfigError, ConfigValidationError, PathMappingError
from influxsink.mapping import create_path_mapping
from influxsink.transport import PRECISION_DIVISORS, WRITE_CONSISTENCIES, parse_url

SUPPORTED_SCHEMES = ("http", "https", "udp")
SECRET_FIELDS = ("password",)

_DURATION_PART = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|μs|ms|s|m|h)")

_DURATION_UNITS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "μs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}


def parse_duration(value: str | int | float) -> float:
    """Parse a duration into seconds.

    Args:
        value: Go-style duration string ("1h30m", "1.5s", "500ms") or a
            number of seconds.

    Returns:
        Duration in seconds.

    Raises:
        ConfigError: If the value is not a valid duration.
    """
    if isinstance(value, bool):
        raise ConfigError(f"invalid duration {value!r}")
    if isinstance(value, (int, float)):
        seconds = float(value)
    else:
        seconds = _parse_duration_string(value)
    if not math.isfinite(seconds):
        raise ConfigError(f"invalid duration {value!r}")
    return seconds


def _parse_duration_string(value: str) -> float:
    text = value.strip()
    sign = 1.0
    if text[:1] in ("+", "-"):
        sign = -1.0 if text[0] == "-" else 1.0
        text = text[1:]
    if not text:
        raise ConfigError(f"invalid duration {value!r}")

    if re.fullmatch(r"\d+(?:\.\d*)?|\.\d+", text):
        return sign * float(text)

    total = 0.0
    pos = 0
    while pos < len(text):
        match = _DURATION_PART.match(text, pos)
        if match is None:
            raise ConfigError(f"invalid duration {value!r}")
        total += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        pos = match.end()
    return sign * total


# =============================================================================
# Configuration Dataclasses
# =============================================================================


@dataclass
class TLSConfig:
    """TLS settings for https endpoints.

    Attributes:
        enabled: Use these settings; otherwise system defaults apply.
        skip_cert_verify: Disable certificate and hostname verification.
        root_cas_file: PEM bundle of trusted CAs.
        client_cert_file: Client certificate for mutual TLS.
        client_key_file: Key for the client certificate.
    """

    enabled: bool = False
    skip_cert_verify: bool = False
    root_cas_file: str = ""
    client_cert_file: str = ""
    client_key_file: str = ""

    def ssl_context(self) -> ssl.SSLContext:
        """Build an SSL context from these settings.

        Raises:
            ConfigError: If a certificate file cannot be loaded.
        """
        try:
            context = ssl.create_default_context(cafile=self.root_cas_file or None)
            if self.skip_cert_verify:
                context.check_hostname = False
                context.verify_mode = ssl.CERT_NONE
            if self.client_cert_file:
                context.load_cert_chain(
                    self.client_cert_file,
                    self.client_key_file or None,
                )
        except (OSError, ssl.SSLError) as e:
            raise ConfigError(f"failed to load TLS settings: {e}") from e
        return context


@dataclass
class IncludeConfig:
    """Optional process metrics, enabled by a capture interval.

    Attributes:
        runtime: How often to capture memory, CPU and thread metrics.
        debug_gc: How often to capture garbage collector metrics.
    """

    runtime: str = ""
    debug_gc: str = ""


@dataclass
class SinkConfig:
    """Metrics sink configuration.

    Example:
        >>> config = SinkConfig(
        ...     url="https://influx.internal:8086",
        ...     db="services",
        ...     username="writer",
        ...     password="secret",
        ...     tags={"zone": "eu-1"},
        ... )
    """

    url: str = ""
    db: str = ""
    tls: TLSConfig = field(default_factory=TLSConfig)
    username: str = ""
    password: str = ""

    # Timing
    interval: str = "1m"
    ping_interval: str = "20s"
    timeout: str = "5s"

    # Write options
    precision: str = "s"
    retention_policy: str = ""
    write_consistency: str = ""

    include: IncludeConfig = field(default_factory=IncludeConfig)
    path_mapping: str = ""

    # Global tags added to each metric
    tags: dict[str, str] = field(default_factory=dict)

    @property
    def scheme(self) -> str:
        return urlsplit(self.url).scheme

    def validate(self) -> list[str]:
        """Validate configuration.

        Returns:
            List of validation errors (empty if valid).
        """
        errors = []

        try:
            parsed = parse_url(self.url)
        except ConfigError as e:
            errors.append(f"url: {e}")
        else:
            if parsed.scheme not in SUPPORTED_SCHEMES:
                errors.append(
                    f"url: protocol needs to be http, https or udp and is {parsed.scheme!r}"
                )
            elif not parsed.hostname:
                errors.append(f"url: missing host in {self.url!r}")

        for name in ("interval", "ping_interval", "timeout"):
            try:
                if parse_duration(getattr(self, name)) <= 0:
                    errors.append(f"{name}: must be positive")
            except ConfigError as e:
                errors.append(f"{name}: {e}")

        for name in ("runtime", "debug_gc"):
            value = getattr(self.include, name)
            if not value:
                continue
            try:
                if parse_duration(value) <= 0:
                    errors.append(f"include.{name}: must be positive")
            except ConfigError as e:
                errors.append(f"include.{name}: {e}")

        if self.precision not in PRECISION_DIVISORS:
            errors.append(f"precision: must be one of ns, us, ms, s, m, h and is {self.precision!r}")

        if self.write_consistency not in WRITE_CONSISTENCIES:
            errors.append(
                f"write_consistency: must be one of any, one, quorum, all "
                f"and is {self.write_consistency!r}"
            )

        try:
            create_path_mapping(self.path_mapping)
        except PathMappingError as e:
            errors.append(f"path_mapping: {e}")

        return errors

    def validate_or_raise(self) -> None:
        """Validate configuration.

        Raises:
            ConfigValidationError: If invalid.
        """
        errors = self.validate()
        if errors:
            raise ConfigValidationError(errors)

    def to_dict(self, mask_secrets: bool = True) -> dict[str, Any]:
        """Convert to dictionary, masking secrets by default."""
        data = dataclasses.asdict(self)
        if mask_secrets:
            for name in SECRET_FIELDS:
                if data.get(name):
                    data[name] = "***"
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SinkConfig":
        """Create configuration from a dictionary.

        Raises:
            ConfigError: If the dictionary has unknown or mistyped keys.
        """
        if not isinstance(data, dict):
            raise ConfigError(f"expected a mapping, got {type(data).__name__}")

        data = dict(data)
        known = {f.name for f in dataclasses.fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ConfigError(f"unknown configuration keys: {', '.join(unknown)}")

        try:
            tls = TLSConfig(**(data.pop("tls", None) or {}))
            include = IncludeConfig(**(data.pop("include", None) or {}))
        except TypeError as e:
            raise ConfigError(f"invalid nested configuration: {e}") from e

        tags = data.pop("tags", None) or {}
        if not isinstance(tags, dict):
            raise ConfigError("tags: expected a mapping")

        return cls(
            tls=tls,
            include=include,
            tags={str(k): str(v) for k, v in tags.items()},
            **{k: v if isinstance(v, str) else str(v) for k, v in data.items() if v is not None},
        )

    @classmethod
    def from_file(cls, path: str | Path) -> "SinkConfig":
        """Load configuration from a YAML or JSON file.

        The settings may sit at the top level or under an ``influxdb`` key.

        Raises:
            ConfigError: If the file is missing or malformed.
        """
        path = Path(path)
        if not path.exists():
            raise ConfigError(f"Configuration file not found: {path}")

        content = path.read_text(encoding="utf-8")
        suffix = path.suffix.lower()
        try:
            if suffix in (".yaml", ".yml"):
                data = yaml.safe_load(content) or {}
            elif suffix == ".json":
                data = json.loads(content)
            else:
                raise ConfigError(f"Unsupported file format: {suffix}")
        except (yaml.YAMLError, json.JSONDecodeError) as e:
            raise ConfigError(f"Failed to load config: {e}") from e

        if isinstance(data, dict) and set(data) == {"influxdb"}:
            data = data["influxdb"]
        return cls.from_dict(data)

    @classmethod
    def from_environment(cls, prefix: str = "INFLUXSINK_") -> "SinkConfig":
        """Load from environment variables.

        Tags are read from ``<prefix>TAGS`` as ``key=value,key=value``.
        """

        def env(name: str, default: str = "") -> str:
            return os.getenv(f"{prefix}{name}", default)

        tags = {}
        for pair in env("TAGS").split(","):
            key, sep, value = pair.partition("=")
            if sep and key.strip():
                tags[key.strip()] = value.strip()

        defaults = cls()
        return cls(
            url=env("URL"),
            db=env("DB"),
            username=env("USERNAME"),
            password=env("PASSWORD"),
            interval=env("INTERVAL", defaults.interval),
            ping_interval=env("PING_INTERVAL", defaults.ping_interval),
            timeout=env("TIMEOUT", defaults.timeout),
            precision=env("PRECISION", defaults.precision),
            retention_policy=env("RETENTION_POLICY"),
            write_consistency=env("WRITE_CONSISTENCY"),
            path_mapping=env("PATH_MAPPING"),
            tags=tags,
            include=IncludeConfig(
                runtime=env("INCLUDE_RUNTIME"),
                debug_gc=env("INCLUDE_DEBUG_GC"),
            ),
            tls=TLSConfig(
                enabled=env("TLS_ENABLED", "false").lower() == "true",
                skip_cert_verify=env("TLS_SKIP_CERT_VERIFY", "false").lower() == "true",
                root_cas_file=env("TLS_ROOT_CAS_FILE"),
            ),
        )
