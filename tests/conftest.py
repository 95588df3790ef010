"""Shared fixtures for influxsink tests."""

from __future__ import annotations

import threading

import pytest

from influxsink.config import SinkConfig
from influxsink.sink import reset_sink
from tests.mocks import FakeInfluxServer, RecordingClientFactory


@pytest.fixture
def client_factory() -> RecordingClientFactory:
    return RecordingClientFactory()


@pytest.fixture
def sink_config() -> SinkConfig:
    """Config whose scheduler stays idle unless a test shortens it."""
    return SinkConfig(
        url="http://localhost:8086",
        db="metrics",
        interval="1h",
        ping_interval="1h",
    )


@pytest.fixture
def influx_server():
    server = FakeInfluxServer()
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    yield server
    server.shutdown()
    server.server_close()
    thread.join(timeout=5)


@pytest.fixture(autouse=True)
def _reset_global_sink():
    yield
    reset_sink()
