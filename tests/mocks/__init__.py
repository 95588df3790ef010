"""Test doubles shared by the influxsink test suite."""

from tests.mocks.influx_mocks import (
    FakeInfluxServer,
    RecordingClient,
    RecordingClientFactory,
    wait_for,
)

__all__ = [
    "FakeInfluxServer",
    "RecordingClient",
    "RecordingClientFactory",
    "wait_for",
]
