from __future__ import annotations

import logging

import pytest
from opentelemetry._logs import NoOpLogger
from opentelemetry.metrics import NoOpMeter
from opentelemetry.trace import NoOpTracer

from documentdb_gateway.telemetry import config as telemetry_config
from documentdb_gateway.telemetry.manager import reset_active_state

_TELEMETRY_ENV_VARS = [
    value
    for name, value in vars(telemetry_config).items()
    if name.startswith("ENV_") and isinstance(value, str)
]


@pytest.fixture(autouse=True)
def clean_telemetry_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep the host's OTEL_* settings out of resolution."""
    for name in _TELEMETRY_ENV_VARS:
        monkeypatch.delenv(name, raising=False)


@pytest.fixture(autouse=True)
def reset_telemetry_state():
    root = logging.getLogger()
    handlers = list(root.handlers)
    level = root.level
    reset_active_state()
    yield
    reset_active_state()
    for handler in list(root.handlers):
        if handler not in handlers:
            root.removeHandler(handler)
    root.setLevel(level)


class FakeProvider:
    """Stands in for an SDK provider; records shutdown calls."""

    def __init__(self, name: str = "fake", *, fail: Exception | None = None, block=None) -> None:
        self.name = name
        self.fail = fail
        self.block = block
        self.shutdown_calls = 0

    def get_tracer(self, *args, **kwargs):
        return NoOpTracer()

    def get_meter(self, name, *args, **kwargs):
        return NoOpMeter(name)

    def get_logger(self, name, *args, **kwargs):
        return NoOpLogger(name)

    def shutdown(self) -> None:
        self.shutdown_calls += 1
        if self.block is not None:
            self.block.wait()
        if self.fail is not None:
            raise self.fail


@pytest.fixture
def fake_provider():
    return FakeProvider
