import io
import logging
import random
import threading
import time

import pytest
from opentelemetry.sdk.metrics.export import InMemoryMetricReader
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter

from documentdb_gateway.exceptions import (
    ProviderInitError,
    ProviderShutdownError,
    ShutdownTimeoutError,
)
from documentdb_gateway.telemetry import manager as manager_module
from documentdb_gateway.telemetry.config import resolve
from documentdb_gateway.telemetry.manager import (
    SignalState,
    TelemetryManager,
    active_state,
    build_resource,
    is_telemetry_active,
    is_tracing_enabled,
)
from documentdb_gateway.telemetry.metrics import create_meter_provider
from documentdb_gateway.telemetry.request import NOOP_REQUEST, RequestDescriptor, RequestTelemetry
from documentdb_gateway.telemetry.tracing import create_tracer_provider

ALL_ENABLED = {
    "ServiceName": "gw-test",
    "Tracing": {"Enabled": True, "SamplingRatio": 1.0},
    "Metrics": {"Enabled": True},
    "Logging": {"Enabled": True, "ConsoleEnabled": False},
}


def _fail(message):
    def factory(config, resource):
        raise ConnectionError(message)

    return factory


def _returning(provider):
    return lambda config, resource: provider


def test_all_signals_disabled_yields_empty_handle_and_no_state(fake_provider):
    built = []
    manager = TelemetryManager(
        tracer_factory=lambda c, r: built.append(c) or fake_provider(),
        meter_factory=lambda c, r: built.append(c) or fake_provider(),
        logger_factory=lambda c, r: built.append(c) or fake_provider(),
    )
    config = resolve(
        {"Tracing": {"Enabled": False}, "Metrics": {"Enabled": False}, "Logging": {"Enabled": False}},
        environ={},
    )

    handle = manager.init(config, install_globals=False)

    assert handle.is_empty
    assert built == []
    assert handle.state is None
    assert active_state() is None
    assert is_telemetry_active() is False
    assert all(p.state is SignalState.SKIPPED for p in handle.providers())
    assert RequestTelemetry.start(RequestDescriptor(operation="find")) is NOOP_REQUEST
    manager.shutdown(handle)


def test_one_failing_signal_leaves_the_others_running(fake_provider, capsys):
    tracer = fake_provider("tracer")
    log_provider = fake_provider("logger")
    manager = TelemetryManager(
        tracer_factory=_returning(tracer),
        meter_factory=_fail("collector refused"),
        logger_factory=_returning(log_provider),
    )

    handle = manager.init(resolve(ALL_ENABLED, environ={}), install_globals=False)

    assert handle.tracing.state is SignalState.READY
    assert handle.metrics.state is SignalState.SKIPPED
    assert handle.logging.state is SignalState.READY
    assert isinstance(handle.metrics.error, ProviderInitError)
    assert handle.metrics.error.signal == "metrics"
    assert "collector refused" in capsys.readouterr().err
    state = active_state()
    assert state is handle.state
    assert state.tracing_enabled is True
    assert state.metrics_enabled is False
    assert state.metrics is None
    assert state.logging_enabled is True
    assert is_tracing_enabled() is True

    manager.shutdown(handle)
    assert tracer.shutdown_calls == 1
    assert log_provider.shutdown_calls == 1
    assert handle.tracing.state is SignalState.CLOSED


def test_every_signal_failing_yields_empty_handle(capsys):
    manager = TelemetryManager(
        tracer_factory=_fail("no tracer"),
        meter_factory=_fail("no meter"),
        logger_factory=_fail("no logger"),
    )

    handle = manager.init(resolve(ALL_ENABLED, environ={}), install_globals=False)

    assert handle.is_empty
    assert active_state() is None
    err = capsys.readouterr().err
    assert "no tracer" in err and "no meter" in err and "no logger" in err


def test_init_with_sdk_providers_publishes_working_state():
    spans = InMemorySpanExporter()
    reader = InMemoryMetricReader()
    manager = TelemetryManager(
        tracer_factory=lambda config, resource: create_tracer_provider(config, resource, exporter=spans),
        meter_factory=lambda config, resource: create_meter_provider(config, resource, reader=reader),
        logger_factory=_returning(None),
        rng=random.Random(1),
    )

    handle = manager.init(resolve(ALL_ENABLED, environ={}), install_globals=False)
    state = active_state()

    assert state.sampler.ratio == 1.0
    assert state.tracer is not None
    assert state.metrics is not None
    assert state.logging_enabled is False

    manager.shutdown(handle)
    assert active_state() is None


def test_shutdown_with_hanging_logs_and_failing_metrics_reports_metrics(fake_provider, caplog):
    release = threading.Event()
    healthy = fake_provider("tracer")
    failing = fake_provider("meter", fail=ConnectionError("collector unreachable"))
    hanging = fake_provider("logger", block=release)
    manager = TelemetryManager(
        tracer_factory=_returning(healthy),
        meter_factory=_returning(failing),
        logger_factory=_returning(hanging),
    )
    handle = manager.init(resolve(ALL_ENABLED, environ={}), install_globals=False)

    started = time.monotonic()
    try:
        with pytest.raises(ProviderShutdownError) as excinfo:
            manager.shutdown(handle, deadline=0.2)
    finally:
        release.set()
    elapsed = time.monotonic() - started

    assert excinfo.value.signal == "metrics"
    assert isinstance(excinfo.value.__cause__, ConnectionError)
    assert elapsed < 2.0
    assert healthy.shutdown_calls == 1
    assert hanging.shutdown_calls == 1
    assert "logging provider did not shut down" in caplog.text
    assert all(p.state is SignalState.CLOSED for p in handle.providers())


def test_hanging_provider_becomes_timeout_error(fake_provider):
    release = threading.Event()
    hanging = fake_provider("tracer", block=release)
    manager = TelemetryManager(
        tracer_factory=_returning(hanging),
        meter_factory=_returning(None),
        logger_factory=_returning(None),
    )
    handle = manager.init(resolve(ALL_ENABLED, environ={}), install_globals=False)

    try:
        with pytest.raises(ShutdownTimeoutError) as excinfo:
            manager.shutdown(handle, deadline=0.1)
    finally:
        release.set()

    assert excinfo.value.signal == "tracing"
    assert excinfo.value.code == 3002


def test_shutdown_failure_is_wrapped(fake_provider):
    failing = fake_provider("meter", fail=RuntimeError("boom"))
    manager = TelemetryManager(
        tracer_factory=_returning(None),
        meter_factory=_returning(failing),
        logger_factory=_returning(None),
    )
    handle = manager.init(resolve(ALL_ENABLED, environ={}), install_globals=False)

    with pytest.raises(ProviderShutdownError) as excinfo:
        manager.shutdown(handle)

    assert isinstance(excinfo.value.__cause__, RuntimeError)
    assert excinfo.value.to_error_dict()["code"] == 3001


def test_second_shutdown_is_a_no_op(fake_provider):
    provider = fake_provider("tracer")
    manager = TelemetryManager(
        tracer_factory=_returning(provider),
        meter_factory=_returning(None),
        logger_factory=_returning(None),
    )
    handle = manager.init(resolve(ALL_ENABLED, environ={}), install_globals=False)

    manager.shutdown(handle)
    manager.shutdown(handle)

    assert provider.shutdown_calls == 1


def test_console_handler_is_installed_and_removed(fake_provider, monkeypatch):
    installed = []
    monkeypatch.setattr(manager_module.trace, "set_tracer_provider", installed.append)
    stream = io.StringIO()
    provider = fake_provider("tracer")
    manager = TelemetryManager(
        tracer_factory=_returning(provider),
        meter_factory=_returning(None),
        logger_factory=_returning(None),
        log_stream=stream,
    )
    structured = dict(ALL_ENABLED, Logging={"Enabled": False, "ConsoleEnabled": True})
    root = logging.getLogger()
    before = list(root.handlers)

    handle = manager.init(resolve(structured, environ={}))
    logging.getLogger("documentdb_gateway.tests").info("gateway started")
    manager.shutdown(handle)

    assert "gateway started" in stream.getvalue()
    assert root.handlers == before
    assert installed == [provider]


def test_state_transitions_are_enforced():
    handle = manager_module.ProviderHandle(manager_module.Signal.TRACING)
    with pytest.raises(RuntimeError):
        handle.transition(SignalState.CLOSED)


def test_build_resource_prefers_service_identity():
    config = resolve(
        {"ServiceName": "gw", "ServiceVersion": "1.2.3"},
        environ={"OTEL_RESOURCE_ATTRIBUTES": "service.name=other,deployment.environment=dev"},
    )

    attributes = build_resource(config).attributes

    assert attributes["service.name"] == "gw"
    assert attributes["service.version"] == "1.2.3"
    assert attributes["deployment.environment"] == "dev"


def test_resource_is_passed_to_every_factory():
    seen = []

    def factory(config, resource):
        seen.append(resource)
        return None

    TelemetryManager(tracer_factory=factory, meter_factory=factory, logger_factory=factory).init(
        resolve(ALL_ENABLED, environ={}), install_globals=False
    )

    assert len(seen) == 3
    assert all(isinstance(resource, Resource) for resource in seen)
    assert seen[0] is seen[1] is seen[2]
