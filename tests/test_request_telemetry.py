import pytest
from opentelemetry import trace
from opentelemetry.sdk.metrics.export import InMemoryMetricReader
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter
from opentelemetry.trace import StatusCode

from documentdb_gateway.exceptions import ConfigError
from documentdb_gateway.telemetry.config import MetricsConfig, TracingConfig
from documentdb_gateway.telemetry.manager import TelemetryState
from documentdb_gateway.telemetry.metrics import GatewayMetrics, create_meter_provider
from documentdb_gateway.telemetry.request import (
    NOOP_REQUEST,
    RequestDescriptor,
    RequestTelemetry,
    error_code_to_status_code,
)
from documentdb_gateway.telemetry.sampling import SamplingDecisionEngine
from documentdb_gateway.telemetry.tracing import INSTRUMENTATION_NAME, create_tracer_provider

PARENT_TRACEPARENT = "00-4bf92f3577b34da6a3ce929d0e0e4736-00f067aa0ba902b7-01"


@pytest.fixture
def spans():
    return InMemorySpanExporter()


@pytest.fixture
def reader():
    return InMemoryMetricReader()


@pytest.fixture
def providers(spans, reader):
    tracer_provider = create_tracer_provider(TracingConfig(enabled=True), Resource.create({}), exporter=spans)
    meter_provider = create_meter_provider(MetricsConfig(enabled=True), Resource.create({}), reader=reader)
    yield tracer_provider, meter_provider
    tracer_provider.shutdown()
    meter_provider.shutdown()


def _state(providers, ratio=1.0, metrics=True):
    tracer_provider, meter_provider = providers
    return TelemetryState(
        tracing_enabled=True,
        metrics_enabled=metrics,
        sampler=SamplingDecisionEngine(ratio, seed=5),
        tracer=tracer_provider.get_tracer(INSTRUMENTATION_NAME),
        metrics=GatewayMetrics.from_provider(meter_provider) if metrics else None,
    )


def _descriptor(**overrides):
    fields = {
        "request_id": 7,
        "operation": "find",
        "database": "sales",
        "collection": "orders",
        "client": "PyMongo/4.14.1",
        "activity_id": "a1b2",
        "request_size": 64,
    }
    fields.update(overrides)
    return RequestDescriptor(**fields)


def test_inactive_telemetry_returns_shared_noop():
    request = RequestTelemetry.start(_descriptor())
    query = "SELECT 1"

    assert request is NOOP_REQUEST
    assert request.format_query(query) is query
    request.finish(response_size=10)


def test_sampled_root_request_exports_span_and_injects_its_ids(providers, spans):
    tracer_provider, _ = providers
    request = RequestTelemetry.start(_descriptor(), _state(providers))

    query = request.format_query("SELECT 1")
    request.finish(response_size=512)
    tracer_provider.force_flush()

    (span,) = spans.get_finished_spans()
    assert query.startswith(f"/* traceparent='00-{span.context.trace_id:032x}-{span.context.span_id:016x}-01' */ ")
    assert span.name == "find"
    assert span.status.status_code is StatusCode.OK
    assert span.attributes["db.collection.name"] == "orders"
    assert span.attributes["user_agent.original"] == "PyMongo/4.14.1"
    assert span.attributes["db.request.id"] == "7"
    assert span.attributes["db.response.status_code"] == 200


def test_child_request_follows_comment_parent(providers, spans):
    tracer_provider, _ = providers
    descriptor = _descriptor(comment={"traceparent": PARENT_TRACEPARENT})

    request = RequestTelemetry.start(descriptor, _state(providers, ratio=0.0))
    request.finish()
    tracer_provider.force_flush()

    (span,) = spans.get_finished_spans()
    assert f"{span.context.trace_id:032x}" == "4bf92f3577b34da6a3ce929d0e0e4736"
    assert span.parent.span_id == 0x00F067AA0BA902B7


def test_unsampled_request_leaves_query_untouched_but_counts(providers, spans, reader):
    request = RequestTelemetry.start(_descriptor(), _state(providers, ratio=0.0))
    query = "SELECT * FROM documents"

    assert request.sampled is False
    assert request.span is None
    assert request.format_query(query) is query
    request.finish()

    assert spans.get_finished_spans() == ()
    names = {
        metric.name
        for resource_metrics in reader.get_metrics_data().resource_metrics
        for scope_metrics in resource_metrics.scope_metrics
        for metric in scope_metrics.metrics
    }
    assert "db.client.operations" in names


def test_unsampled_request_without_metrics_is_noop(providers):
    request = RequestTelemetry.start(_descriptor(), _state(providers, ratio=0.0, metrics=False))
    assert request is NOOP_REQUEST


def test_failed_request_marks_span_error(providers, spans):
    tracer_provider, _ = providers
    request = RequestTelemetry.start(_descriptor(), _state(providers))

    request.finish(error_kind="DuplicateKey", error_code=11000)
    request.finish()
    tracer_provider.force_flush()

    (span,) = spans.get_finished_spans()
    assert span.status.status_code is StatusCode.ERROR
    assert span.attributes["error.type"] == "DuplicateKey"
    assert span.attributes["db.response.status_code"] == 409


def test_context_manager_activates_span_and_records_exceptions(providers, spans):
    tracer_provider, _ = providers

    with pytest.raises(ValueError):
        with RequestTelemetry.start(_descriptor(), _state(providers)) as request:
            assert trace.get_current_span() is request.span
            raise ValueError("bad command")
    tracer_provider.force_flush()

    (span,) = spans.get_finished_spans()
    assert span.attributes["error.type"] == "ValueError"
    assert trace.get_current_span() is not request.span


def test_frozen_exception_passes_through_sampled_request(providers, spans):
    tracer_provider, _ = providers

    with pytest.raises(ConfigError) as excinfo:
        with RequestTelemetry.start(_descriptor(), _state(providers)) as request:
            assert request.sampled is True
            raise ConfigError(message="bad setting")
    tracer_provider.force_flush()

    assert excinfo.value.message == "bad setting"
    (span,) = spans.get_finished_spans()
    assert span.attributes["error.type"] == "ConfigError"
    assert trace.get_current_span() is not request.span


def test_sampler_failure_does_not_reach_the_caller(providers):
    class BrokenEngine:
        def decide(self, inbound):
            raise RuntimeError("rng exploded")

    state = TelemetryState(tracing_enabled=True, sampler=BrokenEngine(), tracer=None, metrics=None)
    request = RequestTelemetry.start(_descriptor(), state)

    assert request is NOOP_REQUEST


@pytest.mark.parametrize(
    "code, status",
    [(None, 200), (18, 401), (13, 401), (1, 500), (50, 408), (11000, 409), (2, 400)],
)
def test_error_code_to_status_code(code, status):
    assert error_code_to_status_code(code) == status


def test_descriptor_span_attributes_skip_missing_fields():
    attributes = RequestDescriptor(operation="ping").span_attributes()
    assert attributes == {
        "db.system.name": "documentdb",
        "db.operation.name": "ping",
        "db.namespace": "unknown",
    }
