from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from contextvars import ContextVar
from typing import Any

from opentelemetry import trace
from opentelemetry.context import Context
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, SpanExporter
from opentelemetry.sdk.trace.id_generator import IdGenerator, RandomIdGenerator
from opentelemetry.sdk.trace.sampling import (
    Decision,
    ParentBased,
    Sampler,
    SamplingResult,
    TraceIdRatioBased,
)
from opentelemetry.trace import Link, SpanKind
from opentelemetry.trace.span import TraceState
from opentelemetry.util.types import Attributes

from .config import TracingConfig
from .context_propagation import TraceContext, to_otel_context
from .sampling import SamplingOutcome

logger = logging.getLogger(__name__)

INSTRUMENTATION_NAME = "documentdb_gateway"

# The SDK's batch processor rejects batches larger than its queue.
_MIN_SPAN_QUEUE_SIZE = 2048

_PENDING_OUTCOME: ContextVar[SamplingOutcome | None] = ContextVar(
    "documentdb_gateway_pending_outcome", default=None
)


class OutcomeIdGenerator(IdGenerator):
    """Hands out the ids of the outcome being started, random ids otherwise."""

    def __init__(self, fallback: IdGenerator | None = None) -> None:
        self._fallback = fallback or RandomIdGenerator()

    def generate_span_id(self) -> int:
        outcome = _PENDING_OUTCOME.get()
        if outcome is not None:
            return outcome.span_id
        return self._fallback.generate_span_id()

    def generate_trace_id(self) -> int:
        outcome = _PENDING_OUTCOME.get()
        if outcome is not None:
            return outcome.trace_id
        return self._fallback.generate_trace_id()


class OutcomeSampler(Sampler):
    """Applies a precomputed request decision.

    Spans started outside the request path (no pending outcome) use
    parent-based ratio sampling.
    """

    def __init__(self, ratio: float) -> None:
        self._ratio = ratio
        self._delegate = ParentBased(TraceIdRatioBased(ratio))

    def should_sample(
        self,
        parent_context: Context | None,
        trace_id: int,
        name: str,
        kind: SpanKind | None = None,
        attributes: Attributes = None,
        links: Sequence[Link] | None = None,
        trace_state: TraceState | None = None,
    ) -> SamplingResult:
        outcome = _PENDING_OUTCOME.get()
        if outcome is None or outcome.trace_id != trace_id:
            return self._delegate.should_sample(
                parent_context, trace_id, name, kind, attributes, links, trace_state
            )
        parent_state = trace.get_current_span(parent_context).get_span_context().trace_state
        if outcome.sampled:
            return SamplingResult(Decision.RECORD_AND_SAMPLE, attributes, parent_state)
        return SamplingResult(Decision.DROP, None, parent_state)

    def get_description(self) -> str:
        return f"OutcomeSampler{{{self._ratio}}}"


def create_tracer_provider(
    config: TracingConfig,
    resource: Resource,
    exporter: SpanExporter | None = None,
) -> TracerProvider | None:
    """Create a tracer provider with batched OTLP/gRPC export.

    Returns None when tracing is disabled.
    """
    if not config.enabled:
        return None

    if exporter is None:
        from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter

        exporter = OTLPSpanExporter(endpoint=config.endpoint, timeout=config.export_timeout)

    provider = TracerProvider(
        sampler=OutcomeSampler(config.sampling_ratio),
        resource=resource,
        id_generator=OutcomeIdGenerator(),
        shutdown_on_exit=False,
    )
    provider.add_span_processor(
        BatchSpanProcessor(
            exporter,
            max_queue_size=max(_MIN_SPAN_QUEUE_SIZE, config.max_export_batch_size),
            schedule_delay_millis=config.export_interval_ms,
            max_export_batch_size=config.max_export_batch_size,
            export_timeout_millis=config.export_timeout_ms,
        )
    )
    logger.debug("Tracer provider created for %s", config.endpoint)
    return provider


def start_request_span(
    tracer: trace.Tracer,
    outcome: SamplingOutcome,
    name: str,
    attributes: Mapping[str, Any] | None = None,
    kind: SpanKind = SpanKind.SERVER,
) -> trace.Span:
    """Start a span whose ids and sampling decision are those of ``outcome``."""
    if outcome.is_root or outcome.parent_span_id is None:
        parent = Context()
    else:
        parent = to_otel_context(
            TraceContext(
                trace_id=outcome.trace_id,
                span_id=outcome.parent_span_id,
                trace_flags=outcome.trace_flags,
                trace_state=outcome.trace_state,
            )
        )
    token = _PENDING_OUTCOME.set(outcome)
    try:
        return tracer.start_span(name, context=parent, kind=kind, attributes=attributes)
    finally:
        _PENDING_OUTCOME.reset(token)
