from __future__ import annotations

import logging
import time
from collections.abc import Mapping
from types import TracebackType
from typing import Any

from opentelemetry import context, trace
from opentelemetry.trace import Status, StatusCode
from pydantic import BaseModel, ConfigDict

from .context_propagation import extract, inject
from .manager import TelemetryState, active_state
from .metrics import DB_SYSTEM_NAME, UNKNOWN
from .sampling import UNSAMPLED_OUTCOME, SamplingOutcome
from .tracing import start_request_span

logger = logging.getLogger(__name__)

# DocumentDB error codes with a dedicated status
_AUTHENTICATION_FAILED = 18
_UNAUTHORIZED = 13
_INTERNAL_ERROR = 1
_EXCEEDED_TIME_LIMIT = 50
_DUPLICATE_KEY = 11000


def error_code_to_status_code(error_code: int | None) -> int:
    """Map a command error code to an HTTP-like status; None means success."""
    if error_code is None:
        return 200
    if error_code in (_AUTHENTICATION_FAILED, _UNAUTHORIZED):
        return 401
    if error_code == _INTERNAL_ERROR:
        return 500
    if error_code == _EXCEEDED_TIME_LIMIT:
        return 408
    if error_code == _DUPLICATE_KEY:
        return 409
    return 400


class RequestDescriptor(BaseModel):
    """What the gateway knows about a request once it has been parsed.

    Attributes:
        request_id: Wire protocol request id.
        operation: Command name, e.g. ``find`` or ``insert``.
        database: Target database.
        collection: Target collection, when the command has one.
        client: Client driver descriptor from the handshake, e.g. ``PyMongo/4.14.1``.
        activity_id: Gateway correlation id.
        request_size: Request message length in bytes.
        comment: The command's ``comment`` field, a document or a JSON string.
    """

    model_config = ConfigDict(frozen=True)

    request_id: int | str | None = None
    operation: str | None = None
    database: str | None = None
    collection: str | None = None
    client: str | None = None
    activity_id: str | None = None
    request_size: int = 0
    comment: Any = None

    @property
    def span_name(self) -> str:
        return self.operation or UNKNOWN

    def span_attributes(self) -> dict[str, Any]:
        attributes: dict[str, Any] = {
            "db.system.name": DB_SYSTEM_NAME,
            "db.operation.name": self.operation or UNKNOWN,
            "db.namespace": self.database or UNKNOWN,
        }
        optional = {
            "db.collection.name": self.collection,
            "db.request.id": str(self.request_id) if self.request_id is not None else None,
            "user_agent.original": self.client,
            "activity_id": self.activity_id,
        }
        attributes.update({key: value for key, value in optional.items() if value})
        return attributes


class RequestTelemetry:
    """Telemetry for one request: sampling outcome, span and counters.

    Use :meth:`start` to create one. Telemetry failures are logged at debug
    level and never reach the caller.
    """

    def __init__(
        self,
        state: TelemetryState | None,
        descriptor: RequestDescriptor | None,
        outcome: SamplingOutcome,
        span: trace.Span | None,
    ) -> None:
        self._state = state
        self._descriptor = descriptor
        self._outcome = outcome
        self._span = span
        self._started_at = time.perf_counter()
        self._finished = False
        self._token: object | None = None

    @classmethod
    def start(
        cls, descriptor: RequestDescriptor, state: TelemetryState | None = None
    ) -> "RequestTelemetry":
        """Decide sampling and open the request span.

        Returns the shared no-op instance when telemetry is inactive or when
        the request would produce neither a span nor counters.
        """
        if state is None:
            state = active_state()
        if state is None:
            return NOOP_REQUEST

        outcome = UNSAMPLED_OUTCOME
        span = None
        if state.tracing_enabled and state.sampler is not None:
            try:
                outcome = state.sampler.decide(extract(descriptor.comment))
                if outcome.sampled and state.tracer is not None:
                    span = start_request_span(
                        state.tracer, outcome, descriptor.span_name, descriptor.span_attributes()
                    )
            except Exception:
                logger.debug("Failed to start request span", exc_info=True)
                outcome, span = UNSAMPLED_OUTCOME, None
            if outcome.sampled and span is None:
                outcome = UNSAMPLED_OUTCOME

        if span is None and state.metrics is None:
            return NOOP_REQUEST
        return cls(state, descriptor, outcome, span)

    @property
    def outcome(self) -> SamplingOutcome:
        return self._outcome

    @property
    def span(self) -> trace.Span | None:
        return self._span

    @property
    def sampled(self) -> bool:
        return self._outcome.sampled

    def format_query(self, query_text: str) -> str:
        """Prefix the outbound SQL with this request's traceparent when sampled."""
        return inject(self._outcome, query_text)

    def finish(
        self,
        *,
        response_size: int = 0,
        error_kind: str | None = None,
        error_code: int | None = None,
        phases: Mapping[str, float] | None = None,
    ) -> None:
        """Record counters and end the span. Later calls are ignored."""
        if self._state is None or self._finished:
            return
        self._finished = True
        duration = time.perf_counter() - self._started_at
        descriptor = self._descriptor or RequestDescriptor()

        if self._state.metrics is not None:
            try:
                self._state.metrics.record_request(
                    operation=descriptor.operation,
                    database=descriptor.database,
                    collection=descriptor.collection,
                    duration_seconds=duration,
                    request_size=descriptor.request_size,
                    response_size=response_size,
                    error_kind=error_kind,
                    phases=phases,
                )
            except Exception:
                logger.debug("Failed to record request metrics", exc_info=True)

        span = self._span
        if span is None:
            return
        try:
            span.set_attribute("db.response.status_code", error_code_to_status_code(error_code))
            if error_kind:
                span.set_attribute("error.type", error_kind)
                span.set_status(Status(StatusCode.ERROR, error_kind))
            else:
                span.set_status(Status(StatusCode.OK))
        except Exception:
            logger.debug("Failed to set span status", exc_info=True)
        finally:
            try:
                span.end()
            except Exception:
                logger.debug("Failed to end span", exc_info=True)

    def __enter__(self) -> "RequestTelemetry":
        if self._span is not None:
            self._token = context.attach(trace.set_span_in_context(self._span))
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        if self._token is not None:
            token, self._token = self._token, None
            context.detach(token)
        if not self._finished:
            self.finish(error_kind=exc_type.__name__ if exc_type is not None else None)


# Shared instance for requests with nothing to record.
NOOP_REQUEST = RequestTelemetry(None, None, UNSAMPLED_OUTCOME, None)
