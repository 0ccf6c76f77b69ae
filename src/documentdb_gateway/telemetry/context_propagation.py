"""W3C trace-context propagation through the request comment field.

The wire protocol carries no headers, so clients put a ``traceparent`` into
the request ``comment``, either as a sub-document or as a JSON string.
Outbound, the context rides to the SQL engine as a comment prefix on the
query text.

Inbound parsing is best-effort: anything malformed yields None and the
request simply starts a new trace.
"""

from __future__ import annotations

import json
from collections.abc import Mapping
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from opentelemetry.context import Context

    from .sampling import SamplingOutcome

TRACEPARENT_KEY = "traceparent"
TRACESTATE_KEY = "tracestate"
TRACEPARENT_VERSION = "00"

SAMPLED_FLAG = 0x01

_HEX_DIGITS = frozenset("0123456789abcdefABCDEF")
_TRACE_ID_HEX_LEN = 32
_SPAN_ID_HEX_LEN = 16
_FLAGS_HEX_LEN = 2


@dataclass(frozen=True, slots=True)
class TraceContext:
    """A remote span context received from the client."""

    trace_id: int
    span_id: int
    trace_flags: int = 0
    trace_state: str | None = None

    @property
    def sampled(self) -> bool:
        return bool(self.trace_flags & SAMPLED_FLAG)

    @property
    def traceparent(self) -> str:
        return format_traceparent(self.trace_id, self.span_id, self.trace_flags)


def format_traceparent(trace_id: int, span_id: int, trace_flags: int) -> str:
    """Render ``00-<32 hex>-<16 hex>-<2 hex>``."""
    return f"{TRACEPARENT_VERSION}-{trace_id:032x}-{span_id:016x}-{trace_flags & 0xFF:02x}"


def _parse_hex(value: str, length: int) -> int | None:
    if len(value) != length or not _HEX_DIGITS.issuperset(value):
        return None
    return int(value, 16)


def parse_traceparent(value: Any, trace_state: Any = None) -> TraceContext | None:
    """Parse a traceparent string.

    Returns None for a wrong field count, an unsupported version, a field of
    the wrong width or with non-hex characters, and all-zero ids.
    """
    if not isinstance(value, str):
        return None
    parts = value.split("-")
    if len(parts) != 4 or parts[0] != TRACEPARENT_VERSION:
        return None

    trace_id = _parse_hex(parts[1], _TRACE_ID_HEX_LEN)
    span_id = _parse_hex(parts[2], _SPAN_ID_HEX_LEN)
    flags = _parse_hex(parts[3], _FLAGS_HEX_LEN)
    if trace_id is None or span_id is None or flags is None:
        return None
    if trace_id == 0 or span_id == 0:
        return None

    state = trace_state if isinstance(trace_state, str) and trace_state.strip() else None
    return TraceContext(trace_id=trace_id, span_id=span_id, trace_flags=flags, trace_state=state)


def _from_document(document: Mapping[Any, Any]) -> TraceContext | None:
    return parse_traceparent(document.get(TRACEPARENT_KEY), document.get(TRACESTATE_KEY))


def _from_json_string(text: str) -> TraceContext | None:
    try:
        decoded = json.loads(text)
    except (ValueError, RecursionError):
        return None
    if not isinstance(decoded, Mapping):
        return None
    return _from_document(decoded)


def extract(comment: Any) -> TraceContext | None:
    """Extract a trace context from a request comment value.

    Args:
        comment: A mapping holding a ``traceparent`` key, or a string (or
            UTF-8 bytes) that JSON-decodes to such a mapping.

    Returns:
        The remote trace context, or None when absent or malformed.
    """
    if comment is None:
        return None
    try:
        if isinstance(comment, Mapping):
            return _from_document(comment)
        if isinstance(comment, (bytes, bytearray)):
            comment = bytes(comment).decode("utf-8")
        if isinstance(comment, str):
            return _from_json_string(comment)
    except (UnicodeDecodeError, TypeError, ValueError):
        return None
    return None


def inject(outcome: "SamplingOutcome", query_text: str) -> str:
    """Prefix ``query_text`` with the outcome's traceparent when sampled.

    An unsampled outcome returns ``query_text`` itself, not a copy.
    """
    if not outcome.sampled:
        return query_text
    traceparent = format_traceparent(outcome.trace_id, outcome.span_id, outcome.trace_flags)
    return f"/* traceparent='{traceparent}' */ {query_text}"


def to_otel_context(trace_context: TraceContext) -> "Context":
    """Build an OpenTelemetry context whose current span is the remote parent."""
    from opentelemetry import trace
    from opentelemetry.trace import NonRecordingSpan, SpanContext, TraceFlags, TraceState

    state = TraceState()
    if trace_context.trace_state:
        state = TraceState.from_header([trace_context.trace_state])
    span_context = SpanContext(
        trace_id=trace_context.trace_id,
        span_id=trace_context.span_id,
        is_remote=True,
        trace_flags=TraceFlags(trace_context.trace_flags),
        trace_state=state,
    )
    return trace.set_span_in_context(NonRecordingSpan(span_context))
