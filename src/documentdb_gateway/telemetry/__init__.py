"""OpenTelemetry integration for the gateway.

Tracing, metrics and logging are configured independently from the setup
file, the environment and compiled defaults. Request handling reads the
published :class:`TelemetryState` and goes through :class:`RequestTelemetry`;
when telemetry is off that path costs a single attribute read.
"""

from .config import LoggingConfig, MetricsConfig, TelemetryConfig, TracingConfig, resolve
from .context_propagation import TraceContext, extract, format_traceparent, inject, parse_traceparent
from .logging import (
    LEVEL_NAME_TO_INT,
    LOG_FORMAT_CONSOLE,
    LOG_FORMAT_JSON,
    StructuredConsoleFormatter,
    StructuredJSONFormatter,
)
from .manager import (
    SignalState,
    TelemetryHandle,
    TelemetryManager,
    TelemetryState,
    active_state,
    is_telemetry_active,
    is_tracing_enabled,
)
from .metrics import GatewayMetrics
from .request import NOOP_REQUEST, RequestDescriptor, RequestTelemetry
from .sampling import UNSAMPLED_OUTCOME, SamplingDecisionEngine, SamplingOutcome, decide
from .setup import configure_telemetry, shutdown_telemetry

__all__ = [
    # Config
    "LoggingConfig",
    "MetricsConfig",
    "TelemetryConfig",
    "TracingConfig",
    "resolve",
    # Propagation
    "TraceContext",
    "extract",
    "format_traceparent",
    "inject",
    "parse_traceparent",
    # Sampling
    "SamplingDecisionEngine",
    "SamplingOutcome",
    "UNSAMPLED_OUTCOME",
    "decide",
    # Lifecycle
    "SignalState",
    "TelemetryHandle",
    "TelemetryManager",
    "TelemetryState",
    "active_state",
    "configure_telemetry",
    "is_telemetry_active",
    "is_tracing_enabled",
    "shutdown_telemetry",
    # Requests
    "GatewayMetrics",
    "NOOP_REQUEST",
    "RequestDescriptor",
    "RequestTelemetry",
    # Logging
    "LEVEL_NAME_TO_INT",
    "LOG_FORMAT_CONSOLE",
    "LOG_FORMAT_JSON",
    "StructuredConsoleFormatter",
    "StructuredJSONFormatter",
]
