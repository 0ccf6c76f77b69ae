"""Effective telemetry configuration.

Each field is resolved on its own: structured value, then environment
variable, then compiled default. A structured section that only sets
``Enabled`` still lets its other fields come from the environment.
Resolution never fails; out-of-range values are clamped.
"""

from __future__ import annotations

import math
import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from importlib.metadata import PackageNotFoundError, version
from typing import Any, TypeVar

from documentdb_gateway.config.models import (
    LoggingOptions,
    MetricsOptions,
    TelemetryOptions,
    TracingOptions,
)

T = TypeVar("T")

DEFAULT_OTLP_ENDPOINT = "http://localhost:4317"
DEFAULT_SERVICE_NAME = "documentdb_gateway"
DEFAULT_EXPORT_TIMEOUT_MS = 10000

DEFAULT_TRACING_ENABLED = False
DEFAULT_SAMPLING_RATIO = 0.1
DEFAULT_TRACE_EXPORT_INTERVAL_MS = 5000
DEFAULT_TRACE_MAX_EXPORT_BATCH_SIZE = 512

DEFAULT_METRICS_ENABLED = True
DEFAULT_METRIC_EXPORT_INTERVAL_MS = 15000

DEFAULT_LOGGING_ENABLED = True
DEFAULT_CONSOLE_ENABLED = True
DEFAULT_LOG_LEVEL = "info"
DEFAULT_CONSOLE_FORMAT = "console"
CONSOLE_FORMATS = ("console", "json")
DEFAULT_LOG_MAX_QUEUE_SIZE = 4096
DEFAULT_LOG_MAX_EXPORT_BATCH_SIZE = 256
DEFAULT_LOG_EXPORT_INTERVAL_MS = 5000

# Environment variable names
ENV_SERVICE_NAME = "OTEL_SERVICE_NAME"
ENV_SERVICE_VERSION = "OTEL_SERVICE_VERSION"
ENV_RESOURCE_ATTRIBUTES = "OTEL_RESOURCE_ATTRIBUTES"
ENV_OTLP_ENDPOINT = "OTEL_EXPORTER_OTLP_ENDPOINT"
ENV_OTLP_TIMEOUT = "OTEL_EXPORTER_OTLP_TIMEOUT"
ENV_TRACING_ENABLED = "OTEL_TRACING_ENABLED"
ENV_TRACES_ENDPOINT = "OTEL_EXPORTER_OTLP_TRACES_ENDPOINT"
ENV_TRACES_TIMEOUT = "OTEL_EXPORTER_OTLP_TRACES_TIMEOUT"
ENV_TRACES_SAMPLER_ARG = "OTEL_TRACES_SAMPLER_ARG"
ENV_BSP_SCHEDULE_DELAY = "OTEL_BSP_SCHEDULE_DELAY"
ENV_BSP_MAX_EXPORT_BATCH_SIZE = "OTEL_BSP_MAX_EXPORT_BATCH_SIZE"
ENV_METRICS_ENABLED = "OTEL_METRICS_ENABLED"
ENV_METRICS_ENDPOINT = "OTEL_EXPORTER_OTLP_METRICS_ENDPOINT"
ENV_METRICS_TIMEOUT = "OTEL_EXPORTER_OTLP_METRICS_TIMEOUT"
ENV_METRIC_EXPORT_INTERVAL = "OTEL_METRIC_EXPORT_INTERVAL"
ENV_LOGGING_ENABLED = "OTEL_LOGGING_ENABLED"
ENV_LOGS_ENDPOINT = "OTEL_EXPORTER_OTLP_LOGS_ENDPOINT"
ENV_LOGS_TIMEOUT = "OTEL_EXPORTER_OTLP_LOGS_TIMEOUT"
ENV_LOGS_CONSOLE_ENABLED = "OTEL_LOGS_CONSOLE_ENABLED"
ENV_LOG_LEVEL = "DOCUMENTDB_GATEWAY_LOG_LEVEL"
ENV_LOG_FORMAT = "DOCUMENTDB_GATEWAY_LOG_FORMAT"
ENV_BLRP_MAX_QUEUE_SIZE = "OTEL_BLRP_MAX_QUEUE_SIZE"
ENV_BLRP_MAX_EXPORT_BATCH_SIZE = "OTEL_BLRP_MAX_EXPORT_BATCH_SIZE"
ENV_BLRP_SCHEDULE_DELAY = "OTEL_BLRP_SCHEDULE_DELAY"


def _default_service_version() -> str:
    try:
        return version("documentdb-gateway-telemetry")
    except PackageNotFoundError:
        return "0.0.0"


DEFAULT_SERVICE_VERSION = _default_service_version()


@dataclass(frozen=True, slots=True)
class SignalConfig:
    """Settings shared by every exported signal."""

    enabled: bool = False
    endpoint: str = DEFAULT_OTLP_ENDPOINT
    export_interval_ms: int = 5000
    export_timeout_ms: int = DEFAULT_EXPORT_TIMEOUT_MS

    @property
    def export_interval(self) -> float:
        """Export interval in seconds."""
        return self.export_interval_ms / 1000.0

    @property
    def export_timeout(self) -> float:
        """Export timeout in seconds."""
        return self.export_timeout_ms / 1000.0


@dataclass(frozen=True, slots=True)
class TracingConfig(SignalConfig):
    enabled: bool = DEFAULT_TRACING_ENABLED
    export_interval_ms: int = DEFAULT_TRACE_EXPORT_INTERVAL_MS
    sampling_ratio: float = DEFAULT_SAMPLING_RATIO
    max_export_batch_size: int = DEFAULT_TRACE_MAX_EXPORT_BATCH_SIZE


@dataclass(frozen=True, slots=True)
class MetricsConfig(SignalConfig):
    enabled: bool = DEFAULT_METRICS_ENABLED
    export_interval_ms: int = DEFAULT_METRIC_EXPORT_INTERVAL_MS


@dataclass(frozen=True, slots=True)
class LoggingConfig(SignalConfig):
    enabled: bool = DEFAULT_LOGGING_ENABLED
    export_interval_ms: int = DEFAULT_LOG_EXPORT_INTERVAL_MS
    level_filter: str = DEFAULT_LOG_LEVEL
    console_enabled: bool = DEFAULT_CONSOLE_ENABLED
    console_format: str = DEFAULT_CONSOLE_FORMAT
    max_queue_size: int = DEFAULT_LOG_MAX_QUEUE_SIZE
    max_export_batch_size: int = DEFAULT_LOG_MAX_EXPORT_BATCH_SIZE


@dataclass(frozen=True, slots=True)
class TelemetryConfig:
    """Resolved, immutable configuration for all three signals."""

    service_name: str = DEFAULT_SERVICE_NAME
    service_version: str = DEFAULT_SERVICE_VERSION
    resource_attributes: tuple[tuple[str, str], ...] = ()
    tracing: TracingConfig = field(default_factory=TracingConfig)
    metrics: MetricsConfig = field(default_factory=MetricsConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @property
    def any_signal_enabled(self) -> bool:
        return self.tracing.enabled or self.metrics.enabled or self.logging.enabled


# ---------------------------------------------------------------------------
# Environment parsing. Values that fail to parse are treated as unset.
# ---------------------------------------------------------------------------


def _env_text(environ: Mapping[str, str], name: str) -> str | None:
    value = environ.get(name)
    if value is None:
        return None
    value = value.strip()
    return value or None


def _env_bool(environ: Mapping[str, str], name: str) -> bool | None:
    value = _env_text(environ, name)
    if value is None:
        return None
    normalized = value.lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return None


def _env_int(environ: Mapping[str, str], name: str) -> int | None:
    value = _env_text(environ, name)
    if value is None:
        return None
    try:
        return int(value)
    except ValueError:
        return None


def _env_float(environ: Mapping[str, str], name: str) -> float | None:
    value = _env_text(environ, name)
    if value is None:
        return None
    try:
        return float(value)
    except ValueError:
        return None


def _first(default: T, *candidates: T | None) -> T:
    for candidate in candidates:
        if candidate is not None:
            return candidate
    return default


def _blank_to_none(value: str | None) -> str | None:
    if value is None or not value.strip():
        return None
    return value.strip()


def _at_least(value: int, minimum: int = 1) -> int:
    return value if value >= minimum else minimum


def clamp_ratio(value: float) -> float:
    """Clamp a sampling ratio into [0.0, 1.0]; NaN falls back to the default."""
    if math.isnan(value):
        return DEFAULT_SAMPLING_RATIO
    return min(1.0, max(0.0, value))


def parse_resource_attributes(raw: str | None) -> tuple[tuple[str, str], ...]:
    """Parse ``k1=v1,k2=v2`` into attribute pairs, skipping malformed entries."""
    if not raw:
        return ()
    pairs: list[tuple[str, str]] = []
    for item in raw.split(","):
        key, sep, value = item.partition("=")
        key = key.strip()
        if not sep or not key:
            continue
        pairs.append((key, value.strip()))
    return tuple(pairs)


# ---------------------------------------------------------------------------
# Resolution
# ---------------------------------------------------------------------------


def _endpoint(
    structured: str | None, environ: Mapping[str, str], signal_var: str, base: str
) -> str:
    return _first(base, _blank_to_none(structured), _env_text(environ, signal_var))


def _timeout(structured: int | None, environ: Mapping[str, str], signal_var: str) -> int:
    value = _first(
        DEFAULT_EXPORT_TIMEOUT_MS,
        structured,
        _env_int(environ, signal_var),
        _env_int(environ, ENV_OTLP_TIMEOUT),
    )
    return _at_least(value)


def _resolve_tracing(opts: TracingOptions, environ: Mapping[str, str], base: str) -> TracingConfig:
    ratio = _first(DEFAULT_SAMPLING_RATIO, opts.sampling_ratio, _env_float(environ, ENV_TRACES_SAMPLER_ARG))
    return TracingConfig(
        enabled=_first(DEFAULT_TRACING_ENABLED, opts.enabled, _env_bool(environ, ENV_TRACING_ENABLED)),
        endpoint=_endpoint(opts.otlp_endpoint, environ, ENV_TRACES_ENDPOINT, base),
        export_interval_ms=_at_least(
            _first(
                DEFAULT_TRACE_EXPORT_INTERVAL_MS,
                opts.export_interval_ms,
                _env_int(environ, ENV_BSP_SCHEDULE_DELAY),
            )
        ),
        export_timeout_ms=_timeout(opts.export_timeout_ms, environ, ENV_TRACES_TIMEOUT),
        sampling_ratio=clamp_ratio(ratio),
        max_export_batch_size=_at_least(
            _first(
                DEFAULT_TRACE_MAX_EXPORT_BATCH_SIZE,
                opts.max_export_batch_size,
                _env_int(environ, ENV_BSP_MAX_EXPORT_BATCH_SIZE),
            )
        ),
    )


def _resolve_metrics(opts: MetricsOptions, environ: Mapping[str, str], base: str) -> MetricsConfig:
    return MetricsConfig(
        enabled=_first(DEFAULT_METRICS_ENABLED, opts.enabled, _env_bool(environ, ENV_METRICS_ENABLED)),
        endpoint=_endpoint(opts.otlp_endpoint, environ, ENV_METRICS_ENDPOINT, base),
        export_interval_ms=_at_least(
            _first(
                DEFAULT_METRIC_EXPORT_INTERVAL_MS,
                opts.export_interval_ms,
                _env_int(environ, ENV_METRIC_EXPORT_INTERVAL),
            )
        ),
        export_timeout_ms=_timeout(opts.export_timeout_ms, environ, ENV_METRICS_TIMEOUT),
    )


def _resolve_logging(opts: LoggingOptions, environ: Mapping[str, str], base: str) -> LoggingConfig:
    max_queue_size = _at_least(
        _first(DEFAULT_LOG_MAX_QUEUE_SIZE, opts.max_queue_size, _env_int(environ, ENV_BLRP_MAX_QUEUE_SIZE))
    )
    max_export_batch_size = _at_least(
        _first(
            DEFAULT_LOG_MAX_EXPORT_BATCH_SIZE,
            opts.max_export_batch_size,
            _env_int(environ, ENV_BLRP_MAX_EXPORT_BATCH_SIZE),
        )
    )
    level = _first(DEFAULT_LOG_LEVEL, _blank_to_none(opts.level), _env_text(environ, ENV_LOG_LEVEL))
    console_format = _first(
        DEFAULT_CONSOLE_FORMAT, _blank_to_none(opts.console_format), _env_text(environ, ENV_LOG_FORMAT)
    ).lower()
    if console_format not in CONSOLE_FORMATS:
        console_format = DEFAULT_CONSOLE_FORMAT
    return LoggingConfig(
        enabled=_first(DEFAULT_LOGGING_ENABLED, opts.enabled, _env_bool(environ, ENV_LOGGING_ENABLED)),
        endpoint=_endpoint(opts.otlp_endpoint, environ, ENV_LOGS_ENDPOINT, base),
        export_interval_ms=_at_least(
            _first(
                DEFAULT_LOG_EXPORT_INTERVAL_MS,
                opts.export_interval_ms,
                _env_int(environ, ENV_BLRP_SCHEDULE_DELAY),
            )
        ),
        export_timeout_ms=_timeout(opts.export_timeout_ms, environ, ENV_LOGS_TIMEOUT),
        level_filter=level.lower(),
        console_enabled=_first(
            DEFAULT_CONSOLE_ENABLED, opts.console_enabled, _env_bool(environ, ENV_LOGS_CONSOLE_ENABLED)
        ),
        console_format=console_format,
        max_queue_size=max_queue_size,
        # the batch processor rejects batches larger than its queue
        max_export_batch_size=min(max_export_batch_size, max_queue_size),
    )


def resolve(
    structured: TelemetryOptions | Mapping[str, Any] | None = None,
    environ: Mapping[str, str] | None = None,
) -> TelemetryConfig:
    """Merge structured options, environment variables and defaults.

    Args:
        structured: The ``TelemetryOptions`` section, as parsed options or a raw mapping.
        environ: Environment view; defaults to ``os.environ``.

    Returns:
        The effective configuration. Never raises.
    """
    if isinstance(structured, TelemetryOptions):
        options = structured
    else:
        options = TelemetryOptions.from_dict(structured)
    env: Mapping[str, str] = os.environ if environ is None else environ

    base_endpoint = _first(
        DEFAULT_OTLP_ENDPOINT,
        _blank_to_none(options.otlp_endpoint),
        _env_text(env, ENV_OTLP_ENDPOINT),
    )

    return TelemetryConfig(
        service_name=_first(
            DEFAULT_SERVICE_NAME, _blank_to_none(options.service_name), _env_text(env, ENV_SERVICE_NAME)
        ),
        service_version=_first(
            DEFAULT_SERVICE_VERSION,
            _blank_to_none(options.service_version),
            _env_text(env, ENV_SERVICE_VERSION),
        ),
        resource_attributes=parse_resource_attributes(env.get(ENV_RESOURCE_ATTRIBUTES)),
        tracing=_resolve_tracing(options.tracing or TracingOptions(), env, base_endpoint),
        metrics=_resolve_metrics(options.metrics or MetricsOptions(), env, base_endpoint),
        logging=_resolve_logging(options.logging or LoggingOptions(), env, base_endpoint),
    )
