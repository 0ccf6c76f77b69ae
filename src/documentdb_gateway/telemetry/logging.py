from __future__ import annotations

import json
import logging
import sys
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, TextIO

from opentelemetry import trace
# LoggingHandler is deprecated from opentelemetry-sdk 1.45 in favour of the
# handler in opentelemetry-instrumentation-logging; switch when it is removed.
from opentelemetry.sdk._logs import LoggerProvider, LoggingHandler
from opentelemetry.sdk._logs.export import BatchLogRecordProcessor
from opentelemetry.sdk.resources import Resource

from .config import LoggingConfig
from .diagnostics import emit_diagnostic

# Log format constants
LOG_FORMAT_JSON = "json"
LOG_FORMAT_CONSOLE = "console"

# Log level mapping; "trace" has no stdlib level and maps to DEBUG
LEVEL_NAME_TO_INT = {
    "TRACE": logging.DEBUG,
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARN": logging.WARNING,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
    "CRITICAL": logging.CRITICAL,
}


class StructuredJSONFormatter(logging.Formatter):
    """One JSON object per record, with the active trace and span id."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": _timestamp(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "thread": record.threadName,
            "location": f"{record.module}:{record.funcName}:{record.lineno}",
        }
        payload.update(_fetch_trace_context())
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


class StructuredConsoleFormatter(logging.Formatter):
    """Single-line console output; sampled records carry a short trace id."""

    def format(self, record: logging.LogRecord) -> str:
        trace_id = _fetch_trace_context().get("trace_id")
        prefix = f"{_timestamp(record)} "
        if trace_id:
            prefix += f"[{trace_id[:8]}] "
        line = f"{prefix}{record.levelname:8} {record.name}: {record.getMessage()}"
        if record.exc_info:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line


def _timestamp(record: logging.LogRecord) -> str:
    return datetime.fromtimestamp(record.created, timezone.utc).isoformat()


def _fetch_trace_context() -> dict[str, str]:
    span = trace.get_current_span()
    if not span.is_recording():
        return {}
    span_context = span.get_span_context()
    return {
        "trace_id": format(span_context.trace_id, "032x"),
        "span_id": format(span_context.span_id, "016x"),
    }


def parse_level(name: str | None) -> int:
    """Map a level filter such as ``info`` or ``WARN`` to a stdlib level.

    Unknown values fall back to INFO and are reported on the diagnostic channel.
    """
    if not name:
        return logging.INFO
    normalized = name.strip().upper()
    if normalized in LEVEL_NAME_TO_INT:
        return LEVEL_NAME_TO_INT[normalized]
    if normalized.isdigit():
        return int(normalized)
    emit_diagnostic(f"Invalid log level '{name}', falling back to 'info'")
    return logging.INFO


def build_console_handler(config: LoggingConfig, stream: TextIO | None = None) -> logging.Handler:
    """Stream handler writing to stdout in the configured format."""
    handler = logging.StreamHandler(stream or sys.stdout)
    if config.console_format == LOG_FORMAT_JSON:
        handler.setFormatter(StructuredJSONFormatter())
    else:
        handler.setFormatter(StructuredConsoleFormatter())
    handler.setLevel(parse_level(config.level_filter))
    return handler


def create_logger_provider(
    config: LoggingConfig,
    resource: Resource,
    exporter: Any | None = None,
) -> LoggerProvider | None:
    """Create a logger provider with batched OTLP/gRPC export.

    Returns None when OTLP logging is disabled.
    """
    if not config.enabled:
        return None

    if exporter is None:
        from opentelemetry.exporter.otlp.proto.grpc._log_exporter import OTLPLogExporter

        exporter = OTLPLogExporter(endpoint=config.endpoint, timeout=config.export_timeout)

    provider = LoggerProvider(resource=resource, shutdown_on_exit=False)
    provider.add_log_record_processor(
        BatchLogRecordProcessor(
            exporter,
            schedule_delay_millis=config.export_interval_ms,
            max_export_batch_size=config.max_export_batch_size,
            export_timeout_millis=config.export_timeout_ms,
            max_queue_size=config.max_queue_size,
        )
    )
    return provider


@dataclass
class LogHandlers:
    """Handlers installed on the root logger, kept so they can be removed."""

    level: int = logging.INFO
    handlers: list[logging.Handler] = field(default_factory=list)
    _previous_level: int | None = None

    def install(self, target: logging.Logger | None = None) -> None:
        root = target or logging.getLogger()
        self._previous_level = root.level
        for handler in self.handlers:
            root.addHandler(handler)
        if self.handlers:
            root.setLevel(self.level)

    def uninstall(self, target: logging.Logger | None = None) -> None:
        root = target or logging.getLogger()
        for handler in self.handlers:
            root.removeHandler(handler)
            if not isinstance(handler, LoggingHandler):
                handler.flush()
        if self._previous_level is not None:
            root.setLevel(self._previous_level)
            self._previous_level = None


def build_log_handlers(
    config: LoggingConfig,
    provider: LoggerProvider | None,
    stream: TextIO | None = None,
) -> LogHandlers:
    """Bridge stdlib logging to the OTLP provider and, optionally, the console."""
    level = parse_level(config.level_filter)
    handlers: list[logging.Handler] = []
    if provider is not None:
        handlers.append(LoggingHandler(level=level, logger_provider=provider))
    if config.console_enabled:
        handlers.append(build_console_handler(config, stream))
    return LogHandlers(level=level, handlers=handlers)
