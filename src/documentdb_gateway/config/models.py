"""Raw telemetry options as they appear in the setup configuration file.

Every field is optional at every nesting level. ``None`` means "not set here",
which lets the resolver fall back to the environment and then to compiled
defaults one field at a time.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any, cast

logger = logging.getLogger(__name__)

_TRUE_STRINGS = {"1", "true", "yes", "on"}
_FALSE_STRINGS = {"0", "false", "no", "off"}


def _ensure_mapping(value: Any, field_name: str) -> Mapping[str, Any]:
    if not isinstance(value, Mapping):
        raise TypeError(f"{field_name} must be a mapping")
    return cast(Mapping[str, Any], value)


def _coerce_bool(value: Any, field_name: str) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        return bool(value)
    if isinstance(value, str):
        normalized = value.strip().lower()
        if normalized in _TRUE_STRINGS:
            return True
        if normalized in _FALSE_STRINGS:
            return False
    raise TypeError(f"{field_name} must be a bool")


def _coerce_int(value: Any, field_name: str) -> int:
    if isinstance(value, bool):
        raise TypeError(f"{field_name} must be an int")
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str):
        return int(value.strip())
    raise TypeError(f"{field_name} must be an int")


def _coerce_float(value: Any, field_name: str) -> float:
    if isinstance(value, bool):
        raise TypeError(f"{field_name} must be a float")
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        return float(value.strip())
    raise TypeError(f"{field_name} must be a float")


def _coerce_str(value: Any, field_name: str) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, (Mapping, Sequence)):
        raise TypeError(f"{field_name} must be a string")
    return str(value)


FieldSpec = tuple[str, str, Callable[[Any, str], Any]]


def _lookup(payload: Mapping[str, Any], key: str, attr: str) -> tuple[bool, Any]:
    if key in payload:
        return True, payload[key]
    if attr in payload:
        return True, payload[attr]
    return False, None


def _extract_fields(payload: Mapping[str, Any], specs: Sequence[FieldSpec], section: str) -> dict[str, Any]:
    """Coerce the fields present in ``payload``.

    A value that cannot be coerced is reported and dropped so that the field
    still falls back to the environment and defaults.
    """
    kwargs: dict[str, Any] = {}
    for key, attr, coerce in specs:
        found, raw = _lookup(payload, key, attr)
        if not found or raw is None:
            continue
        label = f"{section}.{key}"
        try:
            kwargs[attr] = coerce(raw, label)
        except (TypeError, ValueError) as exc:
            logger.warning("Ignoring invalid telemetry option %s=%r: %s", label, raw, exc)
    return kwargs


def _section(payload: Mapping[str, Any], key: str, attr: str, section: str) -> Mapping[str, Any] | None:
    found, raw = _lookup(payload, key, attr)
    if not found or raw is None:
        return None
    try:
        return _ensure_mapping(raw, f"{section}.{key}")
    except TypeError as exc:
        logger.warning("Ignoring invalid telemetry section %s.%s: %s", section, key, exc)
        return None


_TRACING_FIELD_SPECS: tuple[FieldSpec, ...] = (
    ("Enabled", "enabled", _coerce_bool),
    ("OtlpEndpoint", "otlp_endpoint", _coerce_str),
    ("SamplingRatio", "sampling_ratio", _coerce_float),
    ("ExportIntervalMs", "export_interval_ms", _coerce_int),
    ("MaxExportBatchSize", "max_export_batch_size", _coerce_int),
    ("ExportTimeoutMs", "export_timeout_ms", _coerce_int),
)


@dataclass(frozen=True, slots=True)
class TracingOptions:
    enabled: bool | None = None
    otlp_endpoint: str | None = None
    sampling_ratio: float | None = None
    export_interval_ms: int | None = None
    max_export_batch_size: int | None = None
    export_timeout_ms: int | None = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any] | None) -> "TracingOptions":
        if data is None:
            return cls()
        if isinstance(data, cls):
            return data
        return cls(**_extract_fields(data, _TRACING_FIELD_SPECS, "TelemetryOptions.Tracing"))


_METRICS_FIELD_SPECS: tuple[FieldSpec, ...] = (
    ("Enabled", "enabled", _coerce_bool),
    ("OtlpEndpoint", "otlp_endpoint", _coerce_str),
    ("ExportIntervalMs", "export_interval_ms", _coerce_int),
    ("ExportTimeoutMs", "export_timeout_ms", _coerce_int),
)


@dataclass(frozen=True, slots=True)
class MetricsOptions:
    enabled: bool | None = None
    otlp_endpoint: str | None = None
    export_interval_ms: int | None = None
    export_timeout_ms: int | None = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any] | None) -> "MetricsOptions":
        if data is None:
            return cls()
        if isinstance(data, cls):
            return data
        return cls(**_extract_fields(data, _METRICS_FIELD_SPECS, "TelemetryOptions.Metrics"))


_LOGGING_FIELD_SPECS: tuple[FieldSpec, ...] = (
    ("Enabled", "enabled", _coerce_bool),
    ("OtlpEndpoint", "otlp_endpoint", _coerce_str),
    ("Level", "level", _coerce_str),
    ("ConsoleEnabled", "console_enabled", _coerce_bool),
    ("ConsoleFormat", "console_format", _coerce_str),
    ("MaxQueueSize", "max_queue_size", _coerce_int),
    ("MaxExportBatchSize", "max_export_batch_size", _coerce_int),
    ("ExportIntervalMs", "export_interval_ms", _coerce_int),
    ("ExportTimeoutMs", "export_timeout_ms", _coerce_int),
)


@dataclass(frozen=True, slots=True)
class LoggingOptions:
    enabled: bool | None = None
    otlp_endpoint: str | None = None
    level: str | None = None
    console_enabled: bool | None = None
    console_format: str | None = None
    max_queue_size: int | None = None
    max_export_batch_size: int | None = None
    export_interval_ms: int | None = None
    export_timeout_ms: int | None = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any] | None) -> "LoggingOptions":
        if data is None:
            return cls()
        if isinstance(data, cls):
            return data
        return cls(**_extract_fields(data, _LOGGING_FIELD_SPECS, "TelemetryOptions.Logging"))


_TELEMETRY_FIELD_SPECS: tuple[FieldSpec, ...] = (
    ("ServiceName", "service_name", _coerce_str),
    ("ServiceVersion", "service_version", _coerce_str),
    ("OtlpEndpoint", "otlp_endpoint", _coerce_str),
)


@dataclass(frozen=True, slots=True)
class TelemetryOptions:
    """The ``TelemetryOptions`` section of the setup configuration.

    Attributes:
        service_name: Service name reported on every signal.
        service_version: Service version reported on every signal.
        otlp_endpoint: Base OTLP endpoint for signals without their own.
        tracing: Tracing section, or None when absent.
        metrics: Metrics section, or None when absent.
        logging: Logging section, or None when absent.
    """

    service_name: str | None = None
    service_version: str | None = None
    otlp_endpoint: str | None = None
    tracing: TracingOptions | None = None
    metrics: MetricsOptions | None = None
    logging: LoggingOptions | None = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any] | None) -> "TelemetryOptions":
        if data is None:
            return cls()
        if isinstance(data, cls):
            return data
        section = "TelemetryOptions"
        try:
            payload = _ensure_mapping(data, section)
        except TypeError as exc:
            logger.warning("Ignoring invalid telemetry options: %s", exc)
            return cls()
        kwargs = _extract_fields(payload, _TELEMETRY_FIELD_SPECS, section)
        tracing = _section(payload, "Tracing", "tracing", section)
        if tracing is not None:
            kwargs["tracing"] = TracingOptions.from_dict(tracing)
        metrics = _section(payload, "Metrics", "metrics", section)
        if metrics is not None:
            kwargs["metrics"] = MetricsOptions.from_dict(metrics)
        logging_section = _section(payload, "Logging", "logging", section)
        if logging_section is not None:
            kwargs["logging"] = LoggingOptions.from_dict(logging_section)
        return cls(**kwargs)
