"""Setup configuration helpers."""

from .loader import load_setup_configuration, load_setup_configuration_with_overrides
from .models import LoggingOptions, MetricsOptions, TelemetryOptions, TracingOptions

__all__ = [
    "LoggingOptions",
    "MetricsOptions",
    "TelemetryOptions",
    "TracingOptions",
    "load_setup_configuration",
    "load_setup_configuration_with_overrides",
]
