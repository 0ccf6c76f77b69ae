"""Telemetry layer of the DocumentDB gateway.

Import from here when possible.
"""

from documentdb_gateway.exceptions import (
    ConfigError,
    ProviderInitError,
    ProviderShutdownError,
    ShutdownError,
    ShutdownTimeoutError,
    TelemetryError,
)
from documentdb_gateway.telemetry import (
    RequestDescriptor,
    RequestTelemetry,
    TelemetryConfig,
    TelemetryHandle,
    TelemetryManager,
    configure_telemetry,
    resolve,
    shutdown_telemetry,
)

__all__ = [
    # telemetry
    "RequestDescriptor",
    "RequestTelemetry",
    "TelemetryConfig",
    "TelemetryHandle",
    "TelemetryManager",
    "configure_telemetry",
    "resolve",
    "shutdown_telemetry",
    # errors
    "ConfigError",
    "ProviderInitError",
    "ProviderShutdownError",
    "ShutdownError",
    "ShutdownTimeoutError",
    "TelemetryError",
]
