from __future__ import annotations

from dataclasses import dataclass
from typing import Any


@dataclass(frozen=True)
class TelemetryError(Exception):
    """Base class for gateway telemetry exceptions with a canonical error shape."""

    code: int
    message: str
    data: Any | None = None
    cause: Exception | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "args", (self.message,))
        if self.cause is not None:
            object.__setattr__(self, "__cause__", self.cause)
            object.__setattr__(self, "__suppress_context__", True)

    def to_error_dict(self) -> dict[str, Any]:
        """Return the canonical ``{code, message, data}`` mapping."""
        return {"code": self.code, "message": self.message, "data": self.data}


@dataclass(frozen=True)
class ConfigError(TelemetryError):
    """Raised when a setup configuration file cannot be loaded."""

    code: int = 1000
    message: str = "Configuration error"


@dataclass(frozen=True)
class ProviderInitError(TelemetryError):
    """Raised when a single signal's provider cannot be constructed."""

    code: int = 2000
    message: str = "Telemetry provider initialization failed"
    signal: str = ""


@dataclass(frozen=True)
class ShutdownError(TelemetryError):
    """Raised by shutdown once every provider has been attempted."""

    code: int = 3000
    message: str = "Telemetry shutdown failed"
    signal: str = ""


@dataclass(frozen=True)
class ProviderShutdownError(ShutdownError):
    """Raised when a provider's shutdown call fails."""

    code: int = 3001
    message: str = "Telemetry provider shutdown failed"


@dataclass(frozen=True)
class ShutdownTimeoutError(ShutdownError):
    """Raised when a provider does not finish closing before the deadline."""

    code: int = 3002
    message: str = "Telemetry provider shutdown timed out"
