from __future__ import annotations

from collections.abc import Mapping
from pathlib import Path
from typing import Any

from documentdb_gateway.config.loader import load_setup_configuration
from documentdb_gateway.config.models import TelemetryOptions

from .config import resolve
from .manager import DEFAULT_SHUTDOWN_DEADLINE, TelemetryHandle, TelemetryManager


def configure_telemetry(
    options: TelemetryOptions | Mapping[str, Any] | None = None,
    *,
    config_path: str | Path | None = None,
    environ: Mapping[str, str] | None = None,
    manager: TelemetryManager | None = None,
    install_globals: bool = True,
) -> TelemetryHandle:
    """Resolve the effective configuration and initialize telemetry.

    ``options`` wins over ``config_path``. A setup file that cannot be read
    raises :class:`~documentdb_gateway.exceptions.ConfigError`; provider
    failures never do.
    """
    if options is None and config_path is not None:
        options = load_setup_configuration(config_path)
    config = resolve(options, environ)
    return (manager or TelemetryManager()).init(config, install_globals=install_globals)


def shutdown_telemetry(handle: TelemetryHandle, deadline: float = DEFAULT_SHUTDOWN_DEADLINE) -> None:
    """Close everything ``configure_telemetry`` started."""
    TelemetryManager().shutdown(handle, deadline)
