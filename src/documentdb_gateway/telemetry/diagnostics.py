"""Diagnostics channel usable before logging is configured.

Telemetry initialization may itself install the logging pipeline, so failures
during that window are written straight to a stream instead of going through
``logging``.
"""

from __future__ import annotations

import sys
from datetime import datetime, timezone
from typing import TextIO

_PREFIX = "documentdb_gateway.telemetry"


def emit_diagnostic(message: str, *, stream: TextIO | None = None) -> None:
    """Write a single diagnostic line to stderr (or ``stream``).

    Never raises: a closed or broken stream drops the message.
    """
    target = stream if stream is not None else sys.stderr
    timestamp = datetime.now(timezone.utc).isoformat()
    try:
        target.write(f"{timestamp} {_PREFIX}: {message}\n")
        target.flush()
    except (OSError, ValueError):
        pass
