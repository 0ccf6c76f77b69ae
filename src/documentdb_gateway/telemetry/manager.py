"""Lifecycle of the tracing, metrics and logging providers.

Each signal is initialized independently. A signal whose provider cannot be
built is reported on the diagnostics channel and skipped; the others keep
running. Once initialization succeeds, the request path reads an immutable
:class:`TelemetryState` without taking any lock.

Shutdown attempts every provider, bounds each attempt by a deadline and
raises the first error only after all of them have been tried.
"""

from __future__ import annotations

import logging
import random
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, TextIO

from opentelemetry import metrics as otel_metrics
from opentelemetry import trace
from opentelemetry.sdk.resources import SERVICE_NAME, SERVICE_VERSION, Resource

from documentdb_gateway.exceptions import (
    ProviderInitError,
    ProviderShutdownError,
    ShutdownError,
    ShutdownTimeoutError,
)

from .config import SignalConfig, TelemetryConfig
from .diagnostics import emit_diagnostic
from .logging import LogHandlers, build_log_handlers, create_logger_provider
from .metrics import GatewayMetrics, create_meter_provider
from .sampling import SamplingDecisionEngine
from .tracing import INSTRUMENTATION_NAME, create_tracer_provider

logger = logging.getLogger(__name__)

DEFAULT_SHUTDOWN_DEADLINE = 5.0

ProviderFactory = Callable[[Any, Resource], Any]


class Signal(StrEnum):
    TRACING = "tracing"
    METRICS = "metrics"
    LOGGING = "logging"


class SignalState(StrEnum):
    UNINITIALIZED = "uninitialized"
    READY = "ready"
    SKIPPED = "skipped"
    SHUTTING_DOWN = "shutting_down"
    CLOSED = "closed"


_TRANSITIONS: dict[SignalState, frozenset[SignalState]] = {
    SignalState.UNINITIALIZED: frozenset({SignalState.READY, SignalState.SKIPPED}),
    SignalState.READY: frozenset({SignalState.SHUTTING_DOWN}),
    SignalState.SHUTTING_DOWN: frozenset({SignalState.CLOSED}),
    SignalState.SKIPPED: frozenset(),
    SignalState.CLOSED: frozenset(),
}


@dataclass
class ProviderHandle:
    """One signal's provider and where it is in its lifecycle."""

    signal: Signal
    provider: Any = None
    state: SignalState = SignalState.UNINITIALIZED
    error: Exception | None = None

    @property
    def ready(self) -> bool:
        return self.state is SignalState.READY

    def transition(self, new_state: SignalState) -> None:
        if new_state not in _TRANSITIONS[self.state]:
            raise RuntimeError(f"{self.signal} provider cannot move from {self.state} to {new_state}")
        self.state = new_state


@dataclass(frozen=True)
class TelemetryState:
    """Read-only view of the running telemetry used by request handling.

    Attributes:
        tracing_enabled: True when the tracer provider is live.
        metrics_enabled: True when the meter provider is live.
        logging_enabled: True when OTLP log export is live.
        sampler: Sampling engine for request spans, set when tracing is enabled.
        tracer: Tracer for request spans, set when tracing is enabled.
        metrics: Per-request counters, set when metrics are enabled.
    """

    tracing_enabled: bool = False
    metrics_enabled: bool = False
    logging_enabled: bool = False
    sampler: SamplingDecisionEngine | None = None
    tracer: trace.Tracer | None = None
    metrics: GatewayMetrics | None = None


@dataclass
class TelemetryHandle:
    """Everything :meth:`TelemetryManager.shutdown` needs to close."""

    tracing: ProviderHandle = field(default_factory=lambda: ProviderHandle(Signal.TRACING))
    metrics: ProviderHandle = field(default_factory=lambda: ProviderHandle(Signal.METRICS))
    logging: ProviderHandle = field(default_factory=lambda: ProviderHandle(Signal.LOGGING))
    log_handlers: LogHandlers | None = None
    state: TelemetryState | None = None

    def providers(self) -> tuple[ProviderHandle, ProviderHandle, ProviderHandle]:
        return (self.tracing, self.metrics, self.logging)

    @property
    def is_empty(self) -> bool:
        """True when no provider is live."""
        return not any(handle.ready for handle in self.providers())


# Published once by init and swapped back to None by shutdown. Readers take
# a single reference and never see a partially built state.
_ACTIVE_STATE: TelemetryState | None = None


def active_state() -> TelemetryState | None:
    return _ACTIVE_STATE


def is_telemetry_active() -> bool:
    return _ACTIVE_STATE is not None


def is_tracing_enabled() -> bool:
    state = _ACTIVE_STATE
    return state is not None and state.tracing_enabled


def _publish(state: TelemetryState) -> None:
    global _ACTIVE_STATE
    if _ACTIVE_STATE is not None:
        logger.warning("Telemetry state already published; replacing it")
    _ACTIVE_STATE = state


def reset_active_state() -> None:
    """Forget the published state. Used by shutdown and test teardown."""
    global _ACTIVE_STATE
    _ACTIVE_STATE = None


def build_resource(config: TelemetryConfig) -> Resource:
    """Resource shared by all signals; service name and version win over extra attributes."""
    attributes: dict[str, Any] = dict(config.resource_attributes)
    attributes[SERVICE_NAME] = config.service_name
    attributes[SERVICE_VERSION] = config.service_version
    return Resource.create(attributes)


class TelemetryManager:
    """Builds, publishes and closes the telemetry providers.

    Args:
        tracer_factory: Builds the tracer provider from ``(TracingConfig, Resource)``.
        meter_factory: Builds the meter provider from ``(MetricsConfig, Resource)``.
        logger_factory: Builds the logger provider from ``(LoggingConfig, Resource)``.
        rng: Random source for the sampling engine.
        log_stream: Stream for the console log handler; stdout when None.

    A factory returning None means the signal is off. A factory that raises
    disables only its own signal.
    """

    def __init__(
        self,
        *,
        tracer_factory: ProviderFactory | None = None,
        meter_factory: ProviderFactory | None = None,
        logger_factory: ProviderFactory | None = None,
        rng: random.Random | None = None,
        log_stream: TextIO | None = None,
    ) -> None:
        self._tracer_factory = tracer_factory or create_tracer_provider
        self._meter_factory = meter_factory or create_meter_provider
        self._logger_factory = logger_factory or create_logger_provider
        self._rng = rng
        self._log_stream = log_stream

    def init(self, config: TelemetryConfig, *, install_globals: bool = True) -> TelemetryHandle:
        """Initialize every enabled signal and publish the request-path state.

        Never raises for a provider failure. When no provider comes up the
        returned handle is empty and nothing is published.
        """
        handle = TelemetryHandle()
        if not config.any_signal_enabled:
            for provider_handle in handle.providers():
                provider_handle.transition(SignalState.SKIPPED)
            return handle

        resource = build_resource(config)
        self._construct(handle.tracing, config.tracing, self._tracer_factory, resource)
        self._construct(handle.metrics, config.metrics, self._meter_factory, resource)
        self._construct(handle.logging, config.logging, self._logger_factory, resource)

        if handle.is_empty:
            return handle

        tracer = None
        sampler = None
        if handle.tracing.ready:
            tracer = handle.tracing.provider.get_tracer(INSTRUMENTATION_NAME, config.service_version)
            sampler = SamplingDecisionEngine(config.tracing.sampling_ratio, rng=self._rng)

        recorder = None
        if handle.metrics.ready:
            recorder = GatewayMetrics.from_provider(handle.metrics.provider)

        log_provider = handle.logging.provider if handle.logging.ready else None
        handle.log_handlers = build_log_handlers(config.logging, log_provider, self._log_stream)

        if install_globals:
            if handle.tracing.ready:
                trace.set_tracer_provider(handle.tracing.provider)
            if handle.metrics.ready:
                otel_metrics.set_meter_provider(handle.metrics.provider)
            if log_provider is not None:
                from opentelemetry._logs import set_logger_provider

                set_logger_provider(log_provider)
            handle.log_handlers.install()

        state = TelemetryState(
            tracing_enabled=handle.tracing.ready,
            metrics_enabled=handle.metrics.ready,
            logging_enabled=handle.logging.ready,
            sampler=sampler,
            tracer=tracer,
            metrics=recorder,
        )
        handle.state = state
        _publish(state)
        logger.info(
            "Telemetry initialized for %s (tracing=%s, metrics=%s, logging=%s)",
            config.service_name,
            state.tracing_enabled,
            state.metrics_enabled,
            state.logging_enabled,
        )
        return handle

    def _construct(
        self,
        handle: ProviderHandle,
        config: SignalConfig,
        factory: ProviderFactory,
        resource: Resource,
    ) -> None:
        if not config.enabled:
            handle.transition(SignalState.SKIPPED)
            return
        try:
            provider = factory(config, resource)
        except Exception as exc:
            handle.error = ProviderInitError(
                message=f"Failed to initialize {handle.signal} provider: {exc}",
                signal=str(handle.signal),
                cause=exc,
            )
            handle.transition(SignalState.SKIPPED)
            emit_diagnostic(f"{handle.error.message}; {handle.signal} disabled")
            return
        if provider is None:
            handle.transition(SignalState.SKIPPED)
            return
        handle.provider = provider
        handle.transition(SignalState.READY)

    def shutdown(self, handle: TelemetryHandle, deadline: float = DEFAULT_SHUTDOWN_DEADLINE) -> None:
        """Flush and close every live provider.

        Each provider gets at most ``deadline`` seconds. A provider that does
        not finish is abandoned on a daemon thread so it cannot hold the
        process open. Calling this again on the same handle does nothing.

        Raises:
            ShutdownError: The first timeout or failure, once every provider
                has been attempted. Later errors are logged.
        """
        if handle.log_handlers is not None:
            handle.log_handlers.uninstall()
            handle.log_handlers = None

        if handle.state is not None and _ACTIVE_STATE is handle.state:
            reset_active_state()

        first_error: ShutdownError | None = None
        for provider_handle in handle.providers():
            if not provider_handle.ready:
                continue
            provider_handle.transition(SignalState.SHUTTING_DOWN)
            error = _close_with_deadline(provider_handle, deadline)
            provider_handle.transition(SignalState.CLOSED)
            if error is None:
                continue
            if first_error is None:
                first_error = error
            else:
                logger.warning("Additional telemetry shutdown error: %s", error.message)

        if first_error is not None:
            raise first_error


def _close_with_deadline(handle: ProviderHandle, deadline: float) -> ShutdownError | None:
    outcome: dict[str, Exception] = {}

    def _run() -> None:
        try:
            handle.provider.shutdown()
        except Exception as exc:
            outcome["error"] = exc

    worker = threading.Thread(target=_run, name=f"telemetry-shutdown-{handle.signal}", daemon=True)
    worker.start()
    worker.join(max(0.0, deadline))

    if worker.is_alive():
        return ShutdownTimeoutError(
            message=f"{handle.signal} provider did not shut down within {deadline}s",
            signal=str(handle.signal),
        )
    exc = outcome.get("error")
    if exc is not None:
        return ProviderShutdownError(
            message=f"Failed to shut down {handle.signal} provider: {exc}",
            signal=str(handle.signal),
            cause=exc,
        )
    return None
