from __future__ import annotations

import logging
from collections.abc import Mapping

from opentelemetry.metrics import Meter
from opentelemetry.sdk.metrics import (
    Counter,
    Histogram,
    MeterProvider,
    ObservableCounter,
    ObservableGauge,
    ObservableUpDownCounter,
    UpDownCounter,
)
from opentelemetry.sdk.metrics.export import (
    AggregationTemporality,
    MetricExporter,
    MetricReader,
    PeriodicExportingMetricReader,
)
from opentelemetry.sdk.resources import Resource

from .config import MetricsConfig

logger = logging.getLogger(__name__)

INSTRUMENTATION_NAME = "documentdb_gateway"
DB_SYSTEM_NAME = "documentdb"
UNKNOWN = "unknown"

# Counters export deltas; the collector aggregates them into cumulative series.
DELTA_TEMPORALITY: dict[type, AggregationTemporality] = {
    Counter: AggregationTemporality.DELTA,
    UpDownCounter: AggregationTemporality.CUMULATIVE,
    Histogram: AggregationTemporality.DELTA,
    ObservableCounter: AggregationTemporality.DELTA,
    ObservableUpDownCounter: AggregationTemporality.CUMULATIVE,
    ObservableGauge: AggregationTemporality.CUMULATIVE,
}

PHASE_BEGIN_TRANSACTION = "postgres_begin_transaction"
PHASE_EXECUTION = "postgres_execution"
PHASE_COMMIT = "postgres_commit"


def create_meter_provider(
    config: MetricsConfig,
    resource: Resource,
    reader: MetricReader | None = None,
) -> MeterProvider | None:
    """Create a meter provider exporting periodically over OTLP/gRPC.

    Returns None when metrics are disabled. ``reader`` replaces the OTLP
    reader, which tests use to collect in memory.
    """
    if not config.enabled:
        return None

    if reader is None:
        reader = PeriodicExportingMetricReader(
            _build_exporter(config),
            export_interval_millis=config.export_interval_ms,
            export_timeout_millis=config.export_timeout_ms,
        )
    logger.debug("Meter provider created for %s", config.endpoint)
    return MeterProvider(metric_readers=[reader], resource=resource, shutdown_on_exit=False)


def _build_exporter(config: MetricsConfig) -> MetricExporter:
    from opentelemetry.exporter.otlp.proto.grpc.metric_exporter import OTLPMetricExporter

    return OTLPMetricExporter(
        endpoint=config.endpoint,
        timeout=config.export_timeout,
        preferred_temporality=DELTA_TEMPORALITY,
    )


class GatewayMetrics:
    """Per-request counters, following the database client semantic conventions.

    Only sums and counts are kept; averages and percentiles are left to the
    collector.
    """

    def __init__(self, meter: Meter) -> None:
        self._operation_duration_total = meter.create_counter(
            "db.client.operation.duration.total",
            unit="s",
            description="Total duration of database client operations (sum)",
        )
        self._operations = meter.create_counter(
            "db.client.operations",
            unit="{operation}",
            description="Count of database client operations",
        )
        self._request_size_total = meter.create_counter(
            "db.client.request.size.total",
            unit="By",
            description="Total size of database client request payloads",
        )
        self._response_size_total = meter.create_counter(
            "db.client.response.size.total",
            unit="By",
            description="Total size of database client response payloads",
        )

    @classmethod
    def from_provider(cls, provider: MeterProvider) -> "GatewayMetrics":
        return cls(provider.get_meter(INSTRUMENTATION_NAME))

    @staticmethod
    def attributes(
        operation: str | None,
        database: str | None,
        collection: str | None,
        error_kind: str | None = None,
    ) -> dict[str, str]:
        attrs = {
            "db.system.name": DB_SYSTEM_NAME,
            "db.operation.name": operation or UNKNOWN,
            "db.collection.name": collection or "",
            "db.namespace": database or UNKNOWN,
        }
        if error_kind:
            attrs["error.type"] = error_kind
        return attrs

    def record_request(
        self,
        *,
        operation: str | None,
        database: str | None,
        collection: str | None,
        duration_seconds: float,
        request_size: int = 0,
        response_size: int = 0,
        error_kind: str | None = None,
        phases: Mapping[str, float] | None = None,
    ) -> None:
        """Record one completed request.

        Args:
            operation: Command name, e.g. ``find``.
            database: Database the request targeted.
            collection: Collection the request targeted.
            duration_seconds: Time spent handling the request.
            request_size: Request message length in bytes.
            response_size: Response payload length in bytes.
            error_kind: Error code on failure; omitted from attributes on success.
            phases: Optional per-phase durations in seconds, keyed by phase name.
        """
        attrs = self.attributes(operation, database, collection, error_kind)

        self._operations.add(1, attrs)
        self._operation_duration_total.add(max(0.0, duration_seconds), attrs)
        self._request_size_total.add(max(0, request_size), attrs)
        self._response_size_total.add(max(0, response_size), attrs)

        for phase, seconds in (phases or {}).items():
            if seconds <= 0:
                continue
            phase_attrs = dict(attrs)
            phase_attrs["db.operation.phase"] = phase
            self._operation_duration_total.add(seconds, phase_attrs)
