# metrics
from typing import Sequence

import structlog
from opentelemetry import metrics
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import (
    ConsoleMetricExporter,
    MetricExporter,
    MetricReader,
    PeriodicExportingMetricReader,
)
from opentelemetry.sdk.resources import Resource
from opentelemetry.exporter.otlp.proto.grpc.metric_exporter import OTLPMetricExporter
from opentelemetry.exporter.cloud_monitoring import CloudMonitoringMetricsExporter
from opentelemetry.exporter.prometheus import PrometheusMetricReader

from observability_sdk.settings import ObservabilitySettings

logger = structlog.stdlib.get_logger(__name__)


class RequestMetrics:
    """Per-request counters and timings shared by every request."""

    def __init__(self, meter: metrics.Meter):
        self.requests = meter.create_counter(
            "http_requests_total",
            unit="1",
            description="Total number of HTTP requests",
        )
        self.duration = meter.create_histogram(
            "http_request_duration_seconds",
            unit="s",
            description="Duration of HTTP requests",
        )
        self.errors = meter.create_counter(
            "errors_total",
            unit="1",
            description="Total number of errors",
        )

    def record_request(self, method: str, endpoint: str, status_code: int) -> None:
        self.requests.add(1, {"method": method, "endpoint": endpoint, "status_code": status_code})

    def record_duration(self, seconds: float, method: str, endpoint: str) -> None:
        self.duration.record(seconds, {"method": method, "endpoint": endpoint})

    def record_error(self, error_type: str, operation: str) -> None:
        self.errors.add(1, {"error_type": error_type, "operation": operation})


def _metric_exporter(settings: ObservabilitySettings) -> MetricExporter:
    if settings.exporter == "cloud":
        return CloudMonitoringMetricsExporter()
    return OTLPMetricExporter(endpoint=settings.metrics_endpoint())


def configure_meter(
    settings: ObservabilitySettings,
    resource: Resource,
    metric_readers: Sequence[MetricReader] | None = None,
) -> MeterProvider:
    """Build the meter provider described by ``settings.metrics``.

    ``metric_readers`` replace the periodic network reader; the console and
    Prometheus readers are still added when enabled.
    """
    interval = settings.metrics.export_interval_ms

    if metric_readers is None:
        readers = [PeriodicExportingMetricReader(_metric_exporter(settings), export_interval_millis=interval)]
    else:
        readers = list(metric_readers)

    if settings.enable_console_exporter:
        readers.append(PeriodicExportingMetricReader(ConsoleMetricExporter(), export_interval_millis=interval))

    if settings.metrics.prometheus_enabled:
        readers.append(PrometheusMetricReader())

    provider = MeterProvider(resource=resource, metric_readers=readers)

    logger.info(
        "meter_configured",
        readers=[type(reader).__name__ for reader in readers],
        custom_meters=list(settings.metrics.custom_meter_names),
    )
    return provider


def create_custom_meters(settings: ObservabilitySettings, provider: MeterProvider) -> dict[str, metrics.Meter]:
    return {
        name: provider.get_meter(name, settings.service_version)
        for name in settings.metrics.custom_meter_names
    }
