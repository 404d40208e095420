"""
Process-wide telemetry wiring.

``configure_observability`` runs once at startup and returns an
``ObservabilityHandle``; ``setup_observability`` attaches the handle to a
FastAPI application. Consumers receive the handle explicitly instead of
reading OpenTelemetry globals, and ``ObservabilityHandle.shutdown`` flushes
everything before the process exits.
"""
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Sequence

import structlog
from asgi_correlation_id import CorrelationIdMiddleware
from fastapi import FastAPI, Response
from opentelemetry import metrics, trace
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import MetricReader
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import SpanExporter
from prometheus_client import CONTENT_TYPE_LATEST, REGISTRY, generate_latest

from observability_sdk.health import HealthCheckRegistry, HealthCheckResult, READY_TAG, SELF_TAG, create_health_router
from observability_sdk.logging_config import LoggingHandle, RequestLoggingMiddleware, configure_logger
from observability_sdk.metrics_config import RequestMetrics, configure_meter, create_custom_meters
from observability_sdk.middleware import Enricher, RequestTaggingMiddleware
from observability_sdk.settings import ObservabilitySettings, load_settings
from observability_sdk.tracing_config import (
    configure_propagation,
    configure_tracer,
    create_resource,
    instrument_app,
    uninstrument_requests,
)
from observability_sdk.validation import SettingsValidationError, validate_settings

logger = structlog.stdlib.get_logger(__name__)

FALLBACK_SERVICE_NAME = "unknown-service"


@dataclass
class ObservabilityHandle:
    settings: ObservabilitySettings
    resource: Resource
    health: HealthCheckRegistry
    tracer_provider: TracerProvider | None = None
    tracer: trace.Tracer = field(default_factory=trace.NoOpTracer)
    meter_provider: MeterProvider | None = None
    request_metrics: RequestMetrics | None = None
    meters: dict[str, metrics.Meter] = field(default_factory=dict)
    logging: LoggingHandle | None = None
    _closed: bool = field(default=False, repr=False)
    _owns_requests_instrumentation: bool = field(default=False, repr=False)

    @property
    def closed(self) -> bool:
        return self._closed

    def shutdown(self) -> None:
        if self._closed:
            return
        self._closed = True

        logger.info("observability_shutdown", service=self.settings.service_name)

        # flush spans and metrics before the log handlers go away
        if self.tracer_provider is not None:
            self.tracer_provider.force_flush()
            self.tracer_provider.shutdown()
        if self.meter_provider is not None:
            self.meter_provider.shutdown()
        if self._owns_requests_instrumentation:
            uninstrument_requests()
            self._owns_requests_instrumentation = False
        if self.logging is not None:
            self.logging.shutdown()

    def __enter__(self) -> "ObservabilityHandle":
        return self

    def __exit__(self, *exc_info) -> None:
        self.shutdown()


def _observability_check(settings: ObservabilitySettings):
    def check() -> HealthCheckResult:
        return HealthCheckResult.healthy(
            "Observability is working",
            tracing=settings.tracing.enabled,
            metrics=settings.metrics.enabled,
            logging=settings.logging.enabled,
        )

    return check


def create_health_registry(settings: ObservabilitySettings) -> HealthCheckRegistry:
    registry = HealthCheckRegistry(timeout_seconds=settings.health_checks.timeout_seconds)
    registry.add_check("self", lambda: HealthCheckResult.healthy("Service is running"), tags=[SELF_TAG])
    registry.add_check("observability", _observability_check(settings), tags=[READY_TAG])
    return registry


def configure_observability(
    settings: ObservabilitySettings | None = None,
    *,
    strict: bool = True,
    register_globals: bool = False,
    span_exporter: SpanExporter | None = None,
    metric_readers: Sequence[MetricReader] | None = None,
) -> ObservabilityHandle:
    """Validate ``settings`` and build every enabled provider.

    With ``strict`` a ``SettingsValidationError`` aborts startup; otherwise the
    failures are logged and startup continues with safe fallbacks.
    ``span_exporter`` and ``metric_readers`` replace the network exporters.
    """
    settings = settings if settings is not None else load_settings()

    failures = validate_settings(settings)
    if failures and strict:
        raise SettingsValidationError(failures)
    if not settings.service_name.strip():
        settings = settings.model_copy(update={"service_name": FALLBACK_SERVICE_NAME})

    resource = create_resource(settings)

    log_handle = configure_logger(settings, resource) if settings.logging.enabled else None
    if failures:
        logger.warning("invalid_observability_settings", failures=failures)

    handle = ObservabilityHandle(
        settings=settings,
        resource=resource,
        health=create_health_registry(settings),
        logging=log_handle,
    )

    try:
        if settings.tracing.enabled:
            handle.tracer_provider = configure_tracer(settings, resource, span_exporter)
            handle.tracer = handle.tracer_provider.get_tracer(settings.service_name, settings.service_version)

        if settings.metrics.enabled:
            handle.meter_provider = configure_meter(settings, resource, metric_readers)
            handle.request_metrics = RequestMetrics(
                handle.meter_provider.get_meter(settings.service_name, settings.service_version)
            )
            handle.meters = create_custom_meters(settings, handle.meter_provider)
    except Exception:
        logger.exception("observability_configuration_failed", service=settings.service_name)
        handle.shutdown()
        raise

    if register_globals:
        configure_propagation(settings)
        if handle.tracer_provider is not None:
            trace.set_tracer_provider(handle.tracer_provider)
        if handle.meter_provider is not None:
            metrics.set_meter_provider(handle.meter_provider)

    logger.info(
        "observability_configured",
        service=settings.service_name,
        version=settings.service_version,
        environment=settings.environment,
        tracing=settings.tracing.enabled,
        metrics=settings.metrics.enabled,
        health_checks=settings.health_checks.enabled,
    )
    return handle


def _prometheus_endpoint() -> Response:
    return Response(generate_latest(REGISTRY), media_type=CONTENT_TYPE_LATEST)


def _shutdown_with_app(app: FastAPI, handle: ObservabilityHandle) -> None:
    """Shut the handle down when the application's lifespan ends."""
    app_lifespan = app.router.lifespan_context

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        try:
            async with app_lifespan(app) as state:
                yield state
        finally:
            handle.shutdown()

    app.router.lifespan_context = lifespan


def setup_observability(
    app: FastAPI,
    handle: ObservabilityHandle,
    enrichers: Sequence[Enricher] = (),
) -> FastAPI:
    settings = handle.settings

    # the last middleware added is the outermost, so the tagger sits closest to routing
    if settings.tracing.enabled:
        app.add_middleware(
            RequestTaggingMiddleware,
            tracer=handle.tracer,
            record_exceptions=settings.tracing.record_exceptions,
            metrics=handle.request_metrics,
            enrichers=enrichers,
        )
    if handle.logging is not None:
        app.add_middleware(RequestLoggingMiddleware, logger=handle.logging.logger)
    app.add_middleware(CorrelationIdMiddleware)

    if settings.health_checks.enabled:
        app.include_router(create_health_router(handle.health, settings.health_checks))

    if settings.metrics.enabled and settings.metrics.prometheus_enabled:
        app.add_api_route(
            settings.metrics.prometheus_endpoint,
            _prometheus_endpoint,
            methods=["GET"],
            include_in_schema=False,
        )

    if settings.tracing.enabled and settings.tracing.auto_instrument:
        handle._owns_requests_instrumentation = instrument_app(app, settings, handle.tracer_provider)

    _shutdown_with_app(app, handle)
    return app
