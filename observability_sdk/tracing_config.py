# trace
import math
import re
import socket
from typing import Any, Iterable, Mapping

import structlog
from opentelemetry import trace, baggage
from opentelemetry.context import Context
from opentelemetry.propagate import set_global_textmap
from opentelemetry.propagators.composite import CompositePropagator
from opentelemetry.sdk.resources import Resource, SERVICE_NAME, SERVICE_VERSION, SERVICE_NAMESPACE
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter, SpanExporter
from opentelemetry.sdk.trace.sampling import TraceIdRatioBased
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.exporter.cloud_trace import CloudTraceSpanExporter
from opentelemetry.propagators.cloud_trace_propagator import CloudTraceFormatPropagator

# trace-propagations
from opentelemetry.trace.propagation.tracecontext import TraceContextTextMapPropagator
from opentelemetry.baggage.propagation import W3CBaggagePropagator

# instrumentation
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.requests import RequestsInstrumentor

from observability_sdk.settings import ObservabilitySettings

logger = structlog.stdlib.get_logger(__name__)

_W3C_PROPAGATOR = CompositePropagator([TraceContextTextMapPropagator(), W3CBaggagePropagator()])


def create_resource(settings: ObservabilitySettings) -> Resource:
    attributes = {
        SERVICE_NAME: settings.service_name,
        SERVICE_VERSION: settings.service_version,
        "deployment.environment": settings.environment,
        "service.instance.id": socket.gethostname(),
        "host.name": socket.gethostname(),
    }
    if settings.service_namespace:
        attributes[SERVICE_NAMESPACE] = settings.service_namespace

    # user supplied attributes win over the defaults above
    attributes.update(settings.resource_attributes)
    return Resource.create(attributes)


def _span_exporter(settings: ObservabilitySettings) -> SpanExporter:
    if settings.exporter == "cloud":
        return CloudTraceSpanExporter()
    return OTLPSpanExporter(
        endpoint=settings.tracing_endpoint(),
        timeout=settings.tracing.batch.exporter_timeout_ms / 1000,
    )


def _sampling_rate(ratio: float) -> float:
    # only reachable with an out of range ratio when validation is not strict
    if math.isnan(ratio):
        return 1.0
    return min(max(ratio, 0.0), 1.0)


def configure_tracer(
    settings: ObservabilitySettings,
    resource: Resource,
    span_exporter: SpanExporter | None = None,
) -> TracerProvider:
    """Build the tracer provider described by ``settings.tracing``.

    ``span_exporter`` replaces the network exporter (OTLP or Cloud Trace);
    batching options still apply to it.
    """
    batch = settings.tracing.batch

    provider = TracerProvider(
        resource=resource,
        sampler=TraceIdRatioBased(_sampling_rate(settings.tracing.sampling_ratio)),
    )

    exporter = span_exporter or _span_exporter(settings)
    processor = BatchSpanProcessor(
        exporter,
        max_queue_size=batch.max_queue_size,
        schedule_delay_millis=batch.scheduled_delay_ms,
        max_export_batch_size=min(batch.max_export_batch_size, batch.max_queue_size),
        export_timeout_millis=batch.exporter_timeout_ms,
    )
    provider.add_span_processor(processor)

    if settings.enable_console_exporter:
        provider.add_span_processor(BatchSpanProcessor(ConsoleSpanExporter()))

    logger.info(
        "tracer_configured",
        exporter=type(exporter).__name__,
        endpoint=settings.tracing_endpoint() if span_exporter is None else None,
        sampling_ratio=settings.tracing.sampling_ratio,
    )
    return provider


def configure_propagation(settings: ObservabilitySettings) -> None:
    # Using the X-Cloud-Trace-Context header
    if settings.exporter == "cloud":
        set_global_textmap(CloudTraceFormatPropagator())
    else:
        set_global_textmap(_W3C_PROPAGATOR)


def start_span_with_tags(
    tracer: trace.Tracer,
    name: str,
    tags: Mapping[str, Any],
    kind: trace.SpanKind = trace.SpanKind.INTERNAL,
) -> trace.Span:
    span = tracer.start_span(name, kind=kind)
    for key, value in tags.items():
        # attribute values cannot be None
        if value is not None:
            span.set_attribute(key, value)
    return span


def propagate_telemetry_context(info: Mapping[str, str], ctx: Context | None = None) -> dict[str, str]:
    """Inject the current trace context plus ``info`` as baggage into new headers."""
    headers = {}
    ctx = baggage.clear() if ctx is None else ctx
    for key, value in info.items():
        ctx = baggage.set_baggage(key, value, ctx)

    _W3C_PROPAGATOR.inject(headers, ctx)
    return headers


def extract_telemetry_context(headers: Mapping[str, str]) -> Context:
    carrier = {key.lower(): value for key, value in headers.items()}
    return _W3C_PROPAGATOR.extract(carrier)


def _comma_separated(patterns: Iterable[str]) -> str:
    return ",".join(sorted(patterns))


def _host_patterns(hosts: Iterable[str]) -> list[str]:
    # match the host part of an absolute URL containing the ignored host
    return [rf"^[a-zA-Z][a-zA-Z0-9+.-]*://[^/]*{re.escape(host.lower())}" for host in hosts]


def instrument_app(app: Any, settings: ObservabilitySettings, tracer_provider: TracerProvider) -> bool:
    """Framework and HTTP client auto-instrumentation honouring the ignore lists.

    ``requests`` instrumentation is process-wide; returns True when this call
    installed it, so the caller knows to remove it again.
    """
    FastAPIInstrumentor.instrument_app(
        app,
        tracer_provider=tracer_provider,
        excluded_urls=_comma_separated(re.escape(path.lower()) for path in settings.tracing.ignore_paths),
    )

    requests_instrumentor = RequestsInstrumentor()
    installed = not requests_instrumentor.is_instrumented_by_opentelemetry
    if installed:
        requests_instrumentor.instrument(
            tracer_provider=tracer_provider,
            excluded_urls=_comma_separated(_host_patterns(settings.tracing.ignore_hosts)),
        )

    logger.info(
        "auto_instrumentation_enabled",
        ignore_paths=sorted(settings.tracing.ignore_paths),
        ignore_hosts=sorted(settings.tracing.ignore_hosts),
    )
    return installed


def uninstrument_requests() -> None:
    RequestsInstrumentor().uninstrument()
