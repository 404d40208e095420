"""Tests for tracer provider construction and context helpers."""

import re
from unittest.mock import patch

from opentelemetry import baggage, trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter

from observability_sdk.settings import load_settings
from observability_sdk.tracing_config import (
    _host_patterns,
    _sampling_rate,
    _span_exporter,
    configure_tracer,
    create_resource,
    extract_telemetry_context,
    instrument_app,
    propagate_telemetry_context,
    start_span_with_tags,
    uninstrument_requests,
)


class TestResource:
    def test_service_attributes(self, settings):
        resource = create_resource(settings)

        assert resource.attributes["service.name"] == "orders-api"
        assert resource.attributes["service.version"] == "1.0.0"
        assert resource.attributes["deployment.environment"] == "test"
        assert "service.namespace" not in resource.attributes

    def test_custom_attributes_override_defaults(self):
        settings = load_settings(
            service_name="orders-api",
            service_namespace="shop",
            resource_attributes={"deployment.environment": "canary", "team": "payments"},
        )

        resource = create_resource(settings)

        assert resource.attributes["service.namespace"] == "shop"
        assert resource.attributes["deployment.environment"] == "canary"
        assert resource.attributes["team"] == "payments"


class TestConfigureTracer:
    def test_spans_reach_the_exporter(self, settings):
        exporter = InMemorySpanExporter()
        provider = configure_tracer(settings, create_resource(settings), exporter)

        with provider.get_tracer("tests").start_as_current_span("work"):
            pass
        provider.force_flush()

        (span,) = exporter.get_finished_spans()
        assert span.name == "work"
        assert span.resource.attributes["service.name"] == "orders-api"
        provider.shutdown()

    def test_zero_ratio_samples_nothing(self):
        settings = load_settings(service_name="orders-api", tracing={"sampling_ratio": 0.0})
        exporter = InMemorySpanExporter()
        provider = configure_tracer(settings, create_resource(settings), exporter)

        with provider.get_tracer("tests").start_as_current_span("work"):
            pass
        provider.force_flush()

        assert exporter.get_finished_spans() == ()
        provider.shutdown()

    def test_batch_size_capped_at_queue_size(self):
        settings = load_settings(
            service_name="orders-api",
            tracing={"batch": {"max_queue_size": 10, "max_export_batch_size": 512}},
        )

        with patch("observability_sdk.tracing_config.BatchSpanProcessor") as processor:
            configure_tracer(settings, create_resource(settings), InMemorySpanExporter())

        assert processor.call_args.kwargs["max_export_batch_size"] == 10
        assert processor.call_args.kwargs["max_queue_size"] == 10

    def test_out_of_range_ratio_is_clamped(self):
        assert _sampling_rate(1.5) == 1.0
        assert _sampling_rate(-1) == 0.0
        assert _sampling_rate(float("nan")) == 1.0

    def test_otlp_exporter_by_default(self, settings):
        exporter = _span_exporter(settings)

        assert isinstance(exporter, OTLPSpanExporter)
        exporter.shutdown()

    def test_cloud_exporter(self):
        settings = load_settings(service_name="orders-api", exporter="cloud")

        with patch("observability_sdk.tracing_config.CloudTraceSpanExporter") as cloud_exporter:
            assert _span_exporter(settings) is cloud_exporter.return_value


class TestSpanHelpers:
    def test_start_span_with_tags_skips_none(self, tracer, span_exporter):
        span = start_span_with_tags(tracer, "lookup", {"order.id": 42, "user.id": None}, trace.SpanKind.CLIENT)
        span.end()

        (finished,) = span_exporter.get_finished_spans()
        assert finished.kind == trace.SpanKind.CLIENT
        assert dict(finished.attributes) == {"order.id": 42}

    def test_context_survives_header_propagation(self, tracer):
        with tracer.start_as_current_span("outgoing") as span:
            headers = propagate_telemetry_context({"tenant": "acme"})

        ctx = extract_telemetry_context({key.upper(): value for key, value in headers.items()})

        assert baggage.get_baggage("tenant", ctx) == "acme"
        extracted = trace.get_current_span(ctx).get_span_context()
        assert extracted.trace_id == span.get_span_context().trace_id


class TestInstrumentation:
    def test_host_patterns_match_by_host(self):
        (pattern,) = _host_patterns(["localhost"])

        assert re.search(pattern, "http://localhost:4317/v1/traces")
        assert not re.search(pattern, "https://api.example.com/localhost")

    def test_ignore_lists_forwarded(self, settings, tracer_provider):
        app = object()

        with patch("observability_sdk.tracing_config.FastAPIInstrumentor") as fastapi_instrumentor, \
             patch("observability_sdk.tracing_config.RequestsInstrumentor") as requests_instrumentor:
            requests_instrumentor.return_value.is_instrumented_by_opentelemetry = False

            installed = instrument_app(app, settings, tracer_provider)

        kwargs = fastapi_instrumentor.instrument_app.call_args.kwargs
        assert fastapi_instrumentor.instrument_app.call_args.args == (app,)
        assert kwargs["tracer_provider"] is tracer_provider
        assert set(kwargs["excluded_urls"].split(",")) == {"/health", "/metrics", "/ready", "/live"}
        requests_instrumentor.return_value.instrument.assert_called_once()
        assert installed

    def test_existing_requests_instrumentation_left_alone(self, settings, tracer_provider):
        with patch("observability_sdk.tracing_config.FastAPIInstrumentor"), \
             patch("observability_sdk.tracing_config.RequestsInstrumentor") as requests_instrumentor:
            requests_instrumentor.return_value.is_instrumented_by_opentelemetry = True

            installed = instrument_app(object(), settings, tracer_provider)

        requests_instrumentor.return_value.instrument.assert_not_called()
        assert not installed

    def test_uninstrument_requests(self):
        with patch("observability_sdk.tracing_config.RequestsInstrumentor") as requests_instrumentor:
            uninstrument_requests()

        requests_instrumentor.return_value.uninstrument.assert_called_once_with()
