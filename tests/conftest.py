"""
Pytest configuration and fixtures for observability tests.
"""

import pytest
from fastapi import FastAPI, HTTPException
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import InMemoryMetricReader
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import SimpleSpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter

from observability_sdk.metrics_config import RequestMetrics
from observability_sdk.middleware import RequestTaggingMiddleware
from observability_sdk.settings import load_settings


class InsufficientStock(Exception):
    pass


@pytest.fixture
def settings():
    """Valid settings with network-free defaults for tests."""
    return load_settings(
        service_name="orders-api",
        environment="test",
        tracing={"auto_instrument": False},
    )


@pytest.fixture
def span_exporter():
    return InMemorySpanExporter()


@pytest.fixture
def tracer_provider(span_exporter):
    provider = TracerProvider()
    provider.add_span_processor(SimpleSpanProcessor(span_exporter))
    yield provider
    provider.shutdown()


@pytest.fixture
def tracer(tracer_provider):
    return tracer_provider.get_tracer("tests")


@pytest.fixture
def metric_reader():
    return InMemoryMetricReader()


@pytest.fixture
def request_metrics(metric_reader):
    provider = MeterProvider(metric_readers=[metric_reader])
    yield RequestMetrics(provider.get_meter("tests"))
    provider.shutdown()


def build_orders_app(tracer, **middleware_options) -> FastAPI:
    """Small app with a success route, a 404 route and a failing route."""
    app = FastAPI()

    @app.get("/orders/{order_id}")
    async def get_order(order_id: int) -> dict:
        if order_id != 42:
            raise HTTPException(status_code=404, detail="Order not found")
        return {"id": order_id}

    @app.post("/orders")
    async def create_order() -> dict:
        raise InsufficientStock("InsufficientStock")

    app.add_middleware(RequestTaggingMiddleware, tracer=tracer, **middleware_options)
    return app


def metric_points(reader: InMemoryMetricReader) -> dict:
    """Map metric name to its data points from the latest collection."""
    points = {}
    data = reader.get_metrics_data()
    if data is None:
        return points
    for resource_metrics in data.resource_metrics:
        for scope_metrics in resource_metrics.scope_metrics:
            for metric in scope_metrics.metrics:
                points[metric.name] = list(metric.data.data_points)
    return points
