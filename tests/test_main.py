"""End-to-end tests against the example orders service."""

import json

import pytest
from fastapi.testclient import TestClient
from opentelemetry.sdk.metrics.export import InMemoryMetricReader
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter
from opentelemetry.trace import StatusCode

from observability_sdk.main import InsufficientStock, create_app
from observability_sdk.validation import SettingsValidationError


@pytest.fixture
def exporter():
    return InMemorySpanExporter()


@pytest.fixture
def app(settings, exporter):
    return create_app(settings, span_exporter=exporter, metric_readers=[InMemoryMetricReader()])


def finished_spans(app, exporter):
    app.state.observability.tracer_provider.force_flush()
    return exporter.get_finished_spans()


class TestOrdersService:
    def test_read_order(self, app, exporter):
        with TestClient(app) as client:
            response = client.get("/orders/42")
            (span,) = finished_spans(app, exporter)

        assert response.json()["item"] == "keyboard"
        assert span.name == "GET /orders/42"
        assert span.attributes["http.method"] == "GET"
        assert span.attributes["http.status_code"] == 200
        assert span.attributes["http.duration_ms"] >= 0
        assert span.status.status_code == StatusCode.OK

    def test_failed_order_propagates(self, app, exporter):
        with TestClient(app) as client:
            with pytest.raises(InsufficientStock):
                client.post("/orders", json={"item": "keyboard", "quantity": 10})
            (span,) = finished_spans(app, exporter)

        assert span.name == "POST /orders"
        assert span.status.status_code == StatusCode.ERROR
        assert span.status.description == "InsufficientStock"
        assert "http.status_code" not in span.attributes

    def test_create_order(self, app):
        with TestClient(app) as client:
            response = client.post("/orders", json={"item": "keyboard", "quantity": 2})

        assert response.status_code == 200
        assert response.json() == {"id": 43, "item": "keyboard", "quantity": 2}

    def test_handle_closed_on_shutdown(self, app):
        with TestClient(app):
            pass

        assert app.state.observability.closed

    def test_settings_read_from_config_file(self, monkeypatch, tmp_path, exporter):
        path = tmp_path / "appsettings.json"
        path.write_text(json.dumps({"observability": {"service_name": "", "tracing": {"auto_instrument": False}}}))
        monkeypatch.setenv("OBSERVABILITY_CONFIG_FILE", str(path))

        with pytest.raises(SettingsValidationError, match="service_name is required"):
            create_app(span_exporter=exporter)
