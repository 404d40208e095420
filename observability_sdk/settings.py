import enum
import json
import logging
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

SECTION_NAME = "observability"

UINT32_MAX = 2**32 - 1


class ConfigurationError(Exception):
    """Settings could not be loaded."""


class LogLevel(str, enum.Enum):
    TRACE = "Trace"
    DEBUG = "Debug"
    INFORMATION = "Information"
    WARNING = "Warning"
    ERROR = "Error"
    CRITICAL = "Critical"

    @property
    def stdlib_level(self) -> int:
        return _STDLIB_LEVELS[self]


# stdlib has no TRACE level, so it sits below DEBUG
_STDLIB_LEVELS = {
    LogLevel.TRACE: logging.DEBUG - 5,
    LogLevel.DEBUG: logging.DEBUG,
    LogLevel.INFORMATION: logging.INFO,
    LogLevel.WARNING: logging.WARNING,
    LogLevel.ERROR: logging.ERROR,
    LogLevel.CRITICAL: logging.CRITICAL,
}


class _Section(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")


class BatchExportSettings(_Section):
    max_queue_size: int = Field(2048, gt=0, le=UINT32_MAX)
    scheduled_delay_ms: int = Field(5000, gt=0, le=UINT32_MAX)
    exporter_timeout_ms: int = Field(30000, ge=0, le=UINT32_MAX)
    max_export_batch_size: int = Field(512, gt=0, le=UINT32_MAX)


class TracingSettings(_Section):
    enabled: bool = True
    sampling_ratio: float = 1.0
    record_exceptions: bool = True
    ignore_paths: frozenset[str] = frozenset({"/health", "/metrics", "/ready", "/live"})
    ignore_hosts: frozenset[str] = frozenset({"localhost"})
    collector_endpoint: str | None = None
    auto_instrument: bool = True
    batch: BatchExportSettings = BatchExportSettings()


class MetricsSettings(_Section):
    enabled: bool = True
    custom_meter_names: tuple[str, ...] = ()
    collector_endpoint: str | None = None
    export_interval_ms: int = Field(15000, gt=0)
    prometheus_enabled: bool = False
    prometheus_endpoint: str = "/metrics"


class LoggingSettings(_Section):
    enabled: bool = True
    include_formatted_message: bool = True
    include_scopes: bool = True
    minimum_level: LogLevel = LogLevel.INFORMATION
    json_output: bool = True
    otlp_enabled: bool = False
    otlp_endpoint: str | None = None
    hide_uvicorn_loggers: bool = False


class HealthCheckSettings(_Section):
    enabled: bool = True
    endpoint_path: str = "/health"
    timeout_seconds: float = Field(5.0, gt=0)


class ObservabilitySettings(BaseSettings):
    """Everything the telemetry wiring reads at startup.

    Values come from keyword arguments first, then ``OBSERVABILITY_*``
    environment variables (``__`` separates nested sections), then defaults.
    """

    model_config = SettingsConfigDict(
        case_sensitive=False,
        env_prefix="OBSERVABILITY_",
        env_nested_delimiter="__",
        extra="ignore",
        frozen=True,
    )

    service_name: str = ""
    service_version: str = "1.0.0"
    service_namespace: str | None = None
    environment: str = "production"
    collector_endpoint: str = "http://localhost:4317"
    enable_console_exporter: bool = False
    exporter: Literal["otlp", "cloud"] = "otlp"
    resource_attributes: dict[str, str | bool | int | float] = Field(default_factory=dict)

    tracing: TracingSettings = TracingSettings()
    metrics: MetricsSettings = MetricsSettings()
    logging: LoggingSettings = LoggingSettings()
    health_checks: HealthCheckSettings = HealthCheckSettings()

    def tracing_endpoint(self) -> str:
        return self.tracing.collector_endpoint or self.collector_endpoint

    def metrics_endpoint(self) -> str:
        return self.metrics.collector_endpoint or self.collector_endpoint

    def logging_endpoint(self) -> str:
        return self.logging.otlp_endpoint or self.collector_endpoint


def _deep_merge(base: dict, override: dict) -> dict:
    merged = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def read_config_section(config_file: str | Path, section: str = SECTION_NAME) -> dict[str, Any]:
    path = Path(config_file)
    try:
        document = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        raise ConfigurationError(f"Cannot read configuration file {path}: {e}") from e

    if not isinstance(document, dict):
        raise ConfigurationError(f"Configuration file {path} must contain a JSON object")

    # section names are matched the way hierarchical config keys are: case-insensitively
    for key, value in document.items():
        if key.lower() == section.lower():
            if not isinstance(value, dict):
                raise ConfigurationError(f"Section '{key}' in {path} must be an object")
            return value

    raise ConfigurationError(f"Section '{section}' not found in {path}")


def load_settings(
    config_file: str | Path | None = None,
    *,
    section: str = SECTION_NAME,
    **overrides: Any,
) -> ObservabilitySettings:
    values = read_config_section(config_file, section) if config_file else {}
    values = _deep_merge(values, overrides)
    try:
        return ObservabilitySettings(**values)
    except ValidationError as e:
        raise ConfigurationError(str(e)) from e
