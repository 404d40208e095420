import math

from pydantic import AnyUrl, TypeAdapter, ValidationError

from observability_sdk.settings import ConfigurationError, ObservabilitySettings

_URL = TypeAdapter(AnyUrl)


class SettingsValidationError(ConfigurationError):
    def __init__(self, failures: list[str]):
        self.failures = list(failures)
        super().__init__("; ".join(self.failures))


def is_absolute_uri(value: str) -> bool:
    try:
        _URL.validate_python(value)
    except ValidationError:
        return False
    return True


def validate_settings(settings: ObservabilitySettings) -> list[str]:
    """Return every problem found in ``settings``; an empty list means valid.

    Checks are independent: all of them run, so one call reports everything.
    """
    failures = []

    if not settings.service_name.strip():
        failures.append("service_name is required")

    if not settings.collector_endpoint.strip():
        failures.append("collector_endpoint is required")
    elif not is_absolute_uri(settings.collector_endpoint):
        failures.append("collector_endpoint must be a valid URI")

    ratio = settings.tracing.sampling_ratio
    if math.isnan(ratio) or not 0 <= ratio <= 1:
        failures.append("sampling_ratio must be between 0 and 1")

    # per-signal overrides only matter when the signal is exported
    overrides = [
        ("tracing.collector_endpoint", settings.tracing.collector_endpoint, settings.tracing.enabled),
        ("metrics.collector_endpoint", settings.metrics.collector_endpoint, settings.metrics.enabled),
        ("logging.otlp_endpoint", settings.logging.otlp_endpoint, settings.logging.otlp_enabled),
    ]
    for name, endpoint, in_use in overrides:
        if in_use and endpoint is not None and not is_absolute_uri(endpoint):
            failures.append(f"{name} must be a valid URI")

    batch = settings.tracing.batch
    if settings.tracing.enabled and batch.max_export_batch_size > batch.max_queue_size:
        failures.append("tracing.batch.max_export_batch_size must not exceed tracing.batch.max_queue_size")

    return failures


def ensure_valid(settings: ObservabilitySettings) -> ObservabilitySettings:
    if failures := validate_settings(settings):
        raise SettingsValidationError(failures)
    return settings
