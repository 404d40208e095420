"""
Health checks for load balancers and orchestrator probes.

Three endpoints are exposed under the configured path:

- ``{path}``: every registered check
- ``{path}/ready``: checks tagged ``ready``
- ``{path}/live``: checks tagged ``self``

Each answers with the same JSON report. A failing, raising or hanging check
makes the report ``Unhealthy`` (HTTP 503) but never makes the endpoint fail.
"""
import asyncio
import enum
import inspect
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Iterable

import structlog
from fastapi import APIRouter
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from observability_sdk.settings import HealthCheckSettings

logger = structlog.stdlib.get_logger(__name__)

READY_TAG = "ready"
SELF_TAG = "self"


class HealthStatus(str, enum.Enum):
    HEALTHY = "Healthy"
    DEGRADED = "Degraded"
    UNHEALTHY = "Unhealthy"

    @property
    def severity(self) -> int:
        return _SEVERITY[self]


_SEVERITY = {HealthStatus.HEALTHY: 0, HealthStatus.DEGRADED: 1, HealthStatus.UNHEALTHY: 2}


class HealthCheckResult(BaseModel):
    status: HealthStatus = HealthStatus.HEALTHY
    description: str | None = None
    data: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def healthy(cls, description: str | None = None, **data: Any) -> "HealthCheckResult":
        return cls(status=HealthStatus.HEALTHY, description=description, data=data)

    @classmethod
    def degraded(cls, description: str | None = None, **data: Any) -> "HealthCheckResult":
        return cls(status=HealthStatus.DEGRADED, description=description, data=data)

    @classmethod
    def unhealthy(cls, description: str | None = None, **data: Any) -> "HealthCheckResult":
        return cls(status=HealthStatus.UNHEALTHY, description=description, data=data)


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class HealthEntry(_CamelModel):
    name: str
    status: HealthStatus
    description: str | None = None
    duration_ms: float
    error_message: str | None = None
    data: dict[str, Any] = Field(default_factory=dict)


class HealthReport(_CamelModel):
    status: HealthStatus
    total_duration_ms: float
    checks: list[HealthEntry]

    @property
    def http_status(self) -> int:
        return 503 if self.status is HealthStatus.UNHEALTHY else 200


HealthCheck = Callable[[], HealthCheckResult | None | Awaitable[HealthCheckResult | None]]


@dataclass(frozen=True)
class _Registration:
    name: str
    check: HealthCheck
    tags: frozenset[str]


class HealthCheckRegistry:
    def __init__(self, timeout_seconds: float = 5.0):
        self.timeout_seconds = timeout_seconds
        self._checks: dict[str, _Registration] = {}

    def add_check(self, name: str, check: HealthCheck, tags: Iterable[str] = ()) -> "HealthCheckRegistry":
        if name in self._checks:
            raise ValueError(f"Health check '{name}' is already registered")
        self._checks[name] = _Registration(name, check, frozenset(tags))
        return self

    @property
    def names(self) -> list[str]:
        return list(self._checks)

    async def _evaluate(self, registration: _Registration) -> HealthEntry:
        started = time.perf_counter()
        error_message = None
        try:
            outcome = registration.check()
            if inspect.isawaitable(outcome):
                outcome = await asyncio.wait_for(outcome, timeout=self.timeout_seconds)
            result = outcome if outcome is not None else HealthCheckResult.healthy()
            if not isinstance(result, HealthCheckResult):
                raise TypeError(f"Health check returned {type(result).__name__}, expected HealthCheckResult")
        except asyncio.TimeoutError:
            error_message = f"Timed out after {self.timeout_seconds:g}s"
            result = HealthCheckResult.unhealthy()
        except Exception as e:
            error_message = str(e) or type(e).__name__
            result = HealthCheckResult.unhealthy()
            logger.warning("health_check_failed", check=registration.name, error=error_message)

        return HealthEntry(
            name=registration.name,
            status=result.status,
            description=result.description,
            duration_ms=(time.perf_counter() - started) * 1000,
            error_message=error_message,
            data=result.data,
        )

    async def run(self, predicate: Callable[[frozenset[str]], bool] = lambda tags: True) -> HealthReport:
        started = time.perf_counter()
        selected = [registration for registration in self._checks.values() if predicate(registration.tags)]
        entries = await asyncio.gather(*(self._evaluate(registration) for registration in selected))

        status = max((entry.status for entry in entries), key=lambda s: s.severity, default=HealthStatus.HEALTHY)
        return HealthReport(
            status=status,
            total_duration_ms=(time.perf_counter() - started) * 1000,
            checks=list(entries),
        )


def tagged(tag: str) -> Callable[[frozenset[str]], bool]:
    return lambda tags: tag in tags


def _respond(report: HealthReport) -> JSONResponse:
    return JSONResponse(report.model_dump(mode="json", by_alias=True), status_code=report.http_status)


def create_health_router(registry: HealthCheckRegistry, settings: HealthCheckSettings) -> APIRouter:
    path = settings.endpoint_path.rstrip("/")
    router = APIRouter(tags=["health"])

    @router.get(path or "/", include_in_schema=False)
    async def health() -> JSONResponse:
        return _respond(await registry.run())

    @router.get(f"{path}/ready", include_in_schema=False)
    async def ready() -> JSONResponse:
        return _respond(await registry.run(tagged(READY_TAG)))

    @router.get(f"{path}/live", include_in_schema=False)
    async def live() -> JSONResponse:
        return _respond(await registry.run(tagged(SELF_TAG)))

    return router
