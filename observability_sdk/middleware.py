import time
from typing import Any, Callable, Mapping, Sequence

from fastapi import Request, Response
from opentelemetry import trace
from opentelemetry.trace import SpanKind, Status, StatusCode
from opentelemetry.util.types import AttributeValue
from starlette.middleware.base import BaseHTTPMiddleware

from observability_sdk.metrics_config import RequestMetrics

# given request metadata, produce additional span attributes
Enricher = Callable[[Request], Mapping[str, AttributeValue]]


def _user_id(request: Request) -> str | None:
    # only populated when an AuthenticationMiddleware runs before this one
    user = request.scope.get("user")
    if user is None or not getattr(user, "is_authenticated", False):
        return None
    return user.display_name or None


def _failure_message(exc: BaseException) -> str:
    return str(exc) or type(exc).__name__


class RequestTaggingMiddleware(BaseHTTPMiddleware):
    """Wrap each request in one server span named ``"<METHOD> <path>"``.

    The span always ends, and always carries ``http.duration_ms``, whatever way
    the downstream handler exits. Exceptions are recorded and re-raised, never
    handled here.
    """

    def __init__(
        self,
        app,
        tracer: trace.Tracer,
        *,
        record_exceptions: bool = True,
        metrics: RequestMetrics | None = None,
        enrichers: Sequence[Enricher] = (),
    ):
        super().__init__(app)
        self.tracer = tracer
        self.record_exceptions = record_exceptions
        self.metrics = metrics
        self.enrichers = tuple(enrichers)

    def _request_attributes(self, request: Request) -> dict[str, Any]:
        attributes = {
            "http.method": request.method,
            "http.url": str(request.url),
        }
        if (user_id := _user_id(request)) is not None:
            attributes["user.id"] = user_id

        for enrich in self.enrichers:
            attributes.update(enrich(request))
        return attributes

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        method = request.method
        path = request.url.path

        with self.tracer.start_as_current_span(
            f"{method} {path}",
            kind=SpanKind.SERVER,
            record_exception=False,
            set_status_on_exception=False,
        ) as span:
            started = time.perf_counter()
            span.set_attributes(self._request_attributes(request))

            status_code = None
            try:
                response: Response = await call_next(request)

                status_code = response.status_code
                span.set_attribute("http.status_code", status_code)
                span.set_status(Status(StatusCode.ERROR if status_code >= 400 else StatusCode.OK))
                return response
            except Exception as e:
                span.set_status(Status(StatusCode.ERROR, _failure_message(e)))
                if self.record_exceptions:
                    span.record_exception(e)
                if self.metrics is not None:
                    self.metrics.record_error(type(e).__name__, f"{method} {path}")
                raise
            finally:
                elapsed = time.perf_counter() - started
                span.set_attribute("http.duration_ms", elapsed * 1000)
                if self.metrics is not None:
                    self.metrics.record_duration(elapsed, method, path)
                    if status_code is not None:
                        self.metrics.record_request(method, path, status_code)
