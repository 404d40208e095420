import sys
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, TextIO

import structlog
from asgi_correlation_id import correlation_id
from fastapi import Request, Response
from opentelemetry import trace
from opentelemetry.sdk._logs import LoggerProvider, LoggingHandler
from opentelemetry.sdk._logs.export import BatchLogRecordProcessor
from opentelemetry.sdk.resources import Resource
from opentelemetry.exporter.otlp.proto.grpc._log_exporter import OTLPLogExporter
from starlette.middleware.base import BaseHTTPMiddleware

from observability_sdk.settings import ObservabilitySettings


def _add_correlation(
    logger: logging.Logger,
    method_name: str,
    event_dict: dict[str, Any]) -> dict[str, Any]:

    """Add request id to log message."""
    if request_id := correlation_id.get():
        event_dict["request_id"] = request_id
    return event_dict


def _add_trace_context(
    logger: logging.Logger,
    method_name: str,
    event_dict: dict[str, Any]) -> dict[str, Any]:

    """Add the active span's ids so log lines can be joined to traces."""
    ctx = trace.get_current_span().get_span_context()
    if ctx.is_valid:
        event_dict["trace_id"] = format(ctx.trace_id, "032x")
        event_dict["span_id"] = format(ctx.span_id, "016x")
    return event_dict


def _service_enricher(settings: ObservabilitySettings) -> Callable:
    service_fields = dict(
        service_name=settings.service_name,
        service_version=settings.service_version,
        environment=settings.environment,
    )

    def add_service_fields(
        logger: logging.Logger,
        method_name: str,
        event_dict: dict[str, Any]) -> dict[str, Any]:

        for key, value in service_fields.items():
            event_dict.setdefault(key, value)
        return event_dict

    return add_service_fields


@dataclass
class LoggingHandle:
    logger: Any
    handlers: list[logging.Handler] = field(default_factory=list)
    logger_provider: LoggerProvider | None = None

    def shutdown(self) -> None:
        root_logger = logging.getLogger()
        for handler in self.handlers:
            root_logger.removeHandler(handler)
            handler.close()
        self.handlers.clear()

        if self.logger_provider is not None:
            self.logger_provider.shutdown()
            self.logger_provider = None


def configure_logger(
    settings: ObservabilitySettings,
    resource: Resource | None = None,
    stream: TextIO | None = None) -> LoggingHandle:

    options = settings.logging
    level = options.minimum_level.stdlib_level

    if options.hide_uvicorn_loggers:
        logging.getLogger("uvicorn.access").disabled = True
        logging.getLogger("uvicorn.error").disabled = True
        logging.getLogger("uvicorn").disabled = True

    shared_processors = [structlog.stdlib.filter_by_level]
    if options.include_scopes:
        shared_processors.append(structlog.contextvars.merge_contextvars)

    shared_processors += [
            _add_correlation,
            _add_trace_context,
            _service_enricher(settings),
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
    ]

    # without it the raw event is kept and the arguments stay under "positional_args"
    if options.include_formatted_message:
        shared_processors.append(structlog.stdlib.PositionalArgumentsFormatter())

    shared_processors += [
            structlog.processors.EventRenamer("text"),
            structlog.processors.CallsiteParameterAdder(
                {
                    structlog.processors.CallsiteParameter.THREAD,
                    structlog.processors.CallsiteParameter.PROCESS,
                }
            ),
    ]

    json_logs_render = (
        structlog.processors.JSONRenderer() if options.json_output
        else structlog.dev.ConsoleRenderer(colors=False)
    )

    shared_processors.append(json_logs_render)

    structlog.configure(
        # loggers are reconfigured on every startup, so they are never cached
        cache_logger_on_first_use=False,
        processors=shared_processors,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
    )

    # rendered lines go to stdout so the container runtime can collect them
    handler = logging.StreamHandler(stream or sys.stdout)
    handler.setFormatter(logging.Formatter("%(message)s"))
    handle = LoggingHandle(logger=None, handlers=[handler])

    if options.otlp_enabled:
        logger_provider = LoggerProvider(resource=resource) if resource is not None else LoggerProvider()
        logger_provider.add_log_record_processor(
            BatchLogRecordProcessor(OTLPLogExporter(endpoint=settings.logging_endpoint()))
        )
        handle.logger_provider = logger_provider
        handle.handlers.append(LoggingHandler(level=level, logger_provider=logger_provider))

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    for log_handler in handle.handlers:
        root_logger.addHandler(log_handler)

    handle.logger = structlog.stdlib.get_logger(settings.service_name or __name__)
    return handle


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    def __init__(self, app, logger: Any):
        super().__init__(app)
        self.logger = logger

    async def dispatch(self, request: Request, call_next: Callable):

        # clean
        structlog.contextvars.clear_contextvars()

        client = f"{request.client.host}:{request.client.port}" if request.client else None
        request_context = dict(
            http_method=request.method,
            http_scheme=request.url.scheme,
            url_host=request.headers.get("host"),
            url_path=request.url.path,
            user_agent=request.headers.get("user-agent"),
            client=client,
        )
        structlog.contextvars.bind_contextvars(
            request=request_context
        )

        # response
        try:
            response: Response = await call_next(request)
        except Exception:
            self.logger.exception("request_failed")
            raise

        response_context = dict(
            status_code=response.status_code
        )

        structlog.contextvars.bind_contextvars(
            response=response_context
        )
        self.logger.info("request_completed")

        return response
