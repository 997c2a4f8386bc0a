"""Logging and tracing setup shared by symserver entrypoints."""

from __future__ import annotations

import logging
from typing import Dict, Optional

import structlog
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.asgi import OpenTelemetryMiddleware
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, SimpleSpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter
from opentelemetry.sdk.trace.sampling import TraceIdRatioBased
from structlog.contextvars import bind_contextvars


_logging_configured = False
_tracer_configured = False
_httpx_instrumented = False


def _log_level(level: str | int | None) -> int:
    if isinstance(level, int):
        return level
    if isinstance(level, str):
        numeric = logging.getLevelName(level.strip().upper())
        if isinstance(numeric, int):
            return numeric
    return logging.INFO


def configure_logging(service_name: str, level: str | int | None = None, json_logs: bool = True) -> None:
    """Route structlog through stdlib logging, rendering one JSON object per line.

    ``json_logs=False`` switches to the human readable console renderer for
    local runs.
    """

    global _logging_configured
    numeric_level = _log_level(level)
    if not _logging_configured:
        logging.basicConfig(level=numeric_level, format="%(message)s")
        _logging_configured = True
    else:
        logging.getLogger().setLevel(numeric_level)

    renderer = structlog.processors.JSONRenderer() if json_logs else structlog.dev.ConsoleRenderer()
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.StackInfoRenderer(),
    ]
    if json_logs:
        processors += [structlog.processors.dict_tracebacks, structlog.processors.EventRenamer("message")]
    processors.append(renderer)

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
    bind_contextvars(service=service_name)


def parse_otlp_headers(headers: str | None) -> Dict[str, str]:
    if not headers:
        return {}
    result: Dict[str, str] = {}
    for item in headers.split(","):
        if not item.strip():
            continue
        key, _, value = item.partition("=")
        if key and value:
            result[key.strip()] = value.strip()
    return result


def configure_tracing(
    service_name: str,
    endpoint: Optional[str] = None,
    headers: Optional[str] = None,
    sampler_ratio: float = 1.0,
) -> None:
    """Install a tracer provider; spans stay in memory unless an OTLP endpoint is given."""

    global _tracer_configured, _httpx_instrumented
    if _tracer_configured:
        return

    if isinstance(trace.get_tracer_provider(), TracerProvider):
        _tracer_configured = True
        return

    resource = Resource.create({"service.name": service_name})
    sampler_ratio = max(0.0, min(1.0, sampler_ratio))
    provider = TracerProvider(resource=resource, sampler=TraceIdRatioBased(sampler_ratio))

    if endpoint:
        processor = BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint, headers=parse_otlp_headers(headers)))
    else:
        processor = SimpleSpanProcessor(InMemorySpanExporter())

    provider.add_span_processor(processor)
    trace.set_tracer_provider(provider)
    _tracer_configured = True

    # Upstream fetches show up as child spans of the inbound request.
    if not _httpx_instrumented:
        HTTPXClientInstrumentor().instrument()
        _httpx_instrumented = True


def instrument_fastapi_app(app) -> None:
    """Attach OpenTelemetry instrumentation to a FastAPI app."""

    FastAPIInstrumentor.instrument_app(app, tracer_provider=trace.get_tracer_provider())
    if not any(getattr(m.cls, "__name__", "") == "OpenTelemetryMiddleware" for m in app.user_middleware):
        app.add_middleware(OpenTelemetryMiddleware, tracer_provider=trace.get_tracer_provider())
