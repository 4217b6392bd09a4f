"""Structured logs correlated with fetch and heal traces."""

from __future__ import annotations

import logging
import uuid
from contextlib import contextmanager
from typing import Iterator

import structlog
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, SimpleSpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter
from opentelemetry.sdk.trace.sampling import ParentBased, TraceIdRatioBased
from structlog.contextvars import bind_contextvars, bound_contextvars

from .settings import ProxySettings

_stdlib_configured = False
_tracing_configured = False


def add_trace_context(logger, method_name: str, event_dict: dict) -> dict:
    """Stamp the active span's ids so log lines join up with their trace."""
    context = trace.get_current_span().get_span_context()
    if context.is_valid:
        event_dict["trace_id"] = format(context.trace_id, "032x")
        event_dict["span_id"] = format(context.span_id, "016x")
    return event_dict


def configure_logging(service_name: str, level: str = "INFO") -> None:
    """Emit one JSON object per event through the stdlib root logger."""

    global _stdlib_configured
    numeric_level = logging.getLevelNamesMapping().get(level.upper(), logging.INFO)
    if _stdlib_configured:
        logging.getLogger().setLevel(numeric_level)
    else:
        logging.basicConfig(level=numeric_level, format="%(message)s")
        _stdlib_configured = True

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            add_trace_context,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.dict_tracebacks,
            structlog.processors.EventRenamer("message"),
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
    bind_contextvars(service=service_name)


@contextmanager
def heal_context(path: str) -> Iterator[str]:
    """Tag every log line of one heal attempt with a shared heal id."""
    heal_id = uuid.uuid4().hex[:12]
    with bound_contextvars(heal_id=heal_id, heal_path=path):
        yield heal_id


def configure_tracing(settings: ProxySettings, service_name: str = "backfill.proxy") -> None:
    """Install the tracer provider once per process.

    Exporter headers come from the standard ``OTEL_EXPORTER_OTLP_HEADERS``
    variable, which the OTLP exporter reads itself.
    """

    global _tracing_configured
    if _tracing_configured or isinstance(trace.get_tracer_provider(), TracerProvider):
        _tracing_configured = True
        return

    ratio = min(1.0, max(0.0, settings.otel_sampler_ratio))
    provider = TracerProvider(
        resource=Resource.create({"service.name": service_name}),
        sampler=ParentBased(TraceIdRatioBased(ratio)),
    )
    if settings.otel_exporter_endpoint:
        provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=settings.otel_exporter_endpoint)))
    else:
        provider.add_span_processor(SimpleSpanProcessor(InMemorySpanExporter()))
    trace.set_tracer_provider(provider)
    # Upstream and upload calls share the provider; their spans nest under backfill.fetch and backfill.heal.
    HTTPXClientInstrumentor().instrument()
    _tracing_configured = True


def instrument_fastapi_app(app) -> None:
    FastAPIInstrumentor.instrument_app(app, tracer_provider=trace.get_tracer_provider())
