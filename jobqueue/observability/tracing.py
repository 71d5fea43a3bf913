"""
OpenTelemetry tracing.

Queue components always open spans through ``queue_span``. Until
``setup_tracing`` installs an exporting provider those spans go to the
no-op provider, so tracing costs nothing when it is disabled.
"""

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter
from opentelemetry.trace import Span, Tracer

from jobqueue import __version__
from jobqueue.config import Settings, get_settings

logger = logging.getLogger(__name__)

_tracer: Tracer | None = None


def setup_tracing(
    settings: Settings | None = None,
    enable_console_export: bool = False,
) -> Tracer:
    """
    Install a tracer provider that exports queue spans over OTLP.

    Args:
        settings: Application settings. Defaults to the cached settings.
        enable_console_export: Also print finished spans to stdout.

    Returns:
        Tracer: The queue tracer.
    """
    global _tracer

    settings = settings or get_settings()
    provider = TracerProvider(
        resource=Resource.create(
            {
                "service.name": settings.otel_service_name,
                "service.version": __version__,
            }
        )
    )
    provider.add_span_processor(
        BatchSpanProcessor(
            OTLPSpanExporter(endpoint=settings.otel_exporter_otlp_endpoint, insecure=True)
        )
    )
    if enable_console_export:
        provider.add_span_processor(BatchSpanProcessor(ConsoleSpanExporter()))

    trace.set_tracer_provider(provider)
    _tracer = trace.get_tracer(settings.otel_service_name)

    logger.info(
        "Tracing enabled",
        extra={
            "endpoint": settings.otel_exporter_otlp_endpoint,
            "service": settings.otel_service_name,
        },
    )
    return _tracer


def instrument_fastapi(app: Any) -> None:
    """Trace every HTTP request handled by the API."""
    FastAPIInstrumentor.instrument_app(app)


def instrument_sqlalchemy(engine: Any) -> None:
    """Trace SQL statements issued by the SQL job store (pass ``engine.sync_engine``)."""
    SQLAlchemyInstrumentor().instrument(engine=engine)


def get_tracer() -> Tracer:
    """Get the queue tracer, or one from the global provider when tracing is off."""
    if _tracer is None:
        return trace.get_tracer("jobqueue")
    return _tracer


@contextmanager
def queue_span(name: str, **attributes: Any) -> Iterator[Span]:
    """
    Open a span for a queue operation.

    Attributes whose value is None are left off the span.
    """
    with get_tracer().start_as_current_span(name) as span:
        for key, value in attributes.items():
            if value is not None:
                span.set_attribute(key, value)
        yield span
