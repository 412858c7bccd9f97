"""
Distributed Tracing with OpenTelemetry.

Provisioning attempts, external purchase calls and database queries
become spans exported over OTLP.
"""

from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.trace import Span, Status, StatusCode

from giftcard_engine.config import settings

TRACER_NAME = "giftcard_engine.provisioning"


def setup_tracing() -> None:
    """
    Install a global TracerProvider with a batch OTLP exporter.

    No-op when tracing is disabled; spans then go to the API's no-op tracer.
    """
    if not settings.tracing_enabled:
        return

    provider = TracerProvider(
        resource=Resource.create(
            {"service.name": settings.service_name, "service.version": settings.api_version}
        )
    )
    exporter = OTLPSpanExporter(endpoint=settings.otlp_endpoint, insecure=settings.otlp_insecure)
    provider.add_span_processor(BatchSpanProcessor(exporter))
    trace.set_tracer_provider(provider)


def instrument_fastapi(app: Any) -> None:
    """Auto-trace HTTP requests. Call once, after the app is built."""
    if settings.tracing_enabled:
        FastAPIInstrumentor.instrument_app(app)


def instrument_sqlalchemy(engine: Any) -> None:
    """Auto-trace queries on an async engine's underlying sync engine."""
    if settings.tracing_enabled:
        SQLAlchemyInstrumentor().instrument(engine=engine.sync_engine)


def add_span_attributes(span: Span, **attributes: Any) -> None:
    """
    Set attributes, skipping None and stringifying UUIDs, Decimals and enums.

    Usage:
        add_span_attributes(span, brand_id=brand_id, denomination=denomination)
    """
    for key, value in attributes.items():
        if value is None:
            continue
        span.set_attribute(key, value if isinstance(value, (str, int, float, bool)) else str(value))


@contextmanager
def trace_operation(operation_name: str, **attributes: Any) -> Iterator[Span]:
    """
    Current span around a block; exceptions mark it as errored and re-raise.

    Usage:
        with trace_operation("gift_card_provision", brand_id=brand_id) as span:
            span.set_attribute("source", "csv")
    """
    tracer = trace.get_tracer(TRACER_NAME)
    with tracer.start_as_current_span(
        operation_name, record_exception=False, set_status_on_exception=False
    ) as span:
        add_span_attributes(span, **attributes)
        try:
            yield span
        except BaseException as exc:
            span.set_status(Status(StatusCode.ERROR, str(exc)))
            span.record_exception(exc)
            raise
