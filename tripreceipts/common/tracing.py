"""OpenTelemetry wiring for the fulfillment service.

With `OTEL_ENABLED=false` the global no-op provider stays in place, so the
`traced` spans below cost nothing and tests need no collector.
"""

from contextlib import contextmanager

from fastapi import FastAPI
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.trace import Status, StatusCode

from tripreceipts.common.config import settings


tracer = trace.get_tracer("tripreceipts")


def setup_tracing(service_name: str) -> None:
    """Register a tracer provider exporting over OTLP HTTP."""

    if not settings.otel_enabled:
        return
    resource = Resource.create({"service.name": service_name, "service.namespace": "tripreceipts"})
    provider = TracerProvider(resource=resource)
    provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=settings.otel_exporter_otlp_endpoint)))
    trace.set_tracer_provider(provider)


def instrument_app(app: FastAPI) -> None:
    """Request spans for every route except the scrape and probe endpoints."""

    if settings.otel_enabled:
        FastAPIInstrumentor.instrument_app(app, excluded_urls="metrics,health")


def current_trace_id() -> str:
    """Hex trace id of the active span, or "" outside any recording span."""

    context = trace.get_current_span().get_span_context()
    if not context.is_valid:
        return ""
    return format(context.trace_id, "032x")


@contextmanager
def traced(name: str, **attributes):
    """Child span around one fulfillment step; failures mark the span as errored."""

    with tracer.start_as_current_span(name, attributes=attributes, record_exception=True) as span:
        try:
            yield span
        except Exception as exc:
            span.set_status(Status(StatusCode.ERROR, type(exc).__name__))
            raise
