"""OpenTelemetry setup for the command surface and the poll loop."""

from contextlib import contextmanager
from typing import Iterator

from fastapi import FastAPI
from opentelemetry import trace
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter

from uploadwatch.common.config import settings


def setup_tracing(service_name: str, endpoint: str | None = None) -> None:
    """Register a tracer provider; spans are exported only when an endpoint is set."""

    resource = Resource.create({"service.name": service_name})
    provider = TracerProvider(resource=resource)
    endpoint = settings.otel_exporter_otlp_endpoint if endpoint is None else endpoint
    if endpoint:
        provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint)))
    trace.set_tracer_provider(provider)


def instrument_app(app: FastAPI) -> None:
    """Attach FastAPI auto-instrumentation for command request spans."""

    FastAPIInstrumentor.instrument_app(app)


@contextmanager
def source_span(name: str, source_id: str) -> Iterator[trace.Span]:
    """Span around work on one source, tagged with its id."""

    tracer = trace.get_tracer("uploadwatch")
    with tracer.start_as_current_span(name) as span:
        span.set_attribute("uploadwatch.source_id", source_id)
        yield span
