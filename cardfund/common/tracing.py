"""OpenTelemetry setup plus a span helper for queue jobs."""

from contextlib import contextmanager

from fastapi import FastAPI
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor

from cardfund.common.config import settings


def setup_tracing(service_name: str) -> None:
    """Create and register a tracer provider with OTLP HTTP exporter."""

    resource = Resource.create({"service.name": service_name})
    provider = TracerProvider(resource=resource)
    exporter = OTLPSpanExporter(endpoint=settings.otel_exporter_otlp_endpoint)
    provider.add_span_processor(BatchSpanProcessor(exporter))
    trace.set_tracer_provider(provider)


def instrument_app(app: FastAPI) -> None:
    """Attach FastAPI auto-instrumentation for request spans."""

    FastAPIInstrumentor.instrument_app(app)


@contextmanager
def job_span(job_type: str, job_id: str, attempt: int):
    """One span per job execution; no-op until `setup_tracing` runs."""

    tracer = trace.get_tracer("cardfund.jobs")
    with tracer.start_as_current_span(f"job {job_type}") as span:
        span.set_attribute("job.id", job_id)
        span.set_attribute("job.type", job_type)
        span.set_attribute("job.attempt", attempt)
        yield span
