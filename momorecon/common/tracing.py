"""OpenTelemetry setup and the span helpers used by the reconciliation stages."""

from contextlib import contextmanager

from fastapi import FastAPI
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.trace import Status, StatusCode

from momorecon.common.config import settings


def setup_tracing(service_name: str) -> None:
    """Register a tracer provider exporting to the OTLP HTTP collector.

    With `OTEL_SDK_DISABLED=true` the SDK provider hands out no-op spans, so
    the helpers below stay safe to call in tests.
    """

    resource = Resource.create({"service.name": service_name, "service.namespace": "momorecon"})
    provider = TracerProvider(resource=resource)
    provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=settings.otel_exporter_otlp_endpoint)))
    trace.set_tracer_provider(provider)


def instrument_app(app: FastAPI) -> None:
    # Health and scrape endpoints are polled constantly and carry no business context.
    FastAPIInstrumentor.instrument_app(app, excluded_urls="health,metrics")


tracer = trace.get_tracer("momorecon")


@contextmanager
def pipeline_span(stage: str, sms_id: str, **attributes):
    """Span around one reconciliation stage (`parse`, `match`, `settle`).

    Exceptions are recorded on the span and re-raised.
    """

    with tracer.start_as_current_span(f"sms.{stage}", record_exception=False, set_status_on_exception=False) as span:
        span.set_attribute("momorecon.sms_id", sms_id)
        for key, value in attributes.items():
            if value is not None:
                span.set_attribute(f"momorecon.{key}", value)
        try:
            yield span
        except Exception as exc:
            span.record_exception(exc)
            span.set_status(Status(StatusCode.ERROR, str(exc)))
            raise
