"""OpenTelemetry setup helpers for the dispatch service."""

from fastapi import FastAPI
from opentelemetry import trace
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter

from orderbell.common.config import DispatchSettings


def setup_tracing(config: DispatchSettings) -> TracerProvider | None:
    """Register a tracer provider exporting over OTLP HTTP.

    An empty exporter endpoint disables tracing for local runs.
    """

    if not config.otel_exporter_otlp_endpoint:
        return None
    resource = Resource.create(
        {
            "service.name": config.service_name,
            "orderbell.merchant_id": config.merchant_id,
            "orderbell.branch_id": config.branch_id,
        }
    )
    provider = TracerProvider(resource=resource)
    exporter = OTLPSpanExporter(endpoint=config.otel_exporter_otlp_endpoint)
    provider.add_span_processor(BatchSpanProcessor(exporter))
    trace.set_tracer_provider(provider)
    return provider


def shutdown_tracing(provider: TracerProvider | None) -> None:
    """Flush pending spans on shutdown."""

    if provider is not None:
        provider.shutdown()


def instrument_app(app: FastAPI) -> None:
    """Attach FastAPI auto-instrumentation for request spans."""

    FastAPIInstrumentor.instrument_app(app)
