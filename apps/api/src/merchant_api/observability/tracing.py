"""OpenTelemetry wiring for the API and the automation engine spans."""

from __future__ import annotations

from typing import Dict

from fastapi import FastAPI
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.logging import LoggingInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter, SpanExporter
from opentelemetry.sdk.trace.sampling import ParentBased, TraceIdRatioBased
from opentelemetry.semconv.resource import ResourceAttributes

from merchant_api.core.settings import settings

_TRACER_NAME = "merchant_api"
_provider: TracerProvider | None = None


def _parse_headers(raw: str | None) -> Dict[str, str] | None:
    """Parse ``key=value,key2=value2`` OTLP header strings."""

    if not raw:
        return None
    pairs = (item.split("=", 1) for item in raw.split(",") if "=" in item)
    headers = {key.strip(): value.strip() for key, value in pairs if key.strip()}
    return headers or None


def _build_exporter() -> SpanExporter:
    if settings.otel_exporter_otlp_endpoint:
        return OTLPSpanExporter(
            endpoint=settings.otel_exporter_otlp_endpoint,
            headers=_parse_headers(settings.otel_exporter_otlp_headers),
        )
    return ConsoleSpanExporter()


def _build_provider(*, service_name: str, service_version: str, environment: str) -> TracerProvider:
    resource = Resource.create(
        {
            ResourceAttributes.SERVICE_NAME: service_name,
            ResourceAttributes.SERVICE_VERSION: service_version,
            ResourceAttributes.DEPLOYMENT_ENVIRONMENT: environment,
        }
    )
    provider = TracerProvider(
        resource=resource,
        sampler=ParentBased(TraceIdRatioBased(settings.otel_traces_sample_ratio)),
    )
    provider.add_span_processor(BatchSpanProcessor(_build_exporter()))
    return provider


def get_tracer() -> trace.Tracer:
    """Tracer for engine spans; a no-op tracer until ``configure_tracing`` runs."""

    return trace.get_tracer(_TRACER_NAME)


def configure_tracing(
    app: FastAPI,
    *,
    service_name: str,
    service_version: str,
    environment: str,
) -> None:
    """Install the tracer provider once per process and instrument ``app``."""

    global _provider

    if not settings.tracing_enabled:
        return

    if _provider is None:
        _provider = _build_provider(
            service_name=service_name,
            service_version=service_version,
            environment=environment,
        )
        trace.set_tracer_provider(_provider)
        LoggingInstrumentor().instrument(set_logging_format=False)

    FastAPIInstrumentor.instrument_app(app, tracer_provider=_provider)


__all__ = ["configure_tracing", "get_tracer"]
