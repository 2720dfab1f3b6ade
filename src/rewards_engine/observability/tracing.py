from __future__ import annotations

from typing import Dict

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.logging import LoggingInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter, SpanExporter
from opentelemetry.sdk.trace.sampling import ParentBased, TraceIdRatioBased
from opentelemetry.semconv.resource import ResourceAttributes

from rewards_engine.core.settings import Settings

_TRACER_NAME = "rewards_engine"
_CONFIGURED = False


def _parse_headers(raw: str | None) -> Dict[str, str] | None:
    if not raw:
        return None
    headers: Dict[str, str] = {}
    for pair in raw.split(","):
        key, sep, value = pair.partition("=")
        if sep and key.strip():
            headers[key.strip()] = value.strip()
    return headers or None


def _build_exporter(config: Settings) -> SpanExporter:
    if config.otel_exporter_otlp_endpoint:
        return OTLPSpanExporter(
            endpoint=config.otel_exporter_otlp_endpoint,
            headers=_parse_headers(config.otel_exporter_otlp_headers),
        )
    return ConsoleSpanExporter()


def configure_tracing(config: Settings) -> None:
    """Install the tracer provider used by workers and the scheduler.

    Log correlation comes from ``core.logging``, which stamps the active span on
    every JSON line; the logging instrumentor covers stdlib loggers as well.
    """

    global _CONFIGURED
    if _CONFIGURED or not config.otel_enabled:
        return

    resource = Resource.create(
        {
            ResourceAttributes.SERVICE_NAME: config.service_name,
            ResourceAttributes.SERVICE_VERSION: config.service_version,
            ResourceAttributes.DEPLOYMENT_ENVIRONMENT: config.environment,
        }
    )
    provider = TracerProvider(
        resource=resource,
        sampler=ParentBased(TraceIdRatioBased(config.otel_sample_ratio)),
    )
    provider.add_span_processor(BatchSpanProcessor(_build_exporter(config)))
    trace.set_tracer_provider(provider)
    LoggingInstrumentor().instrument(set_logging_format=False)
    _CONFIGURED = True


def get_tracer() -> trace.Tracer:
    return trace.get_tracer(_TRACER_NAME)


__all__ = ["configure_tracing", "get_tracer"]
