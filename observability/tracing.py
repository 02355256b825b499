from __future__ import annotations

import logging

from config.load_config import ObservabilityCfg

logger = logging.getLogger(__name__)


def setup_tracing(app, obs: ObservabilityCfg) -> bool:
    """Opt-in OpenTelemetry instrumentation of the FastAPI app."""
    if not obs.otel_enabled:
        return False

    try:
        from opentelemetry import trace
        from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
        from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
        from opentelemetry.sdk.resources import Resource
        from opentelemetry.sdk.trace import TracerProvider
        from opentelemetry.sdk.trace.export import BatchSpanProcessor
    except ImportError as exc:
        logger.warning("otel_enabled but opentelemetry is not installed: %s", exc)
        return False

    resource = Resource.create({"service.name": obs.otel_service_name})
    provider = TracerProvider(resource=resource)
    endpoint = obs.otel_exporter_otlp_endpoint
    exporter = OTLPSpanExporter(endpoint=endpoint) if endpoint else OTLPSpanExporter()

    provider.add_span_processor(BatchSpanProcessor(exporter))
    trace.set_tracer_provider(provider)
    FastAPIInstrumentor.instrument_app(app)
    return True
