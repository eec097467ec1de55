from __future__ import annotations

import os
from typing import Dict

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter, SpanExporter
from opentelemetry.semconv.resource import ResourceAttributes

_CONFIGURED = False


def _build_exporter() -> SpanExporter:
    endpoint = os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT")
    headers_env = os.getenv("OTEL_EXPORTER_OTLP_HEADERS")

    if endpoint:
        headers: Dict[str, str] | None = None
        if headers_env:
            headers = {}
            for pair in headers_env.split(","):
                if not pair or "=" not in pair:
                    continue
                key, value = pair.split("=", 1)
                headers[key.strip()] = value.strip()
        return OTLPSpanExporter(endpoint=endpoint, headers=headers)

    return ConsoleSpanExporter()


def configure_tracing(
    *,
    service_name: str,
    service_version: str,
    environment: str,
) -> TracerProvider:
    """Install the global tracer provider used by the engine facade spans."""

    global _CONFIGURED

    if _CONFIGURED:
        return trace.get_tracer_provider()  # type: ignore[return-value]

    resource = Resource.create(
        {
            ResourceAttributes.SERVICE_NAME: service_name,
            ResourceAttributes.SERVICE_VERSION: service_version,
            ResourceAttributes.DEPLOYMENT_ENVIRONMENT: environment,
        }
    )
    tracer_provider = TracerProvider(resource=resource)
    tracer_provider.add_span_processor(BatchSpanProcessor(_build_exporter()))
    trace.set_tracer_provider(tracer_provider)
    _CONFIGURED = True
    return tracer_provider


def get_tracer(name: str) -> trace.Tracer:
    return trace.get_tracer(name)


__all__ = ["configure_tracing", "get_tracer"]
