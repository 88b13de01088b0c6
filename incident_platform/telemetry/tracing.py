"""OpenTelemetry tracing — provider setup and the span helper used by the workers.

Without ``setup_tracing`` the global provider is the no-op one, so spans cost
nothing in tests and local runs.
"""

from __future__ import annotations

from contextlib import contextmanager
from typing import Iterator

from opentelemetry import trace
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.trace import Span, Status, StatusCode

SERVICE_NAME = "incident-platform"
SERVICE_VERSION = "1.0.0"

_tracer = trace.get_tracer("incident_platform")


def setup_tracing(otlp_endpoint: str) -> TracerProvider:
    from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter

    provider = TracerProvider(
        resource=Resource.create({"service.name": SERVICE_NAME, "service.version": SERVICE_VERSION})
    )
    provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=otlp_endpoint, insecure=True)))
    trace.set_tracer_provider(provider)
    return provider


@contextmanager
def pipeline_span(name: str, **attributes: str | int | None) -> Iterator[Span]:
    """Span around one unit of pipeline work; exceptions mark it as failed and propagate."""
    with _tracer.start_as_current_span(name, record_exception=False, set_status_on_exception=False) as span:
        for key, value in attributes.items():
            if value is not None:
                span.set_attribute(f"incident_platform.{key}", value)
        try:
            yield span
        except Exception as exc:
            span.record_exception(exc)
            span.set_status(Status(StatusCode.ERROR, str(exc)))
            raise
