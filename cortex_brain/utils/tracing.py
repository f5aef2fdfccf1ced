"""OpenTelemetry spans for the brain pipeline.

Spans are exported over OTLP when ``CORTEX_OTEL_TRACE_URL`` is set; otherwise
the API's no-op tracer is used. Pipeline attributes share the ``brain.``
prefix so one query can follow a request through router, lobe and stream.
"""

from __future__ import annotations

import enum
import os
from contextlib import asynccontextmanager
from typing import Any, Dict

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor

SERVICE_NAME = "cortex-brain"
ATTRIBUTE_PREFIX = "brain."


def configure_tracing(endpoint: str | None, service_name: str = SERVICE_NAME) -> bool:
    """Install an OTLP exporting provider; returns ``False`` without an endpoint."""
    if not endpoint:
        return False
    provider = TracerProvider(resource=Resource.create({"service.name": service_name}))
    provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint, timeout=5)))
    trace.set_tracer_provider(provider)
    return True


configure_tracing(os.getenv("CORTEX_OTEL_TRACE_URL"))
tracer = trace.get_tracer(__name__)


def span_attributes(**fields: Any) -> Dict[str, Any]:
    """Prefix ``fields`` for a span, dropping unset ones.

    Enums are recorded by value and anything that is not a primitive OTel
    attribute type is stringified.
    """
    attrs: Dict[str, Any] = {}
    for key, value in fields.items():
        if value is None:
            continue
        if isinstance(value, enum.Enum):
            value = value.value
        if not isinstance(value, (str, bool, int, float)):
            value = str(value)
        attrs[ATTRIBUTE_PREFIX + key] = value
    return attrs


@asynccontextmanager
async def async_span(name: str, tracer_obj=None, **attrs):
    """Async context manager wrapping ``tracer.start_as_current_span``."""
    cm = (tracer_obj or tracer).start_as_current_span(name, **attrs)
    if hasattr(cm, "__aenter__"):
        async with cm:
            yield
    else:
        with cm:
            yield


def pipeline_span(name: str, tracer_obj=None, **fields: Any):
    return async_span(name, tracer_obj, attributes=span_attributes(**fields))


__all__ = ["async_span", "configure_tracing", "pipeline_span", "span_attributes", "tracer"]
