"""OpenTelemetry tracing for reconciliation passes.

Spans are exported over OTLP/gRPC. Until :func:`initialize_tracing` runs,
:func:`trace_span` is a no-op, which keeps tests and local runs free of
exporter setup.
"""

from __future__ import annotations

import logging
import os
from contextlib import contextmanager
from typing import Any, Iterator

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.trace import Span, Tracer

logger = logging.getLogger(__name__)

DEFAULT_SERVICE_NAME = "hypershift-lite-operator"

_provider: TracerProvider | None = None
_tracer: Tracer | None = None


def tracing_enabled() -> bool:
    return os.getenv("OTEL_TRACES_ENABLED", "true").lower() != "false"


def build_provider(service_name: str, endpoint: str) -> TracerProvider:
    """Create a provider that batches spans to the OTLP endpoint."""
    resource = Resource.create({
        "service.name": service_name,
        "service.version": os.getenv("OTEL_SERVICE_VERSION", "unknown"),
    })
    provider = TracerProvider(resource=resource)
    provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint)))
    return provider


def initialize_tracing() -> bool:
    """Install the global tracer provider.

    Environment Variables:
        OTEL_TRACES_ENABLED: Set to "false" to disable tracing
        OTEL_SERVICE_NAME: Service name (default: hypershift-lite-operator)
        OTEL_EXPORTER_OTLP_ENDPOINT: Collector URL (default: http://localhost:4317)
        OTEL_SERVICE_VERSION: Reported service version

    Returns:
        True if spans will be exported
    """
    global _provider, _tracer

    if not tracing_enabled():
        logger.info("Tracing disabled")
        return False

    service_name = os.getenv("OTEL_SERVICE_NAME", DEFAULT_SERVICE_NAME)
    endpoint = os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT", "http://localhost:4317")
    try:
        _provider = build_provider(service_name, endpoint)
    except Exception as e:
        # The operator runs without tracing rather than not at all
        logger.warning(f"Failed to initialize tracing: {e}")
        return False

    trace.set_tracer_provider(_provider)
    _tracer = _provider.get_tracer(service_name)
    logger.info(f"Tracing spans to {endpoint}")
    return True


def shutdown_tracing() -> None:
    """Flush pending spans and stop exporting."""
    global _provider, _tracer
    if _provider is not None:
        _provider.shutdown()
    _provider = None
    _tracer = None


def get_tracer() -> Tracer | None:
    return _tracer


@contextmanager
def trace_span(
    name: str,
    kind: str | None = None,
    attributes: dict[str, Any] | None = None,
) -> Iterator[Span | None]:
    """Run the block inside a span, marking the span failed if the block raises.

    Args:
        name: Span name
        kind: Resource kind recorded as ``resource.kind``
        attributes: Additional span attributes

    Yields:
        The span, or None when tracing is not initialized
    """
    tracer = get_tracer()
    if tracer is None:
        yield None
        return

    attrs = dict(attributes or {})
    if kind:
        attrs["resource.kind"] = kind

    with tracer.start_as_current_span(name, attributes=attrs, record_exception=False) as span:
        try:
            yield span
        except Exception as e:
            span.record_exception(e)
            span.set_status(trace.Status(trace.StatusCode.ERROR, str(e)))
            raise


def add_span_attribute(key: str, value: Any) -> None:
    """Set an attribute on the current span if it is recording."""
    span = trace.get_current_span()
    if span.is_recording():
        span.set_attribute(key, value)
