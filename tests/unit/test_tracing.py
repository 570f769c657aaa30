"""Tests for OpenTelemetry tracing helpers."""

from __future__ import annotations

from unittest.mock import MagicMock, patch

import pytest
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import SimpleSpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter
from opentelemetry.trace import StatusCode

from hypershift_lite_operator import tracing


@pytest.fixture
def exporter():
    """Install an in-memory tracer for the duration of a test."""
    memory = InMemorySpanExporter()
    provider = TracerProvider()
    provider.add_span_processor(SimpleSpanProcessor(memory))
    with patch.object(tracing, "_tracer", provider.get_tracer("test")):
        yield memory


class TestTraceSpan:
    """Test the span context manager."""

    def test_noop_without_tracer(self):
        """Test that spans are skipped until tracing is initialized."""
        with patch.object(tracing, "_tracer", None):
            with tracing.trace_span("pass") as span:
                assert span is None

    def test_attributes(self, exporter):
        """Test that the kind and attributes are recorded."""
        with tracing.trace_span("pass", kind="KubernetesService", attributes={"resource.name": "cluster"}):
            tracing.add_span_attribute("reconcile.stage", "Converged")

        span = exporter.get_finished_spans()[0]
        assert span.name == "pass"
        assert span.attributes["resource.kind"] == "KubernetesService"
        assert span.attributes["resource.name"] == "cluster"
        assert span.attributes["reconcile.stage"] == "Converged"

    def test_error_recorded(self, exporter):
        """Test that an exception marks the span failed and propagates."""
        with pytest.raises(RuntimeError):
            with tracing.trace_span("pass"):
                raise RuntimeError("etcd unavailable")

        span = exporter.get_finished_spans()[0]
        assert span.status.status_code == StatusCode.ERROR
        assert span.events[0].name == "exception"

    def test_add_attribute_outside_span(self):
        """Test that setting an attribute without a span is harmless."""
        tracing.add_span_attribute("reconcile.stage", "Converged")


class TestInitializeTracing:
    """Test tracer setup and teardown."""

    def test_disabled(self, monkeypatch):
        """Test that tracing can be switched off."""
        monkeypatch.setenv("OTEL_TRACES_ENABLED", "false")

        assert tracing.initialize_tracing() is False

    def test_initialize_and_shutdown(self, monkeypatch):
        """Test that the provider is installed and flushed on shutdown."""
        monkeypatch.setenv("OTEL_TRACES_ENABLED", "true")
        provider = MagicMock()
        with patch.object(tracing, "build_provider", return_value=provider), \
                patch.object(tracing.trace, "set_tracer_provider") as set_provider:
            assert tracing.initialize_tracing() is True
            set_provider.assert_called_once_with(provider)
            assert tracing.get_tracer() is provider.get_tracer.return_value

            tracing.shutdown_tracing()

        provider.shutdown.assert_called_once()
        assert tracing.get_tracer() is None

    def test_provider_failure_is_not_fatal(self, monkeypatch):
        """Test that a broken exporter setup leaves tracing off."""
        monkeypatch.setenv("OTEL_TRACES_ENABLED", "true")
        with patch.object(tracing, "build_provider", side_effect=ValueError("bad endpoint")):
            assert tracing.initialize_tracing() is False
