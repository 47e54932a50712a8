"""
Unit tests for tracer protocol and implementations.

Tests for:
- Tracer Protocol (runtime_checkable)
- NullTracer class
- OpenTelemetryTracer class
- MockTracer class
- create_tracer() factory function
"""

from __future__ import annotations

import contextlib
from typing import Any

from batchmigrate.observability import (
    MockTracer,
    NullTracer,
    OpenTelemetryTracer,
    Tracer,
    create_tracer,
)


class TestTracerProtocol:
    """Tests for Tracer protocol."""

    def test_null_tracer_implements_protocol(self):
        """NullTracer implements Tracer protocol."""
        assert isinstance(NullTracer(), Tracer)

    def test_otel_tracer_implements_protocol(self):
        """OpenTelemetryTracer implements Tracer protocol."""
        assert isinstance(OpenTelemetryTracer(__name__), Tracer)

    def test_mock_tracer_implements_protocol(self):
        """MockTracer implements Tracer protocol."""
        assert isinstance(MockTracer(), Tracer)

    def test_custom_implementation_matches_protocol(self):
        """Custom implementations can match the protocol."""

        class CustomTracer:
            def span(self, name: str, attributes: dict[str, Any] | None = None):
                return contextlib.nullcontext()

            @property
            def enabled(self) -> bool:
                return False

        assert isinstance(CustomTracer(), Tracer)


class TestNullTracer:
    """Tests for NullTracer class."""

    def test_span_yields_none(self):
        """span() is a context manager yielding None."""
        tracer = NullTracer()
        with tracer.span("test", {"key": "value"}) as span:
            assert span is None

    def test_enabled_is_false(self):
        """enabled property returns False."""
        assert NullTracer().enabled is False

    def test_exceptions_propagate(self):
        """Exceptions raised inside a span are not swallowed."""
        tracer = NullTracer()
        with contextlib.suppress(ValueError), tracer.span("test"):
            raise ValueError("boom")


class TestOpenTelemetryTracer:
    """Tests for OpenTelemetryTracer class."""

    def test_enabled_is_true(self):
        """enabled property returns True."""
        assert OpenTelemetryTracer(__name__).enabled is True

    def test_span_works_without_provider(self):
        """Spans work against the default (no-op) provider."""
        tracer = OpenTelemetryTracer(__name__)
        with tracer.span("batchmigrate.test", {"batchmigrate.run.id": "run-1"}) as span:
            assert span is not None


class TestMockTracer:
    """Tests for MockTracer class."""

    def test_records_spans(self):
        """Spans and their attributes are recorded in order."""
        tracer = MockTracer()
        with tracer.span("outer", {"a": 1}), tracer.span("inner"):
            pass

        assert tracer.spans == [("outer", {"a": 1}), ("inner", None)]
        assert tracer.span_names == ["outer", "inner"]

    def test_recorded_span_fields(self):
        """Recorded spans expose name and attributes by field."""
        tracer = MockTracer()
        with tracer.span("op", {"a": 1}):
            pass

        assert tracer.spans[0].name == "op"
        assert tracer.spans[0].attributes == {"a": 1}

    def test_attributes_of(self):
        """attributes_of() collects attributes of same-named spans."""
        tracer = MockTracer()
        with tracer.span("batch", {"id": "t#1"}):
            pass
        with tracer.span("other"):
            pass
        with tracer.span("batch"):
            pass

        assert tracer.attributes_of("batch") == [{"id": "t#1"}, {}]
        assert tracer.attributes_of("missing") == []

    def test_clear(self):
        """clear() forgets recorded spans."""
        tracer = MockTracer()
        with tracer.span("op"):
            pass
        tracer.clear()
        assert tracer.spans == []

    def test_enabled_is_true(self):
        """MockTracer reports itself enabled."""
        assert MockTracer().enabled is True


class TestCreateTracer:
    """Tests for create_tracer() factory."""

    def test_enabled_returns_otel_tracer(self):
        """Enabled tracing yields an OpenTelemetryTracer."""
        assert isinstance(create_tracer(__name__, True), OpenTelemetryTracer)

    def test_disabled_returns_null_tracer(self):
        """Disabled tracing yields a NullTracer."""
        assert isinstance(create_tracer(__name__, False), NullTracer)

    def test_default_is_enabled(self):
        """Tracing is enabled by default."""
        assert create_tracer(__name__).enabled is True
