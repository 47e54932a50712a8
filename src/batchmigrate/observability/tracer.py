"""
Tracer protocol and implementations for composition-based tracing.

Every migration component (orchestrator, batch processor, governor, stores)
takes a ``Tracer`` at construction and wraps its operations in spans named
``batchmigrate.<component>.<operation>``. Whether those spans reach an
OpenTelemetry exporter, go nowhere, or are recorded for assertions depends
only on which tracer was injected.

Example:
    >>> from batchmigrate.observability import create_tracer
    >>>
    >>> class CsvDestinationStore:
    ...     def __init__(self, tracer: Tracer | None = None, enable_tracing: bool = True):
    ...         self._tracer = tracer or create_tracer(__name__, enable_tracing)
    ...
    ...     async def insert_one(self, row) -> InsertResult:
    ...         with self._tracer.span(
    ...             "batchmigrate.csv_store.insert",
    ...             {"batchmigrate.batch.size": 1},
    ...         ):
    ...             return await self._write(row)
"""

from __future__ import annotations

import contextlib
from collections.abc import Generator
from contextlib import AbstractContextManager
from typing import Any, NamedTuple, Protocol, runtime_checkable

from opentelemetry import trace
from opentelemetry.trace import Span


@runtime_checkable
class Tracer(Protocol):
    """
    Protocol for tracers injected into migration components.

    Implementations:
    - NullTracer: tracing disabled
    - OpenTelemetryTracer: spans through the OpenTelemetry API
    - MockTracer: records spans for tests
    """

    def span(
        self,
        name: str,
        attributes: dict[str, Any] | None = None,
    ) -> AbstractContextManager[Span | None]:
        """
        Open a span around a block of work.

        Args:
            name: Span name (e.g., "batchmigrate.batch_processor.process_batch")
            attributes: Span attributes, keyed by the constants in
                ``batchmigrate.observability.attributes``

        Returns:
            Context manager that yields the span, or None when not recording
        """
        ...

    @property
    def enabled(self) -> bool:
        """
        Whether spans are actually produced.

        Components check this before computing attributes that cost
        something to build, such as per-batch counters.
        """
        ...


class NullTracer:
    """Tracer used when ``enable_tracing=False``; every span is a no-op."""

    @contextlib.contextmanager
    def span(
        self,
        name: str,
        attributes: dict[str, Any] | None = None,
    ) -> Generator[None, None, None]:
        yield None

    @property
    def enabled(self) -> bool:
        return False


class OpenTelemetryTracer:
    """
    Tracer backed by ``opentelemetry.trace``.

    Spans go to whatever TracerProvider the host application configured.
    Without one, the OpenTelemetry API hands out non-recording spans, so a
    migration never fails for lack of tracing setup.

    Args:
        tracer_name: Instrumentation scope name (typically __name__)
    """

    def __init__(self, tracer_name: str) -> None:
        self._tracer = trace.get_tracer(tracer_name)

    def span(
        self,
        name: str,
        attributes: dict[str, Any] | None = None,
    ) -> AbstractContextManager[Span | None]:
        return self._tracer.start_as_current_span(
            name,
            attributes=attributes or {},
        )

    @property
    def enabled(self) -> bool:
        return True


class RecordedSpan(NamedTuple):
    """A span captured by MockTracer."""

    name: str
    attributes: dict[str, Any] | None


class MockTracer:
    """
    Tracer that records spans in the order they were opened.

    Reports itself as enabled so components build their full attribute
    sets, which tests can then inspect.

    Example:
        >>> tracer = MockTracer()
        >>> processor = BatchProcessor(store, TRADE_MAPPING, governor, tracer=tracer)
        >>> await processor.process_all(run, "trades", records)
        >>> tracer.span_names[0]
        'batchmigrate.batch_processor.process_all'
    """

    def __init__(self) -> None:
        self.spans: list[RecordedSpan] = []

    @contextlib.contextmanager
    def span(
        self,
        name: str,
        attributes: dict[str, Any] | None = None,
    ) -> Generator[None, None, None]:
        self.spans.append(RecordedSpan(name, attributes))
        yield None

    @property
    def enabled(self) -> bool:
        return True

    @property
    def span_names(self) -> list[str]:
        return [span.name for span in self.spans]

    def attributes_of(self, name: str) -> list[dict[str, Any]]:
        """Attributes of every recorded span called ``name``."""
        return [span.attributes or {} for span in self.spans if span.name == name]

    def clear(self) -> None:
        self.spans.clear()


def create_tracer(
    name: str,
    enable_tracing: bool = True,
) -> Tracer:
    """
    Build the tracer a component uses when none is injected.

    Args:
        name: Instrumentation scope name (typically __name__)
        enable_tracing: False selects NullTracer

    Returns:
        OpenTelemetryTracer if enabled, NullTracer otherwise
    """
    if enable_tracing:
        return OpenTelemetryTracer(name)
    return NullTracer()


__all__ = [
    "Tracer",
    "NullTracer",
    "OpenTelemetryTracer",
    "MockTracer",
    "RecordedSpan",
    "create_tracer",
]
