"""
Shared pytest fixtures for the batchmigrate library tests.

This module provides:
- Tracing fixtures (mock_tracer)
- Resource governor fixtures driven by a scripted memory sampler
- In-memory store fixtures (trade_store, bulk_trade_store, audit_sink)
- Orchestrator fixtures wired to the in-memory stores
- OpenTelemetry metrics fixtures (metric_reader, migration_metrics)
"""

from __future__ import annotations

from collections.abc import Generator

import pytest
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import InMemoryMetricReader

from batchmigrate.governor import ResourceGovernor
from batchmigrate.mappings import TRADE_MAPPING
from batchmigrate.metrics import MigrationMetrics
from batchmigrate.observability import MockTracer
from batchmigrate.orchestrator import MigrationOrchestrator
from batchmigrate.stores import InMemoryAuditSink, InMemoryDestinationStore
from tests.fixtures import FakeMemorySampler

# ============================================================================
# Tracing Fixtures
# ============================================================================


@pytest.fixture
def mock_tracer() -> MockTracer:
    """Tracer recording spans for assertions."""
    return MockTracer()


# ============================================================================
# Resource Governor Fixtures
# ============================================================================


@pytest.fixture
def fake_sampler() -> FakeMemorySampler:
    """Memory sampler reporting a steady 50MB."""
    return FakeMemorySampler(50.0)


@pytest.fixture
def governor(fake_sampler: FakeMemorySampler) -> ResourceGovernor:
    """Governor backed by the fake sampler, with throttling pauses disabled."""
    return ResourceGovernor(
        fake_sampler,
        limit_mb=500,
        throttle_pause_ms=0,
        enable_tracing=False,
    )


# ============================================================================
# Store Fixtures
# ============================================================================


@pytest.fixture
def trade_store() -> InMemoryDestinationStore:
    """Trade store without a bulk insert path."""
    return InMemoryDestinationStore(TRADE_MAPPING, enable_tracing=False)


@pytest.fixture
def bulk_trade_store() -> InMemoryDestinationStore:
    """Trade store offering a bulk insert path."""
    return InMemoryDestinationStore(TRADE_MAPPING, bulk_insert=True, enable_tracing=False)


@pytest.fixture
def audit_sink() -> InMemoryAuditSink:
    return InMemoryAuditSink()


# ============================================================================
# Orchestrator Fixtures
# ============================================================================


@pytest.fixture
def orchestrator(
    trade_store: InMemoryDestinationStore,
    audit_sink: InMemoryAuditSink,
    governor: ResourceGovernor,
) -> MigrationOrchestrator:
    """Orchestrator migrating trades into the in-memory trade store."""
    return MigrationOrchestrator(
        trade_store,
        TRADE_MAPPING,
        audit_sink=audit_sink,
        governor=governor,
        enable_tracing=False,
    )


# ============================================================================
# OpenTelemetry Metrics Fixtures
# ============================================================================


@pytest.fixture
def metric_reader() -> InMemoryMetricReader:
    """Provide an InMemoryMetricReader for testing metrics."""
    return InMemoryMetricReader()


@pytest.fixture
def meter_provider(
    metric_reader: InMemoryMetricReader,
) -> Generator[MeterProvider, None, None]:
    """
    Private MeterProvider feeding the metric_reader fixture.

    Tests never touch the global provider.
    """
    provider = MeterProvider(metric_readers=[metric_reader])
    yield provider
    provider.shutdown()


@pytest.fixture
def migration_metrics(meter_provider: MeterProvider) -> MigrationMetrics:
    """MigrationMetrics reporting to the metric_reader fixture."""
    return MigrationMetrics(meter=meter_provider.get_meter("batchmigrate.tests"))
