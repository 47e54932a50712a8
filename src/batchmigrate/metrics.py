"""
OpenTelemetry metrics for migration runs.

This module provides metrics instrumentation for the batched migration
engine, tracking records processed, batch and phase durations, memory
usage, throttling and rollbacks.

Example:
    >>> from batchmigrate.metrics import MigrationMetrics
    >>>
    >>> metrics = MigrationMetrics()
    >>> metrics.record_records_processed("TRADE_DATA", succeeded=95, failed=2, duplicates=3)
    >>> metrics.record_batch_duration("TRADE_DATA", 12.5)
    >>> with metrics.time_phase("TRADE_DATA", "MIGRATING_DATA"):
    ...     await transfer()

Metrics Exposed:
    - migration.records.processed (Counter): Records processed, by outcome
    - migration.batch.duration (Histogram): Time taken per batch
    - migration.phase.duration (Histogram): Time spent in each phase
    - migration.memory.usage (Gauge): Latest memory sample
    - migration.throttle.events (Counter): Backpressure pauses taken
    - migration.rollbacks (Counter): Rollbacks attempted, by success

All metrics carry the 'run_type' attribute (record type tag) for filtering.
Passing ``enable_metrics=False`` swaps every instrument for a no-op.
"""

from __future__ import annotations

import time
from collections.abc import Generator, Iterable
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any

from opentelemetry import metrics
from opentelemetry.metrics import CallbackOptions, Meter, Observation

METER_NAME = "batchmigrate"
METER_VERSION = "1.0.0"


class NoOpCounter:
    """Counter that discards everything, used when metrics are disabled."""

    def add(
        self,
        amount: int | float,
        attributes: dict[str, Any] | None = None,
    ) -> None:
        pass


class NoOpHistogram:
    """Histogram that discards everything, used when metrics are disabled."""

    def record(
        self,
        value: float,
        attributes: dict[str, Any] | None = None,
    ) -> None:
        pass


@dataclass(frozen=True)
class MigrationMetricSnapshot:
    """
    Snapshot of accumulated metric values.

    Useful for testing and debugging to see what values
    would be reported to OpenTelemetry.

    Attributes:
        records_processed: Records processed keyed by outcome
        batch_durations: Batch duration recordings in milliseconds
        phase_durations: Phase name to total duration in seconds
        memory_usage_mb: Latest memory sample
        throttle_events: Backpressure pauses taken
        rollbacks: Rollback attempts keyed by 'success' / 'failure'
    """

    records_processed: dict[str, int] = field(default_factory=dict)
    batch_durations: list[float] = field(default_factory=list)
    phase_durations: dict[str, float] = field(default_factory=dict)
    memory_usage_mb: float = 0.0
    throttle_events: int = 0
    rollbacks: dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "records_processed": dict(self.records_processed),
            "batch_durations": list(self.batch_durations),
            "phase_durations": dict(self.phase_durations),
            "memory_usage_mb": self.memory_usage_mb,
            "throttle_events": self.throttle_events,
            "rollbacks": dict(self.rollbacks),
        }


@dataclass
class MigrationMetrics:
    """
    Container for migration metrics instruments.

    One instance is shared by the engine components of an orchestrator;
    per-run information travels in metric attributes.

    Attributes:
        enable_metrics: Whether instruments report to OpenTelemetry (default True)
        meter: Meter to create instruments on (default: global meter provider)

    Example:
        >>> from opentelemetry.sdk.metrics import MeterProvider
        >>> from opentelemetry.sdk.metrics.export import InMemoryMetricReader
        >>>
        >>> reader = InMemoryMetricReader()
        >>> provider = MeterProvider(metric_readers=[reader])
        >>> metrics = MigrationMetrics(meter=provider.get_meter("test"))
    """

    enable_metrics: bool = True
    meter: Meter | None = None

    # Instruments
    _records_counter: Any = field(default=None, init=False, repr=False)
    _batch_duration_histogram: Any = field(default=None, init=False, repr=False)
    _phase_duration_histogram: Any = field(default=None, init=False, repr=False)
    _throttle_counter: Any = field(default=None, init=False, repr=False)
    _rollback_counter: Any = field(default=None, init=False, repr=False)

    # Internal state for snapshot
    _memory_usage_mb: float = field(default=0.0, init=False, repr=False)
    _records_processed: dict[str, int] = field(default_factory=dict, init=False, repr=False)
    _batch_durations: list[float] = field(default_factory=list, init=False, repr=False)
    _phase_durations: dict[str, float] = field(default_factory=dict, init=False, repr=False)
    _throttle_events: int = field(default=0, init=False, repr=False)
    _rollbacks: dict[str, int] = field(default_factory=dict, init=False, repr=False)

    def __post_init__(self) -> None:
        """Initialize metric instruments."""
        if self.enable_metrics:
            self._setup_metrics()
        else:
            self._setup_noop()

    def _setup_metrics(self) -> None:
        """Set up OpenTelemetry metric instruments."""
        if self.meter is None:
            self.meter = metrics.get_meter(METER_NAME, version=METER_VERSION)

        self._records_counter = self.meter.create_counter(
            name="migration.records.processed",
            unit="records",
            description="Records processed by the migration engine, by outcome",
        )

        self._batch_duration_histogram = self.meter.create_histogram(
            name="migration.batch.duration",
            unit="ms",
            description="Time taken to process one batch in milliseconds",
        )

        self._phase_duration_histogram = self.meter.create_histogram(
            name="migration.phase.duration",
            unit="s",
            description="Time spent in each migration phase in seconds",
        )

        self.meter.create_observable_gauge(
            name="migration.memory.usage",
            callbacks=[self._observe_memory_usage],
            unit="MB",
            description="Latest memory sample taken by the resource governor",
        )

        self._throttle_counter = self.meter.create_counter(
            name="migration.throttle.events",
            unit="events",
            description="Backpressure pauses taken because memory neared its ceiling",
        )

        self._rollback_counter = self.meter.create_counter(
            name="migration.rollbacks",
            unit="rollbacks",
            description="Rollbacks attempted after failed runs",
        )

    def _setup_noop(self) -> None:
        """Set up no-op instruments when metrics are disabled."""
        self._records_counter = NoOpCounter()
        self._batch_duration_histogram = NoOpHistogram()
        self._phase_duration_histogram = NoOpHistogram()
        self._throttle_counter = NoOpCounter()
        self._rollback_counter = NoOpCounter()

    def _observe_memory_usage(self, options: CallbackOptions) -> Iterable[Observation]:
        """
        Callback for the observable memory gauge.

        Called by OpenTelemetry during metric collection.
        """
        yield Observation(value=self._memory_usage_mb)

    def record_records_processed(
        self,
        run_type: str,
        *,
        succeeded: int = 0,
        failed: int = 0,
        duplicates: int = 0,
    ) -> None:
        """
        Record the outcome counts of a batch.

        Args:
            run_type: Record type tag of the run
            succeeded: Records persisted
            failed: Records that failed
            duplicates: Records skipped as duplicates
        """
        for outcome, count in (
            ("succeeded", succeeded),
            ("failed", failed),
            ("duplicate", duplicates),
        ):
            if count <= 0:
                continue
            self._records_counter.add(count, {"run_type": run_type, "outcome": outcome})
            self._records_processed[outcome] = self._records_processed.get(outcome, 0) + count

    def record_batch_duration(self, run_type: str, duration_ms: float) -> None:
        """
        Record how long one batch took.

        Args:
            run_type: Record type tag of the run
            duration_ms: Duration in milliseconds
        """
        self._batch_duration_histogram.record(duration_ms, {"run_type": run_type})
        self._batch_durations.append(duration_ms)

    def record_phase_duration(
        self,
        run_type: str,
        phase: str,
        duration_seconds: float,
    ) -> None:
        """
        Record duration for a migration phase.

        Args:
            run_type: Record type tag of the run
            phase: Phase name (e.g., 'MIGRATING_DATA')
            duration_seconds: Duration in seconds
        """
        attrs = {"run_type": run_type, "phase": phase}
        self._phase_duration_histogram.record(duration_seconds, attrs)

        if phase not in self._phase_durations:
            self._phase_durations[phase] = 0.0
        self._phase_durations[phase] += duration_seconds

    def record_memory_usage(self, current_mb: float) -> None:
        """
        Update the memory value reported by the observable gauge.

        Args:
            current_mb: Memory usage in megabytes
        """
        self._memory_usage_mb = max(0.0, current_mb)

    def record_throttle_event(self) -> None:
        """Record a backpressure pause."""
        self._throttle_counter.add(1)
        self._throttle_events += 1

    def record_rollback(self, run_type: str, success: bool) -> None:
        """
        Record a rollback attempt.

        Args:
            run_type: Record type tag of the run
            success: Whether the rollback succeeded
        """
        self._rollback_counter.add(
            1, {"run_type": run_type, "success": str(success).lower()}
        )
        key = "success" if success else "failure"
        self._rollbacks[key] = self._rollbacks.get(key, 0) + 1

    @contextmanager
    def time_phase(self, run_type: str, phase: str) -> Generator[_PhaseTimer, None, None]:
        """
        Context manager for timing a migration phase.

        Automatically records the phase duration when the context exits,
        including when the phase raises.

        Args:
            run_type: Record type tag of the run
            phase: Phase name

        Example:
            >>> with metrics.time_phase("TRADE_DATA", "MIGRATING_DATA"):
            ...     await transfer()

        Yields:
            PhaseTimer object with duration_seconds property
        """
        timer = _PhaseTimer()
        timer.start()
        try:
            yield timer
        finally:
            timer.stop()
            self.record_phase_duration(run_type, phase, timer.duration_seconds)

    def get_snapshot(self) -> MigrationMetricSnapshot:
        """
        Get a snapshot of current metric values.

        Returns:
            MigrationMetricSnapshot with accumulated values
        """
        return MigrationMetricSnapshot(
            records_processed=dict(self._records_processed),
            batch_durations=list(self._batch_durations),
            phase_durations=dict(self._phase_durations),
            memory_usage_mb=self._memory_usage_mb,
            throttle_events=self._throttle_events,
            rollbacks=dict(self._rollbacks),
        )

    @property
    def metrics_enabled(self) -> bool:
        return self.enable_metrics

    @property
    def current_memory_usage_mb(self) -> float:
        return self._memory_usage_mb


class _PhaseTimer:
    """
    Internal timer for measuring phase duration.

    Used by the time_phase context manager.
    """

    def __init__(self) -> None:
        self._start: float = 0.0
        self._end: float = 0.0
        self._stopped: bool = False

    def start(self) -> None:
        self._start = time.perf_counter()
        self._stopped = False

    def stop(self) -> None:
        if not self._stopped:
            self._end = time.perf_counter()
            self._stopped = True

    @property
    def duration_seconds(self) -> float:
        """
        Get duration in seconds.

        Returns:
            Duration in seconds, or 0 if not started
        """
        if self._start == 0:
            return 0.0
        end = self._end if self._stopped else time.perf_counter()
        return end - self._start


__all__ = [
    "METER_NAME",
    "MigrationMetrics",
    "MigrationMetricSnapshot",
    "NoOpCounter",
    "NoOpHistogram",
]
