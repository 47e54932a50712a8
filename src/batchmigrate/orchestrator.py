"""
MigrationOrchestrator - Drives a migration run through its lifecycle.

The MigrationOrchestrator is the primary entry point of the engine. It
advances a run through its phases, hands the bulk work to the
BatchProcessor and turns every failure into a terminal result instead of an
exception.

Phases:
    INITIALIZING -> VALIDATING_SOURCE -> PREPARING_TARGET -> MIGRATING_DATA
        -> [VALIDATING_INTEGRITY] -> COMPLETING -> COMPLETED
    On an unrecoverable error: -> FAILED [-> ROLLING_BACK -> FAILED]

Responsibilities:
    - Phase transitions and state machine enforcement
    - Source and destination reachability checks before any write
    - Data transfer through the BatchProcessor, bounded by the run deadline
    - Integrity validation against the pre-run destination baseline
    - Rollback of failed runs that may have written data
    - Audit entries for every transition and lifecycle events for callers
    - Progress and result queries for runs started in the background

Usage:
    >>> from batchmigrate import MigrationOrchestrator, MigrationConfig, TRADE_MAPPING
    >>> from batchmigrate.stores import InMemoryAuditSink, InMemoryRecordSource
    >>>
    >>> orchestrator = MigrationOrchestrator(
    ...     store,
    ...     TRADE_MAPPING,
    ...     audit_sink=InMemoryAuditSink(),
    ... )
    >>>
    >>> # Run to completion
    >>> result = await orchestrator.run(InMemoryRecordSource(trades), MigrationConfig(batch_size=500))
    >>> print(f"{result.total_success} migrated, {result.total_failed} failed")
    >>>
    >>> # Or start in the background and poll
    >>> run_id = await orchestrator.start(InMemoryRecordSource(trades))
    >>> snapshot = await orchestrator.get_progress(run_id)
    >>> result = await orchestrator.wait(run_id)
"""

from __future__ import annotations

import asyncio
import contextlib
import inspect
import logging
import time
from collections.abc import Callable, Mapping
from datetime import UTC, datetime
from types import TracebackType
from typing import Any

from batchmigrate.audit import DEFAULT_APPEND_TIMEOUT_SECONDS, AuditLogger
from batchmigrate.batch_processor import BatchProcessor, UndoLog
from batchmigrate.exceptions import (
    IntegrityCheckError,
    InvalidPhaseTransitionError,
    MigrationError,
    MigrationTimeoutError,
    RunNotFoundError,
    SourceUnavailableError,
    TargetUnavailableError,
)
from batchmigrate.governor import ResourceGovernor
from batchmigrate.mappings import RecordMapping
from batchmigrate.metrics import MigrationMetrics
from batchmigrate.models import (
    AuditAction,
    IntegrityReport,
    MigrationConfig,
    MigrationErrorRecord,
    MigrationEvent,
    MigrationPhase,
    MigrationResult,
    MigrationRun,
    ProgressSnapshot,
    RollbackRecord,
)
from batchmigrate.observability import (
    ATTR_ITEMS_TOTAL,
    ATTR_RUN_DRY_RUN,
    ATTR_RUN_ID,
    ATTR_RUN_PHASE,
    ATTR_RUN_TYPE,
    Tracer,
    create_tracer,
)
from batchmigrate.progress import DEFAULT_SINK_TIMEOUT_SECONDS, ProgressTracker
from batchmigrate.protocols import (
    AuditSink,
    DestinationStore,
    EventSink,
    ProgressSink,
    RecordSource,
    StoreScope,
)
from batchmigrate.registry import DEFAULT_MAX_FINISHED_RUNS, RunHandle, RunRegistry
from batchmigrate.rollback import RollbackManager

logger = logging.getLogger(__name__)

IntegrityPolicy = Callable[[IntegrityReport], bool]
"""Returns True when an integrity mismatch should fail the run."""

EVENT_STARTED = "migration.started"
EVENT_COMPLETED = "migration.completed"
EVENT_FAILED = "migration.failed"


def lenient_integrity_policy(report: IntegrityReport) -> bool:
    """Never fail a run over an integrity mismatch."""
    return False


def strict_integrity_policy(report: IntegrityReport) -> bool:
    """Fail a run on any integrity mismatch."""
    return not report.passed


class MigrationOrchestrator:
    """
    Runs migrations of one record type into one destination store.

    Example:
        >>> orchestrator = MigrationOrchestrator(
        ...     store=SQLAlchemyDestinationStore(engine, TRADE_MAPPING),
        ...     mapping=TRADE_MAPPING,
        ...     audit_sink=SQLAlchemyAuditSink(engine),
        ...     integrity_policy=strict_integrity_policy,
        ... )
        >>> async with orchestrator:
        ...     result = await orchestrator.run(source, {"batch_size": 500})

    Args:
        store: Destination store rows are written to
        mapping: Transform and natural key of the record type
        audit_sink: Destination for audit entries (None keeps no audit trail)
        governor: Resource governor (default: psutil-backed governor)
        metrics: Optional metrics container
        integrity_policy: Decides whether an integrity mismatch fails the run
        sink_timeout: Seconds to wait on an async progress or event sink
        audit_timeout: Seconds to wait on one audit sink append
        max_finished_runs: Finished results kept for lookup before the oldest
            are evicted
        tracer: Optional custom Tracer
        enable_tracing: Whether to enable OpenTelemetry tracing
    """

    def __init__(
        self,
        store: DestinationStore,
        mapping: RecordMapping,
        *,
        audit_sink: AuditSink | None = None,
        governor: ResourceGovernor | None = None,
        metrics: MigrationMetrics | None = None,
        integrity_policy: IntegrityPolicy = lenient_integrity_policy,
        sink_timeout: float = DEFAULT_SINK_TIMEOUT_SECONDS,
        audit_timeout: float = DEFAULT_APPEND_TIMEOUT_SECONDS,
        max_finished_runs: int = DEFAULT_MAX_FINISHED_RUNS,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        if sink_timeout <= 0:
            raise ValueError(f"sink_timeout must be positive, got {sink_timeout}")
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled
        self._store = store
        self._mapping = mapping
        self._metrics = metrics
        self._governor = governor or ResourceGovernor(
            metrics=metrics,
            tracer=self._tracer,
        )
        self._sink_timeout = sink_timeout
        self._audit = AuditLogger(
            audit_sink,
            tracer=self._tracer,
            append_timeout=audit_timeout,
        )
        self._rollback = RollbackManager(
            store,
            audit=self._audit,
            metrics=metrics,
            tracer=self._tracer,
        )
        self._integrity_policy = integrity_policy
        self._registry = RunRegistry(max_finished_runs)

    @property
    def governor(self) -> ResourceGovernor:
        return self._governor

    @property
    def mapping(self) -> RecordMapping:
        return self._mapping

    # =========================================================================
    # Public API
    # =========================================================================

    async def run(
        self,
        source: RecordSource,
        config: MigrationConfig | Mapping[str, Any] | None = None,
        *,
        progress_sink: ProgressSink | None = None,
        event_sink: EventSink | None = None,
    ) -> MigrationResult:
        """
        Run a migration to completion.

        Never raises for migration failures; they are reported on the
        result. Only an invalid configuration raises, before the run exists.

        Args:
            source: Record source to migrate from
            config: Configuration, a mapping of configuration values, or
                None for defaults
            progress_sink: Receives a snapshot after every batch
            event_sink: Receives lifecycle events

        Returns:
            Terminal result of the run

        Raises:
            ValueError: If the configuration is invalid
        """
        handle = await self._create_run(config)
        return await self._execute(handle, source, progress_sink, event_sink)

    async def start(
        self,
        source: RecordSource,
        config: MigrationConfig | Mapping[str, Any] | None = None,
        *,
        progress_sink: ProgressSink | None = None,
        event_sink: EventSink | None = None,
    ) -> str:
        """
        Start a migration in the background.

        Returns:
            Run id for get_progress(), get_result() and wait()

        Raises:
            ValueError: If the configuration is invalid
        """
        handle = await self._create_run(config)
        run_id = handle.run.run_id
        task = asyncio.create_task(
            self._execute(handle, source, progress_sink, event_sink),
            name=f"migration_{run_id}",
        )
        await self._registry.attach_task(run_id, task)
        return run_id

    async def get_progress(self, run_id: str) -> ProgressSnapshot:
        """
        Get the current progress of a run.

        Finished runs report their final snapshot.

        Raises:
            RunNotFoundError: If the run id is unknown
        """
        handle = await self._registry.get_live(run_id)
        if handle is not None:
            return self._tracker_for(None).snapshot(handle.run)

        finished = await self._registry.get_finished(run_id)
        if finished is not None:
            return finished.snapshot
        raise RunNotFoundError(run_id)

    async def get_result(self, run_id: str) -> MigrationResult | None:
        """
        Get the result of a run.

        Returns:
            The terminal result, or None while the run is in progress

        Raises:
            RunNotFoundError: If the run id is unknown
        """
        return await self._registry.get_result(run_id)

    async def wait(
        self,
        run_id: str,
        timeout: float | None = None,
        poll_interval: float = 0.05,
    ) -> MigrationResult:
        """
        Wait for a run to finish.

        Args:
            run_id: Run to wait for
            timeout: Maximum seconds to wait (None waits indefinitely)
            poll_interval: Polling interval for runs executed by run()

        Returns:
            Terminal result of the run

        Raises:
            RunNotFoundError: If the run id is unknown
            TimeoutError: If the run did not finish in time
        """
        handle = await self._registry.get_live(run_id)
        if handle is not None and handle.task is not None:
            return await asyncio.wait_for(asyncio.shield(handle.task), timeout)

        async def _poll() -> MigrationResult:
            while True:
                result = await self._registry.get_result(run_id)
                if result is not None:
                    return result
                await asyncio.sleep(poll_interval)

        return await asyncio.wait_for(_poll(), timeout)

    async def list_active_runs(self) -> list[ProgressSnapshot]:
        """Get snapshots of every run still in progress."""
        snapshots = []
        for run_id in await self._registry.live_run_ids():
            with contextlib.suppress(RunNotFoundError):
                snapshots.append(await self.get_progress(run_id))
        return snapshots

    async def forget(self, run_id: str) -> bool:
        """
        Release the stored result and final snapshot of a finished run.

        Live runs are left alone.

        Returns:
            True if a finished run was released
        """
        return await self._registry.forget(run_id)

    async def __aenter__(self) -> MigrationOrchestrator:
        await self._governor.start()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self._governor.stop()

    # =========================================================================
    # Run execution
    # =========================================================================

    async def _create_run(
        self,
        config: MigrationConfig | Mapping[str, Any] | None,
    ) -> RunHandle:
        resolved = _resolve_config(config)
        run = MigrationRun.create(self._mapping.type_tag, resolved)
        handle = await self._registry.register(run)
        if self._registry.live_count == 1:
            self._governor.sample(resolved.memory_limit_mb)
            self._governor.reset_peak()
        return handle

    async def _execute(
        self,
        handle: RunHandle,
        source: RecordSource,
        progress_sink: ProgressSink | None,
        event_sink: EventSink | None,
    ) -> MigrationResult:
        run = handle.run
        config = run.config
        tracker = self._tracker_for(progress_sink)
        processor = BatchProcessor(
            self._store,
            self._mapping,
            self._governor,
            progress=tracker,
            audit=self._audit,
            metrics=self._metrics,
            tracer=self._tracer,
        )
        deadline = time.monotonic() + config.timeout_ms / 1000
        integrity: IntegrityReport | None = None
        rollback: RollbackRecord | None = None

        with self._tracer.span(
            "batchmigrate.orchestrator.run",
            {
                ATTR_RUN_ID: run.run_id,
                ATTR_RUN_TYPE: run.type_tag,
                ATTR_RUN_DRY_RUN: config.dry_run,
            },
        ):
            logger.info(
                "Starting migration run %s (%s, batch_size=%d, max_concurrency=%d, dry_run=%s)",
                run.run_id,
                run.type_tag,
                config.batch_size,
                config.max_concurrency,
                config.dry_run,
            )
            await self._audit.log(run, AuditAction.RUN_STARTED, {"config": config.to_dict()})
            await self._emit(event_sink, EVENT_STARTED, run, {"config": config.to_dict()})

            try:
                await self._validate_source(run, source)
                await self._prepare_target(run)
                await self._migrate_data(run, source, processor, handle.undo_log, deadline)
                if config.validate_integrity:
                    integrity = await self._validate_integrity(run)
                await self._transition(run, MigrationPhase.COMPLETING)
                await self._transition(run, MigrationPhase.COMPLETED)
            except asyncio.CancelledError:
                cancelled = MigrationError("Migration run was cancelled", run_id=run.run_id)
                rollback = await self._fail(run, cancelled, handle.undo_log)
                await self._finish(run, tracker, event_sink, rollback, integrity)
                raise
            except Exception as e:
                rollback = await self._fail(run, e, handle.undo_log)

            return await self._finish(run, tracker, event_sink, rollback, integrity)

    async def _validate_source(self, run: MigrationRun, source: RecordSource) -> None:
        await self._transition(run, MigrationPhase.VALIDATING_SOURCE)
        with self._time_phase(run, MigrationPhase.VALIDATING_SOURCE):
            try:
                total = await source.count()
            except Exception as e:
                raise SourceUnavailableError(
                    f"Record source check failed: {e}",
                    run_id=run.run_id,
                    context={"error_type": type(e).__name__},
                ) from e

            if total < 0:
                raise SourceUnavailableError(
                    f"Record source reported a negative count: {total}",
                    run_id=run.run_id,
                )
            run.total_items = total
            logger.debug("Run %s: source holds %d records", run.run_id, total)

    async def _prepare_target(self, run: MigrationRun) -> None:
        await self._transition(run, MigrationPhase.PREPARING_TARGET)
        with self._time_phase(run, MigrationPhase.PREPARING_TARGET):
            try:
                await self._store.ping()
                run.baseline_count = await self._store.count()
            except Exception as e:
                raise TargetUnavailableError(
                    f"Destination store check failed: {e}",
                    run_id=run.run_id,
                    context={"error_type": type(e).__name__},
                ) from e
            logger.debug(
                "Run %s: destination holds %d rows before migration",
                run.run_id,
                run.baseline_count,
            )

    async def _migrate_data(
        self,
        run: MigrationRun,
        source: RecordSource,
        processor: BatchProcessor,
        undo_log: UndoLog,
        deadline: float,
    ) -> None:
        await self._transition(run, MigrationPhase.MIGRATING_DATA)
        with (
            self._time_phase(run, MigrationPhase.MIGRATING_DATA),
            self._tracer.span(
                "batchmigrate.orchestrator.migrate_data",
                {ATTR_RUN_ID: run.run_id, ATTR_ITEMS_TOTAL: run.total_items},
            ),
        ):
            groups = source.groups().__aiter__()
            while True:
                try:
                    group, records = await groups.__anext__()
                except StopAsyncIteration:
                    break
                except Exception as e:
                    raise SourceUnavailableError(
                        f"Reading records from the source failed: {e}",
                        run_id=run.run_id,
                        context={"error_type": type(e).__name__},
                    ) from e

                if time.monotonic() >= deadline:
                    raise MigrationTimeoutError(
                        run.config.timeout_ms,
                        run_id=run.run_id,
                        outcomes=run.outcomes,
                    )

                await processor.process_all(
                    run,
                    group,
                    records,
                    run.config,
                    undo_log=undo_log,
                    deadline=deadline,
                )

            if time.monotonic() >= deadline:
                raise MigrationTimeoutError(
                    run.config.timeout_ms,
                    run_id=run.run_id,
                    outcomes=run.outcomes,
                )

            logger.info(
                "Run %s transferred %d records: %d succeeded, %d failed, %d duplicates",
                run.run_id,
                run.processed,
                run.succeeded,
                run.failed,
                run.duplicates,
            )

    async def _validate_integrity(self, run: MigrationRun) -> IntegrityReport:
        await self._transition(run, MigrationPhase.VALIDATING_INTEGRITY)
        with self._time_phase(run, MigrationPhase.VALIDATING_INTEGRITY):
            baseline = run.baseline_count or 0
            expected = baseline if run.config.dry_run else baseline + run.succeeded

            async def _count(scope: StoreScope) -> int:
                return await scope.count()

            try:
                actual = await self._store.execute(_count)
            except Exception as e:
                raise TargetUnavailableError(
                    f"Destination re-count failed: {e}",
                    run_id=run.run_id,
                    context={"error_type": type(e).__name__},
                ) from e

            report = IntegrityReport(expected=expected, actual=actual)
            await self._audit.log(run, AuditAction.INTEGRITY_CHECKED, report.to_dict())

            if report.passed:
                logger.debug("Run %s: integrity check passed (%d rows)", run.run_id, actual)
                return report

            error = IntegrityCheckError(expected, actual, run_id=run.run_id)
            if self._integrity_policy(report):
                raise error

            logger.warning(
                "Run %s: destination holds %d rows, expected %d",
                run.run_id,
                actual,
                expected,
            )
            run.errors.append(error.to_record(run.phase))
            run.warnings.append(error.message)
            return report

    async def _fail(
        self,
        run: MigrationRun,
        error: BaseException,
        undo_log: UndoLog,
    ) -> RollbackRecord | None:
        """
        Move a run to FAILED, rolling it back if it may have written data.

        Returns:
            The rollback outcome, or None if no rollback was attempted
        """
        failed_phase = run.phase
        record = MigrationErrorRecord.from_exception(error, failed_phase)
        run.errors.append(record)

        if isinstance(error, MigrationError):
            logger.error(
                "Migration run %s failed in %s: %s",
                run.run_id,
                failed_phase.value,
                error.message,
            )
        else:
            logger.error(
                "Migration run %s failed in %s: %s",
                run.run_id,
                failed_phase.value,
                error,
                exc_info=error,
            )

        await self._transition(
            run,
            MigrationPhase.FAILED,
            {"error_code": record.error_code, "message": record.message},
        )

        if not run.config.enable_rollback or not failed_phase.follows_writes:
            return None

        await self._transition(run, MigrationPhase.ROLLING_BACK)
        with self._time_phase(run, MigrationPhase.ROLLING_BACK):
            rollback = await self._rollback.rollback(run, undo_log)
        await self._transition(run, MigrationPhase.FAILED, {"rollback": rollback.to_dict()})
        return rollback

    async def _finish(
        self,
        run: MigrationRun,
        tracker: ProgressTracker,
        event_sink: EventSink | None,
        rollback: RollbackRecord | None,
        integrity: IntegrityReport | None,
    ) -> MigrationResult:
        result = MigrationResult.from_run(
            run,
            peak_memory_usage_mb=self._governor.peak_mb,
            rollback=rollback,
            integrity=integrity,
        )
        run.completed_at = run.updated_at

        completed = run.phase == MigrationPhase.COMPLETED
        summary = {
            "success": result.success,
            "total_processed": result.total_processed,
            "total_success": result.total_success,
            "total_failed": result.total_failed,
            "total_duplicates": result.total_duplicates,
            "execution_time_ms": result.execution_time_ms,
        }
        await self._audit.log(
            run,
            AuditAction.RUN_COMPLETED if completed else AuditAction.RUN_FAILED,
            summary,
        )
        self._audit.forget(run.run_id)

        await self._registry.finish(run.run_id, tracker.snapshot(run), result)
        await self._emit(
            event_sink,
            EVENT_COMPLETED if completed else EVENT_FAILED,
            run,
            result.to_dict(),
        )

        logger.info(
            "Migration run %s finished %s in %.1fms: %d processed, %d succeeded, "
            "%d failed, %d duplicates (%.1f records/s)",
            run.run_id,
            run.phase.value,
            result.execution_time_ms,
            result.total_processed,
            result.total_success,
            result.total_failed,
            result.total_duplicates,
            result.throughput_per_second,
        )
        return result

    # =========================================================================
    # Helpers
    # =========================================================================

    async def _transition(
        self,
        run: MigrationRun,
        target: MigrationPhase,
        details: dict[str, Any] | None = None,
    ) -> None:
        """
        Move a run to a new phase and audit the transition.

        Raises:
            InvalidPhaseTransitionError: If the state machine forbids it
        """
        if not run.can_transition_to(target):
            raise InvalidPhaseTransitionError(run.run_id, run.phase, target)

        previous = run.phase
        run.phase = target
        run.updated_at = datetime.now(UTC)

        with self._tracer.span(
            "batchmigrate.orchestrator.transition",
            {ATTR_RUN_ID: run.run_id, ATTR_RUN_PHASE: target.value},
        ):
            logger.info(
                "Migration run %s: %s -> %s",
                run.run_id,
                previous.value,
                target.value,
            )
            await self._audit.log(
                run,
                AuditAction.PHASE_CHANGED,
                {"from": previous.value, "to": target.value, **(details or {})},
                memory_usage_mb=self._governor.current_mb,
            )

    def _tracker_for(self, sink: ProgressSink | None) -> ProgressTracker:
        return ProgressTracker(
            sink,
            memory_reader=lambda: self._governor.current_mb,
            sink_timeout=self._sink_timeout,
        )

    def _time_phase(
        self,
        run: MigrationRun,
        phase: MigrationPhase,
    ) -> contextlib.AbstractContextManager[Any]:
        if self._metrics is None:
            return contextlib.nullcontext()
        return self._metrics.time_phase(run.type_tag, phase.value)

    async def _emit(
        self,
        sink: EventSink | None,
        name: str,
        run: MigrationRun,
        payload: dict[str, Any],
    ) -> None:
        if sink is None:
            return
        event = MigrationEvent(name=name, run_id=run.run_id, payload=payload)
        try:
            result = sink(event)
            if inspect.isawaitable(result):
                await asyncio.wait_for(result, timeout=self._sink_timeout)
        except TimeoutError:
            logger.warning(
                "Event sink timed out after %.2fs for %s of run %s",
                self._sink_timeout,
                name,
                run.run_id,
            )
        except Exception as e:
            logger.warning(
                "Event sink failed for %s of run %s: %s",
                name,
                run.run_id,
                e,
                exc_info=True,
            )


def _resolve_config(config: MigrationConfig | Mapping[str, Any] | None) -> MigrationConfig:
    if config is None:
        return MigrationConfig()
    if isinstance(config, MigrationConfig):
        return config
    if isinstance(config, Mapping):
        return MigrationConfig.from_dict(dict(config))
    raise TypeError(f"Unsupported configuration type: {type(config).__name__}")


__all__ = [
    "EVENT_COMPLETED",
    "EVENT_FAILED",
    "EVENT_STARTED",
    "IntegrityPolicy",
    "MigrationOrchestrator",
    "lenient_integrity_policy",
    "strict_integrity_policy",
]
