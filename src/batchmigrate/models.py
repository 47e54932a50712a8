"""
Data models for the batchmigrate engine.

Models in this module:

Enums:
    - MigrationPhase: Run lifecycle phases and their state machine
    - AuditAction: Kinds of audit entries

Configuration:
    - MigrationConfig: Per-run configuration snapshot

Core Models:
    - MigrationRun: One invocation of the engine (mutable, orchestrator-owned)
    - BatchOutcome: Result of processing one batch
    - MigrationErrorRecord: One timestamped, phase-tagged failure
    - ResourceSample: Memory reading with ceiling information
    - AuditEntry: Immutable audit log record
    - RollbackRecord: Outcome of undoing a failed run
    - IntegrityReport: Post-migration count comparison
    - ProgressSnapshot: Point-in-time progress of a run
    - MigrationResult: Final result of a run
    - MigrationEvent: Lifecycle notification delivered to an event sink

Collaborator responses:
    - InsertResult, BulkItemError, BulkInsertResult
"""

from __future__ import annotations

import secrets
import string
import time
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from batchmigrate.exceptions import (
    ErrorCategory,
    ErrorSeverity,
    classify_exception,
)

_RUN_ID_ALPHABET = string.ascii_lowercase + string.digits


class MigrationPhase(Enum):
    """
    Migration run lifecycle phases.

    State machine transitions:
        INITIALIZING -> VALIDATING_SOURCE -> PREPARING_TARGET -> MIGRATING_DATA
            -> [VALIDATING_INTEGRITY] -> COMPLETING -> COMPLETED

        Any non-terminal phase -> FAILED (unrecoverable error)
        FAILED -> ROLLING_BACK -> FAILED (rollback never resurrects a run)

    Attributes:
        INITIALIZING: Run created, configuration captured.
        VALIDATING_SOURCE: Probing the record source.
        PREPARING_TARGET: Probing the destination store.
        MIGRATING_DATA: Batches being transferred.
        VALIDATING_INTEGRITY: Re-counting the destination.
        COMPLETING: Folding outcomes into the final result.
        ROLLING_BACK: Undoing a failed run's writes.
        COMPLETED: Run finished its lifecycle normally.
        FAILED: Run stopped on an unrecoverable error.
    """

    INITIALIZING = "INITIALIZING"
    VALIDATING_SOURCE = "VALIDATING_SOURCE"
    PREPARING_TARGET = "PREPARING_TARGET"
    MIGRATING_DATA = "MIGRATING_DATA"
    VALIDATING_INTEGRITY = "VALIDATING_INTEGRITY"
    COMPLETING = "COMPLETING"
    ROLLING_BACK = "ROLLING_BACK"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        """
        Check if this is a terminal phase.

        Returns:
            True for COMPLETED and FAILED.
        """
        return self in (MigrationPhase.COMPLETED, MigrationPhase.FAILED)

    @property
    def follows_writes(self) -> bool:
        """
        Check if the destination may hold rows written by the run.

        A run failing in one of these phases has its writes rolled back.
        """
        return self in (
            MigrationPhase.MIGRATING_DATA,
            MigrationPhase.VALIDATING_INTEGRITY,
            MigrationPhase.COMPLETING,
        )

    def can_transition_to(self, target: MigrationPhase) -> bool:
        """
        Check if transition to target phase is valid.

        Args:
            target: The target phase to transition to.

        Returns:
            True if the transition is valid.
        """
        if self == MigrationPhase.COMPLETED:
            return False

        if self == MigrationPhase.FAILED:
            return target == MigrationPhase.ROLLING_BACK

        if self == MigrationPhase.ROLLING_BACK:
            return target == MigrationPhase.FAILED

        if target == MigrationPhase.FAILED:
            return True

        valid_transitions: dict[MigrationPhase, list[MigrationPhase]] = {
            MigrationPhase.INITIALIZING: [MigrationPhase.VALIDATING_SOURCE],
            MigrationPhase.VALIDATING_SOURCE: [MigrationPhase.PREPARING_TARGET],
            MigrationPhase.PREPARING_TARGET: [MigrationPhase.MIGRATING_DATA],
            MigrationPhase.MIGRATING_DATA: [
                MigrationPhase.VALIDATING_INTEGRITY,
                MigrationPhase.COMPLETING,
            ],
            MigrationPhase.VALIDATING_INTEGRITY: [MigrationPhase.COMPLETING],
            MigrationPhase.COMPLETING: [MigrationPhase.COMPLETED],
        }

        return target in valid_transitions.get(self, [])


class AuditAction(Enum):
    """
    Types of audit entries written during a run.

    Attributes:
        RUN_STARTED: A run was created.
        PHASE_CHANGED: The run moved to a new phase.
        BATCH_COMPLETED: A batch finished (counts in details).
        INTEGRITY_CHECKED: Destination re-count compared against expectation.
        ROLLBACK_STARTED: Undo of a failed run began.
        ROLLBACK_COMPLETED: Undo finished successfully.
        ROLLBACK_FAILED: Undo failed; data may remain in the destination.
        RUN_COMPLETED: The run reached COMPLETED.
        RUN_FAILED: The run reached FAILED.
    """

    RUN_STARTED = "run_started"
    PHASE_CHANGED = "phase_changed"
    BATCH_COMPLETED = "batch_completed"
    INTEGRITY_CHECKED = "integrity_checked"
    ROLLBACK_STARTED = "rollback_started"
    ROLLBACK_COMPLETED = "rollback_completed"
    ROLLBACK_FAILED = "rollback_failed"
    RUN_COMPLETED = "run_completed"
    RUN_FAILED = "run_failed"


@dataclass(frozen=True)
class MigrationConfig:
    """
    Configuration for one migration run.

    Immutable so the run's configuration snapshot cannot drift mid-run.

    Attributes:
        batch_size: Records per batch (default 1000).
        max_concurrency: Batches processed concurrently (default 4).
        memory_limit_mb: Memory ceiling enforced by the governor (default 500).
        timeout_ms: Deadline for reaching COMPLETING (default 300000).
        validate_integrity: Re-count the destination after transfer (default True).
        enable_rollback: Undo writes when the run fails (default True).
        enable_audit_logging: Write audit entries to the audit sink (default True).
        skip_duplicates: Skip records whose natural key already exists (default True).
        dry_run: Run the full control flow without persisting (default False).
        use_bulk_insert: Use the store's bulk path when it offers one (default True).
        throttle_pause_ms: Pause taken when memory nears the ceiling (default 100).

    Example:
        >>> config = MigrationConfig(batch_size=500, max_concurrency=8)
        >>> config.batch_size
        500
    """

    batch_size: int = 1000
    max_concurrency: int = 4
    memory_limit_mb: float = 500
    timeout_ms: int = 300000
    validate_integrity: bool = True
    enable_rollback: bool = True
    enable_audit_logging: bool = True
    skip_duplicates: bool = True
    dry_run: bool = False
    use_bulk_insert: bool = True
    throttle_pause_ms: int = 100

    def __post_init__(self) -> None:
        """Validate configuration values."""
        if self.batch_size < 1:
            raise ValueError(f"batch_size must be >= 1, got {self.batch_size}")

        if self.max_concurrency < 1:
            raise ValueError(f"max_concurrency must be >= 1, got {self.max_concurrency}")

        if self.memory_limit_mb <= 0:
            raise ValueError(f"memory_limit_mb must be > 0, got {self.memory_limit_mb}")

        if self.timeout_ms < 1:
            raise ValueError(f"timeout_ms must be >= 1, got {self.timeout_ms}")

        if self.throttle_pause_ms < 0:
            raise ValueError(f"throttle_pause_ms must be >= 0, got {self.throttle_pause_ms}")

    def to_dict(self) -> dict[str, Any]:
        """
        Convert to dictionary for JSON storage.

        Returns:
            Dictionary representation suitable for JSON serialization.
        """
        return {
            "batch_size": self.batch_size,
            "max_concurrency": self.max_concurrency,
            "memory_limit_mb": self.memory_limit_mb,
            "timeout_ms": self.timeout_ms,
            "validate_integrity": self.validate_integrity,
            "enable_rollback": self.enable_rollback,
            "enable_audit_logging": self.enable_audit_logging,
            "skip_duplicates": self.skip_duplicates,
            "dry_run": self.dry_run,
            "use_bulk_insert": self.use_bulk_insert,
            "throttle_pause_ms": self.throttle_pause_ms,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> MigrationConfig:
        """
        Create from dictionary.

        Unknown keys are rejected so that typos do not silently fall back
        to defaults.

        Args:
            data: Dictionary containing configuration values.

        Returns:
            MigrationConfig instance.

        Raises:
            ValueError: If a key is unknown or a value is out of range.
        """
        defaults = cls()
        unknown = set(data) - set(defaults.to_dict())
        if unknown:
            raise ValueError(f"Unknown configuration keys: {sorted(unknown)}")

        return cls(
            batch_size=data.get("batch_size", defaults.batch_size),
            max_concurrency=data.get("max_concurrency", defaults.max_concurrency),
            memory_limit_mb=data.get("memory_limit_mb", defaults.memory_limit_mb),
            timeout_ms=data.get("timeout_ms", defaults.timeout_ms),
            validate_integrity=data.get("validate_integrity", defaults.validate_integrity),
            enable_rollback=data.get("enable_rollback", defaults.enable_rollback),
            enable_audit_logging=data.get("enable_audit_logging", defaults.enable_audit_logging),
            skip_duplicates=data.get("skip_duplicates", defaults.skip_duplicates),
            dry_run=data.get("dry_run", defaults.dry_run),
            use_bulk_insert=data.get("use_bulk_insert", defaults.use_bulk_insert),
            throttle_pause_ms=data.get("throttle_pause_ms", defaults.throttle_pause_ms),
        )


@dataclass(frozen=True)
class MigrationErrorRecord:
    """
    One failure encountered during a run.

    Append-only: records are collected on batches and runs but never changed.

    Attributes:
        timestamp: When the failure happened.
        phase: Phase the run was in.
        error_code: Stable code for programmatic handling.
        message: Human-readable description.
        category: Taxonomy bucket of the failure.
        recoverable: Whether the run carried on past it.
        item_id: Identifier of the record involved, for item-scoped errors.
        context: Extra structured context.
    """

    timestamp: datetime
    phase: MigrationPhase
    error_code: str
    message: str
    category: ErrorCategory
    recoverable: bool
    item_id: str | None = None
    context: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_exception(
        cls,
        exc: BaseException,
        phase: MigrationPhase,
        *,
        item_id: str | None = None,
        error_code: str | None = None,
        recoverable: bool | None = None,
        context: dict[str, Any] | None = None,
    ) -> MigrationErrorRecord:
        """
        Build a record from an exception using its classification.

        Args:
            exc: The exception to describe.
            phase: Phase the run was in.
            item_id: Identifier of the record involved, if any.
            error_code: Overrides the classification's error code.
            recoverable: Overrides the classification's recoverable flag.
            context: Extra context merged over the exception's own.

        Returns:
            MigrationErrorRecord instance.
        """
        classification = classify_exception(exc)
        merged_context = dict(getattr(exc, "context", None) or {})
        if context:
            merged_context.update(context)
        return cls(
            timestamp=datetime.now(UTC),
            phase=phase,
            error_code=error_code or classification.error_code,
            message=getattr(exc, "message", None) or str(exc) or type(exc).__name__,
            category=classification.category,
            recoverable=classification.recoverable if recoverable is None else recoverable,
            item_id=item_id or getattr(exc, "item_id", None),
            context=merged_context,
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "timestamp": self.timestamp.isoformat(),
            "phase": self.phase.value,
            "error_code": self.error_code,
            "message": self.message,
            "category": self.category.value,
            "recoverable": self.recoverable,
            "item_id": self.item_id,
            "context": self.context,
        }


@dataclass(frozen=True)
class BatchOutcome:
    """
    Result of processing one batch.

    Immutable once produced; folded into the run's counters and never
    mutated afterwards. ``processed == succeeded + failed + duplicates``.

    Attributes:
        batch_id: Identifier of the batch within its run.
        group: Logical group the batch belongs to.
        processed: Items looked at.
        succeeded: Items persisted (or counted as persisted in dry run).
        failed: Items that failed transformation or persistence.
        duplicates: Items skipped because they already existed.
        elapsed_ms: Wall time spent on the batch.
        errors: Per-item error records.
        bulk: Whether the bulk insert path was used.
    """

    batch_id: str
    group: str
    processed: int
    succeeded: int
    failed: int
    duplicates: int
    elapsed_ms: float
    errors: tuple[MigrationErrorRecord, ...] = ()
    bulk: bool = False

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "batch_id": self.batch_id,
            "group": self.group,
            "processed": self.processed,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "duplicates": self.duplicates,
            "elapsed_ms": self.elapsed_ms,
            "error_count": len(self.errors),
            "bulk": self.bulk,
        }


@dataclass(frozen=True)
class ResourceSample:
    """
    Memory reading taken by the resource governor.

    Attributes:
        current_mb: Memory in use when sampled.
        peak_mb: Highest reading seen since start or the last reset.
        limit_mb: Ceiling the reading is compared against.
        sampled_at: When the reading was taken.
    """

    current_mb: float
    peak_mb: float
    limit_mb: float
    sampled_at: datetime

    @property
    def near_limit(self) -> bool:
        """True when usage is above 80% of the ceiling."""
        return self.current_mb > self.limit_mb * 0.8

    @property
    def over_limit(self) -> bool:
        """True when usage is above the ceiling."""
        return self.current_mb > self.limit_mb


@dataclass(frozen=True)
class AuditEntry:
    """
    Audit log entry for a run.

    Immutable and append-only; the engine never updates or deletes entries.

    Attributes:
        run_id: Run this entry belongs to.
        sequence: Emission order within the run (1-based).
        timestamp: When the entry was written.
        phase: Run phase at the time of writing.
        action: What happened.
        details: Free-form detail.
        counters: processed/succeeded/failed/duplicates at time of writing.
        severity: INFO for normal events, CRITICAL for failed rollbacks.
        memory_usage_mb: Memory reading at time of writing.
    """

    run_id: str
    sequence: int
    timestamp: datetime
    phase: MigrationPhase
    action: AuditAction
    details: dict[str, Any]
    counters: dict[str, int]
    severity: ErrorSeverity = ErrorSeverity.INFO
    memory_usage_mb: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "run_id": self.run_id,
            "sequence": self.sequence,
            "timestamp": self.timestamp.isoformat(),
            "phase": self.phase.value,
            "action": self.action.value,
            "details": self.details,
            "counters": self.counters,
            "severity": self.severity.value,
            "memory_usage_mb": self.memory_usage_mb,
        }


@dataclass(frozen=True)
class RollbackRecord:
    """
    Result of a rollback attempt, produced at most once per failed run.

    Attributes:
        rollback_id: Identifier of the rollback.
        items_undone: Records removed from the destination.
        elapsed_ms: Time spent undoing.
        success: Whether the undo itself succeeded.
        error_message: Why the undo failed, if it did.
    """

    rollback_id: str
    items_undone: int
    elapsed_ms: float
    success: bool
    error_message: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "rollback_id": self.rollback_id,
            "items_undone": self.items_undone,
            "elapsed_ms": self.elapsed_ms,
            "success": self.success,
            "error_message": self.error_message,
        }


@dataclass(frozen=True)
class IntegrityReport:
    """
    Comparison of the destination count against expectation.

    Attributes:
        expected: Baseline count plus records written by this run.
        actual: Count observed after transfer.
    """

    expected: int
    actual: int

    @property
    def difference(self) -> int:
        return self.actual - self.expected

    @property
    def passed(self) -> bool:
        return self.difference == 0

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "expected": self.expected,
            "actual": self.actual,
            "difference": self.difference,
            "passed": self.passed,
        }


@dataclass(frozen=True)
class ProgressSnapshot:
    """
    Point-in-time progress of a run.

    Attributes:
        run_id: Run identifier.
        phase: Current phase.
        total_items: Items reported by the source.
        processed: Items processed so far.
        succeeded: Items persisted so far.
        failed: Items failed so far.
        duplicates: Items skipped as duplicates so far.
        throughput_per_second: processed / elapsed seconds.
        eta_ms: Estimated milliseconds remaining (0 when unknown).
        memory_usage_mb: Latest memory reading.
        started_at: When the run started.
        updated_at: When the snapshot was taken.
        error_count: Errors recorded so far.
    """

    run_id: str
    phase: MigrationPhase
    total_items: int
    processed: int
    succeeded: int
    failed: int
    duplicates: int
    throughput_per_second: float
    eta_ms: float
    memory_usage_mb: float
    started_at: datetime
    updated_at: datetime
    error_count: int = 0

    @property
    def progress_percent(self) -> float:
        """
        Calculate progress percentage (0-100).

        Returns:
            Progress as a percentage, 0.0 when the total is unknown.
        """
        if self.total_items == 0:
            return 0.0
        return min(100.0, (self.processed / self.total_items) * 100)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "run_id": self.run_id,
            "phase": self.phase.value,
            "total_items": self.total_items,
            "processed": self.processed,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "duplicates": self.duplicates,
            "progress_percent": self.progress_percent,
            "throughput_per_second": self.throughput_per_second,
            "eta_ms": self.eta_ms,
            "memory_usage_mb": self.memory_usage_mb,
            "started_at": self.started_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "error_count": self.error_count,
        }


def generate_run_id(type_tag: str) -> str:
    """
    Build a run identifier from a type tag, the current time and a random suffix.

    Example:
        >>> generate_run_id("TRADE_DATA")  # doctest: +SKIP
        'TRADE_DATA_1700000000000_k3j9x0abc'
    """
    suffix = "".join(secrets.choice(_RUN_ID_ALPHABET) for _ in range(9))
    return f"{type_tag}_{int(time.time() * 1000)}_{suffix}"


@dataclass
class MigrationRun:
    """
    One invocation of the engine.

    Mutable because phase and counters change throughout the run. Owned by
    the orchestrator; counters are also advanced by the progress tracker.

    Attributes:
        run_id: Unique run identifier.
        type_tag: Record type tag used in the run id.
        config: Configuration snapshot.
        phase: Current phase (single source of truth for progress queries).
        started_at: When the run was created.
        updated_at: When the run last changed.
        completed_at: When the run reached a terminal phase.
        total_items: Items reported by the source count.
        processed: Items processed.
        succeeded: Items persisted.
        failed: Items failed.
        duplicates: Items skipped as duplicates.
        errors: Append-only failure records.
        warnings: Non-fatal conditions surfaced on the result.
        outcomes: Batch outcomes in completion order.
        baseline_count: Destination count before any write.
    """

    run_id: str
    type_tag: str
    config: MigrationConfig
    phase: MigrationPhase = MigrationPhase.INITIALIZING
    started_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    updated_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    completed_at: datetime | None = None
    total_items: int = 0
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    duplicates: int = 0
    errors: list[MigrationErrorRecord] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    outcomes: list[BatchOutcome] = field(default_factory=list)
    baseline_count: int | None = None
    _started_monotonic: float = field(default_factory=time.monotonic, repr=False)

    @classmethod
    def create(cls, type_tag: str, config: MigrationConfig) -> MigrationRun:
        """Create a run in INITIALIZING with a freshly generated id."""
        return cls(run_id=generate_run_id(type_tag), type_tag=type_tag, config=config)

    @property
    def elapsed_seconds(self) -> float:
        """Seconds since the run was created."""
        return time.monotonic() - self._started_monotonic

    @property
    def is_terminal(self) -> bool:
        return self.phase.is_terminal

    @property
    def remaining(self) -> int:
        return max(0, self.total_items - self.processed)

    def counters(self) -> dict[str, int]:
        """Counter values for audit entries."""
        return {
            "processed": self.processed,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "duplicates": self.duplicates,
        }

    def can_transition_to(self, target_phase: MigrationPhase) -> bool:
        return self.phase.can_transition_to(target_phase)


@dataclass(frozen=True)
class MigrationResult:
    """
    Final result of a run.

    Always populated once the run is terminal: failed runs carry
    ``success=False``, the itemized errors and the rollback outcome.

    Attributes:
        run_id: Run identifier.
        success: True when the run COMPLETED with no failed items.
        final_phase: COMPLETED or FAILED.
        total_processed: Items processed.
        total_success: Items persisted.
        total_failed: Items failed.
        total_duplicates: Items skipped as duplicates.
        batch_count: Number of batch outcomes.
        execution_time_ms: Wall time of the run.
        throughput_per_second: Processed items per second.
        peak_memory_usage_mb: Peak memory reading during the run.
        errors: All failure records.
        warnings: Non-fatal conditions (integrity mismatch, failed rollback).
        rollback: Rollback outcome, if one was attempted.
        integrity: Integrity report, if the check ran.
    """

    run_id: str
    success: bool
    final_phase: MigrationPhase
    total_processed: int
    total_success: int
    total_failed: int
    total_duplicates: int
    batch_count: int
    execution_time_ms: float
    throughput_per_second: float
    peak_memory_usage_mb: float
    errors: tuple[MigrationErrorRecord, ...] = ()
    warnings: tuple[str, ...] = ()
    rollback: RollbackRecord | None = None
    integrity: IntegrityReport | None = None

    @property
    def item_errors(self) -> list[MigrationErrorRecord]:
        """Errors scoped to a single record."""
        return [error for error in self.errors if error.item_id is not None]

    @classmethod
    def from_run(
        cls,
        run: MigrationRun,
        *,
        peak_memory_usage_mb: float,
        rollback: RollbackRecord | None = None,
        integrity: IntegrityReport | None = None,
    ) -> MigrationResult:
        """
        Create the result of a terminal run.

        Args:
            run: The run, in COMPLETED or FAILED.
            peak_memory_usage_mb: Peak memory reported by the governor.
            rollback: Rollback outcome, if attempted.
            integrity: Integrity report, if the check ran.

        Returns:
            MigrationResult instance.
        """
        elapsed = run.elapsed_seconds
        return cls(
            run_id=run.run_id,
            success=run.phase == MigrationPhase.COMPLETED and run.failed == 0,
            final_phase=run.phase,
            total_processed=run.processed,
            total_success=run.succeeded,
            total_failed=run.failed,
            total_duplicates=run.duplicates,
            batch_count=len(run.outcomes),
            execution_time_ms=elapsed * 1000,
            throughput_per_second=run.processed / elapsed if elapsed > 0 else 0.0,
            peak_memory_usage_mb=peak_memory_usage_mb,
            errors=tuple(run.errors),
            warnings=tuple(run.warnings),
            rollback=rollback,
            integrity=integrity,
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "run_id": self.run_id,
            "success": self.success,
            "final_phase": self.final_phase.value,
            "total_processed": self.total_processed,
            "total_success": self.total_success,
            "total_failed": self.total_failed,
            "total_duplicates": self.total_duplicates,
            "batch_count": self.batch_count,
            "execution_time_ms": self.execution_time_ms,
            "throughput_per_second": self.throughput_per_second,
            "peak_memory_usage_mb": self.peak_memory_usage_mb,
            "errors": [error.to_dict() for error in self.errors],
            "warnings": list(self.warnings),
            "rollback": self.rollback.to_dict() if self.rollback else None,
            "integrity": self.integrity.to_dict() if self.integrity else None,
        }


@dataclass(frozen=True)
class MigrationEvent:
    """
    Lifecycle notification delivered to a caller-supplied event sink.

    Attributes:
        name: 'migration.started', 'migration.completed' or 'migration.failed'.
        run_id: Run the event concerns.
        payload: Event data (the result dict for terminal events).
        occurred_at: When the event was emitted.
    """

    name: str
    run_id: str
    payload: dict[str, Any]
    occurred_at: datetime = field(default_factory=lambda: datetime.now(UTC))


@dataclass(frozen=True)
class InsertResult:
    """Response of a destination store's single-row insert."""

    success: bool
    error: str | None = None


@dataclass(frozen=True)
class BulkItemError:
    """One row rejected by a bulk insert, identified by its position."""

    index: int
    message: str


@dataclass(frozen=True)
class BulkInsertResult:
    """
    Response of a destination store's bulk insert.

    Attributes:
        affected: Rows written.
        errors: Rows rejected, by position in the submitted list.
    """

    affected: int
    errors: tuple[BulkItemError, ...] = ()
