"""
Exceptions and error classification for the batchmigrate engine.

Every exception the engine raises derives from MigrationError and carries
an ErrorClassification describing its category, severity and whether the
run can carry on past it.

Exception Hierarchy:
    MigrationError (base)
    +-- SourceUnavailableError       (source, fatal before any write)
    +-- TargetUnavailableError       (target, fatal before any write)
    +-- ItemTransformError           (item, recoverable)
    +-- MemoryLimitExceededError     (resource, fatal for the run)
    +-- MigrationTimeoutError        (timeout, fatal for the run)
    +-- IntegrityCheckError          (integrity, reported, fatal only by policy)
    +-- RollbackError                (rollback, never re-raised)
    +-- RunNotFoundError
    +-- InvalidPhaseTransitionError

Propagation policy:
    - Item errors never escalate past their batch.
    - Batch errors never abort sibling batches.
    - Phase-level errors (source, target, resource, timeout) always end the
      run in FAILED.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from batchmigrate.models import BatchOutcome, MigrationErrorRecord, MigrationPhase

logger = logging.getLogger(__name__)


class ErrorSeverity(Enum):
    """
    Severity level of migration errors and audit entries.

    Attributes:
        CRITICAL: Failure requiring immediate attention (e.g. rollback failed).
        ERROR: Failure that ended a run or needs operator intervention.
        WARNING: Issue that should be monitored (e.g. integrity mismatch).
        INFO: Informational condition, not a failure.
    """

    CRITICAL = "critical"
    ERROR = "error"
    WARNING = "warning"
    INFO = "info"

    @property
    def should_alert(self) -> bool:
        """
        Check if this severity level should trigger an alert.

        Returns:
            True for CRITICAL and ERROR levels.
        """
        return self in (ErrorSeverity.CRITICAL, ErrorSeverity.ERROR)

    @property
    def log_level(self) -> int:
        """
        Get the corresponding Python logging level.

        Returns:
            Python logging level constant.
        """
        level_map = {
            ErrorSeverity.CRITICAL: logging.CRITICAL,
            ErrorSeverity.ERROR: logging.ERROR,
            ErrorSeverity.WARNING: logging.WARNING,
            ErrorSeverity.INFO: logging.INFO,
        }
        return level_map[self]


class ErrorCategory(Enum):
    """
    Taxonomy of failures the engine distinguishes.

    Attributes:
        SOURCE: Record source unreachable or malformed.
        TARGET: Destination unreachable or missing expected structures.
        ITEM: A single record failed transformation or persistence.
        RESOURCE: Memory ceiling exceeded.
        INTEGRITY: Post-migration count mismatch.
        ROLLBACK: Undo of a failed run did not succeed.
        TIMEOUT: The run did not finish transferring before its deadline.
        INTERNAL: Anything else (programming errors, unexpected exceptions).
    """

    SOURCE = "source"
    TARGET = "target"
    ITEM = "item"
    RESOURCE = "resource"
    INTEGRITY = "integrity"
    ROLLBACK = "rollback"
    TIMEOUT = "timeout"
    INTERNAL = "internal"


@dataclass(frozen=True)
class ErrorClassification:
    """
    Metadata describing how an error should be handled.

    Attributes:
        severity: The severity level of the error.
        category: Error category from the engine taxonomy.
        error_code: Unique error code for programmatic handling.
        recoverable: Whether the run can continue past this error.
        suggested_action: Human-readable guidance for operators.
    """

    severity: ErrorSeverity
    category: ErrorCategory
    error_code: str
    recoverable: bool
    suggested_action: str

    def to_dict(self) -> dict[str, Any]:
        """
        Convert classification to dictionary for serialization.

        Returns:
            Dictionary representation of the classification.
        """
        return {
            "severity": self.severity.value,
            "category": self.category.value,
            "error_code": self.error_code,
            "recoverable": self.recoverable,
            "suggested_action": self.suggested_action,
        }


class MigrationError(Exception):
    """
    Base exception for all engine errors.

    Attributes:
        message: Human-readable error description.
        run_id: The run that raised the error, if known.
        item_id: The item the error is scoped to, if any.
        context: Extra structured context for post-mortem.
    """

    _default_classification: ErrorClassification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        category=ErrorCategory.INTERNAL,
        error_code="MIGRATION_ERROR",
        recoverable=False,
        suggested_action="Review migration logs and the run's error list",
    )

    def __init__(
        self,
        message: str,
        *,
        run_id: str | None = None,
        item_id: str | None = None,
        context: dict[str, Any] | None = None,
    ) -> None:
        self.message = message
        self.run_id = run_id
        self.item_id = item_id
        self.context = context or {}
        super().__init__(message)

    def __str__(self) -> str:
        """Return formatted error string with context."""
        parts = [self.message]
        if self.run_id:
            parts.append(f"run_id={self.run_id}")
        if self.item_id:
            parts.append(f"item_id={self.item_id}")
        return " ".join(parts)

    @property
    def classification(self) -> ErrorClassification:
        """Get the error classification for this exception."""
        return self._default_classification

    @property
    def severity(self) -> ErrorSeverity:
        return self.classification.severity

    @property
    def category(self) -> ErrorCategory:
        return self.classification.category

    @property
    def error_code(self) -> str:
        return self.classification.error_code

    @property
    def recoverable(self) -> bool:
        return self.classification.recoverable

    def to_dict(self) -> dict[str, Any]:
        """
        Convert the exception to a dictionary for serialization.

        Returns:
            Dictionary representation of the error.
        """
        return {
            "message": self.message,
            "run_id": self.run_id,
            "item_id": self.item_id,
            "error_code": self.error_code,
            "classification": self.classification.to_dict(),
        }

    def to_record(self, phase: MigrationPhase) -> MigrationErrorRecord:
        """
        Convert the exception to an error record tagged with a run phase.

        Args:
            phase: Phase the run was in when the error occurred.

        Returns:
            MigrationErrorRecord describing this error.
        """
        from batchmigrate.models import MigrationErrorRecord

        return MigrationErrorRecord.from_exception(self, phase)


class SourceUnavailableError(MigrationError):
    """Raised when the record source cannot be reached or enumerated."""

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        category=ErrorCategory.SOURCE,
        error_code="SOURCE_UNAVAILABLE",
        recoverable=False,
        suggested_action="Check that the record source is reachable and enumerable",
    )


class TargetUnavailableError(MigrationError):
    """Raised when the destination store is unreachable or incomplete."""

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        category=ErrorCategory.TARGET,
        error_code="TARGET_UNAVAILABLE",
        recoverable=False,
        suggested_action="Check destination connectivity and that its tables exist",
    )


class ItemTransformError(MigrationError):
    """
    Raised when a single record cannot be converted to its destination shape.

    Caught by the batch processor and recorded against the batch; it never
    aborts sibling items.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.WARNING,
        category=ErrorCategory.ITEM,
        error_code="ITEM_TRANSFORM_FAILED",
        recoverable=True,
        suggested_action="Fix or discard the malformed source record and re-run",
    )


class _HaltedError(MigrationError):
    """
    Base for errors that stop batch dispatch part-way through a group.

    Attributes:
        outcomes: Outcomes of the batches that finished before the halt.
    """

    def __init__(
        self,
        message: str,
        *,
        run_id: str | None = None,
        outcomes: Sequence[BatchOutcome] = (),
        context: dict[str, Any] | None = None,
    ) -> None:
        self.outcomes = list(outcomes)
        super().__init__(message, run_id=run_id, context=context)


class MemoryLimitExceededError(_HaltedError):
    """
    Raised when memory stays above the configured ceiling after throttling.

    Attributes:
        current_mb: Memory usage when the check failed.
        limit_mb: The configured ceiling.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        category=ErrorCategory.RESOURCE,
        error_code="MEMORY_LIMIT_EXCEEDED",
        recoverable=False,
        suggested_action="Lower batch_size or max_concurrency, or raise memory_limit_mb",
    )

    def __init__(
        self,
        current_mb: float,
        limit_mb: float,
        *,
        run_id: str | None = None,
        outcomes: Sequence[BatchOutcome] = (),
    ) -> None:
        self.current_mb = current_mb
        self.limit_mb = limit_mb
        super().__init__(
            f"Memory limit exceeded: {current_mb:.1f}MB > {limit_mb:.1f}MB",
            run_id=run_id,
            outcomes=outcomes,
            context={"current_mb": current_mb, "limit_mb": limit_mb},
        )


class MigrationTimeoutError(_HaltedError):
    """Raised when data transfer has not finished by the run's deadline."""

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        category=ErrorCategory.TIMEOUT,
        error_code="MIGRATION_TIMEOUT",
        recoverable=False,
        suggested_action="Raise timeout_ms or migrate the data in smaller runs",
    )

    def __init__(
        self,
        timeout_ms: int,
        *,
        run_id: str | None = None,
        outcomes: Sequence[BatchOutcome] = (),
    ) -> None:
        self.timeout_ms = timeout_ms
        super().__init__(
            f"Migration did not finish transferring data within {timeout_ms}ms",
            run_id=run_id,
            outcomes=outcomes,
            context={"timeout_ms": timeout_ms},
        )


class IntegrityCheckError(MigrationError):
    """
    Raised when the destination count does not match expectations.

    Only escalates the run to FAILED when the orchestrator's integrity
    policy rejects the report.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.WARNING,
        category=ErrorCategory.INTEGRITY,
        error_code="INTEGRITY_MISMATCH",
        recoverable=True,
        suggested_action="Compare source and destination counts before trusting the data",
    )

    def __init__(
        self,
        expected: int,
        actual: int,
        *,
        run_id: str | None = None,
    ) -> None:
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Destination count mismatch: expected {expected}, found {actual}",
            run_id=run_id,
            context={"expected": expected, "actual": actual},
        )


class RollbackError(MigrationError):
    """Raised inside the rollback manager when an undo step fails."""

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.CRITICAL,
        category=ErrorCategory.ROLLBACK,
        error_code="ROLLBACK_FAILED",
        recoverable=True,
        suggested_action="Inspect the destination manually; partial data may remain",
    )


class RunNotFoundError(MigrationError):
    """Raised when a run id is unknown to the orchestrator."""

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        category=ErrorCategory.INTERNAL,
        error_code="RUN_NOT_FOUND",
        recoverable=False,
        suggested_action="Verify the run id returned by start()",
    )

    def __init__(self, run_id: str) -> None:
        super().__init__(f"Migration run not found: {run_id}", run_id=run_id)


class InvalidPhaseTransitionError(MigrationError):
    """
    Raised when a run is asked to move to a phase its state machine forbids.

    Attributes:
        current_phase: The phase the run is in.
        target_phase: The phase that was requested.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        category=ErrorCategory.INTERNAL,
        error_code="INVALID_PHASE_TRANSITION",
        recoverable=False,
        suggested_action="Review the migration phase state machine",
    )

    def __init__(
        self,
        run_id: str,
        current_phase: MigrationPhase,
        target_phase: MigrationPhase,
    ) -> None:
        self.current_phase = current_phase
        self.target_phase = target_phase
        super().__init__(
            f"Invalid phase transition: {current_phase.value} -> {target_phase.value}",
            run_id=run_id,
        )


def classify_exception(exc: BaseException) -> ErrorClassification:
    """
    Classify any exception and return its error classification.

    Args:
        exc: The exception to classify.

    Returns:
        The exception's own classification for MigrationError subclasses,
        a generic fatal INTERNAL classification otherwise.
    """
    if isinstance(exc, MigrationError):
        return exc.classification

    return ErrorClassification(
        severity=ErrorSeverity.ERROR,
        category=ErrorCategory.INTERNAL,
        error_code="UNEXPECTED_ERROR",
        recoverable=False,
        suggested_action="An unexpected error occurred. Review logs.",
    )


__all__ = [
    "ErrorSeverity",
    "ErrorCategory",
    "ErrorClassification",
    "MigrationError",
    "SourceUnavailableError",
    "TargetUnavailableError",
    "ItemTransformError",
    "MemoryLimitExceededError",
    "MigrationTimeoutError",
    "IntegrityCheckError",
    "RollbackError",
    "RunNotFoundError",
    "InvalidPhaseTransitionError",
    "classify_exception",
]
