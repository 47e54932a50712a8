"""
batchmigrate - Batch data migration engine for trading data.

This library provides:
- A migration orchestrator driving runs through a validated phase machine
- Concurrent batch processing with duplicate detection and bulk inserts
- Memory governance with throttling and hard limits
- Rollback of failed runs from a per-run undo log
- Append-only audit logging, progress snapshots and run results
- In-memory and SQLAlchemy destination stores and audit sinks
- Optional OpenTelemetry tracing and metrics
"""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("batchmigrate")
except PackageNotFoundError:
    # Package not installed (running from source without install)
    __version__ = "0.0.0.dev0"

from batchmigrate.audit import AuditLogger
from batchmigrate.batch_processor import BatchProcessor, UndoLog
from batchmigrate.duplicates import DuplicateDetector
from batchmigrate.exceptions import (
    ErrorCategory,
    ErrorSeverity,
    IntegrityCheckError,
    InvalidPhaseTransitionError,
    ItemTransformError,
    MemoryLimitExceededError,
    MigrationError,
    MigrationTimeoutError,
    RollbackError,
    RunNotFoundError,
    SourceUnavailableError,
    TargetUnavailableError,
)
from batchmigrate.governor import PsutilMemorySampler, ResourceGovernor
from batchmigrate.mappings import (
    CANDLE_MAPPING,
    SNAPSHOT_MAPPING,
    TRADE_MAPPING,
    CandleRow,
    PortfolioSnapshotRow,
    RecordMapping,
    TradeRow,
)
from batchmigrate.metrics import MigrationMetrics, MigrationMetricSnapshot
from batchmigrate.models import (
    AuditAction,
    AuditEntry,
    BatchOutcome,
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
from batchmigrate.orchestrator import (
    MigrationOrchestrator,
    lenient_integrity_policy,
    strict_integrity_policy,
)
from batchmigrate.progress import ProgressTracker, QueueProgressSink
from batchmigrate.protocols import AuditSink, DestinationStore, RecordSource
from batchmigrate.rollback import RollbackManager
from batchmigrate.stores import (
    GroupedRecordSource,
    InMemoryAuditSink,
    InMemoryDestinationStore,
    InMemoryRecordSource,
    SQLAlchemyAuditSink,
    SQLAlchemyDestinationStore,
)

__all__ = [
    "__version__",
    # Orchestration
    "MigrationOrchestrator",
    "lenient_integrity_policy",
    "strict_integrity_policy",
    # Components
    "AuditLogger",
    "BatchProcessor",
    "DuplicateDetector",
    "ProgressTracker",
    "QueueProgressSink",
    "PsutilMemorySampler",
    "ResourceGovernor",
    "RollbackManager",
    "UndoLog",
    # Models
    "AuditAction",
    "AuditEntry",
    "BatchOutcome",
    "IntegrityReport",
    "MigrationConfig",
    "MigrationErrorRecord",
    "MigrationEvent",
    "MigrationPhase",
    "MigrationResult",
    "MigrationRun",
    "ProgressSnapshot",
    "RollbackRecord",
    # Mappings
    "RecordMapping",
    "TradeRow",
    "CandleRow",
    "PortfolioSnapshotRow",
    "TRADE_MAPPING",
    "CANDLE_MAPPING",
    "SNAPSHOT_MAPPING",
    # Protocols
    "AuditSink",
    "DestinationStore",
    "RecordSource",
    # Stores
    "GroupedRecordSource",
    "InMemoryAuditSink",
    "InMemoryDestinationStore",
    "InMemoryRecordSource",
    "SQLAlchemyAuditSink",
    "SQLAlchemyDestinationStore",
    # Metrics
    "MigrationMetrics",
    "MigrationMetricSnapshot",
    # Exceptions
    "ErrorCategory",
    "ErrorSeverity",
    "IntegrityCheckError",
    "InvalidPhaseTransitionError",
    "ItemTransformError",
    "MemoryLimitExceededError",
    "MigrationError",
    "MigrationTimeoutError",
    "RollbackError",
    "RunNotFoundError",
    "SourceUnavailableError",
    "TargetUnavailableError",
]
