"""
Standard span and metric attributes for batchmigrate.

Attribute constants shared by every engine component so that spans and
metric labels use the same keys. Database attributes follow the
OpenTelemetry semantic conventions.

Example:
    >>> from batchmigrate.observability.attributes import ATTR_RUN_ID, ATTR_BATCH_ID
    >>>
    >>> with tracer.span(
    ...     "batchmigrate.batch_processor.process_batch",
    ...     {ATTR_RUN_ID: run.run_id, ATTR_BATCH_ID: batch_id},
    ... ):
    ...     pass
"""

# =============================================================================
# Run Attributes
# =============================================================================

ATTR_RUN_ID = "batchmigrate.run.id"
"""Identifier of the migration run (e.g. 'TRADE_DATA_1700000000000_k3j9x0abc')."""

ATTR_RUN_PHASE = "batchmigrate.run.phase"
"""Current phase of the run (MigrationPhase value)."""

ATTR_RUN_TYPE = "batchmigrate.run.type"
"""Record type tag of the run (e.g. 'TRADE_DATA', 'MARKET_DATA')."""

ATTR_RUN_DRY_RUN = "batchmigrate.run.dry_run"
"""Whether the run skips persistence (boolean)."""

ATTR_ITEMS_TOTAL = "batchmigrate.items.total"
"""Total items reported by the record source (integer)."""

ATTR_ITEMS_PROCESSED = "batchmigrate.items.processed"
"""Items processed so far (integer)."""

# =============================================================================
# Batch Attributes
# =============================================================================

ATTR_BATCH_ID = "batchmigrate.batch.id"
"""Identifier of a batch within a run."""

ATTR_BATCH_SIZE = "batchmigrate.batch.size"
"""Number of records in a batch (integer)."""

ATTR_BATCH_COUNT = "batchmigrate.batch.count"
"""Number of batches in a group (integer)."""

ATTR_GROUP = "batchmigrate.group"
"""Logical record group (e.g. 'trades', 'BTC-USD:1m')."""

ATTR_MAX_CONCURRENCY = "batchmigrate.max_concurrency"
"""Maximum batches processed concurrently (integer)."""

ATTR_BULK_INSERT = "batchmigrate.bulk_insert"
"""Whether the batch used the bulk insert path (boolean)."""

# =============================================================================
# Resource Attributes
# =============================================================================

ATTR_MEMORY_MB = "batchmigrate.memory.current_mb"
"""Current memory usage in megabytes (float)."""

ATTR_MEMORY_LIMIT_MB = "batchmigrate.memory.limit_mb"
"""Configured memory ceiling in megabytes (float)."""

# =============================================================================
# Error / Audit Attributes
# =============================================================================

ATTR_ERROR_TYPE = "batchmigrate.error.type"
"""Exception class name for errors."""

ATTR_AUDIT_ACTION = "batchmigrate.audit.action"
"""AuditAction value of an audit entry."""

# =============================================================================
# Database Attributes (OpenTelemetry semantic conventions)
# =============================================================================

ATTR_DB_SYSTEM = "db.system"
"""Database system identifier (e.g. 'postgresql', 'sqlite')."""

ATTR_DB_OPERATION = "db.operation"
"""Database operation (e.g. 'INSERT', 'SELECT')."""

ATTR_DB_TABLE = "db.sql.table"
"""Table targeted by the operation."""


__all__ = [
    "ATTR_RUN_ID",
    "ATTR_RUN_PHASE",
    "ATTR_RUN_TYPE",
    "ATTR_RUN_DRY_RUN",
    "ATTR_ITEMS_TOTAL",
    "ATTR_ITEMS_PROCESSED",
    "ATTR_BATCH_ID",
    "ATTR_BATCH_SIZE",
    "ATTR_BATCH_COUNT",
    "ATTR_GROUP",
    "ATTR_MAX_CONCURRENCY",
    "ATTR_BULK_INSERT",
    "ATTR_MEMORY_MB",
    "ATTR_MEMORY_LIMIT_MB",
    "ATTR_ERROR_TYPE",
    "ATTR_AUDIT_ACTION",
    "ATTR_DB_SYSTEM",
    "ATTR_DB_OPERATION",
    "ATTR_DB_TABLE",
]
