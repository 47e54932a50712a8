"""
Observability utilities for batchmigrate.

Provides the composition-based tracer used by every engine component and
the standard attribute names used on spans and metrics.

Example:
    >>> from batchmigrate.observability import create_tracer
    >>>
    >>> class MyComponent:
    ...     def __init__(self, enable_tracing: bool = True):
    ...         self._tracer = create_tracer(__name__, enable_tracing)
    ...         self._enable_tracing = self._tracer.enabled
"""

from batchmigrate.observability.attributes import (
    ATTR_AUDIT_ACTION,
    ATTR_BATCH_COUNT,
    ATTR_BATCH_ID,
    ATTR_BATCH_SIZE,
    ATTR_BULK_INSERT,
    ATTR_DB_OPERATION,
    ATTR_DB_SYSTEM,
    ATTR_DB_TABLE,
    ATTR_ERROR_TYPE,
    ATTR_GROUP,
    ATTR_ITEMS_PROCESSED,
    ATTR_ITEMS_TOTAL,
    ATTR_MAX_CONCURRENCY,
    ATTR_MEMORY_LIMIT_MB,
    ATTR_MEMORY_MB,
    ATTR_RUN_DRY_RUN,
    ATTR_RUN_ID,
    ATTR_RUN_PHASE,
    ATTR_RUN_TYPE,
)
from batchmigrate.observability.tracer import (
    MockTracer,
    NullTracer,
    OpenTelemetryTracer,
    RecordedSpan,
    Tracer,
    create_tracer,
)

__all__ = [
    # Tracer (composition-based API)
    "Tracer",
    "NullTracer",
    "OpenTelemetryTracer",
    "MockTracer",
    "RecordedSpan",
    "create_tracer",
    # Attributes
    "ATTR_AUDIT_ACTION",
    "ATTR_BATCH_COUNT",
    "ATTR_BATCH_ID",
    "ATTR_BATCH_SIZE",
    "ATTR_BULK_INSERT",
    "ATTR_DB_OPERATION",
    "ATTR_DB_SYSTEM",
    "ATTR_DB_TABLE",
    "ATTR_ERROR_TYPE",
    "ATTR_GROUP",
    "ATTR_ITEMS_PROCESSED",
    "ATTR_ITEMS_TOTAL",
    "ATTR_MAX_CONCURRENCY",
    "ATTR_MEMORY_LIMIT_MB",
    "ATTR_MEMORY_MB",
    "ATTR_RUN_DRY_RUN",
    "ATTR_RUN_ID",
    "ATTR_RUN_PHASE",
    "ATTR_RUN_TYPE",
]
