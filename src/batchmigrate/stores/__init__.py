"""
Record sources, destination stores and audit sinks.

In-memory implementations serve tests and in-process buffers; the
SQLAlchemy implementations write to any async SQL database.
"""

from batchmigrate.stores.in_memory import (
    GroupedRecordSource,
    InMemoryAuditSink,
    InMemoryDestinationStore,
    InMemoryRecordSource,
)
from batchmigrate.stores.sql import (
    SQLAlchemyAuditSink,
    SQLAlchemyDestinationStore,
)

__all__ = [
    "GroupedRecordSource",
    "InMemoryAuditSink",
    "InMemoryDestinationStore",
    "InMemoryRecordSource",
    "SQLAlchemyAuditSink",
    "SQLAlchemyDestinationStore",
]
