"""
In-memory collaborators for the migration engine.

- InMemoryRecordSource / GroupedRecordSource: the transient in-process
  buffers records are migrated from
- InMemoryDestinationStore: a destination keyed by natural key, with
  switchable capabilities and failure injection for tests
- InMemoryAuditSink: an append-only list of audit entries

All state is lost when the process terminates.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Awaitable, Callable, Mapping, Sequence
from typing import Any, TypeVar

from pydantic import BaseModel

from batchmigrate.mappings import RecordMapping
from batchmigrate.models import AuditEntry, BulkInsertResult, BulkItemError, InsertResult
from batchmigrate.observability import ATTR_DB_SYSTEM, Tracer, create_tracer
from batchmigrate.protocols import NaturalKey, StoreScope

T = TypeVar("T")


class InMemoryRecordSource:
    """
    Record source holding one group of records.

    Args:
        records: Records to migrate
        group: Name of the single group (default 'default')
        error: If set, raised by count() and groups() to simulate an
            unreachable source
    """

    def __init__(
        self,
        records: Sequence[Any],
        group: str = "default",
        *,
        error: Exception | None = None,
    ) -> None:
        self._records = list(records)
        self._group = group
        self.error = error

    async def count(self) -> int:
        if self.error is not None:
            raise self.error
        return len(self._records)

    async def groups(self) -> AsyncIterator[tuple[str, Sequence[Any]]]:
        if self.error is not None:
            raise self.error
        yield self._group, list(self._records)


class GroupedRecordSource:
    """
    Record source backed by buffers keyed by group.

    Market data buffers hold one list of candles per symbol and timeframe;
    each buffer becomes its own group so that batches never mix buffers.

    Example:
        >>> source = GroupedRecordSource({
        ...     "BTC-USD:1m": btc_candles,
        ...     "ETH-USD:1m": eth_candles,
        ... })
    """

    def __init__(
        self,
        buffers: Mapping[str, Sequence[Any]],
        *,
        error: Exception | None = None,
    ) -> None:
        self._buffers = {key: list(records) for key, records in buffers.items()}
        self.error = error

    async def count(self) -> int:
        if self.error is not None:
            raise self.error
        return sum(len(records) for records in self._buffers.values())

    async def groups(self) -> AsyncIterator[tuple[str, Sequence[Any]]]:
        if self.error is not None:
            raise self.error
        for key, records in self._buffers.items():
            if records:
                yield key, list(records)


class _InMemoryScope:
    """Transactional view handed to execute() callbacks."""

    def __init__(self, row_count: int) -> None:
        self._row_count = row_count

    async def count(self) -> int:
        return self._row_count


class InMemoryDestinationStore:
    """
    Destination store keeping rows in a dict keyed by natural key.

    Natural keys are unique: inserting a row whose key already exists is
    rejected, like a unique constraint would.

    Failure injection (all optional, settable after construction):
        unreachable: ping() and count() raise ConnectionError
        lookup_error: exists() raises it
        reject: callable returning a rejection message for a row, or None
        delete_error: delete_many() raises it
        count_offset: added to every count() (simulates foreign writers)

    Args:
        mapping: Record mapping providing natural keys
        bulk_insert: Whether insert_many() is offered
        supports_delete: Whether delete_many() is offered
        tracer: Optional custom Tracer
        enable_tracing: Whether to enable OpenTelemetry tracing
    """

    def __init__(
        self,
        mapping: RecordMapping,
        *,
        bulk_insert: bool = False,
        supports_delete: bool = True,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled
        self._mapping = mapping
        self._bulk_insert = bulk_insert
        self._supports_delete = supports_delete
        self._rows: dict[NaturalKey, BaseModel] = {}
        self._lock = asyncio.Lock()

        self.unreachable = False
        self.lookup_error: Exception | None = None
        self.reject: Callable[[BaseModel], str | None] | None = None
        self.delete_error: Exception | None = None
        self.count_offset = 0

        self.ping_calls = 0
        self.insert_calls = 0
        self.insert_many_calls = 0
        self.delete_calls = 0

    @property
    def supports_bulk_insert(self) -> bool:
        return self._bulk_insert

    @property
    def supports_delete(self) -> bool:
        return self._supports_delete

    @property
    def rows(self) -> list[BaseModel]:
        """Stored rows in insertion order."""
        return list(self._rows.values())

    @property
    def write_calls(self) -> int:
        """Number of insert and delete calls received."""
        return self.insert_calls + self.insert_many_calls + self.delete_calls

    async def ping(self) -> None:
        self.ping_calls += 1
        if self.unreachable:
            raise ConnectionError("In-memory destination store is unreachable")

    async def exists(self, natural_key: NaturalKey) -> bool:
        if self.lookup_error is not None:
            raise self.lookup_error
        async with self._lock:
            return natural_key in self._rows

    async def insert_one(self, row: BaseModel) -> InsertResult:
        self.insert_calls += 1
        with self._tracer.span(
            "batchmigrate.in_memory_store.insert_one",
            {ATTR_DB_SYSTEM: "memory"},
        ):
            async with self._lock:
                error = self._insert(row)
            return InsertResult(success=error is None, error=error)

    async def insert_many(self, rows: Sequence[BaseModel]) -> BulkInsertResult:
        if not self._bulk_insert:
            raise NotImplementedError("Bulk insert is disabled for this store")
        self.insert_many_calls += 1
        with self._tracer.span(
            "batchmigrate.in_memory_store.insert_many",
            {ATTR_DB_SYSTEM: "memory"},
        ):
            errors: list[BulkItemError] = []
            async with self._lock:
                for index, row in enumerate(rows):
                    error = self._insert(row)
                    if error is not None:
                        errors.append(BulkItemError(index=index, message=error))
            return BulkInsertResult(affected=len(rows) - len(errors), errors=tuple(errors))

    async def count(self) -> int:
        if self.unreachable:
            raise ConnectionError("In-memory destination store is unreachable")
        async with self._lock:
            return len(self._rows) + self.count_offset

    async def execute(self, fn: Callable[[StoreScope], Awaitable[T]]) -> T:
        if self.unreachable:
            raise ConnectionError("In-memory destination store is unreachable")
        async with self._lock:
            return await fn(_InMemoryScope(len(self._rows) + self.count_offset))

    async def delete_many(self, keys: Sequence[NaturalKey]) -> int:
        if not self._supports_delete:
            raise NotImplementedError("Deletes are disabled for this store")
        self.delete_calls += 1
        if self.delete_error is not None:
            raise self.delete_error
        async with self._lock:
            removed = 0
            for key in keys:
                if self._rows.pop(key, None) is not None:
                    removed += 1
            return removed

    async def seed(self, rows: Sequence[BaseModel]) -> None:
        """Insert rows directly, bypassing call counters and failure injection."""
        async with self._lock:
            for row in rows:
                self._rows[self._mapping.natural_key(row)] = row

    def _insert(self, row: BaseModel) -> str | None:
        if self.reject is not None:
            message = self.reject(row)
            if message:
                return message
        key = self._mapping.natural_key(row)
        if key in self._rows:
            return f"Duplicate natural key {key!r}"
        self._rows[key] = row
        return None


class InMemoryAuditSink:
    """
    Audit sink keeping entries in a list.

    Args:
        error: If set, append() raises it (simulates a failing audit store)
    """

    def __init__(self, *, error: Exception | None = None) -> None:
        self._entries: list[AuditEntry] = []
        self.error = error

    async def append(self, entry: AuditEntry) -> None:
        if self.error is not None:
            raise self.error
        self._entries.append(entry)

    @property
    def entries(self) -> list[AuditEntry]:
        return list(self._entries)

    def entries_for(self, run_id: str) -> list[AuditEntry]:
        """Entries of one run, in sequence order."""
        return sorted(
            (entry for entry in self._entries if entry.run_id == run_id),
            key=lambda entry: entry.sequence,
        )

    def clear(self) -> None:
        self._entries.clear()


__all__ = [
    "GroupedRecordSource",
    "InMemoryAuditSink",
    "InMemoryDestinationStore",
    "InMemoryRecordSource",
]
