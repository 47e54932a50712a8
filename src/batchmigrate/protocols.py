"""
Collaborator protocols consumed by the batchmigrate engine.

The engine never talks to a database, a buffer or a log directly; it talks
to these narrow interfaces, which are injected at construction time.

Protocols:
- RecordSource: Transient store the records are read from
- DestinationStore: Durable store the records are written to
- StoreScope: Transactional view handed to DestinationStore.execute callbacks
- AuditSink: Append-only destination for audit entries
- MemorySampler: Callable returning current memory usage in megabytes
- ProgressSink: Receives progress snapshots (sync or async)
- EventSink: Receives lifecycle events (sync or async)

Example:
    >>> class ListSource:
    ...     def __init__(self, records):
    ...         self._records = records
    ...
    ...     async def count(self) -> int:
    ...         return len(self._records)
    ...
    ...     async def groups(self):
    ...         yield "default", self._records
"""

from __future__ import annotations

from collections.abc import AsyncIterator, Awaitable, Callable, Hashable, Sequence
from typing import TYPE_CHECKING, Any, Protocol, TypeVar, runtime_checkable

if TYPE_CHECKING:
    from batchmigrate.models import (
        AuditEntry,
        BulkInsertResult,
        InsertResult,
        MigrationEvent,
        ProgressSnapshot,
    )

T = TypeVar("T")

NaturalKey = tuple[Hashable, ...]
"""Projection of a row onto the fields that identify it logically."""


@runtime_checkable
class RecordSource(Protocol):
    """
    Protocol for the transient store records are migrated from.

    Records are yielded in logical groups (for example one group per
    symbol/timeframe buffer); each group is batched independently.
    """

    async def count(self) -> int:
        """
        Count the records available for migration.

        Also serves as the reachability check of the source.

        Raises:
            Exception: If the source is unreachable.
        """
        ...

    def groups(self) -> AsyncIterator[tuple[str, Sequence[Any]]]:
        """
        Iterate over (group name, records) pairs.

        Returns:
            Async iterator of groups in the order they should be migrated.
        """
        ...


@runtime_checkable
class StoreScope(Protocol):
    """Transactional view of a destination store passed to execute() callbacks."""

    async def count(self) -> int:
        """Count the rows visible inside the transaction."""
        ...


@runtime_checkable
class DestinationStore(Protocol):
    """
    Protocol for the durable store records are migrated into.

    ``insert_many`` is only called when ``supports_bulk_insert`` is True and
    ``delete_many`` only when ``supports_delete`` is True; stores without the
    capability may raise NotImplementedError from them.
    """

    @property
    def supports_bulk_insert(self) -> bool:
        """Whether insert_many() is available."""
        ...

    @property
    def supports_delete(self) -> bool:
        """Whether delete_many() is available."""
        ...

    async def ping(self) -> None:
        """
        Check that the store is reachable and its tables exist.

        Raises:
            Exception: If the store is unreachable or incomplete.
        """
        ...

    async def exists(self, natural_key: NaturalKey) -> bool:
        """Check whether a row with the given natural key is already stored."""
        ...

    async def insert_one(self, row: Any) -> InsertResult:
        """
        Insert a single row.

        Returns:
            InsertResult describing whether the row was written.
        """
        ...

    async def insert_many(self, rows: Sequence[Any]) -> BulkInsertResult:
        """
        Insert rows in one round trip.

        Returns:
            BulkInsertResult with the affected count and per-position errors.
        """
        ...

    async def count(self) -> int:
        """Count all rows in the store."""
        ...

    async def execute(self, fn: Callable[[StoreScope], Awaitable[T]]) -> T:
        """
        Run a callback inside a transaction.

        Args:
            fn: Coroutine function receiving a transactional StoreScope.

        Returns:
            Whatever the callback returns.
        """
        ...

    async def delete_many(self, keys: Sequence[NaturalKey]) -> int:
        """
        Delete rows by natural key.

        Returns:
            Number of rows deleted.
        """
        ...


@runtime_checkable
class AuditSink(Protocol):
    """Append-only destination for audit entries."""

    async def append(self, entry: AuditEntry) -> None:
        """
        Persist one audit entry.

        Raises:
            Exception: If the entry could not be stored.
        """
        ...


@runtime_checkable
class MemorySampler(Protocol):
    """Callable returning the current memory usage in megabytes."""

    def __call__(self) -> float: ...


ProgressSink = Callable[["ProgressSnapshot"], Any]
"""Sync or async callable receiving progress snapshots."""

EventSink = Callable[["MigrationEvent"], Any]
"""Sync or async callable receiving lifecycle events."""


__all__ = [
    "NaturalKey",
    "RecordSource",
    "StoreScope",
    "DestinationStore",
    "AuditSink",
    "MemorySampler",
    "ProgressSink",
    "EventSink",
]
