"""
SQLAlchemy destination store and audit sink.

Both accept an AsyncEngine or an AsyncConnection and issue plain text()
queries, so any async dialect with a matching schema works (PostgreSQL via
asyncpg, SQLite via aiosqlite). Row columns follow the mapping's row model:
one column per field, with dict-valued fields stored as JSON text.

Expected schema for the audit table:

    CREATE TABLE migration_audit_log (
        id INTEGER PRIMARY KEY,
        run_id TEXT NOT NULL,
        sequence INTEGER NOT NULL,
        occurred_at TIMESTAMP NOT NULL,
        phase TEXT NOT NULL,
        action TEXT NOT NULL,
        severity TEXT NOT NULL,
        details TEXT NOT NULL,
        counters TEXT NOT NULL,
        memory_usage_mb REAL NOT NULL,
        UNIQUE (run_id, sequence)
    )
"""

from __future__ import annotations

import json
import logging
from collections.abc import Awaitable, Callable, Mapping, Sequence
from datetime import datetime
from typing import Any, TypeVar

from pydantic import BaseModel
from sqlalchemy import text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from batchmigrate.exceptions import ErrorSeverity
from batchmigrate.mappings import RecordMapping
from batchmigrate.models import (
    AuditAction,
    AuditEntry,
    BulkInsertResult,
    BulkItemError,
    InsertResult,
    MigrationPhase,
)
from batchmigrate.observability import (
    ATTR_AUDIT_ACTION,
    ATTR_BATCH_SIZE,
    ATTR_DB_OPERATION,
    ATTR_DB_SYSTEM,
    ATTR_DB_TABLE,
    ATTR_RUN_ID,
    Tracer,
    create_tracer,
)
from batchmigrate.protocols import NaturalKey, StoreScope
from batchmigrate.stores._connection import (
    dialect_name,
    execute_with_connection,
    validate_identifier,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


class _ConnectionScope:
    """Store view bound to one open transaction."""

    def __init__(self, conn: AsyncConnection, table: str) -> None:
        self._conn = conn
        self._table = table

    async def count(self) -> int:
        result = await self._conn.execute(
            text(f"SELECT COUNT(*) FROM {self._table}")  # nosec B608
        )
        return int(result.scalar_one())


class SQLAlchemyDestinationStore:
    """
    Destination store writing mapped rows into a SQL table.

    Duplicate detection relies on the mapping's natural-key columns; a
    unique constraint over them turns racing inserts into IntegrityError,
    which is reported as a failed insert instead of an exception.

    Example:
        >>> engine = create_async_engine("sqlite+aiosqlite:///trading.db")
        >>> store = SQLAlchemyDestinationStore(engine, TRADE_MAPPING)
        >>> result = await store.insert_one(row)

    Args:
        conn: Database connection or engine
        mapping: Record mapping describing the row type and natural key
        table: Table name override (defaults to mapping.table)
        bulk_insert: Whether insert_many() is offered
        tracer: Optional custom Tracer
        enable_tracing: Whether to enable OpenTelemetry tracing
    """

    def __init__(
        self,
        conn: AsyncConnection | AsyncEngine,
        mapping: RecordMapping,
        *,
        table: str | None = None,
        bulk_insert: bool = True,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled
        self.conn = conn
        self._mapping = mapping
        self._table = validate_identifier(table or mapping.table)
        self._bulk_insert = bulk_insert
        self._columns = [
            validate_identifier(name) for name in mapping.row_type.model_fields
        ]
        self._key_fields = [validate_identifier(name) for name in mapping.key_fields]
        self._db_system = dialect_name(conn)

    @property
    def supports_bulk_insert(self) -> bool:
        return self._bulk_insert

    @property
    def supports_delete(self) -> bool:
        return True

    @property
    def table(self) -> str:
        return self._table

    async def ping(self) -> None:
        """
        Check that the database answers and the table exists.

        Raises:
            sqlalchemy.exc.SQLAlchemyError: If either check fails
        """
        with self._span("ping"):
            async with execute_with_connection(self.conn, transactional=False) as conn:
                await conn.execute(text("SELECT 1"))
                await conn.execute(
                    text(f"SELECT 1 FROM {self._table} WHERE 1 = 0")  # nosec B608
                )

    async def exists(self, natural_key: NaturalKey) -> bool:
        with self._span("exists"):
            query = text(
                f"SELECT 1 FROM {self._table} WHERE {self._key_clause()} LIMIT 1"  # nosec B608
            )
            async with execute_with_connection(self.conn, transactional=False) as conn:
                result = await conn.execute(query, self._key_params(natural_key))
                return result.first() is not None

    async def insert_one(self, row: BaseModel) -> InsertResult:
        with self._span("insert", {ATTR_BATCH_SIZE: 1}):
            try:
                async with execute_with_connection(self.conn, transactional=True) as conn:
                    await conn.execute(self._insert_query(), self._row_params(row))
            except IntegrityError as e:
                logger.debug(
                    "Insert into %s rejected for %s: %s",
                    self._table,
                    self._mapping.describe(row),
                    e.orig,
                )
                return InsertResult(success=False, error=f"Integrity error: {e.orig}")
            return InsertResult(success=True)

    async def insert_many(self, rows: Sequence[BaseModel]) -> BulkInsertResult:
        """
        Insert rows in one statement.

        When the statement is rejected as a whole because of an integrity
        error, rows are retried one at a time so that each rejected row
        is reported by its index.
        """
        if not rows:
            return BulkInsertResult(affected=0)

        with self._span("insert_many", {ATTR_BATCH_SIZE: len(rows)}):
            try:
                async with execute_with_connection(self.conn, transactional=True) as conn:
                    await conn.execute(
                        self._insert_query(),
                        [self._row_params(row) for row in rows],
                    )
                return BulkInsertResult(affected=len(rows))
            except IntegrityError:
                logger.debug(
                    "Bulk insert into %s rejected, retrying %d rows individually",
                    self._table,
                    len(rows),
                )

            errors: list[BulkItemError] = []
            for index, row in enumerate(rows):
                result = await self.insert_one(row)
                if not result.success:
                    errors.append(
                        BulkItemError(index=index, message=result.error or "Insert rejected")
                    )
            return BulkInsertResult(affected=len(rows) - len(errors), errors=tuple(errors))

    async def count(self) -> int:
        with self._span("count"):
            async with execute_with_connection(self.conn, transactional=False) as conn:
                return await _ConnectionScope(conn, self._table).count()

    async def execute(self, fn: Callable[[StoreScope], Awaitable[T]]) -> T:
        """Run fn inside a transaction, handing it a scope bound to it."""
        with self._span("execute"):
            async with execute_with_connection(self.conn, transactional=True) as conn:
                return await fn(_ConnectionScope(conn, self._table))

    async def delete_many(self, keys: Sequence[NaturalKey]) -> int:
        """Delete rows by natural key in one transaction; returns rows removed."""
        with self._span("delete", {ATTR_BATCH_SIZE: len(keys)}):
            query = text(
                f"DELETE FROM {self._table} WHERE {self._key_clause()}"  # nosec B608
            )
            removed = 0
            async with execute_with_connection(self.conn, transactional=True) as conn:
                for key in keys:
                    result = await conn.execute(query, self._key_params(key))
                    removed += max(result.rowcount or 0, 0)
            return removed

    def _span(self, operation: str, attributes: dict[str, Any] | None = None) -> Any:
        return self._tracer.span(
            f"batchmigrate.sqlalchemy_store.{operation}",
            {
                ATTR_DB_SYSTEM: self._db_system,
                ATTR_DB_OPERATION: operation,
                ATTR_DB_TABLE: self._table,
                **(attributes or {}),
            },
        )

    def _insert_query(self) -> Any:
        columns = ", ".join(self._columns)
        values = ", ".join(f":{name}" for name in self._columns)
        return text(
            f"INSERT INTO {self._table} ({columns}) VALUES ({values})"  # nosec B608
        )

    def _key_clause(self) -> str:
        return " AND ".join(f"{name} = :key_{name}" for name in self._key_fields)

    def _key_params(self, natural_key: NaturalKey) -> dict[str, Any]:
        if len(natural_key) != len(self._key_fields):
            raise ValueError(
                f"Natural key {natural_key!r} does not match key fields {self._key_fields}"
            )
        return {
            f"key_{name}": self._bind(value)
            for name, value in zip(self._key_fields, natural_key, strict=True)
        }

    def _row_params(self, row: BaseModel) -> dict[str, Any]:
        return {name: self._bind(getattr(row, name)) for name in self._columns}

    def _bind(self, value: Any) -> Any:
        if isinstance(value, Mapping | list):
            return json.dumps(value, default=str)
        if isinstance(value, datetime) and self._db_system == "sqlite":
            # SQLite has no timestamp type; times are stored as ISO-8601 text.
            return value.isoformat()
        return value


class SQLAlchemyAuditSink:
    """
    Audit sink appending entries to a SQL table.

    Entries are insert-only; nothing in the engine updates or deletes them.

    Args:
        conn: Database connection or engine
        table: Audit table name (default 'migration_audit_log')
        tracer: Optional custom Tracer
        enable_tracing: Whether to enable OpenTelemetry tracing
    """

    def __init__(
        self,
        conn: AsyncConnection | AsyncEngine,
        table: str = "migration_audit_log",
        *,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled
        self.conn = conn
        self._table = validate_identifier(table)
        self._db_system = dialect_name(conn)

    async def append(self, entry: AuditEntry) -> None:
        with self._tracer.span(
            "batchmigrate.sqlalchemy_audit.append",
            {
                ATTR_RUN_ID: entry.run_id,
                ATTR_AUDIT_ACTION: entry.action.value,
                ATTR_DB_SYSTEM: self._db_system,
                ATTR_DB_TABLE: self._table,
            },
        ):
            query = text(f"""
                INSERT INTO {self._table}
                    (run_id, sequence, occurred_at, phase, action, severity,
                     details, counters, memory_usage_mb)
                VALUES (:run_id, :sequence, :occurred_at, :phase, :action, :severity,
                        :details, :counters, :memory_usage_mb)
            """)  # nosec B608
            params = {
                "run_id": entry.run_id,
                "sequence": entry.sequence,
                "occurred_at": (
                    entry.timestamp.isoformat()
                    if self._db_system == "sqlite"
                    else entry.timestamp
                ),
                "phase": entry.phase.value,
                "action": entry.action.value,
                "severity": entry.severity.value,
                "details": json.dumps(entry.details, default=str),
                "counters": json.dumps(entry.counters),
                "memory_usage_mb": entry.memory_usage_mb,
            }
            async with execute_with_connection(self.conn, transactional=True) as conn:
                await conn.execute(query, params)

    async def get_entries(self, run_id: str) -> list[AuditEntry]:
        """Entries of one run, in sequence order."""
        with self._tracer.span(
            "batchmigrate.sqlalchemy_audit.get_entries",
            {ATTR_RUN_ID: run_id, ATTR_DB_SYSTEM: self._db_system},
        ):
            query = text(f"""
                SELECT run_id, sequence, occurred_at, phase, action, severity,
                       details, counters, memory_usage_mb
                FROM {self._table}
                WHERE run_id = :run_id
                ORDER BY sequence
            """)  # nosec B608
            async with execute_with_connection(self.conn, transactional=False) as conn:
                result = await conn.execute(query, {"run_id": run_id})
                return [self._row_to_entry(row) for row in result.fetchall()]

    @staticmethod
    def _row_to_entry(row: Any) -> AuditEntry:
        occurred_at = row[2]
        if isinstance(occurred_at, str):
            occurred_at = datetime.fromisoformat(occurred_at)
        details = row[6] if isinstance(row[6], dict) else json.loads(row[6])
        counters = row[7] if isinstance(row[7], dict) else json.loads(row[7])
        return AuditEntry(
            run_id=row[0],
            sequence=row[1],
            timestamp=occurred_at,
            phase=MigrationPhase(row[3]),
            action=AuditAction(row[4]),
            severity=ErrorSeverity(row[5]),
            details=details,
            counters=counters,
            memory_usage_mb=float(row[8]),
        )


__all__ = ["SQLAlchemyAuditSink", "SQLAlchemyDestinationStore"]
