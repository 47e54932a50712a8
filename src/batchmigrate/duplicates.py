"""
Duplicate detection by natural key.

The detector asks the destination store whether a row with the same
natural key already exists. A failed lookup is never fatal: the row is
treated as new, a warning is logged and a recoverable error is handed back
so the batch can record it.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel

from batchmigrate.exceptions import ErrorCategory
from batchmigrate.mappings import RecordMapping
from batchmigrate.models import MigrationErrorRecord, MigrationPhase
from batchmigrate.observability import ATTR_BATCH_SIZE, Tracer, create_tracer
from batchmigrate.protocols import DestinationStore

logger = logging.getLogger(__name__)

DUPLICATE_LOOKUP_FAILED = "DUPLICATE_LOOKUP_FAILED"


class DuplicateDetector:
    """
    Checks rows against the destination store by natural key.

    Args:
        store: Destination store to query
        mapping: Record mapping providing the natural key projection
        tracer: Optional custom Tracer
        enable_tracing: Whether to enable OpenTelemetry tracing
    """

    def __init__(
        self,
        store: DestinationStore,
        mapping: RecordMapping,
        *,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._store = store
        self._mapping = mapping
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled

    async def exists(self, row: BaseModel) -> bool:
        """
        Check whether the row is already stored.

        Returns:
            True if a row with the same natural key exists. False when it
            does not, and also when the lookup itself failed.
        """
        found, _ = await self.check(row)
        return found

    async def check(self, row: BaseModel) -> tuple[bool, MigrationErrorRecord | None]:
        """
        Check whether the row is already stored, reporting lookup failures.

        Returns:
            (exists, error) where error is a recoverable
            DUPLICATE_LOOKUP_FAILED record if the lookup raised.
        """
        key = self._mapping.natural_key(row)
        try:
            return await self._store.exists(key), None
        except Exception as e:
            item_id = self._mapping.describe(row)
            logger.warning(
                "Duplicate lookup failed for %s, treating as new: %s",
                item_id,
                e,
            )
            return False, _lookup_error(item_id, e)

    async def filter_new(
        self, rows: list[BaseModel]
    ) -> tuple[list[BaseModel], int, list[MigrationErrorRecord]]:
        """
        Split rows into new ones and duplicates.

        Returns:
            (new rows, duplicate count, lookup errors)
        """
        with self._tracer.span(
            "batchmigrate.duplicates.filter_new",
            {ATTR_BATCH_SIZE: len(rows)},
        ):
            new_rows: list[BaseModel] = []
            duplicates = 0
            errors: list[MigrationErrorRecord] = []
            for row in rows:
                found, error = await self.check(row)
                if error is not None:
                    errors.append(error)
                if found:
                    duplicates += 1
                else:
                    new_rows.append(row)
            return new_rows, duplicates, errors


def _lookup_error(item_id: str, exc: Exception) -> MigrationErrorRecord:
    context: dict[str, Any] = {"error_type": type(exc).__name__}
    return MigrationErrorRecord(
        timestamp=datetime.now(UTC),
        phase=MigrationPhase.MIGRATING_DATA,
        error_code=DUPLICATE_LOOKUP_FAILED,
        message=f"Duplicate lookup failed: {exc}",
        category=ErrorCategory.TARGET,
        recoverable=True,
        item_id=item_id,
        context=context,
    )


__all__ = ["DUPLICATE_LOOKUP_FAILED", "DuplicateDetector"]
