"""
BatchProcessor - Moves records into the destination store in bounded batches.

The BatchProcessor handles the data transfer phase of a migration run. It
splits a group of records into fixed-size batches and processes them with a
bounded pool of workers, so at most ``max_concurrency`` batches are in
flight at any time.

Responsibilities:
    - Transform each record into its destination row
    - Skip records whose natural key already exists
    - Persist rows one at a time, or in one round trip per batch when the
      store supports bulk inserts
    - Fold each finished batch into the run's progress and audit trail
    - Stop dispatching when memory stays over its ceiling or the run's
      deadline passes, draining the batches already in flight
    - Remember inserted natural keys so a failed run can be undone

Failure isolation:
    - A malformed or rejected record fails alone; its batch carries on.
    - A batch never cancels its siblings.

Usage:
    >>> from batchmigrate.batch_processor import BatchProcessor, UndoLog
    >>>
    >>> processor = BatchProcessor(store, TRADE_MAPPING, governor)
    >>> undo_log = UndoLog()
    >>> outcomes = await processor.process_all(run, "trades", records, undo_log=undo_log)
    >>> sum(o.succeeded for o in outcomes)
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Iterator, Sequence
from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel

from batchmigrate.audit import AuditLogger
from batchmigrate.duplicates import DuplicateDetector
from batchmigrate.exceptions import (
    ErrorCategory,
    ItemTransformError,
    MemoryLimitExceededError,
    MigrationTimeoutError,
)
from batchmigrate.governor import ResourceGovernor
from batchmigrate.mappings import RecordMapping
from batchmigrate.metrics import MigrationMetrics
from batchmigrate.models import (
    AuditAction,
    BatchOutcome,
    MigrationConfig,
    MigrationErrorRecord,
    MigrationPhase,
    MigrationRun,
)
from batchmigrate.observability import (
    ATTR_BATCH_COUNT,
    ATTR_BATCH_ID,
    ATTR_BATCH_SIZE,
    ATTR_BULK_INSERT,
    ATTR_GROUP,
    ATTR_MAX_CONCURRENCY,
    ATTR_RUN_DRY_RUN,
    ATTR_RUN_ID,
    Tracer,
    create_tracer,
)
from batchmigrate.progress import ProgressTracker
from batchmigrate.protocols import DestinationStore, NaturalKey

logger = logging.getLogger(__name__)

ITEM_INSERT_FAILED = "ITEM_INSERT_FAILED"
ITEM_PROCESSING_FAILED = "ITEM_PROCESSING_FAILED"


class UndoLog:
    """
    Natural keys of the rows a run inserted, in insertion order.

    Used by the rollback manager to remove exactly what the run wrote.
    """

    def __init__(self) -> None:
        self._keys: list[NaturalKey] = []

    def add(self, key: NaturalKey) -> None:
        self._keys.append(key)

    def extend(self, keys: Sequence[NaturalKey]) -> None:
        self._keys.extend(keys)

    @property
    def keys(self) -> tuple[NaturalKey, ...]:
        return tuple(self._keys)

    def clear(self) -> None:
        self._keys.clear()

    def __len__(self) -> int:
        return len(self._keys)

    def __bool__(self) -> bool:
        return bool(self._keys)


def chunk(records: Sequence[Any], size: int) -> Iterator[Sequence[Any]]:
    """
    Split records into consecutive slices of ``size``.

    The last slice may be shorter.
    """
    for start in range(0, len(records), size):
        yield records[start : start + size]


def _item_error(message: str, item_id: str | None, error_code: str) -> MigrationErrorRecord:
    return MigrationErrorRecord(
        timestamp=datetime.now(UTC),
        phase=MigrationPhase.MIGRATING_DATA,
        error_code=error_code,
        message=message,
        category=ErrorCategory.ITEM,
        recoverable=True,
        item_id=item_id,
    )


class _BatchTally:
    """Mutable counters for one batch while it is being processed."""

    def __init__(self) -> None:
        self.succeeded = 0
        self.failed = 0
        self.duplicates = 0
        self.errors: list[MigrationErrorRecord] = []

    def fail(self, error: MigrationErrorRecord) -> None:
        self.failed += 1
        self.errors.append(error)


class BatchProcessor:
    """
    Processes groups of records in bounded-concurrency batches.

    Example:
        >>> processor = BatchProcessor(
        ...     store=store,
        ...     mapping=TRADE_MAPPING,
        ...     governor=governor,
        ...     progress=ProgressTracker(),
        ...     audit=AuditLogger(sink),
        ... )
        >>> outcomes = await processor.process_all(run, "trades", records)

    Args:
        store: Destination store rows are written to
        mapping: Transform and natural key of the record type
        governor: Resource governor consulted after each batch
        progress: Tracker that folds outcomes into the run
        audit: Audit logger receiving a BATCH_COMPLETED entry per batch
        metrics: Optional metrics container
        tracer: Optional custom Tracer
        enable_tracing: Whether to enable OpenTelemetry tracing
    """

    def __init__(
        self,
        store: DestinationStore,
        mapping: RecordMapping,
        governor: ResourceGovernor,
        *,
        progress: ProgressTracker | None = None,
        audit: AuditLogger | None = None,
        metrics: MigrationMetrics | None = None,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled
        self._store = store
        self._mapping = mapping
        self._governor = governor
        self._progress = progress or ProgressTracker(memory_reader=lambda: governor.current_mb)
        self._audit = audit
        self._metrics = metrics
        self._detector = DuplicateDetector(store, mapping, tracer=self._tracer)

    async def process_all(
        self,
        run: MigrationRun,
        group: str,
        records: Sequence[Any],
        config: MigrationConfig | None = None,
        *,
        undo_log: UndoLog | None = None,
        deadline: float | None = None,
    ) -> list[BatchOutcome]:
        """
        Process every record of a group.

        Args:
            run: The run the records belong to
            group: Logical group name (e.g. 'trades', 'BTC-USD:1m')
            records: Source records
            config: Configuration (default: the run's)
            undo_log: Receives natural keys of inserted rows
            deadline: ``time.monotonic()`` value after which no new batch
                is dispatched

        Returns:
            Outcomes of every batch, in completion order

        Raises:
            MemoryLimitExceededError: Memory stayed over the ceiling after a
                batch; ``outcomes`` holds the batches that finished
            MigrationTimeoutError: The deadline passed; ``outcomes`` holds
                the batches that finished
        """
        config = config or run.config
        batches = list(chunk(records, config.batch_size))
        if not batches:
            return []

        with self._tracer.span(
            "batchmigrate.batch_processor.process_all",
            {
                ATTR_RUN_ID: run.run_id,
                ATTR_GROUP: group,
                ATTR_BATCH_COUNT: len(batches),
                ATTR_MAX_CONCURRENCY: config.max_concurrency,
                ATTR_RUN_DRY_RUN: config.dry_run,
            },
        ):
            logger.debug(
                "Processing group %s of run %s: %d records in %d batches",
                group,
                run.run_id,
                len(records),
                len(batches),
            )

            outcomes: list[BatchOutcome] = []
            pending = iter(enumerate(batches, start=1))
            halt: list[BaseException] = []

            async def worker() -> None:
                while not halt:
                    try:
                        index, batch = next(pending)
                    except StopIteration:
                        return
                    if _expired(deadline):
                        halt.append(MigrationTimeoutError(config.timeout_ms, run_id=run.run_id))
                        return

                    try:
                        outcome = await self.process_batch(
                            run,
                            group,
                            f"{group}#{index}",
                            batch,
                            config,
                            undo_log=undo_log,
                        )
                        outcomes.append(outcome)
                        await self._after_batch(run, outcome)
                        await self._governor.check_and_throttle(
                            config.memory_limit_mb,
                            pause_ms=config.throttle_pause_ms,
                        )
                    except Exception as e:
                        halt.append(e)
                        raise

            workers = min(config.max_concurrency, len(batches))
            results = await asyncio.gather(
                *(worker() for _ in range(workers)),
                return_exceptions=True,
            )

            unexpected = [
                r
                for r in results
                if isinstance(r, BaseException)
                and not isinstance(r, MemoryLimitExceededError | MigrationTimeoutError)
            ]
            if unexpected:
                logger.error(
                    "Batch worker failed in group %s of run %s: %s",
                    group,
                    run.run_id,
                    unexpected[0],
                )
                raise unexpected[0]

            if halt:
                raise self._halted(run, config, halt[0], outcomes)

            return outcomes

    async def process_batch(
        self,
        run: MigrationRun,
        group: str,
        batch_id: str,
        records: Sequence[Any],
        config: MigrationConfig,
        *,
        undo_log: UndoLog | None = None,
    ) -> BatchOutcome:
        """
        Process one batch of records.

        Never raises for item-level problems; they are counted as failed and
        recorded on the outcome.

        Returns:
            Outcome of the batch
        """
        bulk = (
            not config.dry_run
            and config.use_bulk_insert
            and bool(getattr(self._store, "supports_bulk_insert", False))
        )

        with self._tracer.span(
            "batchmigrate.batch_processor.process_batch",
            {
                ATTR_RUN_ID: run.run_id,
                ATTR_BATCH_ID: batch_id,
                ATTR_BATCH_SIZE: len(records),
                ATTR_BULK_INSERT: bulk,
            },
        ):
            start = time.perf_counter()
            tally = _BatchTally()

            if config.dry_run:
                tally.succeeded = len(records)
            elif bulk:
                await self._process_bulk(records, config, tally, undo_log)
            else:
                await self._process_sequential(records, config, tally, undo_log)

            elapsed_ms = (time.perf_counter() - start) * 1000

            return BatchOutcome(
                batch_id=batch_id,
                group=group,
                processed=len(records),
                succeeded=tally.succeeded,
                failed=tally.failed,
                duplicates=tally.duplicates,
                elapsed_ms=elapsed_ms,
                errors=tuple(tally.errors),
                bulk=bulk,
            )

    async def _process_sequential(
        self,
        records: Sequence[Any],
        config: MigrationConfig,
        tally: _BatchTally,
        undo_log: UndoLog | None,
    ) -> None:
        for raw in records:
            try:
                await self._process_item(raw, config, tally, undo_log)
            except Exception as e:
                logger.warning("Unexpected error processing record: %s", e, exc_info=True)
                tally.fail(
                    _item_error(f"Unexpected error: {e}", None, ITEM_PROCESSING_FAILED)
                )

    async def _process_item(
        self,
        raw: Any,
        config: MigrationConfig,
        tally: _BatchTally,
        undo_log: UndoLog | None,
    ) -> None:
        row = self._transform(raw, tally)
        if row is None:
            return

        if config.skip_duplicates:
            found, lookup_error = await self._detector.check(row)
            if lookup_error is not None:
                tally.errors.append(lookup_error)
            if found:
                tally.duplicates += 1
                return

        item_id = self._mapping.describe(row)
        try:
            result = await self._store.insert_one(row)
        except Exception as e:
            logger.debug("Insert failed for %s: %s", item_id, e)
            tally.fail(_item_error(f"Insert failed: {e}", item_id, ITEM_INSERT_FAILED))
            return

        if result.success:
            tally.succeeded += 1
            if undo_log is not None:
                undo_log.add(self._mapping.natural_key(row))
        else:
            tally.fail(
                _item_error(
                    result.error or "Insert rejected by destination store",
                    item_id,
                    ITEM_INSERT_FAILED,
                )
            )

    async def _process_bulk(
        self,
        records: Sequence[Any],
        config: MigrationConfig,
        tally: _BatchTally,
        undo_log: UndoLog | None,
    ) -> None:
        rows: list[BaseModel] = []
        for raw in records:
            row = self._transform(raw, tally)
            if row is not None:
                rows.append(row)

        if config.skip_duplicates:
            rows = self._drop_repeats(rows, tally)
            rows, duplicates, lookup_errors = await self._detector.filter_new(rows)
            tally.duplicates += duplicates
            tally.errors.extend(lookup_errors)

        if not rows:
            return

        try:
            result = await self._store.insert_many(rows)
        except Exception as e:
            logger.warning("Bulk insert of %d rows failed: %s", len(rows), e)
            for row in rows:
                tally.fail(
                    _item_error(
                        f"Bulk insert failed: {e}",
                        self._mapping.describe(row),
                        ITEM_INSERT_FAILED,
                    )
                )
            return

        rejected: set[int] = set()
        for item_error in result.errors:
            if 0 <= item_error.index < len(rows) and item_error.index not in rejected:
                rejected.add(item_error.index)
                tally.fail(
                    _item_error(
                        item_error.message,
                        self._mapping.describe(rows[item_error.index]),
                        ITEM_INSERT_FAILED,
                    )
                )

        accepted = len(rows) - len(rejected)
        written = min(result.affected, accepted)
        tally.succeeded += written

        if written < accepted:
            missing = accepted - written
            logger.warning(
                "Bulk insert wrote %d of %d accepted rows; counting %d as failed",
                written,
                accepted,
                missing,
            )
            for _ in range(missing):
                tally.fail(
                    _item_error(
                        "Row not written by bulk insert",
                        None,
                        ITEM_INSERT_FAILED,
                    )
                )
            # Which rows were skipped is unknown, so none are safe to undo.
            return

        if undo_log is not None:
            undo_log.extend(
                [
                    self._mapping.natural_key(row)
                    for index, row in enumerate(rows)
                    if index not in rejected
                ]
            )

    def _transform(self, raw: Any, tally: _BatchTally) -> BaseModel | None:
        try:
            return self._mapping.transform(raw)
        except ItemTransformError as e:
            logger.debug("Skipping malformed record: %s", e)
            tally.fail(e.to_record(MigrationPhase.MIGRATING_DATA))
            return None
        except Exception as e:
            logger.warning("Unexpected error transforming record: %s", e, exc_info=True)
            tally.fail(_item_error(f"Transform failed: {e}", None, ITEM_PROCESSING_FAILED))
            return None

    def _drop_repeats(self, rows: list[BaseModel], tally: _BatchTally) -> list[BaseModel]:
        """Count rows repeating a natural key earlier in the same batch as duplicates."""
        seen: set[NaturalKey] = set()
        unique: list[BaseModel] = []
        for row in rows:
            key = self._mapping.natural_key(row)
            if key in seen:
                tally.duplicates += 1
                continue
            seen.add(key)
            unique.append(row)
        return unique

    async def _after_batch(self, run: MigrationRun, outcome: BatchOutcome) -> None:
        await self._progress.update(run, outcome)

        if self._audit is not None:
            await self._audit.log(
                run,
                AuditAction.BATCH_COMPLETED,
                outcome.to_dict(),
                memory_usage_mb=self._governor.current_mb,
            )

        if self._metrics is not None:
            self._metrics.record_batch_duration(run.type_tag, outcome.elapsed_ms)
            self._metrics.record_records_processed(
                run.type_tag,
                succeeded=outcome.succeeded,
                failed=outcome.failed,
                duplicates=outcome.duplicates,
            )

        logger.debug(
            "Batch %s of run %s: %d processed, %d succeeded, %d failed, %d duplicates",
            outcome.batch_id,
            run.run_id,
            outcome.processed,
            outcome.succeeded,
            outcome.failed,
            outcome.duplicates,
        )

    @staticmethod
    def _halted(
        run: MigrationRun,
        config: MigrationConfig,
        cause: BaseException,
        outcomes: list[BatchOutcome],
    ) -> Exception:
        if isinstance(cause, MemoryLimitExceededError):
            error: Exception = MemoryLimitExceededError(
                cause.current_mb,
                cause.limit_mb,
                run_id=run.run_id,
                outcomes=outcomes,
            )
        else:
            error = MigrationTimeoutError(
                config.timeout_ms,
                run_id=run.run_id,
                outcomes=outcomes,
            )
        error.__cause__ = cause
        return error


def _expired(deadline: float | None) -> bool:
    return deadline is not None and time.monotonic() >= deadline


__all__ = ["BatchProcessor", "UndoLog", "chunk", "ITEM_INSERT_FAILED"]
