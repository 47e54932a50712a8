"""
Rollback of failed migration runs.

The RollbackManager removes the rows a failed run inserted, using the run's
undo log of natural keys. It always reports accurately: a store that cannot
delete yields an unsuccessful record with an explanation instead of a silent
success, and a failed undo is audited as CRITICAL and surfaced as a result
warning. Rollback errors are never re-raised; the run stays FAILED either way.
"""

from __future__ import annotations

import logging
import time
import uuid

from batchmigrate.audit import AuditLogger
from batchmigrate.batch_processor import UndoLog
from batchmigrate.exceptions import ErrorSeverity, RollbackError
from batchmigrate.metrics import MigrationMetrics
from batchmigrate.models import AuditAction, MigrationErrorRecord, MigrationRun, RollbackRecord
from batchmigrate.observability import ATTR_ITEMS_TOTAL, ATTR_RUN_ID, Tracer, create_tracer
from batchmigrate.protocols import DestinationStore, NaturalKey

logger = logging.getLogger(__name__)


class RollbackManager:
    """
    Undoes the writes of a failed run.

    Args:
        store: Destination store the run wrote to
        audit: Audit logger receiving rollback entries
        metrics: Optional metrics container
        tracer: Optional custom Tracer
        enable_tracing: Whether to enable OpenTelemetry tracing
    """

    def __init__(
        self,
        store: DestinationStore,
        *,
        audit: AuditLogger | None = None,
        metrics: MigrationMetrics | None = None,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._store = store
        self._audit = audit
        self._metrics = metrics
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled

    async def rollback(self, run: MigrationRun, undo_log: UndoLog) -> RollbackRecord:
        """
        Remove every row recorded in the undo log.

        Args:
            run: The failed run (in ROLLING_BACK)
            undo_log: Natural keys the run inserted

        Returns:
            RollbackRecord describing what was undone
        """
        rollback_id = f"rollback_{run.run_id}_{uuid.uuid4().hex[:8]}"
        keys = undo_log.keys

        with self._tracer.span(
            "batchmigrate.rollback.rollback",
            {ATTR_RUN_ID: run.run_id, ATTR_ITEMS_TOTAL: len(keys)},
        ):
            await self._log(
                run,
                AuditAction.ROLLBACK_STARTED,
                {"rollback_id": rollback_id, "keys": len(keys)},
            )
            start = time.perf_counter()

            try:
                undone = await self._undo(run, keys)
            except RollbackError as e:
                record = RollbackRecord(
                    rollback_id=rollback_id,
                    items_undone=0,
                    elapsed_ms=(time.perf_counter() - start) * 1000,
                    success=False,
                    error_message=e.message,
                )
                await self._report_failure(run, record, e)
                return record

            record = RollbackRecord(
                rollback_id=rollback_id,
                items_undone=undone,
                elapsed_ms=(time.perf_counter() - start) * 1000,
                success=True,
            )
            undo_log.clear()

            logger.info(
                "Rolled back run %s: %d rows removed in %.1fms",
                run.run_id,
                undone,
                record.elapsed_ms,
            )
            await self._log(run, AuditAction.ROLLBACK_COMPLETED, record.to_dict())
            if self._metrics is not None:
                self._metrics.record_rollback(run.type_tag, success=True)
            return record

    async def _undo(self, run: MigrationRun, keys: tuple[NaturalKey, ...]) -> int:
        if not keys:
            return 0

        if not getattr(self._store, "supports_delete", False):
            raise RollbackError(
                f"Destination store cannot delete rows; {len(keys)} inserted rows remain",
                run_id=run.run_id,
                context={"keys": len(keys)},
            )

        try:
            return await self._store.delete_many(list(keys))
        except Exception as e:
            raise RollbackError(
                f"Deleting {len(keys)} inserted rows failed: {e}",
                run_id=run.run_id,
                context={"keys": len(keys), "error_type": type(e).__name__},
            ) from e

    async def _report_failure(
        self,
        run: MigrationRun,
        record: RollbackRecord,
        error: RollbackError,
    ) -> None:
        logger.log(
            error.severity.log_level,
            "Rollback of run %s failed: %s",
            run.run_id,
            error.message,
            exc_info=error.__cause__ is not None,
        )
        run.errors.append(MigrationErrorRecord.from_exception(error, run.phase))
        run.warnings.append(f"Rollback failed: {error.message}")
        await self._log(
            run,
            AuditAction.ROLLBACK_FAILED,
            record.to_dict(),
            severity=ErrorSeverity.CRITICAL,
        )
        if self._metrics is not None:
            self._metrics.record_rollback(run.type_tag, success=False)

    async def _log(
        self,
        run: MigrationRun,
        action: AuditAction,
        details: dict,
        *,
        severity: ErrorSeverity = ErrorSeverity.INFO,
    ) -> None:
        if self._audit is not None:
            await self._audit.log(run, action, details, severity=severity)


__all__ = ["RollbackManager"]
