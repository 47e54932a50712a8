"""
Audit logging for migration runs.

The AuditLogger writes an append-only history of every run to an AuditSink:
run start, each phase transition, each completed batch, integrity checks,
rollbacks and the terminal outcome. Entries for a run are numbered with a
per-run sequence that preserves emission order even when batches finish
concurrently.

Audit logging is best-effort: a failing or stalled sink is reported through the
``batchmigrate.audit`` logger and the run carries on.

Usage:
    >>> from batchmigrate.audit import AuditLogger
    >>> from batchmigrate.stores import InMemoryAuditSink
    >>>
    >>> sink = InMemoryAuditSink()
    >>> audit = AuditLogger(sink)
    >>> await audit.log(run, AuditAction.RUN_STARTED, {"config": run.config.to_dict()})
    >>> [e.action for e in sink.entries_for(run.run_id)]
    [<AuditAction.RUN_STARTED: 'run_started'>]
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
from datetime import UTC, datetime
from typing import Any

from batchmigrate.exceptions import ErrorSeverity
from batchmigrate.models import AuditAction, AuditEntry, MigrationRun
from batchmigrate.observability import (
    ATTR_AUDIT_ACTION,
    ATTR_RUN_ID,
    Tracer,
    create_tracer,
)
from batchmigrate.protocols import AuditSink

logger = logging.getLogger(__name__)

DEFAULT_APPEND_TIMEOUT_SECONDS = 5.0


class AuditLogger:
    """
    Serializes audit entries into an AuditSink.

    Entries are stamped and appended one at a time under a lock. Each append
    is bounded by ``append_timeout``, so a stalled sink holds the lock, and
    delays the run, for at most that long per entry. Entries whose
    severity warrants an alert are also written to the ``batchmigrate.audit``
    logger at the matching level.

    Args:
        sink: Destination for entries (None disables persistence)
        tracer: Optional custom Tracer
        enable_tracing: Whether to enable OpenTelemetry tracing
        append_timeout: Seconds to wait for one append before giving up
    """

    def __init__(
        self,
        sink: AuditSink | None,
        *,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
        append_timeout: float = DEFAULT_APPEND_TIMEOUT_SECONDS,
    ) -> None:
        if append_timeout <= 0:
            raise ValueError(f"append_timeout must be positive, got {append_timeout}")
        self._sink = sink
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled
        self._append_timeout = append_timeout
        self._lock = asyncio.Lock()
        self._sequences: dict[str, int] = {}
        self._failures = 0

    @property
    def failures(self) -> int:
        """Number of entries the sink failed to store."""
        return self._failures

    async def record(self, entry: AuditEntry) -> AuditEntry:
        """
        Append an entry to the sink.

        The entry is re-stamped with the next sequence number of its run.

        Args:
            entry: Entry to append

        Returns:
            The entry as stamped and handed to the sink
        """
        async with self._lock:
            sequence = self._sequences.get(entry.run_id, 0) + 1
            self._sequences[entry.run_id] = sequence
            stamped = dataclasses.replace(entry, sequence=sequence)
            await self._append(stamped)

        if stamped.severity.should_alert:
            logger.log(
                stamped.severity.log_level,
                "Audit %s for run %s in phase %s: %s",
                stamped.action.value,
                stamped.run_id,
                stamped.phase.value,
                stamped.details,
            )

        return stamped

    async def _append(self, stamped: AuditEntry) -> None:
        if self._sink is None:
            return

        with self._tracer.span(
            "batchmigrate.audit.record",
            {
                ATTR_RUN_ID: stamped.run_id,
                ATTR_AUDIT_ACTION: stamped.action.value,
            },
        ):
            try:
                await asyncio.wait_for(
                    self._sink.append(stamped), timeout=self._append_timeout
                )
            except TimeoutError:
                self._failures += 1
                logger.warning(
                    "Audit sink timed out after %.2fs writing %s #%d for run %s",
                    self._append_timeout,
                    stamped.action.value,
                    stamped.sequence,
                    stamped.run_id,
                )
            except Exception as e:
                self._failures += 1
                logger.warning(
                    "Failed to write audit entry %s #%d for run %s: %s",
                    stamped.action.value,
                    stamped.sequence,
                    stamped.run_id,
                    e,
                    exc_info=True,
                )

    async def log(
        self,
        run: MigrationRun,
        action: AuditAction,
        details: dict[str, Any] | None = None,
        *,
        severity: ErrorSeverity = ErrorSeverity.INFO,
        memory_usage_mb: float = 0.0,
    ) -> AuditEntry | None:
        """
        Build an entry from the run's current state and record it.

        Entries are dropped when the run's configuration disables audit
        logging.

        Returns:
            The recorded entry, or None if it was dropped
        """
        if not run.config.enable_audit_logging:
            return None

        entry = AuditEntry(
            run_id=run.run_id,
            sequence=0,
            timestamp=datetime.now(UTC),
            phase=run.phase,
            action=action,
            details=dict(details or {}),
            counters=run.counters(),
            severity=severity,
            memory_usage_mb=memory_usage_mb,
        )
        return await self.record(entry)

    def forget(self, run_id: str) -> None:
        """Release the sequence counter of a finished run."""
        self._sequences.pop(run_id, None)


__all__ = ["DEFAULT_APPEND_TIMEOUT_SECONDS", "AuditLogger"]
