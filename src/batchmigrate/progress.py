"""
Progress tracking for migration runs.

The ProgressTracker folds batch outcomes into a run's counters and turns
the run into ProgressSnapshot values, which it pushes to an optional sink.
A failing sink never affects the run.

Usage:
    >>> from batchmigrate.progress import ProgressTracker, QueueProgressSink
    >>>
    >>> sink = QueueProgressSink(maxsize=100)
    >>> tracker = ProgressTracker(sink=sink)
    >>> snapshot = await tracker.update(run, outcome)
    >>> latest = await sink.get()
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Callable
from datetime import UTC, datetime

from batchmigrate.models import BatchOutcome, MigrationRun, ProgressSnapshot
from batchmigrate.protocols import ProgressSink

logger = logging.getLogger(__name__)

DEFAULT_SINK_TIMEOUT_SECONDS = 1.0


class QueueProgressSink:
    """
    Bounded, non-blocking progress sink backed by an asyncio.Queue.

    When the queue is full the oldest snapshot is discarded so that the
    newest one always gets in and the producer never waits.

    Args:
        maxsize: Maximum number of queued snapshots (must be >= 1)
    """

    def __init__(self, maxsize: int = 100) -> None:
        if maxsize < 1:
            raise ValueError(f"maxsize must be >= 1, got {maxsize}")
        self._queue: asyncio.Queue[ProgressSnapshot] = asyncio.Queue(maxsize=maxsize)
        self._dropped = 0

    def __call__(self, snapshot: ProgressSnapshot) -> None:
        if self._queue.full():
            self._queue.get_nowait()
            self._dropped += 1
        self._queue.put_nowait(snapshot)

    async def get(self) -> ProgressSnapshot:
        """Wait for and return the next snapshot."""
        return await self._queue.get()

    def get_nowait(self) -> ProgressSnapshot:
        """
        Return the next snapshot without waiting.

        Raises:
            asyncio.QueueEmpty: If no snapshot is queued
        """
        return self._queue.get_nowait()

    def drain(self) -> list[ProgressSnapshot]:
        """Remove and return every queued snapshot, oldest first."""
        snapshots: list[ProgressSnapshot] = []
        while not self._queue.empty():
            snapshots.append(self._queue.get_nowait())
        return snapshots

    @property
    def dropped(self) -> int:
        """Snapshots discarded because the queue was full."""
        return self._dropped

    def qsize(self) -> int:
        return self._queue.qsize()


class ProgressTracker:
    """
    Folds batch outcomes into run counters and publishes snapshots.

    Counter updates happen without suspending, so concurrent batches in the
    same event loop never interleave half-applied outcomes.

    An async sink gets at most ``sink_timeout`` seconds per snapshot; a sink
    that takes longer is cancelled and counted as failed. A sync sink runs to
    completion in the caller, so it must not block.

    Args:
        sink: Optional sync or async callable receiving each snapshot
        memory_reader: Callable returning the latest memory reading in MB
        sink_timeout: Seconds an async sink may take per snapshot (must be > 0)
    """

    def __init__(
        self,
        sink: ProgressSink | None = None,
        *,
        memory_reader: Callable[[], float] | None = None,
        sink_timeout: float = DEFAULT_SINK_TIMEOUT_SECONDS,
    ) -> None:
        if sink_timeout <= 0:
            raise ValueError(f"sink_timeout must be > 0, got {sink_timeout}")
        self._sink = sink
        self._memory_reader = memory_reader
        self._sink_timeout = sink_timeout
        self._failures = 0

    @property
    def failures(self) -> int:
        """Snapshots the sink failed to take, including timeouts."""
        return self._failures

    async def update(self, run: MigrationRun, outcome: BatchOutcome) -> ProgressSnapshot:
        """
        Apply a batch outcome to the run and publish the resulting snapshot.

        Args:
            run: The run the batch belongs to
            outcome: The finished batch

        Returns:
            Snapshot of the run after the outcome was applied
        """
        run.processed += outcome.processed
        run.succeeded += outcome.succeeded
        run.failed += outcome.failed
        run.duplicates += outcome.duplicates
        run.errors.extend(outcome.errors)
        run.outcomes.append(outcome)
        run.updated_at = datetime.now(UTC)

        snapshot = self.snapshot(run)
        await self.publish(snapshot)
        return snapshot

    def snapshot(self, run: MigrationRun) -> ProgressSnapshot:
        """
        Build a snapshot of the run's current progress.

        Throughput is processed items per elapsed second; the ETA is the
        remaining items at that rate, or 0 when nothing has been processed.
        """
        elapsed = run.elapsed_seconds
        throughput = run.processed / elapsed if elapsed > 0 else 0.0
        eta_ms = (run.remaining / throughput) * 1000 if throughput > 0 else 0.0

        return ProgressSnapshot(
            run_id=run.run_id,
            phase=run.phase,
            total_items=run.total_items,
            processed=run.processed,
            succeeded=run.succeeded,
            failed=run.failed,
            duplicates=run.duplicates,
            throughput_per_second=throughput,
            eta_ms=eta_ms,
            memory_usage_mb=self._memory_reader() if self._memory_reader else 0.0,
            started_at=run.started_at,
            updated_at=datetime.now(UTC),
            error_count=len(run.errors),
        )

    async def publish(self, snapshot: ProgressSnapshot) -> None:
        """Push a snapshot to the sink, logging and discarding sink failures."""
        if self._sink is None:
            return
        try:
            result = self._sink(snapshot)
            if inspect.isawaitable(result):
                await asyncio.wait_for(result, timeout=self._sink_timeout)
        except TimeoutError:
            self._failures += 1
            logger.warning(
                "Progress sink for run %s timed out after %.2fs",
                snapshot.run_id,
                self._sink_timeout,
            )
        except Exception as e:
            self._failures += 1
            logger.warning(
                "Progress sink failed for run %s: %s",
                snapshot.run_id,
                e,
                exc_info=True,
            )


__all__ = ["DEFAULT_SINK_TIMEOUT_SECONDS", "ProgressTracker", "QueueProgressSink"]
