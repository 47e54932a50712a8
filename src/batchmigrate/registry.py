"""
Registry of migration runs owned by one orchestrator.

Live runs are tracked until they become terminal, at which point they are
moved to the finished set together with their final snapshot and result.
The finished set keeps at most ``max_finished`` runs; the oldest are evicted
first, and callers may drop one earlier with forget(). All access is serialized through an asyncio.Lock.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field

from batchmigrate.batch_processor import UndoLog
from batchmigrate.exceptions import RunNotFoundError
from batchmigrate.models import MigrationResult, MigrationRun, ProgressSnapshot

DEFAULT_MAX_FINISHED_RUNS = 1000


@dataclass
class RunHandle:
    """
    Live state the orchestrator keeps for one run.

    Attributes:
        run: The run itself
        undo_log: Natural keys inserted by the run
        task: Background task executing the run, when started with start()
    """

    run: MigrationRun
    undo_log: UndoLog = field(default_factory=UndoLog)
    task: asyncio.Task[MigrationResult] | None = None


@dataclass(frozen=True)
class FinishedRun:
    """Final snapshot and result of a terminal run."""

    snapshot: ProgressSnapshot
    result: MigrationResult


class RunRegistry:
    """
    Tracks live and finished runs.

    Example:
        >>> registry = RunRegistry()
        >>> handle = await registry.register(run)
        >>> await registry.finish(run.run_id, snapshot, result)
        >>> (await registry.get_result(run.run_id)).success
    """

    def __init__(self, max_finished: int = DEFAULT_MAX_FINISHED_RUNS) -> None:
        if max_finished < 1:
            raise ValueError(f"max_finished must be at least 1, got {max_finished}")
        self._max_finished = max_finished
        self._live: dict[str, RunHandle] = {}
        self._finished: dict[str, FinishedRun] = {}
        self._lock = asyncio.Lock()

    async def register(self, run: MigrationRun) -> RunHandle:
        """
        Add a new live run.

        Raises:
            ValueError: If the run id is already known
        """
        async with self._lock:
            if run.run_id in self._live or run.run_id in self._finished:
                raise ValueError(f"Run {run.run_id} is already registered")
            handle = RunHandle(run=run)
            self._live[run.run_id] = handle
            return handle

    async def attach_task(self, run_id: str, task: asyncio.Task[MigrationResult]) -> None:
        """Associate the background task executing a live run."""
        async with self._lock:
            handle = self._live.get(run_id)
            if handle is not None:
                handle.task = task

    async def get_live(self, run_id: str) -> RunHandle | None:
        async with self._lock:
            return self._live.get(run_id)

    async def get_finished(self, run_id: str) -> FinishedRun | None:
        async with self._lock:
            return self._finished.get(run_id)

    async def finish(
        self,
        run_id: str,
        snapshot: ProgressSnapshot,
        result: MigrationResult,
    ) -> None:
        """Move a run from live to finished, evicting the oldest finished run if full."""
        async with self._lock:
            self._live.pop(run_id, None)
            self._finished[run_id] = FinishedRun(snapshot=snapshot, result=result)
            while len(self._finished) > self._max_finished:
                del self._finished[next(iter(self._finished))]

    async def get_result(self, run_id: str) -> MigrationResult | None:
        """
        Get the result of a run.

        Returns:
            The result of a finished run, None while it is live

        Raises:
            RunNotFoundError: If the run id is unknown
        """
        async with self._lock:
            finished = self._finished.get(run_id)
            if finished is not None:
                return finished.result
            if run_id in self._live:
                return None
        raise RunNotFoundError(run_id)

    async def live_run_ids(self) -> list[str]:
        async with self._lock:
            return list(self._live)

    async def forget(self, run_id: str) -> bool:
        """
        Drop a finished run's result.

        Returns:
            True if a finished run was removed
        """
        async with self._lock:
            return self._finished.pop(run_id, None) is not None

    @property
    def live_count(self) -> int:
        return len(self._live)

    @property
    def finished_count(self) -> int:
        return len(self._finished)


__all__ = ["DEFAULT_MAX_FINISHED_RUNS", "FinishedRun", "RunHandle", "RunRegistry"]
