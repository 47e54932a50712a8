"""
Resource governor for memory backpressure.

The governor samples process memory on a fixed interval in a background
task and, on demand, checks it against a ceiling. When memory nears the
ceiling it asks the garbage collector to run and pauses briefly before
re-checking; if memory is still over the ceiling the check fails with
MemoryLimitExceededError.

Example:
    >>> from batchmigrate.governor import ResourceGovernor
    >>>
    >>> async with ResourceGovernor(limit_mb=500) as governor:
    ...     sample = await governor.check_and_throttle()
    ...     print(f"{sample.current_mb:.1f}MB (peak {governor.peak_mb:.1f}MB)")
"""

from __future__ import annotations

import asyncio
import contextlib
import gc
import logging
from datetime import UTC, datetime
from types import TracebackType

import psutil

from batchmigrate.exceptions import MemoryLimitExceededError
from batchmigrate.metrics import MigrationMetrics
from batchmigrate.models import ResourceSample
from batchmigrate.observability import (
    ATTR_MEMORY_LIMIT_MB,
    ATTR_MEMORY_MB,
    Tracer,
    create_tracer,
)
from batchmigrate.protocols import MemorySampler

logger = logging.getLogger(__name__)

_BYTES_PER_MB = 1024 * 1024

DEFAULT_SAMPLE_INTERVAL_SECONDS = 5.0


class PsutilMemorySampler:
    """
    Memory sampler reading the resident set size of a process.

    Args:
        pid: Process to sample (default: the current process)
    """

    def __init__(self, pid: int | None = None) -> None:
        self._process = psutil.Process(pid)

    def __call__(self) -> float:
        return self._process.memory_info().rss / _BYTES_PER_MB


class ResourceGovernor:
    """
    Samples memory and applies backpressure when it nears a ceiling.

    The background sampling task is independent of any run; start it once
    per engine with start() or ``async with``. check_and_throttle() always
    takes a fresh sample, so it works without the background task too.

    Peak memory never decreases until reset_peak() is called.

    Args:
        sampler: Callable returning memory in MB (default: PsutilMemorySampler)
        limit_mb: Default ceiling for check_and_throttle()
        interval_seconds: Background sampling interval
        throttle_pause_ms: Default pause taken when near the ceiling
        metrics: Optional metrics container fed with samples and throttle events
        tracer: Optional custom Tracer
        enable_tracing: Whether to enable OpenTelemetry tracing
    """

    def __init__(
        self,
        sampler: MemorySampler | None = None,
        *,
        limit_mb: float = 500,
        interval_seconds: float = DEFAULT_SAMPLE_INTERVAL_SECONDS,
        throttle_pause_ms: int = 100,
        metrics: MigrationMetrics | None = None,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        if limit_mb <= 0:
            raise ValueError(f"limit_mb must be > 0, got {limit_mb}")
        if interval_seconds <= 0:
            raise ValueError(f"interval_seconds must be > 0, got {interval_seconds}")

        self._sampler = sampler or PsutilMemorySampler()
        self._limit_mb = limit_mb
        self._interval_seconds = interval_seconds
        self._throttle_pause_ms = throttle_pause_ms
        self._metrics = metrics
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled

        self._current_mb = 0.0
        self._peak_mb = 0.0
        self._last_sampled_at: datetime | None = None
        self._task: asyncio.Task[None] | None = None

    @property
    def limit_mb(self) -> float:
        return self._limit_mb

    @property
    def current_mb(self) -> float:
        """Latest sampled memory usage in MB."""
        return self._current_mb

    @property
    def peak_mb(self) -> float:
        """Highest memory usage seen since start or the last reset_peak()."""
        return self._peak_mb

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def sample(self, limit_mb: float | None = None) -> ResourceSample:
        """
        Take a memory reading and update the peak.

        Args:
            limit_mb: Ceiling to report against (default: the governor's)

        Returns:
            ResourceSample for the reading
        """
        current = float(self._sampler())
        self._current_mb = current
        self._peak_mb = max(self._peak_mb, current)
        self._last_sampled_at = datetime.now(UTC)

        if self._metrics is not None:
            self._metrics.record_memory_usage(current)

        return ResourceSample(
            current_mb=current,
            peak_mb=self._peak_mb,
            limit_mb=self._limit_mb if limit_mb is None else limit_mb,
            sampled_at=self._last_sampled_at,
        )

    def reset_peak(self) -> None:
        """Reset the peak to the latest reading."""
        self._peak_mb = self._current_mb

    async def check_and_throttle(
        self,
        limit_mb: float | None = None,
        *,
        pause_ms: int | None = None,
    ) -> ResourceSample:
        """
        Check memory against the ceiling, pausing if it is close.

        Above 80% of the ceiling the garbage collector is run and the caller
        is paused for ``pause_ms`` before memory is sampled again.

        Args:
            limit_mb: Ceiling to check against (default: the governor's)
            pause_ms: Pause taken when near the ceiling (default: the governor's)

        Returns:
            The last sample taken

        Raises:
            MemoryLimitExceededError: If memory is still above the ceiling
                after the pause
        """
        limit = self._limit_mb if limit_mb is None else limit_mb
        pause = self._throttle_pause_ms if pause_ms is None else pause_ms

        reading = self.sample(limit)
        if not reading.near_limit:
            return reading

        with self._tracer.span(
            "batchmigrate.governor.throttle",
            {
                ATTR_MEMORY_MB: reading.current_mb,
                ATTR_MEMORY_LIMIT_MB: limit,
            },
        ):
            logger.warning(
                "Memory usage %.1fMB is above 80%% of the %.1fMB limit, throttling for %dms",
                reading.current_mb,
                limit,
                pause,
            )
            if self._metrics is not None:
                self._metrics.record_throttle_event()

            gc.collect()
            await asyncio.sleep(pause / 1000)

            reading = self.sample(limit)
            if reading.over_limit:
                raise MemoryLimitExceededError(reading.current_mb, limit)

        return reading

    async def start(self) -> None:
        """Start background sampling. Calling it twice is a no-op."""
        if self.is_running:
            return
        self.sample()
        self._task = asyncio.create_task(self._sample_loop())
        logger.debug(
            "Resource governor sampling every %.1fs (limit %.1fMB)",
            self._interval_seconds,
            self._limit_mb,
        )

    async def stop(self) -> None:
        """Stop background sampling."""
        if self._task is None:
            return
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None

    async def _sample_loop(self) -> None:
        while True:
            await asyncio.sleep(self._interval_seconds)
            try:
                self.sample()
            except Exception as e:
                logger.warning("Memory sampling failed: %s", e, exc_info=True)

    async def __aenter__(self) -> ResourceGovernor:
        await self.start()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.stop()


__all__ = [
    "DEFAULT_SAMPLE_INTERVAL_SECONDS",
    "PsutilMemorySampler",
    "ResourceGovernor",
]
