"""
Dispatch stage between a trigger firing and the executor.

Two strategies:

- ``ImmediateDispatcher`` (default): every due job runs at once in the
  firing task, so concurrency is unbounded.
- ``PriorityDispatcher``: a fixed pool of workers pulls due jobs from a
  priority queue ordered by rank, FIFO within a rank. Enabled by setting
  ``max_concurrent_jobs``.
"""

import asyncio
import itertools
import logging
from typing import Awaitable, Callable, List, Optional, Set, Tuple

from postscheduler.config import DEFAULT_PRIORITY, PRIORITY_RANKS, Settings

logger = logging.getLogger(__name__)

JobRunner = Callable[[], Awaitable[object]]


def priority_rank(label: Optional[str]) -> int:
    """Dispatch rank for a priority label; unknown labels rank as normal."""
    if label in PRIORITY_RANKS:
        return PRIORITY_RANKS[label]
    if label is not None:
        logger.warning("[SCHEDULER] Unknown priority '%s', using '%s'", label, DEFAULT_PRIORITY)
    return PRIORITY_RANKS[DEFAULT_PRIORITY]


class ImmediateDispatcher:
    """Runs each submitted job straight away in the caller's task."""

    async def submit(self, job_id: str, priority: Optional[str], run: JobRunner) -> None:
        await run()

    async def start(self) -> None:
        return None

    async def stop(self) -> None:
        return None

    @property
    def queued(self) -> int:
        return 0


class PriorityDispatcher:
    """Bounded worker pool fed by a priority queue.

    Args:
        max_workers: Number of jobs allowed to execute at once.
    """

    def __init__(self, max_workers: int) -> None:
        if max_workers < 1:
            raise ValueError(f"max_workers must be >= 1, got {max_workers}")
        self.max_workers = max_workers
        self._queue: "asyncio.PriorityQueue[Tuple[int, int, str, JobRunner]]" = asyncio.PriorityQueue()
        self._seq = itertools.count()
        self._workers: List["asyncio.Task[None]"] = []
        self._busy: Set["asyncio.Task[None]"] = set()
        self._running = False

    async def submit(self, job_id: str, priority: Optional[str], run: JobRunner) -> None:
        """Queue a job. Returns without waiting for it to run."""
        rank = priority_rank(priority)
        await self._queue.put((rank, next(self._seq), job_id, run))
        logger.debug(
            "[SCHEDULER] Queued %s (rank=%d, queued=%d)", job_id, rank, self._queue.qsize()
        )

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._workers = [
            asyncio.create_task(self._worker(i), name=f"dispatch-worker-{i}")
            for i in range(self.max_workers)
        ]
        logger.info("[SCHEDULER] Priority dispatcher started (%d workers)", self.max_workers)

    async def stop(self) -> None:
        """Stop idle workers; busy workers exit after their current job."""
        self._running = False
        idle = [w for w in self._workers if w not in self._busy]
        for worker in idle:
            worker.cancel()
        await asyncio.gather(*idle, return_exceptions=True)
        dropped = self._queue.qsize()
        if dropped:
            logger.warning("[SCHEDULER] Dropping %d queued job(s) on stop", dropped)
        logger.info("[SCHEDULER] Priority dispatcher stopped")

    async def join(self) -> None:
        """Wait until every queued job has been executed."""
        await self._queue.join()

    @property
    def queued(self) -> int:
        return self._queue.qsize()

    async def _worker(self, index: int) -> None:
        current = asyncio.current_task()
        while self._running:
            _, _, job_id, run = await self._queue.get()
            self._busy.add(current)
            try:
                await run()
            except Exception:
                logger.exception("[SCHEDULER] Worker %d failed running %s", index, job_id)
            finally:
                self._busy.discard(current)
                self._queue.task_done()


def build_dispatcher(settings: Settings):
    """Dispatcher matching ``settings.max_concurrent_jobs``."""
    if settings.max_concurrent_jobs is None:
        return ImmediateDispatcher()
    return PriorityDispatcher(settings.max_concurrent_jobs)


__all__ = [
    "priority_rank",
    "ImmediateDispatcher",
    "PriorityDispatcher",
    "build_dispatcher",
]
