"""
Best-effort job dispatcher.

Post-acknowledgment work (trace aggregation, signal emission, quota accounting)
runs here: jobs go onto a bounded queue served by a fixed pool of worker tasks.
Each job runs under a timeout. Failures, timeouts and jobs dropped because the
queue is full are written to the ``observa.deadletter`` logger and never reach
the client.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field

from observa import config

logger = logging.getLogger(__name__)
deadletter = logging.getLogger("observa.deadletter")

JobFactory = Callable[[], Awaitable[object]]


@dataclass
class Job:
    name: str
    factory: JobFactory
    enqueued_at: float = field(default_factory=time.monotonic)


async def run_isolated(name: str, factory: JobFactory, timeout: float | None = None) -> bool:
    """
    Run one job, logging failures to the dead-letter log instead of raising.

    Returns True when the job completed.
    """
    try:
        if timeout:
            await asyncio.wait_for(factory(), timeout=timeout)
        else:
            await factory()
        return True
    except asyncio.TimeoutError:
        deadletter.error("JOB_TIMEOUT: job=%s timeout=%.1fs", name, timeout)
    except asyncio.CancelledError:
        raise
    except Exception as e:
        deadletter.error("JOB_FAILED: job=%s error=%s", name, e, exc_info=True)
    return False


class BackgroundDispatcher:
    """Bounded queue plus worker pool for best-effort jobs."""

    def __init__(
        self,
        workers: int | None = None,
        queue_size: int | None = None,
        job_timeout: float | None = None,
    ):
        self.worker_count = workers or config.BACKGROUND_WORKERS
        self.queue_size = queue_size or config.BACKGROUND_QUEUE_SIZE
        self.job_timeout = job_timeout or config.BACKGROUND_TASK_TIMEOUT_SECONDS
        self._queue: asyncio.Queue[Job] | None = None
        self._workers: list[asyncio.Task[None]] = []
        self._running = False
        self.completed = 0
        self.failed = 0
        self.dropped = 0

    @property
    def running(self) -> bool:
        return self._running

    @property
    def pending(self) -> int:
        return self._queue.qsize() if self._queue else 0

    async def start(self) -> None:
        """Start the worker tasks."""
        if self._running:
            logger.warning("Background dispatcher already running")
            return

        self._queue = asyncio.Queue(maxsize=self.queue_size)
        self._running = True
        self._workers = [
            asyncio.create_task(self._worker(i), name=f"observa-worker-{i}")
            for i in range(self.worker_count)
        ]
        logger.info(
            "Background dispatcher started (workers=%d, queue=%d, timeout=%.1fs)",
            self.worker_count,
            self.queue_size,
            self.job_timeout,
        )

    async def stop(self, drain: bool = True) -> None:
        """Stop the workers, optionally letting queued jobs finish first."""
        if not self._running:
            return

        if drain and self._queue is not None:
            with contextlib.suppress(asyncio.TimeoutError):
                await asyncio.wait_for(self._queue.join(), timeout=self.job_timeout)

        self._running = False
        for task in self._workers:
            task.cancel()
        for task in self._workers:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._workers = []

        if self._queue is not None and not self._queue.empty():
            while not self._queue.empty():
                job = self._queue.get_nowait()
                deadletter.error("JOB_DROPPED: job=%s reason=shutdown", job.name)
                self.dropped += 1
        logger.info(
            "Background dispatcher stopped (completed=%d, failed=%d, dropped=%d)",
            self.completed,
            self.failed,
            self.dropped,
        )

    def submit(self, name: str, factory: JobFactory) -> bool:
        """
        Enqueue a job without waiting.

        Returns False (and dead-letters the job) when the dispatcher is not
        running or the queue is full.
        """
        if not self._running or self._queue is None:
            deadletter.error("JOB_DROPPED: job=%s reason=not_running", name)
            self.dropped += 1
            return False
        try:
            self._queue.put_nowait(Job(name=name, factory=factory))
        except asyncio.QueueFull:
            deadletter.error("JOB_DROPPED: job=%s reason=queue_full size=%d", name, self.queue_size)
            self.dropped += 1
            return False
        return True

    async def _worker(self, index: int) -> None:
        assert self._queue is not None
        while True:
            job = await self._queue.get()
            try:
                ok = await run_isolated(job.name, job.factory, self.job_timeout)
                if ok:
                    self.completed += 1
                else:
                    self.failed += 1
                waited = time.monotonic() - job.enqueued_at
                if waited > self.job_timeout:
                    logger.warning(
                        "Straggler job %s finished %.1fs after enqueue (worker %d)",
                        job.name,
                        waited,
                        index,
                    )
            finally:
                self._queue.task_done()
