"""Bounded background queue for post-turn work.

Summaries, embeddings and similar follow-ups are submitted after a reply has
been generated and run on a small pool of workers, so they never add
latency to the turn. When the queue is full new jobs are dropped and
counted; a failing job is logged and never affects the others.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from loguru import logger

from .config import WorkQueueConfig

JobFactory = Callable[[], Awaitable[Any]]


@dataclass
class _Job:
    name: str
    factory: JobFactory
    submitted_at: float


class BackgroundTaskQueue:
    """Worker pool draining a bounded asyncio queue."""

    def __init__(self, config: WorkQueueConfig | None = None):
        self.config = config or WorkQueueConfig()
        self._queue: asyncio.Queue[_Job] = asyncio.Queue(maxsize=self.config.max_size)
        self._workers: list[asyncio.Task] = []
        self._running = False

        self._total_submitted = 0
        self._total_processed = 0
        self._total_failed = 0
        self._total_dropped = 0

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        if self._running:
            logger.warning("BackgroundTaskQueue is already running")
            return

        self._running = True
        for i in range(self.config.worker_count):
            worker = asyncio.create_task(
                self._worker(worker_id=i), name=f"stage_recall_worker_{i}"
            )
            self._workers.append(worker)

        logger.info(f"BackgroundTaskQueue started ({self.config.worker_count} workers)")

    async def stop(self, timeout: float = 5.0) -> None:
        """Let queued jobs finish for up to ``timeout`` seconds, then cancel."""
        if not self._running:
            return

        try:
            await asyncio.wait_for(self._queue.join(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning(
                f"BackgroundTaskQueue stopping with {self._queue.qsize()} jobs pending"
            )

        self._running = False
        for worker in self._workers:
            worker.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers.clear()
        logger.info("BackgroundTaskQueue stopped")

    def submit(self, name: str, factory: JobFactory) -> bool:
        """Queue a job without waiting.

        Args:
            name: Label used in logs
            factory: Zero-argument coroutine factory, called by a worker

        Returns:
            True if queued, False if the queue is stopped or full
        """
        if not self._running:
            logger.warning(f"BackgroundTaskQueue not running, dropping job '{name}'")
            self._total_dropped += 1
            return False

        try:
            self._queue.put_nowait(_Job(name, factory, time.monotonic()))
        except asyncio.QueueFull:
            self._total_dropped += 1
            logger.warning(f"Background queue full, dropping job '{name}'")
            return False

        self._total_submitted += 1
        return True

    async def join(self) -> None:
        """Wait until every queued job has been processed."""
        await self._queue.join()

    async def _worker(self, worker_id: int) -> None:
        while True:
            job = await self._queue.get()
            try:
                await self._run(job, worker_id)
            finally:
                self._queue.task_done()

    async def _run(self, job: _Job, worker_id: int) -> None:
        started = time.monotonic()
        try:
            await asyncio.wait_for(job.factory(), timeout=self.config.job_timeout_seconds)
        except asyncio.TimeoutError:
            self._total_failed += 1
            logger.error(
                f"Background job '{job.name}' timed out after "
                f"{self.config.job_timeout_seconds}s"
            )
            return
        except Exception as e:
            self._total_failed += 1
            logger.error(f"Background job '{job.name}' failed: {e}")
            return

        self._total_processed += 1
        logger.debug(
            f"Worker {worker_id} finished '{job.name}' in "
            f"{time.monotonic() - started:.3f}s "
            f"(queued {started - job.submitted_at:.3f}s)"
        )

    def get_status(self) -> dict[str, Any]:
        return {
            "running": self._running,
            "worker_count": len(self._workers),
            "queue_size": self._queue.qsize(),
            "queue_max_size": self.config.max_size,
            "total_submitted": self._total_submitted,
            "total_processed": self._total_processed,
            "total_failed": self._total_failed,
            "total_dropped": self._total_dropped,
        }
