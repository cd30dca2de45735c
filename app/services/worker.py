"""Background consumer executing queued recommendation jobs."""

from __future__ import annotations

import asyncio
import logging
import time
from contextlib import suppress
from typing import Awaitable, Callable

from ..config import Settings
from ..utils import summarise_error
from .job_queue import MOVIE_RECOMMENDATION_JOB, Job, JobQueue, new_worker_id
from .queue_status import QueueStatusTracker
from .recommendations import RecommendationService

logger = logging.getLogger(__name__)

JobHandler = Callable[[Job], Awaitable[None]]


class JobRejectedError(RuntimeError):
    """Raised for jobs that can never succeed, such as unknown names or bad payloads."""


class RecommendationWorker:
    """Pulls jobs from the queue and runs them with bounded parallelism.

    Every consumer task loops: claim a job, mark it ``processing``, run the
    handler under ``job_timeout_seconds``, then either mark it ``done`` or
    hand the failure back to the queue, which owns the retry/backoff policy.
    """

    def __init__(
        self,
        settings: Settings,
        queue: JobQueue,
        tracker: QueueStatusTracker,
        recommendations: RecommendationService,
        *,
        worker_id: str | None = None,
    ):
        self._settings = settings
        self._queue = queue
        self._tracker = tracker
        self._recommendations = recommendations
        self._worker_id = worker_id or new_worker_id()
        self._handlers: dict[str, JobHandler] = {
            MOVIE_RECOMMENDATION_JOB: self._handle_recommendation,
        }
        self._tasks: list[asyncio.Task[None]] = []
        self._stopping = asyncio.Event()
        self._last_recovery = 0.0

    @property
    def worker_id(self) -> str:
        return self._worker_id

    @property
    def running(self) -> bool:
        return any(not task.done() for task in self._tasks)

    def register(self, name: str, handler: JobHandler) -> None:
        self._handlers[name] = handler

    async def start(self) -> None:
        """Recover jobs abandoned by crashed workers and launch consumers."""

        if self.running:
            return
        await self.recover()

        self._stopping.clear()
        self._tasks = [
            asyncio.create_task(self._consume(index), name=f"{self._worker_id}-{index}")
            for index in range(self._settings.worker_concurrency)
        ]
        logger.info(
            "Worker %s started with %d consumers",
            self._worker_id,
            len(self._tasks),
        )

    async def recover(self) -> int:
        """Requeue jobs whose lock expired and abandon those out of attempts.

        Runs on start and periodically from the first consumer, so jobs held by
        a crashed process are redelivered while other workers keep running.
        """

        recovery = await self._queue.recover_stale(self._settings.job_lock_timeout_seconds)
        for job in recovery.exhausted:
            await self._abandon(job, "Worker lost the job on its final attempt")
        self._last_recovery = time.monotonic()
        return recovery.requeued + len(recovery.exhausted)

    async def stop(self) -> None:
        """Cancel consumer tasks; interrupted jobs are recovered once their lock expires."""

        if not self._tasks:
            return
        self._stopping.set()
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            with suppress(asyncio.CancelledError):
                await task
        self._tasks = []
        logger.info("Worker %s stopped", self._worker_id)

    async def run_once(self) -> bool:
        """Process at most one due job; returns whether a job was handled."""

        job = await self._queue.claim(self._worker_id)
        if job is None:
            return False
        await self._process(job)
        return True

    async def drain(self, *, max_jobs: int = 1_000) -> int:
        """Process due jobs until the queue has none left; returns the count."""

        processed = 0
        while processed < max_jobs and await self.run_once():
            processed += 1
        return processed

    async def _consume(self, index: int) -> None:
        poll_interval = self._settings.worker_poll_interval_seconds
        while not self._stopping.is_set():
            try:
                if index == 0 and self._recovery_due():
                    await self.recover()
                handled = await self.run_once()
            except Exception as exc:  # pragma: no cover - background safety net
                logger.exception("Worker consumer %d crashed while polling: %s", index, exc)
                handled = False
            if not handled:
                await asyncio.sleep(poll_interval)

    def _recovery_due(self) -> bool:
        elapsed = time.monotonic() - self._last_recovery
        return elapsed >= self._settings.worker_recovery_interval_seconds

    async def _process(self, job: Job) -> None:
        handler = self._handlers.get(job.name)
        started = time.monotonic()
        logger.info(
            "Job %s (%s) starting attempt %d/%d",
            job.id,
            job.name,
            job.attempts,
            job.max_attempts,
        )

        # Every failure after the claim goes back to the queue; a job left
        # ``running`` is only redelivered once its lock expires.
        try:
            await self._tracker.advance(job.id, "processing")
            if handler is None:
                raise JobRejectedError(f"No handler registered for job {job.name!r}")
            await asyncio.wait_for(handler(job), timeout=self._settings.job_timeout_seconds)
            processing_time = int(time.monotonic() - started)
            await self._queue.complete(job.id)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            await self._fail(job, exc)
            return

        await self._tracker.advance(job.id, "done", processing_time=processing_time)
        logger.info("Job %s completed in %ds", job.id, processing_time)

    async def _fail(self, job: Job, exc: Exception) -> None:
        if isinstance(exc, asyncio.TimeoutError):
            error = f"Job exceeded {self._settings.job_timeout_seconds:g}s time limit"
        else:
            error = summarise_error(exc)
        logger.error("Job %s failed: %s", job.id, error, exc_info=exc)
        outcome = await self._queue.fail(
            job.id, error, retryable=not isinstance(exc, JobRejectedError)
        )
        if outcome.will_retry:
            await self._tracker.record_error(job.id, error)
        else:
            await self._abandon(job, error)

    async def _abandon(self, job: Job, error: str) -> None:
        logger.error(
            "Job %s abandoned after %d attempts: %s", job.id, job.attempts, error
        )
        await self._tracker.advance(job.id, "abandoned", error=error)

    async def _handle_recommendation(self, job: Job) -> None:
        try:
            user_id = int(job.payload["user_id"])
        except (KeyError, TypeError, ValueError) as exc:
            raise JobRejectedError(f"Job {job.id} has an invalid payload: {job.payload!r}") from exc
        await self._recommendations.calculate(user_id, generation=job.sequence)
