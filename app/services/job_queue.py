"""Database-backed job queue with at-least-once delivery.

Jobs live in the ``background_jobs`` table so they survive restarts and can be
shared by several worker processes. A job is claimed with a conditional
``UPDATE`` (``pending`` to ``running``); whichever worker's update matches the
row owns it. Failed attempts are redelivered after a fixed or exponential
backoff until ``max_attempts`` is reached, after which the job is ``failed``.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..db_models import BackgroundJob
from ..models import BackoffType, EnqueueOptions

logger = logging.getLogger(__name__)

MOVIE_RECOMMENDATION_JOB = "movie-recommendation"

_CLAIM_BATCH = 5


@dataclass(slots=True)
class Job:
    """A claimed unit of work handed to a worker."""

    id: str
    sequence: int
    name: str
    payload: dict[str, Any]
    attempts: int
    max_attempts: int


@dataclass(slots=True)
class FailureOutcome:
    job_id: str
    attempts: int
    max_attempts: int
    will_retry: bool
    retry_at: datetime | None = None


@dataclass(slots=True)
class RecoveryResult:
    requeued: int = 0
    exhausted: list[Job] = field(default_factory=list)


def compute_backoff(backoff_type: BackoffType | str, delay_ms: int, attempt: int) -> timedelta:
    """Return the delay before redelivering a job that failed ``attempt`` times."""

    attempt = max(int(attempt), 1)
    delay_ms = max(int(delay_ms), 0)
    if backoff_type == "exponential":
        return timedelta(milliseconds=delay_ms * 2 ** (attempt - 1))
    return timedelta(milliseconds=delay_ms)


def new_worker_id() -> str:
    return f"worker-{uuid.uuid4().hex[:8]}"


class JobQueue:
    """Durable queue of named jobs stored in the relational database."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        default_options: EnqueueOptions | None = None,
    ):
        self._session_factory = session_factory
        self._default_options = default_options or EnqueueOptions()

    async def enqueue(
        self,
        name: str,
        payload: dict[str, Any],
        options: EnqueueOptions | None = None,
    ) -> str:
        """Persist a new job and return its identifier."""

        resolved = options or self._default_options
        now = datetime.utcnow()
        async with self._session_factory() as session:
            job = BackgroundJob(
                name=name,
                payload=dict(payload),
                status="pending",
                attempts=0,
                max_attempts=resolved.attempts,
                backoff_type=resolved.backoff.type,
                backoff_delay_ms=resolved.backoff.delay_ms,
                available_at=now,
                created_at=now,
                updated_at=now,
            )
            session.add(job)
            await session.commit()
            job_id = str(job.id)

        logger.debug(
            "Enqueued job %s (%s) with %d attempts and %s backoff",
            job_id,
            name,
            resolved.attempts,
            resolved.backoff.type,
        )
        return job_id

    async def claim(self, worker_id: str) -> Job | None:
        """Lock the oldest due job for ``worker_id``; ``None`` when idle."""

        now = datetime.utcnow()
        async with self._session_factory() as session:
            stmt = (
                select(BackgroundJob)
                .where(
                    BackgroundJob.status == "pending",
                    BackgroundJob.available_at <= now,
                )
                .order_by(BackgroundJob.available_at, BackgroundJob.id)
                .limit(_CLAIM_BATCH)
            )
            candidates = list((await session.execute(stmt)).scalars().all())

            for candidate in candidates:
                result = await session.execute(
                    update(BackgroundJob)
                    .where(
                        BackgroundJob.id == candidate.id,
                        BackgroundJob.status == "pending",
                    )
                    .values(
                        status="running",
                        attempts=BackgroundJob.attempts + 1,
                        locked_by=worker_id,
                        locked_at=now,
                        updated_at=now,
                    )
                    .execution_options(synchronize_session=False)
                )
                await session.commit()
                if result.rowcount == 1:
                    return Job(
                        id=str(candidate.id),
                        sequence=candidate.id,
                        name=candidate.name,
                        payload=dict(candidate.payload or {}),
                        attempts=candidate.attempts + 1,
                        max_attempts=candidate.max_attempts,
                    )
                # Another worker took it first.
        return None

    async def complete(self, job_id: str) -> None:
        now = datetime.utcnow()
        async with self._session_factory() as session:
            await session.execute(
                update(BackgroundJob)
                .where(BackgroundJob.id == int(job_id))
                .values(
                    status="completed",
                    locked_by=None,
                    locked_at=None,
                    last_error=None,
                    updated_at=now,
                )
            )
            await session.commit()
        logger.debug("Job %s completed", job_id)

    async def fail(
        self, job_id: str, error: str, *, retryable: bool = True
    ) -> FailureOutcome:
        """Record a failed attempt and schedule redelivery if attempts remain."""

        now = datetime.utcnow()
        async with self._session_factory() as session:
            job = await session.get(BackgroundJob, int(job_id))
            if job is None:
                logger.warning("Job %s not found while recording failure", job_id)
                return FailureOutcome(job_id, 0, 0, will_retry=False)

            job.last_error = error
            job.locked_by = None
            job.locked_at = None
            job.updated_at = now
            if retryable and job.attempts < job.max_attempts:
                delay = compute_backoff(job.backoff_type, job.backoff_delay_ms, job.attempts)
                job.status = "pending"
                job.available_at = now + delay
                outcome = FailureOutcome(
                    job_id,
                    job.attempts,
                    job.max_attempts,
                    will_retry=True,
                    retry_at=job.available_at,
                )
                logger.info(
                    "Job %s failed (attempt %d/%d), retry in %.1fs",
                    job_id,
                    job.attempts,
                    job.max_attempts,
                    delay.total_seconds(),
                )
            else:
                job.status = "failed"
                outcome = FailureOutcome(
                    job_id, job.attempts, job.max_attempts, will_retry=False
                )
                logger.warning(
                    "Job %s failed permanently after %d attempts: %s",
                    job_id,
                    job.attempts,
                    error,
                )
            await session.commit()
        return outcome

    async def recover_stale(self, lock_timeout_seconds: int) -> RecoveryResult:
        """Release jobs whose worker stopped heartbeating; call before starting."""

        now = datetime.utcnow()
        threshold = now - timedelta(seconds=lock_timeout_seconds)
        recovery = RecoveryResult()
        async with self._session_factory() as session:
            result = await session.execute(
                select(BackgroundJob).where(
                    BackgroundJob.status == "running",
                    BackgroundJob.locked_at < threshold,
                )
            )
            for job in result.scalars().all():
                job.locked_by = None
                job.locked_at = None
                job.updated_at = now
                if job.attempts >= job.max_attempts:
                    job.status = "failed"
                    job.last_error = "Worker lost the job on its final attempt"
                    recovery.exhausted.append(self._to_job(job))
                else:
                    job.status = "pending"
                    job.available_at = now
                    recovery.requeued += 1
            await session.commit()

        if recovery.requeued or recovery.exhausted:
            logger.warning(
                "Recovered %d stale jobs (%d exhausted)",
                recovery.requeued,
                len(recovery.exhausted),
            )
        return recovery

    async def get(self, job_id: str) -> BackgroundJob | None:
        async with self._session_factory() as session:
            return await session.get(BackgroundJob, int(job_id))

    async def stats(self) -> dict[str, int]:
        """Return job counts keyed by status."""

        async with self._session_factory() as session:
            result = await session.execute(
                select(BackgroundJob.status, func.count()).group_by(BackgroundJob.status)
            )
            counts = {status: int(count) for status, count in result.all()}
        for status in ("pending", "running", "completed", "failed"):
            counts.setdefault(status, 0)
        return counts

    @staticmethod
    def _to_job(model: BackgroundJob) -> Job:
        return Job(
            id=str(model.id),
            sequence=model.id,
            name=model.name,
            payload=dict(model.payload or {}),
            attempts=model.attempts,
            max_attempts=model.max_attempts,
        )
