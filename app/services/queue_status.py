"""Persisted lifecycle records for recommendation jobs."""

from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..db_models import QueueStatusRecord
from ..models import QueueStatus

logger = logging.getLogger(__name__)

STATUS_ORDER: dict[str, int] = {
    "queued": 0,
    "processing": 1,
    "done": 2,
    "abandoned": 2,
}
TERMINAL_STATUSES = frozenset({"done", "abandoned"})


class QueueStatusTracker:
    """Mirror of each job's progress: queued, processing, then done or abandoned."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def create(self, job_id: str, user_id: int) -> QueueStatusRecord:
        async with self._session_factory() as session:
            record = QueueStatusRecord(
                job_id=job_id,
                user_id=user_id,
                status="queued",
                processing_time=0,
                attempts=0,
            )
            session.add(record)
            await session.commit()
        logger.info("Queue record created for job %s (user %s)", job_id, user_id)
        return record

    async def advance(
        self,
        job_id: str,
        status: QueueStatus,
        *,
        processing_time: int | None = None,
        error: str | None = None,
    ) -> QueueStatusRecord | None:
        """Move a record forward; unknown ids and regressions are ignored."""

        async with self._session_factory() as session:
            record = await session.scalar(
                select(QueueStatusRecord).where(QueueStatusRecord.job_id == job_id)
            )
            if record is None:
                logger.warning("No queue record found for job %s (status %s)", job_id, status)
                return None

            current = record.status
            if current in TERMINAL_STATUSES or STATUS_ORDER[status] < STATUS_ORDER[current]:
                logger.warning(
                    "Ignoring status change for job %s from %s to %s",
                    job_id,
                    current,
                    status,
                )
                return record

            record.status = status
            if status == "processing":
                record.attempts = (record.attempts or 0) + 1
            if status == "done" and processing_time is not None:
                record.processing_time = max(int(processing_time), 0)
            if error is not None:
                record.last_error = error
            record.updated_at = datetime.utcnow()
            await session.commit()

        logger.info("Job %s moved from %s to %s", job_id, current, status)
        return record

    async def record_error(self, job_id: str, error: str) -> None:
        """Keep the latest failure message without changing the status."""

        async with self._session_factory() as session:
            record = await session.scalar(
                select(QueueStatusRecord).where(QueueStatusRecord.job_id == job_id)
            )
            if record is None:
                return
            record.last_error = error
            record.updated_at = datetime.utcnow()
            await session.commit()

    async def get(self, job_id: str) -> QueueStatusRecord | None:
        async with self._session_factory() as session:
            return await session.scalar(
                select(QueueStatusRecord).where(QueueStatusRecord.job_id == job_id)
            )

    async def list_for_user(self, user_id: int, *, limit: int = 50) -> list[QueueStatusRecord]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(QueueStatusRecord)
                .where(QueueStatusRecord.user_id == user_id)
                .order_by(QueueStatusRecord.id.desc())
                .limit(limit)
            )
            return list(result.scalars().all())
