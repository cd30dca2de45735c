"""Favorite mutations and the recommendation jobs they trigger."""

from __future__ import annotations

import logging

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..config import Settings
from ..db_models import FavoriteMovie
from ..models import BackoffOptions, EnqueueOptions
from .catalog import CatalogResolver
from .job_queue import MOVIE_RECOMMENDATION_JOB, JobQueue
from .queue_status import QueueStatusTracker

logger = logging.getLogger(__name__)


class FavoriteExistsError(ValueError):
    """The user already favorited this movie."""


class FavoriteService:
    """Adds and removes favorites, enqueueing one recalculation per change."""

    def __init__(
        self,
        settings: Settings,
        resolver: CatalogResolver,
        queue: JobQueue,
        tracker: QueueStatusTracker,
        session_factory: async_sessionmaker[AsyncSession],
    ):
        self._settings = settings
        self._resolver = resolver
        self._queue = queue
        self._tracker = tracker
        self._session_factory = session_factory

    @property
    def enqueue_options(self) -> EnqueueOptions:
        return EnqueueOptions(
            attempts=self._settings.recommendation_attempts,
            backoff=BackoffOptions(
                type=self._settings.recommendation_backoff_type,
                delay_ms=self._settings.recommendation_backoff_delay_ms,
            ),
        )

    async def list_favorites(self, user_id: int) -> list[FavoriteMovie]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(FavoriteMovie)
                .where(FavoriteMovie.user_id == user_id)
                .order_by(FavoriteMovie.id)
            )
            return list(result.scalars().unique().all())

    async def add_favorite(self, user_id: int, tmdb_id: int) -> tuple[FavoriteMovie, str]:
        """Favorite a TMDB movie, materializing it locally first if needed."""

        movie = await self._resolver.resolve_and_materialize(tmdb_id)
        async with self._session_factory() as session:
            favorite = FavoriteMovie(user_id=user_id, movie_id=movie.id)
            session.add(favorite)
            try:
                await session.commit()
            except IntegrityError as exc:
                await session.rollback()
                raise FavoriteExistsError("Already added to your favorites") from exc
            favorite_id = favorite.id

        async with self._session_factory() as session:
            stored = await session.get(FavoriteMovie, favorite_id)

        job_id = await self.schedule_recalculation(user_id)
        logger.info(
            "User %s favorited TMDB movie %s (job %s)", user_id, tmdb_id, job_id
        )
        return stored, job_id

    async def remove_favorite(self, user_id: int, favorite_id: int) -> str:
        """Delete one of the user's favorites; ``LookupError`` when absent."""

        async with self._session_factory() as session:
            result = await session.execute(
                delete(FavoriteMovie).where(
                    FavoriteMovie.id == favorite_id,
                    FavoriteMovie.user_id == user_id,
                )
            )
            await session.commit()
        if not result.rowcount:
            raise LookupError(f"Favorite {favorite_id} not found for user {user_id}")

        job_id = await self.schedule_recalculation(user_id)
        logger.info("User %s removed favorite %s (job %s)", user_id, favorite_id, job_id)
        return job_id

    async def schedule_recalculation(self, user_id: int) -> str:
        """Enqueue a recommendation job and its status record."""

        job_id = await self._queue.enqueue(
            MOVIE_RECOMMENDATION_JOB, {"user_id": user_id}, self.enqueue_options
        )
        await self._tracker.create(job_id, user_id)
        return job_id
