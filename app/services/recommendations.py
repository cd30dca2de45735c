"""Recommendation calculation: favorites in, materialized suggestions out."""

from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import delete, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..db_models import FavoriteMovie, Movie, Recommendation, RecommendationState
from ..errors import CatalogNotFoundError, MalformedResponseError, PersistenceError
from ..models import MaterializedRecommendation, RecommendationSuggestion
from .catalog import CatalogResolver
from .openai import OpenAIClient

logger = logging.getLogger(__name__)


class RecommendationService:
    """Builds and stores a user's recommendation set.

    ``calculate`` may run concurrently for the same user when favorites change
    in quick succession. Each run carries a ``generation`` (the queue sequence
    of the job that triggered it); a run only replaces the stored set when its
    generation is newer than the one already committed, so a slow job can never
    overwrite the result of a job enqueued after it.
    """

    def __init__(
        self,
        completion_client: OpenAIClient,
        resolver: CatalogResolver,
        session_factory: async_sessionmaker[AsyncSession],
    ):
        self._ai = completion_client
        self._resolver = resolver
        self._session_factory = session_factory

    async def calculate(
        self, user_id: int, *, generation: int | None = None
    ) -> list[MaterializedRecommendation]:
        """Regenerate recommendations for ``user_id`` and return what was stored.

        Returns an empty list, leaving existing rows untouched, when the user
        has no favorites, the model output is unusable, nothing resolves on
        TMDB, or a newer generation already committed. The first three still
        record ``generation`` so that older jobs, which saw favorites this run
        did not, cannot commit after it.
        """

        titles = await self.favorite_titles(user_id)
        logger.info("Calculating recommendations for user %s from %d favorites", user_id, len(titles))
        if not titles:
            logger.info("User %s has no favorites; keeping current recommendations", user_id)
            await self._fence_generation(user_id, generation)
            return []

        try:
            suggestions = await self._ai.suggest_movies(titles)
        except MalformedResponseError as exc:
            logger.warning("No usable recommendations from the model for user %s: %s", user_id, exc)
            await self._fence_generation(user_id, generation)
            return []
        logger.info("Model suggested %d titles for user %s", len(suggestions), user_id)

        resolved: list[MaterializedRecommendation] = []
        for suggestion in suggestions:
            match = await self._resolve_suggestion(suggestion, user_id)
            if match is not None:
                resolved.append(match)

        if not resolved:
            logger.warning(
                "None of the %d suggestions resolved for user %s; keeping current recommendations",
                len(suggestions),
                user_id,
            )
            await self._fence_generation(user_id, generation)
            return []

        return await self._replace_recommendations(user_id, resolved, generation)

    async def favorite_titles(self, user_id: int) -> list[str]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(Movie.title)
                .join(FavoriteMovie, FavoriteMovie.movie_id == Movie.id)
                .where(FavoriteMovie.user_id == user_id)
                .order_by(FavoriteMovie.id)
            )
            return [title for title in result.scalars().all() if title]

    async def list_for_user(self, user_id: int) -> list[Recommendation]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(Recommendation)
                .where(Recommendation.user_id == user_id)
                .order_by(Recommendation.id)
            )
            return list(result.scalars().unique().all())

    async def _resolve_suggestion(
        self, suggestion: RecommendationSuggestion, user_id: int
    ) -> MaterializedRecommendation | None:
        results = await self._resolver.search_by_title(suggestion.title)
        if not results:
            logger.debug("No TMDB match for suggested title %r (user %s)", suggestion.title, user_id)
            return None

        top_hit = results[0]
        try:
            detail = await self._resolver.resolve_by_catalog_id(top_hit.id)
        except (CatalogNotFoundError, MalformedResponseError) as exc:
            logger.warning("Skipping suggestion %r for user %s: %s", suggestion.title, user_id, exc)
            return None

        movie, _ = await self._resolver.materialize(detail)
        return MaterializedRecommendation(
            movie_id=movie.id,
            tmdb_id=movie.tmdb_id,
            title=movie.title,
            reason=suggestion.reason,
        )

    async def _replace_recommendations(
        self,
        user_id: int,
        resolved: list[MaterializedRecommendation],
        generation: int | None,
    ) -> list[MaterializedRecommendation]:
        # Several suggestions can land on the same movie; the first reason wins.
        unique: dict[int, MaterializedRecommendation] = {}
        for item in resolved:
            unique.setdefault(item.movie_id, item)

        now = datetime.utcnow()
        try:
            async with self._session_factory() as session:
                if not await self._claim_generation(session, user_id, generation, now):
                    await session.rollback()
                    logger.info(
                        "Discarding stale recommendations for user %s (generation %s)",
                        user_id,
                        generation,
                    )
                    return []

                await session.execute(
                    delete(Recommendation).where(Recommendation.user_id == user_id)
                )
                for item in unique.values():
                    session.add(
                        Recommendation(
                            user_id=user_id,
                            movie_id=item.movie_id,
                            reason=item.reason,
                            created_at=now,
                            updated_at=now,
                        )
                    )
                await session.commit()
        except SQLAlchemyError as exc:
            raise PersistenceError(
                f"Failed to store recommendations for user {user_id}"
            ) from exc

        logger.info("Stored %d recommendations for user %s", len(unique), user_id)
        return list(unique.values())

    async def _fence_generation(self, user_id: int, generation: int | None) -> None:
        """Advance the committed generation without touching stored rows."""

        if generation is None:
            return
        try:
            async with self._session_factory() as session:
                if await self._claim_generation(
                    session, user_id, generation, datetime.utcnow()
                ):
                    await session.commit()
        except SQLAlchemyError as exc:
            raise PersistenceError(
                f"Failed to record generation {generation} for user {user_id}"
            ) from exc

    @staticmethod
    async def _claim_generation(
        session: AsyncSession, user_id: int, generation: int | None, now: datetime
    ) -> bool:
        """Advance the user's committed generation inside the open transaction.

        Returns ``False`` when a run with a newer or equal generation already
        committed. Runs without a generation (manual recalculation) always win
        and keep the stored generation.
        """

        state = await session.get(RecommendationState, user_id)
        if state is None:
            session.add(
                RecommendationState(
                    user_id=user_id, generation=generation or 0, committed_at=now
                )
            )
            # A concurrent first run for this user fails here with an
            # IntegrityError, which surfaces as a retryable PersistenceError.
            await session.flush()
            return True

        if generation is None:
            state.committed_at = now
            return True

        result = await session.execute(
            update(RecommendationState)
            .where(
                RecommendationState.user_id == user_id,
                RecommendationState.generation < generation,
            )
            .values(generation=generation, committed_at=now)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1
