"""Resolve TMDB titles and materialize them into canonical local rows."""

from __future__ import annotations

import logging
from typing import Any

from sqlalchemy import select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..config import Settings
from ..db_models import Genre, Movie, MovieGenre
from ..errors import PersistenceError
from ..models import TMDBMovieDetail, TMDBMovieSummary
from ..utils import build_image_url
from .tmdb import TMDBClient

logger = logging.getLogger(__name__)

_DIALECT_INSERTS = {
    "sqlite": sqlite.insert,
    "postgresql": postgresql.insert,
}


class CatalogResolver:
    """Looks movies up on TMDB and upserts them without creating duplicates.

    Upserts rely on the unique TMDB id columns and ``INSERT ... ON CONFLICT DO
    NOTHING`` followed by a read, so concurrent jobs resolving the same movie
    converge on a single row without any application-level locking.
    """

    def __init__(
        self,
        settings: Settings,
        tmdb_client: TMDBClient,
        session_factory: async_sessionmaker[AsyncSession],
    ):
        self._settings = settings
        self._tmdb = tmdb_client
        self._session_factory = session_factory

    async def search_by_title(self, title: str) -> list[TMDBMovieSummary]:
        """Free-text search; an empty list means nothing matched."""

        return await self._tmdb.search_movies(title)

    async def resolve_by_catalog_id(self, tmdb_id: int) -> TMDBMovieDetail:
        return await self._tmdb.get_movie(tmdb_id)

    async def materialize(self, detail: TMDBMovieDetail) -> tuple[Movie, list[Genre]]:
        """Upsert the movie, its genres and the links between them."""

        try:
            async with self._session_factory() as session:
                genres: list[Genre] = []
                for genre in detail.genres:
                    genres.append(
                        await self._find_or_create(
                            session,
                            Genre,
                            {"tmdb_id": genre.id, "name": genre.name},
                        )
                    )

                movie = await self._find_or_create(
                    session, Movie, self._movie_values(detail)
                )

                for genre in genres:
                    await self._insert_ignoring_conflicts(
                        session,
                        MovieGenre,
                        {"movie_id": movie.id, "genre_id": genre.id},
                        conflict_columns=("movie_id", "genre_id"),
                    )
                await session.commit()
        except SQLAlchemyError as exc:
            raise PersistenceError(
                f"Failed to materialize TMDB movie {detail.id}"
            ) from exc

        logger.debug(
            "Materialized TMDB movie %s as movie %s with %d genres",
            detail.id,
            movie.id,
            len(genres),
        )
        return movie, genres

    async def resolve_and_materialize(self, tmdb_id: int) -> Movie:
        """Return the local movie for ``tmdb_id``, fetching it from TMDB if needed."""

        async with self._session_factory() as session:
            existing = await session.scalar(select(Movie).where(Movie.tmdb_id == tmdb_id))
        if existing is not None:
            return existing
        detail = await self.resolve_by_catalog_id(tmdb_id)
        movie, _ = await self.materialize(detail)
        return movie

    def _movie_values(self, detail: TMDBMovieDetail) -> dict[str, Any]:
        image_base = self._settings.tmdb_image_base_url
        return {
            "tmdb_id": detail.id,
            "title": detail.title[:255],
            "overview": detail.overview or None,
            "release_date": detail.parsed_release_date(),
            "poster_path": build_image_url(detail.poster_path, image_base),
            "backdrop_path": build_image_url(detail.backdrop_path, image_base),
            "vote_average": detail.vote_average or 0.0,
            "vote_count": detail.vote_count or 0,
            "popularity": detail.popularity or 0.0,
            "adult": bool(detail.adult),
            "original_language": detail.original_language,
        }

    async def _find_or_create(
        self,
        session: AsyncSession,
        model: type[Movie] | type[Genre],
        values: dict[str, Any],
    ) -> Any:
        await self._insert_ignoring_conflicts(
            session, model, values, conflict_columns=("tmdb_id",)
        )
        return await session.scalar(
            select(model).where(model.tmdb_id == values["tmdb_id"])
        )

    @staticmethod
    async def _insert_ignoring_conflicts(
        session: AsyncSession,
        model: type[Any],
        values: dict[str, Any],
        *,
        conflict_columns: tuple[str, ...],
    ) -> None:
        dialect = session.get_bind().dialect.name
        insert = _DIALECT_INSERTS.get(dialect)
        if insert is None:
            raise PersistenceError(f"Unsupported database dialect for upserts: {dialect}")
        stmt = (
            insert(model)
            .values(**values)
            .on_conflict_do_nothing(index_elements=list(conflict_columns))
        )
        await session.execute(stmt)
