"""Entry point for the FastAPI recommendation service."""

from __future__ import annotations

import logging
from contextlib import AsyncExitStack, asynccontextmanager
from dataclasses import dataclass
from typing import Any

import httpx
from fastapi import FastAPI, HTTPException

from .config import Settings, settings
from .database import Database
from .db_models import FavoriteMovie, QueueStatusRecord, Recommendation
from .errors import CatalogNotFoundError, PipelineError
from .models import FavoriteCreate
from .services.catalog import CatalogResolver
from .services.favorites import FavoriteExistsError, FavoriteService
from .services.job_queue import JobQueue
from .services.openai import OpenAIClient
from .services.queue_status import QueueStatusTracker
from .services.recommendations import RecommendationService
from .services.tmdb import TMDBClient
from .services.worker import RecommendationWorker

logging.basicConfig(level=settings.log_level)
logger = logging.getLogger(__name__)


@dataclass(slots=True)
class Services:
    """Collaborators created for the lifetime of the application."""

    database: Database
    resolver: CatalogResolver
    favorites: FavoriteService
    recommendations: RecommendationService
    tracker: QueueStatusTracker
    queue: JobQueue
    worker: RecommendationWorker


async def build_services(
    config: Settings,
    database: Database,
    tmdb_http: httpx.AsyncClient,
    openai_http: httpx.AsyncClient,
) -> Services:
    """Wire the pipeline components around shared HTTP clients and database."""

    await database.create_all()
    session_factory = database.session_factory

    resolver = CatalogResolver(config, TMDBClient(config, tmdb_http), session_factory)
    recommendations = RecommendationService(
        OpenAIClient(config, openai_http), resolver, session_factory
    )
    queue = JobQueue(session_factory)
    tracker = QueueStatusTracker(session_factory)
    favorites = FavoriteService(config, resolver, queue, tracker, session_factory)
    worker = RecommendationWorker(config, queue, tracker, recommendations)
    return Services(
        database=database,
        resolver=resolver,
        favorites=favorites,
        recommendations=recommendations,
        tracker=tracker,
        queue=queue,
        worker=worker,
    )


def create_app(config: Settings | None = None) -> FastAPI:
    config = config or settings

    @asynccontextmanager
    async def lifespan(fastapi_app: FastAPI):
        async with AsyncExitStack() as exit_stack:
            tmdb_http = await exit_stack.enter_async_context(
                httpx.AsyncClient(
                    base_url=str(config.tmdb_api_url),
                    timeout=httpx.Timeout(config.tmdb_timeout_seconds, connect=5.0),
                )
            )
            openai_http = await exit_stack.enter_async_context(
                httpx.AsyncClient(
                    base_url=str(config.openai_api_url),
                    timeout=httpx.Timeout(config.openai_timeout_seconds, connect=10.0),
                )
            )
            database = Database(config.database_url)
            exit_stack.push_async_callback(database.dispose)

            services = await build_services(config, database, tmdb_http, openai_http)
            fastapi_app.state.services = services
            if config.worker_enabled:
                await services.worker.start()
            try:
                yield
            finally:  # pragma: no cover - teardown path exercised at runtime
                await services.worker.stop()

    fastapi_app = FastAPI(
        title=config.app_name,
        description="AI-generated movie recommendations refreshed in the background",
        version="1.0.0",
        lifespan=lifespan,
    )
    register_routes(fastapi_app)
    return fastapi_app


def get_services(fastapi_app: FastAPI) -> Services:
    services = getattr(fastapi_app.state, "services", None)
    if not isinstance(services, Services):
        raise RuntimeError("Services not initialised")
    return services


def _serialise_movie(movie: Any) -> dict[str, Any]:
    return {
        "id": movie.id,
        "tmdb_id": movie.tmdb_id,
        "title": movie.title,
        "overview": movie.overview,
        "release_date": movie.release_date.isoformat() if movie.release_date else None,
        "poster_path": movie.poster_path,
        "backdrop_path": movie.backdrop_path,
        "vote_average": movie.vote_average,
        "vote_count": movie.vote_count,
        "popularity": movie.popularity,
        "original_language": movie.original_language,
        "adult": movie.adult,
    }


def _serialise_favorite(favorite: FavoriteMovie) -> dict[str, Any]:
    return {
        "id": favorite.id,
        "user_id": favorite.user_id,
        "movie": _serialise_movie(favorite.movie),
    }


def _serialise_recommendation(recommendation: Recommendation) -> dict[str, Any]:
    return {
        "id": recommendation.id,
        "reason": recommendation.reason,
        "movie": _serialise_movie(recommendation.movie),
    }


def _serialise_queue_record(record: QueueStatusRecord) -> dict[str, Any]:
    return {
        "job_id": record.job_id,
        "user_id": record.user_id,
        "status": record.status,
        "processing_time": record.processing_time,
        "attempts": record.attempts,
        "last_error": record.last_error,
        "created_at": record.created_at.isoformat() if record.created_at else None,
        "updated_at": record.updated_at.isoformat() if record.updated_at else None,
    }


def register_routes(fastapi_app: FastAPI) -> None:
    @fastapi_app.get("/healthz")
    async def healthcheck() -> dict[str, Any]:
        services = get_services(fastapi_app)
        return {
            "status": "ok",
            "worker": services.worker.running,
            "jobs": await services.queue.stats(),
        }

    @fastapi_app.get("/api/users/{user_id}/favorites")
    async def list_favorites(user_id: int) -> dict[str, Any]:
        services = get_services(fastapi_app)
        favorites = await services.favorites.list_favorites(user_id)
        return {"data": [_serialise_favorite(favorite) for favorite in favorites]}

    @fastapi_app.post("/api/users/{user_id}/favorites", status_code=201)
    async def create_favorite(user_id: int, body: FavoriteCreate) -> dict[str, Any]:
        services = get_services(fastapi_app)
        try:
            favorite, job_id = await services.favorites.add_favorite(user_id, body.tmdb_id)
        except CatalogNotFoundError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        except FavoriteExistsError as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc
        except PipelineError as exc:
            logger.warning("Could not add favorite for user %s: %s", user_id, exc)
            raise HTTPException(status_code=502, detail=str(exc)) from exc
        return {"data": _serialise_favorite(favorite), "job_id": job_id}

    @fastapi_app.delete("/api/users/{user_id}/favorites/{favorite_id}")
    async def delete_favorite(user_id: int, favorite_id: int) -> dict[str, Any]:
        services = get_services(fastapi_app)
        try:
            job_id = await services.favorites.remove_favorite(user_id, favorite_id)
        except LookupError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        return {"data": None, "job_id": job_id}

    @fastapi_app.get("/api/users/{user_id}/recommendations")
    async def list_recommendations(user_id: int) -> dict[str, Any]:
        services = get_services(fastapi_app)
        recommendations = await services.recommendations.list_for_user(user_id)
        return {
            "data": [_serialise_recommendation(item) for item in recommendations]
        }

    @fastapi_app.post("/api/users/{user_id}/recommendations/refresh", status_code=202)
    async def refresh_recommendations(user_id: int) -> dict[str, Any]:
        services = get_services(fastapi_app)
        job_id = await services.favorites.schedule_recalculation(user_id)
        return {"job_id": job_id}

    @fastapi_app.get("/api/users/{user_id}/queue")
    async def list_queue_records(user_id: int) -> dict[str, Any]:
        services = get_services(fastapi_app)
        records = await services.tracker.list_for_user(user_id)
        return {"data": [_serialise_queue_record(record) for record in records]}

    @fastapi_app.get("/api/queue/{job_id}")
    async def get_queue_record(job_id: str) -> dict[str, Any]:
        services = get_services(fastapi_app)
        record = await services.tracker.get(job_id)
        if record is None:
            raise HTTPException(status_code=404, detail=f"Job {job_id} not found")
        return {"data": _serialise_queue_record(record)}


app = create_app()
