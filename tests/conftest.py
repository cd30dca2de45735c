"""Pytest configuration and test helpers."""

from __future__ import annotations

import json
import sys
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator

import httpx
import pytest


# Ensure the application package is importable when running tests without an
# editable install. This mirrors the expected runtime layout where ``app`` sits
# at the project root.
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from app.config import Settings  # noqa: E402
from app.database import Database  # noqa: E402
from app.db_models import FavoriteMovie, Movie  # noqa: E402
from app.main import Services, build_services  # noqa: E402

TMDB_BASE_URL = "https://tmdb.test/3"
OPENAI_BASE_URL = "https://openai.test/v1"


def build_settings(**overrides: Any) -> Settings:
    """Return a settings object with defaults suitable for tests."""

    base: dict[str, Any] = {
        "TMDB_API_KEY": "tmdb-key",
        "OPENAI_API_KEY": "openai-key",
        "RECOMMENDATION_BACKOFF_DELAY_MS": 0,
        "WORKER_POLL_INTERVAL": 0.01,
        "WORKER_CONCURRENCY": 1,
    }
    base.update(overrides)
    return Settings(_env_file=None, **base)  # type: ignore[arg-type]


def movie_detail(
    tmdb_id: int,
    title: str,
    genres: tuple[tuple[int, str], ...] = ((18, "Drama"),),
) -> dict[str, Any]:
    """Return a TMDB ``/movie/{id}`` payload."""

    return {
        "id": tmdb_id,
        "title": title,
        "original_title": title,
        "overview": f"{title} overview",
        "release_date": "2010-07-16",
        "poster_path": f"/poster-{tmdb_id}.jpg",
        "backdrop_path": None,
        "vote_average": 8.1,
        "vote_count": 1200,
        "popularity": 42.5,
        "original_language": "en",
        "adult": False,
        "budget": 1000,
        "runtime": 120,
        "genres": [{"id": genre_id, "name": name} for genre_id, name in genres],
    }


class FakeTMDB:
    """In-memory TMDB served through ``httpx.MockTransport``."""

    def __init__(self) -> None:
        self.movies: dict[int, dict[str, Any]] = {}
        self.search_index: dict[str, list[int]] = {}
        self.requests: list[httpx.Request] = []
        self.failures_remaining = 0
        # Ids still returned by search whose detail endpoint 404s.
        self.withdrawn: set[int] = set()

    def add(self, detail: dict[str, Any], *queries: str) -> None:
        self.movies[detail["id"]] = detail
        for query in queries or (detail["title"],):
            self.search_index.setdefault(query, []).append(detail["id"])

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.failures_remaining:
            self.failures_remaining -= 1
            return httpx.Response(503, text="Service temporarily unavailable")

        path = request.url.path
        if path.endswith("/search/movie"):
            ids = self.search_index.get(request.url.params.get("query", ""), [])
            results = [
                {key: value for key, value in self.movies[tmdb_id].items() if key != "genres"}
                for tmdb_id in ids
            ]
            return httpx.Response(
                200,
                json={
                    "page": 1,
                    "total_pages": 1,
                    "total_results": len(results),
                    "results": results,
                },
            )
        if "/movie/" in path:
            tmdb_id = int(path.rsplit("/", 1)[1])
            if tmdb_id not in self.movies or tmdb_id in self.withdrawn:
                return httpx.Response(
                    404,
                    json={"status_code": 34, "status_message": "The resource could not be found."},
                )
            return httpx.Response(200, json=self.movies[tmdb_id])
        return httpx.Response(404, json={})


class FakeCompletion:
    """Chat-completions endpoint returning queued message contents."""

    def __init__(self) -> None:
        self.contents: list[str] = []
        self.requests: list[dict[str, Any]] = []

    def reply(self, suggestions: list[dict[str, str]]) -> None:
        self.contents.append(json.dumps({"recommendation": suggestions}))

    def reply_raw(self, content: str) -> None:
        self.contents.append(content)

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(json.loads(request.content))
        content = self.contents.pop(0) if self.contents else json.dumps({"recommendation": []})
        return httpx.Response(
            200,
            json={
                "id": "chatcmpl-test",
                "object": "chat.completion",
                "choices": [
                    {
                        "index": 0,
                        "message": {"role": "assistant", "content": content},
                        "finish_reason": "stop",
                    }
                ],
            },
        )


async def seed_favorites(
    database: Database, user_id: int, movies: list[tuple[int, str]]
) -> list[int]:
    """Insert movies and mark them as favorites; returns the local movie ids."""

    movie_ids: list[int] = []
    async with database.session_factory() as session:
        for tmdb_id, title in movies:
            movie = Movie(tmdb_id=tmdb_id, title=title)
            session.add(movie)
            await session.flush()
            session.add(FavoriteMovie(user_id=user_id, movie_id=movie.id))
            movie_ids.append(movie.id)
        await session.commit()
    return movie_ids


@pytest.fixture
def anyio_backend() -> str:
    """Force AnyIO tests to run on asyncio without requiring trio."""

    return "asyncio"


@pytest.fixture
def settings() -> Settings:
    return build_settings()


@pytest.fixture
async def database(tmp_path) -> AsyncIterator[Database]:
    database = Database(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    await database.create_all()
    try:
        yield database
    finally:
        await database.dispose()


@pytest.fixture
def fake_tmdb() -> FakeTMDB:
    return FakeTMDB()


@pytest.fixture
def fake_completion() -> FakeCompletion:
    return FakeCompletion()


@asynccontextmanager
async def open_services(
    settings: Settings,
    database: Database,
    fake_tmdb: FakeTMDB,
    fake_completion: FakeCompletion,
) -> AsyncIterator[Services]:
    """Build the pipeline against the fakes; the worker is stopped on exit."""

    async with httpx.AsyncClient(
        transport=httpx.MockTransport(fake_tmdb.handler), base_url=TMDB_BASE_URL
    ) as tmdb_http, httpx.AsyncClient(
        transport=httpx.MockTransport(fake_completion.handler),
        base_url=OPENAI_BASE_URL,
    ) as openai_http:
        built = await build_services(settings, database, tmdb_http, openai_http)
        try:
            yield built
        finally:
            await built.worker.stop()


@pytest.fixture
async def services(
    settings: Settings,
    database: Database,
    fake_tmdb: FakeTMDB,
    fake_completion: FakeCompletion,
) -> AsyncIterator[Services]:
    async with open_services(settings, database, fake_tmdb, fake_completion) as built:
        yield built
