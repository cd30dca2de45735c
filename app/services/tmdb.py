"""Client for The Movie Database (TMDB) search and detail endpoints."""

from __future__ import annotations

import logging
from typing import Any

import httpx
from pydantic import ValidationError

from ..config import Settings
from ..errors import CatalogNotFoundError, MalformedResponseError, UpstreamError
from ..models import TMDBMovieDetail, TMDBMovieSummary, TMDBSearchPage

logger = logging.getLogger(__name__)


class TMDBClient:
    """Client responsible for looking up movies on TMDB."""

    def __init__(self, settings: Settings, http_client: httpx.AsyncClient):
        if not settings.tmdb_api_key:
            raise ValueError("TMDB API key is required when initialising TMDBClient")
        self._settings = settings
        self._client = http_client

    async def search_movies(self, query: str) -> list[TMDBMovieSummary]:
        """Return TMDB search results for ``query`` in relevance order."""

        query = (query or "").strip()
        if not query:
            return []

        params = {
            "query": query,
            "include_adult": "false",
            "language": "en-US",
            "page": 1,
        }
        payload = await self._get("/search/movie", params=params)
        try:
            page = TMDBSearchPage.model_validate(payload)
        except ValidationError as exc:
            raise MalformedResponseError(
                f"TMDB search payload for {query!r} is invalid"
            ) from exc
        logger.debug("TMDB search for %r returned %d results", query, len(page.results))
        return page.results

    async def get_movie(self, tmdb_id: int) -> TMDBMovieDetail:
        """Fetch the full detail payload for a single movie."""

        payload = await self._get(
            f"/movie/{tmdb_id}", params={"language": "en-US"}, tmdb_id=tmdb_id
        )
        try:
            return TMDBMovieDetail.model_validate(payload)
        except ValidationError as exc:
            raise MalformedResponseError(
                f"TMDB detail payload for {tmdb_id} is invalid"
            ) from exc

    async def _get(
        self,
        path: str,
        *,
        params: dict[str, Any],
        tmdb_id: int | None = None,
    ) -> Any:
        request_params = {**params, "api_key": self._settings.tmdb_api_key}
        try:
            response = await self._client.get(path, params=request_params)
        except httpx.HTTPError as exc:
            raise UpstreamError("tmdb", f"request to {path} failed: {exc}") from exc

        if response.status_code == 404 and tmdb_id is not None:
            raise CatalogNotFoundError(tmdb_id)
        if response.status_code >= 400:
            logger.warning(
                "TMDB request %s failed with %s: %s",
                path,
                response.status_code,
                response.text[:200],
            )
            raise UpstreamError(
                "tmdb",
                f"{path} returned HTTP {response.status_code}",
                status_code=response.status_code,
            )
        try:
            return response.json()
        except ValueError as exc:
            raise MalformedResponseError(f"TMDB returned non-JSON body for {path}") from exc
