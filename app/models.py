"""Pydantic models describing external payloads and pipeline results."""

from __future__ import annotations

from datetime import date
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

BackoffType = Literal["fixed", "exponential"]
QueueStatus = Literal["queued", "processing", "done", "abandoned"]


class TMDBGenre(BaseModel):
    id: int
    name: str


class TMDBMovieSummary(BaseModel):
    """Single entry from a TMDB ``/search/movie`` response."""

    model_config = ConfigDict(extra="ignore")

    id: int
    title: str
    overview: str | None = None
    release_date: str | None = None
    poster_path: str | None = None
    backdrop_path: str | None = None
    popularity: float | None = None
    vote_average: float | None = None
    vote_count: int | None = None
    original_language: str | None = None
    adult: bool | None = None


class TMDBSearchPage(BaseModel):
    model_config = ConfigDict(extra="ignore")

    page: int = 1
    total_pages: int = 0
    total_results: int = 0
    results: list[TMDBMovieSummary] = Field(default_factory=list)


class TMDBMovieDetail(TMDBMovieSummary):
    """Full TMDB ``/movie/{id}`` payload, keeping only what is persisted."""

    genres: list[TMDBGenre] = Field(default_factory=list)
    imdb_id: str | None = None
    runtime: int | None = None
    status: str | None = None
    tagline: str | None = None

    def parsed_release_date(self) -> date | None:
        """Return the release date, or ``None`` when TMDB leaves it blank."""

        if not self.release_date:
            return None
        try:
            return date.fromisoformat(self.release_date[:10])
        except ValueError:
            return None


class RecommendationSuggestion(BaseModel):
    """One title proposed by the completion model."""

    model_config = ConfigDict(extra="forbid")

    title: str
    reason: str

    @field_validator("title", "reason", mode="after")
    @classmethod
    def _strip(cls, value: str) -> str:
        return value.strip()


class RecommendationSuggestions(BaseModel):
    model_config = ConfigDict(extra="forbid")

    recommendation: list[RecommendationSuggestion]


class BackoffOptions(BaseModel):
    type: BackoffType = "exponential"
    delay_ms: int = Field(default=2_000, ge=0)


class EnqueueOptions(BaseModel):
    """Retry policy attached to a queued job."""

    attempts: int = Field(default=3, ge=1)
    backoff: BackoffOptions = Field(default_factory=BackoffOptions)


class MaterializedRecommendation(BaseModel):
    """A suggestion that resolved to a canonical movie row."""

    movie_id: int
    tmdb_id: int
    title: str
    reason: str


class FavoriteCreate(BaseModel):
    tmdb_id: int = Field(gt=0)
