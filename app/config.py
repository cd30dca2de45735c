"""Application configuration models."""

from __future__ import annotations

from functools import lru_cache
from typing import Literal

from pydantic import Field, HttpUrl, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


BackoffType = Literal["fixed", "exponential"]


class Settings(BaseSettings):
    """Settings loaded from environment variables or a .env file."""

    app_name: str = Field(default="EntertainMe", alias="APP_NAME")
    server_host: str = Field(default="0.0.0.0", alias="HOST")
    server_port: int = Field(default=3000, alias="PORT")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    tmdb_api_key: str | None = Field(default=None, alias="TMDB_API_KEY")
    tmdb_api_url: HttpUrl = Field(
        default="https://api.themoviedb.org/3", alias="TMDB_BASE_URL"
    )
    tmdb_image_base_url: str = Field(
        default="https://image.tmdb.org/t/p/w500", alias="TMDB_IMAGE_BASE_URL"
    )
    tmdb_timeout_seconds: float = Field(
        default=15.0, alias="TMDB_TIMEOUT", gt=0, le=120
    )

    openai_api_key: str | None = Field(default=None, alias="OPENAI_API_KEY")
    openai_api_url: HttpUrl = Field(
        default="https://api.openai.com/v1", alias="OPENAI_API_URL"
    )
    openai_model: str = Field(default="gpt-5-nano", alias="OPENAI_MODEL")
    openai_timeout_seconds: float = Field(
        default=60.0, alias="OPENAI_TIMEOUT", gt=0, le=600
    )

    min_suggestions: int = Field(default=5, alias="MIN_SUGGESTIONS", ge=1, le=50)
    max_suggestions: int = Field(default=15, alias="MAX_SUGGESTIONS", ge=1, le=50)

    recommendation_attempts: int = Field(
        default=3, alias="RECOMMENDATION_ATTEMPTS", ge=1, le=25
    )
    recommendation_backoff_type: BackoffType = Field(
        default="exponential", alias="RECOMMENDATION_BACKOFF"
    )
    recommendation_backoff_delay_ms: int = Field(
        default=2_000, alias="RECOMMENDATION_BACKOFF_DELAY_MS", ge=0
    )

    worker_enabled: bool = Field(default=True, alias="WORKER_ENABLED")
    worker_concurrency: int = Field(default=2, alias="WORKER_CONCURRENCY", ge=1, le=32)
    worker_poll_interval_seconds: float = Field(
        default=1.0, alias="WORKER_POLL_INTERVAL", gt=0
    )
    job_timeout_seconds: float = Field(default=180.0, alias="JOB_TIMEOUT", gt=0)
    job_lock_timeout_seconds: int = Field(
        default=300, alias="JOB_LOCK_TIMEOUT", ge=30
    )
    worker_recovery_interval_seconds: float = Field(
        default=60.0, alias="WORKER_RECOVERY_INTERVAL", gt=0
    )

    database_url: str = Field(
        default="sqlite+aiosqlite:///./entertainme.db", alias="DATABASE_URL"
    )

    environment: Literal["development", "test", "production"] = Field(
        default="development", alias="ENVIRONMENT"
    )

    @field_validator("recommendation_backoff_type", mode="before")
    @classmethod
    def _normalise_backoff(cls, value: object) -> str:
        """Accept backoff names regardless of case or padding."""

        if value is None:
            return "exponential"
        return str(value).strip().lower()

    @field_validator("log_level", mode="before")
    @classmethod
    def _normalise_log_level(cls, value: object) -> str:
        if value is None:
            return "INFO"
        return str(value).strip().upper() or "INFO"

    @model_validator(mode="after")
    def _check_bounds(self) -> "Settings":
        """Reject inverted suggestion windows and lock timeouts shorter than jobs."""

        if self.min_suggestions > self.max_suggestions:
            raise ValueError("MIN_SUGGESTIONS must not exceed MAX_SUGGESTIONS")
        if self.job_lock_timeout_seconds <= self.job_timeout_seconds:
            raise ValueError("JOB_LOCK_TIMEOUT must exceed JOB_TIMEOUT")
        return self

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")


@lru_cache
def get_settings() -> Settings:
    """Return a cached settings instance."""

    return Settings()  # type: ignore[call-arg]


settings = get_settings()
