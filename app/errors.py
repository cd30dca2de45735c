"""Exception taxonomy shared by the recommendation pipeline."""

from __future__ import annotations


class PipelineError(Exception):
    """Base class for failures raised while building recommendations."""


class CatalogNotFoundError(PipelineError, LookupError):
    """TMDB reported that the requested movie does not exist."""

    def __init__(self, tmdb_id: int):
        super().__init__(f"TMDB has no movie with id {tmdb_id}")
        self.tmdb_id = tmdb_id


class UpstreamError(PipelineError):
    """Transport or HTTP failure talking to TMDB or the completion service."""

    def __init__(self, service: str, message: str, *, status_code: int | None = None):
        super().__init__(f"{service}: {message}")
        self.service = service
        self.status_code = status_code


class MalformedResponseError(PipelineError):
    """An upstream payload did not match the expected structure."""


class PersistenceError(PipelineError):
    """The relational store rejected or failed an operation."""
