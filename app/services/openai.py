"""Integration helpers for an OpenAI-compatible chat completions API.

Suggestions are requested with a strict JSON schema so the model can only
answer with ``{"recommendation": [{"title": ..., "reason": ...}]}``.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Sequence

import httpx
from pydantic import ValidationError

from ..config import Settings
from ..errors import MalformedResponseError, UpstreamError
from ..models import RecommendationSuggestion, RecommendationSuggestions
from ..utils import extract_json_object

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = (
    "You are a movie recommendation assistant. Extract the movie recommendation "
    "information and always respond with a single JSON object that matches the "
    "supplied schema, without commentary."
)

RECOMMENDATION_REQUEST_TEMPLATE = """
Generate a movie recommendation list of {min_items}-{max_items} movie titles that are similar to the following favorites:
{favorites}

Rules:
1. Only suggest real, released feature films that can be found on TMDB.
2. Do not repeat any of the favorites listed above.
3. Give each suggestion a one-line reason explaining why it fits the favorites.
"""

EMPTY_FAVORITES_HINT = "(no favorites yet; suggest widely acclaimed crowd-pleasers)"

RECOMMENDATION_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "recommendation": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "title": {"type": "string"},
                    "reason": {"type": "string"},
                },
                "required": ["title", "reason"],
                "additionalProperties": False,
            },
        }
    },
    "required": ["recommendation"],
    "additionalProperties": False,
}


class OpenAIClient:
    """Client responsible for talking to the ``/chat/completions`` endpoint."""

    def __init__(self, settings: Settings, http_client: httpx.AsyncClient):
        self._settings = settings
        self._client = http_client

    def build_prompt(self, favorite_titles: Sequence[str]) -> str:
        titles = [title.strip() for title in favorite_titles if title and title.strip()]
        favorites = "\n".join(f"- {title}" for title in titles) or EMPTY_FAVORITES_HINT
        return RECOMMENDATION_REQUEST_TEMPLATE.format(
            min_items=self._settings.min_suggestions,
            max_items=self._settings.max_suggestions,
            favorites=favorites,
        )

    async def suggest_movies(
        self,
        favorite_titles: Sequence[str],
        *,
        model: str | None = None,
    ) -> list[RecommendationSuggestion]:
        """Ask the model for titles similar to ``favorite_titles``.

        Raises ``UpstreamError`` for transport and HTTP failures and
        ``MalformedResponseError`` when the answer does not match the schema.
        """

        api_key = self._settings.openai_api_key
        if not api_key:
            raise UpstreamError("openai", "OpenAI API key is not configured")

        prompt = self.build_prompt(favorite_titles)
        logger.debug("Recommendation prompt: %s", prompt)
        payload = {
            "model": model or self._settings.openai_model,
            "messages": [
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": prompt},
            ],
            "response_format": {
                "type": "json_schema",
                "json_schema": {
                    "name": "recommendation",
                    "strict": True,
                    "schema": RECOMMENDATION_SCHEMA,
                },
            },
        }
        headers = {
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
        }

        try:
            response = await self._client.post(
                "/chat/completions", json=payload, headers=headers
            )
        except httpx.HTTPError as exc:
            raise UpstreamError("openai", f"completion request failed: {exc}") from exc
        if response.status_code >= 400:
            raise UpstreamError(
                "openai",
                response.text[:500] or f"HTTP {response.status_code}",
                status_code=response.status_code,
            )

        try:
            data = response.json()
        except ValueError as exc:
            raise MalformedResponseError("Completion response is not JSON") from exc

        content = self._message_content(data)
        try:
            parsed = json.loads(content)
        except json.JSONDecodeError:
            try:
                parsed = extract_json_object(content)
            except ValueError as exc:
                raise MalformedResponseError(str(exc)) from exc

        try:
            suggestions = RecommendationSuggestions.model_validate(parsed)
        except ValidationError as exc:
            raise MalformedResponseError(
                "Completion output does not match the recommendation schema"
            ) from exc

        return [item for item in suggestions.recommendation if item.title]

    @staticmethod
    def _message_content(data: Any) -> str:
        choices = data.get("choices") if isinstance(data, dict) else None
        if not choices:
            raise MalformedResponseError("Model returned no choices")
        message = choices[0].get("message") or {}
        if message.get("refusal"):
            raise MalformedResponseError(f"Model refused: {message['refusal']}")
        content = message.get("content")
        if not isinstance(content, str) or not content.strip():
            raise MalformedResponseError("Model response missing content")
        return content
