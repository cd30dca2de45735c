from __future__ import annotations

import json

import httpx
import pytest

from app.errors import MalformedResponseError, UpstreamError
from app.services.openai import EMPTY_FAVORITES_HINT, OpenAIClient
from conftest import OPENAI_BASE_URL, FakeCompletion, build_settings

pytestmark = pytest.mark.anyio


def _client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(
        transport=httpx.MockTransport(handler), base_url=OPENAI_BASE_URL
    )


async def test_suggest_movies_requests_strict_schema(fake_completion: FakeCompletion) -> None:
    fake_completion.reply(
        [
            {"title": "Interstellar", "reason": "Mind-bending sci-fi from Nolan"},
            {"title": "  Arrival ", "reason": "Cerebral first contact story"},
        ]
    )

    async with _client(fake_completion.handler) as http_client:
        client = OpenAIClient(build_settings(OPENAI_MODEL="gpt-test"), http_client)
        suggestions = await client.suggest_movies(["Inception", "The Matrix"])

    assert [item.title for item in suggestions] == ["Interstellar", "Arrival"]
    assert suggestions[0].reason == "Mind-bending sci-fi from Nolan"

    body = fake_completion.requests[0]
    assert body["model"] == "gpt-test"
    response_format = body["response_format"]
    assert response_format["type"] == "json_schema"
    assert response_format["json_schema"]["strict"] is True
    schema = response_format["json_schema"]["schema"]
    assert schema["additionalProperties"] is False
    assert schema["properties"]["recommendation"]["items"]["required"] == ["title", "reason"]

    prompt = body["messages"][-1]["content"]
    assert "- Inception" in prompt
    assert "- The Matrix" in prompt
    assert "5-15" in prompt


async def test_suggest_movies_accepts_fenced_json(fake_completion: FakeCompletion) -> None:
    fake_completion.reply_raw(
        "Here you go:\n```json\n"
        + json.dumps({"recommendation": [{"title": "Heat", "reason": "Crime epic"}]})
        + "\n```"
    )

    async with _client(fake_completion.handler) as http_client:
        client = OpenAIClient(build_settings(), http_client)
        suggestions = await client.suggest_movies(["Collateral"])

    assert [item.title for item in suggestions] == ["Heat"]


async def test_suggest_movies_drops_blank_titles(fake_completion: FakeCompletion) -> None:
    fake_completion.reply(
        [
            {"title": "   ", "reason": "nothing"},
            {"title": "Drive", "reason": "Neon noir"},
        ]
    )

    async with _client(fake_completion.handler) as http_client:
        client = OpenAIClient(build_settings(), http_client)
        suggestions = await client.suggest_movies(["Nightcrawler"])

    assert [item.title for item in suggestions] == ["Drive"]


@pytest.mark.parametrize(
    "content",
    [
        "I cannot help with that.",
        json.dumps({"recommendation": [{"title": "Heat"}]}),
        json.dumps({"recommendation": [{"title": "Heat", "reason": "x", "year": 1995}]}),
        json.dumps({"movies": []}),
    ],
)
async def test_suggest_movies_rejects_off_schema_output(
    fake_completion: FakeCompletion, content: str
) -> None:
    fake_completion.reply_raw(content)

    async with _client(fake_completion.handler) as http_client:
        client = OpenAIClient(build_settings(), http_client)
        with pytest.raises(MalformedResponseError):
            await client.suggest_movies(["Heat"])


async def test_suggest_movies_without_choices_is_malformed() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"choices": []})

    async with _client(handler) as http_client:
        client = OpenAIClient(build_settings(), http_client)
        with pytest.raises(MalformedResponseError, match="no choices"):
            await client.suggest_movies(["Heat"])


async def test_suggest_movies_refusal_is_malformed() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200,
            json={
                "choices": [
                    {"message": {"role": "assistant", "content": None, "refusal": "No."}}
                ]
            },
        )

    async with _client(handler) as http_client:
        client = OpenAIClient(build_settings(), http_client)
        with pytest.raises(MalformedResponseError, match="refused"):
            await client.suggest_movies(["Heat"])


async def test_http_errors_raise_upstream_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(401, json={"error": {"message": "Invalid API key"}})

    async with _client(handler) as http_client:
        client = OpenAIClient(build_settings(), http_client)
        with pytest.raises(UpstreamError) as excinfo:
            await client.suggest_movies(["Heat"])

    assert excinfo.value.status_code == 401
    assert excinfo.value.service == "openai"


async def test_missing_api_key_raises_before_any_request(
    fake_completion: FakeCompletion,
) -> None:
    async with _client(fake_completion.handler) as http_client:
        client = OpenAIClient(build_settings(OPENAI_API_KEY=None), http_client)
        with pytest.raises(UpstreamError, match="not configured"):
            await client.suggest_movies(["Heat"])

    assert fake_completion.requests == []


def test_build_prompt_without_favorites_uses_hint() -> None:
    client = OpenAIClient(
        build_settings(MIN_SUGGESTIONS=3, MAX_SUGGESTIONS=4), httpx.AsyncClient()
    )

    prompt = client.build_prompt(["", "   "])

    assert EMPTY_FAVORITES_HINT in prompt
    assert "3-4 movie titles" in prompt
