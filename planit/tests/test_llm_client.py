"""Tests for the completion and place search HTTP clients."""

import asyncio
import json

import httpx
import pytest
from conftest import BAKU
from planit.app.circuit_breaker import CircuitBreaker, CircuitOpenError
from planit.app.llm_client import CompletionClient, CompletionUnavailable
from planit.app.places import PlaceSearchClient, PlaceSearchUnavailable
from planit.app.schemas import Coordinate
from planit.app.settings import settings

HERE = Coordinate(latitude=BAKU[0], longitude=BAKU[1])


def _llm_config(**overrides):
    return settings.model_copy(update={"LLM_API_KEY": "sk-test", **overrides})


def _places_config(**overrides):
    return settings.model_copy(update={"PLACES_API_KEY": "places-test", **overrides})


class TestCompletionClient:
    def test_returns_message_content(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["path"] = request.url.path
            seen["auth"] = request.headers["Authorization"]
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"choices": [{"message": {"content": "[]"}}]})

        client = CompletionClient(_llm_config(), transport=httpx.MockTransport(handler))

        async def scenario():
            try:
                return await client.complete("hello")
            finally:
                await client.aclose()

        assert asyncio.run(scenario()) == "[]"
        assert seen["path"] == "/v1/chat/completions"
        assert seen["auth"] == "Bearer sk-test"
        assert seen["body"]["messages"][-1] == {"role": "user", "content": "hello"}
        assert seen["body"]["model"] == settings.LLM_MODEL

    def test_long_prompt_is_truncated(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["prompt"] = json.loads(request.content)["messages"][-1]["content"]
            return httpx.Response(200, json={"choices": [{"message": {"content": ""}}]})

        client = CompletionClient(
            _llm_config(LLM_MAX_PROMPT_CHARS=10), transport=httpx.MockTransport(handler)
        )
        asyncio.run(client.complete("x" * 50))
        assert seen["prompt"] == "x" * 10

    def test_http_error_is_unavailable(self):
        transport = httpx.MockTransport(lambda request: httpx.Response(500, text="boom"))
        client = CompletionClient(_llm_config(), transport=transport)

        with pytest.raises(CompletionUnavailable, match="500"):
            asyncio.run(client.complete("hello"))

    def test_malformed_body_is_unavailable(self):
        transport = httpx.MockTransport(lambda request: httpx.Response(200, json={"choices": []}))
        client = CompletionClient(_llm_config(), transport=transport)

        with pytest.raises(CompletionUnavailable, match="Malformed"):
            asyncio.run(client.complete("hello"))

    def test_missing_key_is_unavailable(self):
        client = CompletionClient(settings)
        assert client.configured is False
        with pytest.raises(CompletionUnavailable, match="LLM_API_KEY"):
            asyncio.run(client.complete("hello"))

    def test_timeout_counts_against_breaker(self):
        async def slow(request: httpx.Request) -> httpx.Response:
            await asyncio.sleep(1)
            return httpx.Response(200, json={"choices": [{"message": {"content": "late"}}]})

        breaker = CircuitBreaker("test-completion", failure_threshold=1, cooldown_seconds=60)
        client = CompletionClient(
            _llm_config(LLM_TIMEOUT_SECONDS=0.05),
            breaker=breaker,
            transport=httpx.MockTransport(slow),
        )

        async def scenario():
            with pytest.raises(asyncio.TimeoutError):
                await client.complete("hello")
            with pytest.raises(CircuitOpenError):
                await client.complete("hello")

        asyncio.run(scenario())
        assert breaker.is_open()


class TestPlaceSearchClient:
    def test_results_sorted_by_distance(self):
        seen = {}
        payload = {
            "status": "OK",
            "results": [
                {
                    "place_id": "far",
                    "name": "Far Cafe",
                    "geometry": {"location": {"lat": 40.5, "lng": 49.9}},
                    "types": ["cafe"],
                },
                {"place_id": "broken", "name": "No Geometry"},
                {
                    "place_id": "near",
                    "name": "Near Cafe",
                    "geometry": {"location": {"lat": 40.41, "lng": 49.867}},
                    "types": ["cafe"],
                },
            ],
        }

        def handler(request: httpx.Request) -> httpx.Response:
            seen["params"] = dict(request.url.params)
            seen["path"] = request.url.path
            return httpx.Response(200, json=payload)

        client = PlaceSearchClient(_places_config(), transport=httpx.MockTransport(handler))
        results = asyncio.run(client.search("Cafe Nero cafe", HERE, 3000))

        assert [result.place_id for result in results] == ["near", "far"]
        assert seen["path"].endswith("/textsearch/json")
        assert seen["params"]["query"] == "Cafe Nero cafe"
        assert seen["params"]["radius"] == "3000"
        assert seen["params"]["key"] == "places-test"

    def test_zero_results_is_empty(self):
        transport = httpx.MockTransport(
            lambda request: httpx.Response(200, json={"status": "ZERO_RESULTS", "results": []})
        )
        client = PlaceSearchClient(_places_config(), transport=transport)
        assert asyncio.run(client.search("nothing", HERE)) == []

    def test_denied_status_raises(self):
        transport = httpx.MockTransport(
            lambda request: httpx.Response(
                200, json={"status": "REQUEST_DENIED", "error_message": "bad key"}
            )
        )
        client = PlaceSearchClient(_places_config(), transport=transport)
        with pytest.raises(PlaceSearchUnavailable, match="REQUEST_DENIED"):
            asyncio.run(client.search("x", HERE))

    def test_missing_key_raises(self):
        client = PlaceSearchClient(settings)
        assert client.configured is False
        with pytest.raises(PlaceSearchUnavailable):
            asyncio.run(client.search("x", HERE))
