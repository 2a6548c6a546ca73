"""Tests for the breakers guarding the completion and place-search upstreams."""

import asyncio

import httpx
import pytest
from conftest import BAKU, FakePlaceSearch
from planit.app.circuit_breaker import CircuitBreaker, CircuitOpenError, CircuitState
from planit.app.llm_client import CompletionClient, CompletionUnavailable
from planit.app.places import PlaceSearchUnavailable
from planit.app.schemas import Coordinate
from planit.app.settings import settings

HERE = Coordinate(latitude=BAKU[0], longitude=BAKU[1])
REPLY = {"choices": [{"message": {"content": "[]"}}]}


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


class FlakyUpstream:
    """Completion endpoint that answers 503 until ``healthy`` is set."""

    def __init__(self):
        self.healthy = False
        self.requests = 0

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests += 1
        if self.healthy:
            return httpx.Response(200, json=REPLY)
        return httpx.Response(503, text="overloaded")


def _completion(upstream, clock, **breaker_options):
    config = settings.model_copy(update={"LLM_API_KEY": "sk-test"})
    breaker = CircuitBreaker("completion", clock=clock, **breaker_options)
    return CompletionClient(config, breaker=breaker, transport=httpx.MockTransport(upstream))


def _place_search(clock, error, **breaker_options):
    search = FakePlaceSearch(error=error)
    search.breaker = CircuitBreaker("place_search", clock=clock, **breaker_options)
    return search


class TestCompletionBreaker:
    def test_opens_after_consecutive_failures(self):
        upstream = FlakyUpstream()
        client = _completion(upstream, FakeClock(), failure_threshold=3, cooldown_seconds=60)

        async def scenario():
            for _ in range(3):
                with pytest.raises(CompletionUnavailable, match="503"):
                    await client.complete("hello")
            with pytest.raises(CircuitOpenError, match="'completion' is unavailable"):
                await client.complete("hello")
            await client.aclose()

        asyncio.run(scenario())
        assert client.breaker.state is CircuitState.OPEN
        assert upstream.requests == 3
        assert client.breaker.stats.rejected_calls == 1
        assert client.breaker.stats.last_failure == "CompletionUnavailable"

    def test_success_clears_failure_streak(self):
        upstream = FlakyUpstream()
        client = _completion(upstream, FakeClock(), failure_threshold=2)

        async def scenario():
            with pytest.raises(CompletionUnavailable):
                await client.complete("hello")
            upstream.healthy = True
            assert await client.complete("hello") == "[]"
            upstream.healthy = False
            with pytest.raises(CompletionUnavailable):
                await client.complete("hello")
            await client.aclose()

        asyncio.run(scenario())
        assert client.breaker.state is CircuitState.CLOSED
        assert client.breaker.stats.consecutive_failures == 1

    def test_trial_call_after_cooldown_closes(self):
        upstream = FlakyUpstream()
        clock = FakeClock()
        client = _completion(upstream, clock, failure_threshold=1, cooldown_seconds=30)

        async def scenario():
            with pytest.raises(CompletionUnavailable):
                await client.complete("hello")
            clock.now += 29
            retry_after = client.breaker.retry_after
            with pytest.raises(CircuitOpenError):
                await client.complete("hello")
            clock.now += 1
            upstream.healthy = True
            reply = await client.complete("hello")
            await client.aclose()
            return retry_after, reply

        retry_after, reply = asyncio.run(scenario())
        assert retry_after == pytest.approx(1.0)
        assert reply == "[]"
        assert client.breaker.state is CircuitState.CLOSED
        assert upstream.requests == 2


class TestPlaceSearchBreaker:
    def test_failed_trial_reopens(self):
        clock = FakeClock()
        search = _place_search(
            clock, PlaceSearchUnavailable("quota exceeded"), failure_threshold=2, cooldown_seconds=10
        )

        async def scenario():
            for _ in range(2):
                with pytest.raises(PlaceSearchUnavailable):
                    await search.search("Nargiz restaurant", HERE)
            clock.now += 10
            assert search.breaker.state is CircuitState.HALF_OPEN
            with pytest.raises(PlaceSearchUnavailable):
                await search.search("Nargiz restaurant", HERE)

        asyncio.run(scenario())
        assert search.breaker.state is CircuitState.OPEN
        assert search.breaker.stats.times_opened == 2
        assert len(search.queries) == 3

    def test_reset_admits_calls_again(self):
        search = _place_search(FakeClock(), RuntimeError("boom"), failure_threshold=1)

        async def scenario():
            with pytest.raises(RuntimeError):
                await search.search("Sahil bar", HERE)
            search.breaker.reset()
            search.error = None
            return await search.search("Sahil bar", HERE)

        results = asyncio.run(scenario())
        assert [result.name for result in results] == ["Sahil"]
        assert search.breaker.state is CircuitState.CLOSED

    def test_disabled_breaker_never_opens(self):
        search = _place_search(FakeClock(), RuntimeError("boom"), failure_threshold=1, enabled=False)

        async def scenario():
            for _ in range(4):
                with pytest.raises(RuntimeError):
                    await search.search("Sahil bar", HERE)

        asyncio.run(scenario())
        assert search.breaker.state is CircuitState.CLOSED
        assert len(search.queries) == 4

    def test_clients_build_breakers_from_settings(self):
        search = FakePlaceSearch()

        assert search.breaker.name == "place_search"
        assert search.breaker.failure_threshold == settings.CIRCUIT_FAILURE_THRESHOLD
        assert search.breaker.cooldown_seconds == settings.CIRCUIT_COOLDOWN_SECONDS
