import asyncio
import os
import sys
from pathlib import Path

import pytest
import sentry_sdk
from fastapi.testclient import TestClient

ROOT = Path(__file__).resolve().parents[2]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

# Disable outbound Sentry calls during tests
sentry_sdk.init = lambda *args, **kwargs: None  # type: ignore[assignment]
os.environ["SENTRY_DSN"] = ""
os.environ["DOCUMENT_STORE"] = "memory"
os.environ.pop("LLM_API_KEY", None)
os.environ.pop("PLACES_API_KEY", None)

from planit.app.health import health_checker  # noqa: E402
from planit.app.llm_client import CompletionClient  # noqa: E402
from planit.app.main import app  # noqa: E402
from planit.app.places import PlaceResult, PlaceSearchClient  # noqa: E402
from planit.app.settings import settings  # noqa: E402

BAKU = (40.4093, 49.8671)


def make_result(
    name: str,
    *,
    place_id: str | None = None,
    types: tuple[str, ...] = ("restaurant", "food"),
    lat: float = BAKU[0],
    lng: float = BAKU[1],
    rating: float | None = 4.5,
    price_level: int | None = 2,
) -> PlaceResult:
    return PlaceResult(
        place_id=place_id or "pid-" + name.lower().replace(" ", "-"),
        name=name,
        latitude=lat,
        longitude=lng,
        address=f"{name} street 1",
        rating=rating,
        review_count=120,
        price_level=price_level,
        types=list(types),
        open_now=True,
        photo_reference=None,
    )


class ScriptedCompletion(CompletionClient):
    """Completion client that replays canned replies instead of calling the network."""

    def __init__(self, replies=("",), *, delay: float = 0.0, error: Exception | None = None):
        super().__init__(settings)
        self.replies = list(replies)
        self.delay = delay
        self.error = error
        self.calls = 0
        self.prompts: list[str] = []

    async def _complete(self, prompt: str) -> str:
        self.calls += 1
        self.prompts.append(prompt)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.replies[min(self.calls, len(self.replies)) - 1]


class FakePlaceSearch(PlaceSearchClient):
    """Place search that resolves every query to one synthetic place unless a catalog is given."""

    def __init__(
        self,
        catalog: dict[str, list[PlaceResult]] | None = None,
        *,
        error: Exception | None = None,
    ):
        super().__init__(settings)
        self.catalog = catalog
        self.error = error
        self.queries: list[str] = []

    async def _search(self, query, location, radius):
        self.queries.append(query)
        await asyncio.sleep(0)
        if self.error is not None:
            raise self.error
        if self.catalog is not None:
            return list(self.catalog.get(query, []))
        return [make_result(query.rsplit(" ", 1)[0])]


@pytest.fixture(autouse=True)
def reset_settings(monkeypatch):
    monkeypatch.setattr(settings, "LLM_API_KEY", None)
    monkeypatch.setattr(settings, "PLACES_API_KEY", None)
    monkeypatch.setattr(settings, "SENTRY_DSN", None)
    monkeypatch.setattr(settings, "DOCUMENT_STORE", "memory")
    monkeypatch.setattr(settings, "DEDUPE_BY_PLACE_ID", False)
    monkeypatch.setattr(settings, "REFRESH_ON_LOCATION_CHANGE", False)
    health_checker.clear_cache()
    yield
    health_checker.clear_cache()


@pytest.fixture
def client():
    with TestClient(app, base_url="http://api.testserver") as test_client:
        yield test_client
