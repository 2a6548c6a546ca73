from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

import httpx

from .circuit_breaker import CircuitBreaker
from .schemas import Coordinate, Place, PlaceCategory
from .settings import Settings, settings

logger = logging.getLogger(__name__)

# Checked in order; the first rule with a matching type wins.
CATEGORY_RULES: tuple[tuple[frozenset[str], PlaceCategory], ...] = (
    (frozenset({"restaurant", "food", "meal_takeaway"}), PlaceCategory.RESTAURANTS),
    (frozenset({"cafe", "bakery"}), PlaceCategory.CAFES),
    (frozenset({"bar", "night_club", "liquor_store"}), PlaceCategory.BARS),
    (frozenset({"shopping_mall", "store", "clothing_store"}), PlaceCategory.SHOPPING),
    (frozenset({"tourist_attraction", "amusement_park", "museum"}), PlaceCategory.VENUES),
)

_PRICE_LEVELS = {0: "$", 1: "$", 2: "$$", 3: "$$$", 4: "$$$$"}
_VALID_STATUSES = {"OK", "ZERO_RESULTS"}


class PlaceSearchUnavailable(RuntimeError):
    pass


def infer_category(types: Iterable[str]) -> PlaceCategory:
    lowered = {str(item).lower() for item in types}
    for matches, category in CATEGORY_RULES:
        if lowered & matches:
            return category
    return PlaceCategory.RESTAURANTS


def price_range(level: int | None) -> str:
    if level is None:
        return "$$"
    return _PRICE_LEVELS.get(level, "$$")


@dataclass(slots=True)
class PlaceResult:
    place_id: str
    name: str
    latitude: float
    longitude: float
    address: str = ""
    rating: float | None = None
    review_count: int = 0
    price_level: int | None = None
    types: list[str] = field(default_factory=list)
    open_now: bool | None = None
    photo_reference: str | None = None

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> PlaceResult | None:
        place_id = payload.get("place_id")
        name = payload.get("name")
        location = (payload.get("geometry") or {}).get("location") or {}
        if not place_id or not name or "lat" not in location or "lng" not in location:
            return None
        photos = payload.get("photos") or []
        opening_hours = payload.get("opening_hours") or {}
        price_level = payload.get("price_level")
        return cls(
            place_id=str(place_id),
            name=str(name),
            latitude=float(location["lat"]),
            longitude=float(location["lng"]),
            address=payload.get("formatted_address") or payload.get("vicinity") or "",
            rating=float(payload["rating"]) if payload.get("rating") is not None else None,
            review_count=int(payload.get("user_ratings_total") or 0),
            price_level=int(price_level) if isinstance(price_level, int | float) else None,
            types=[str(item) for item in payload.get("types") or []],
            open_now=opening_hours.get("open_now"),
            photo_reference=(photos[0] or {}).get("photo_reference") if photos else None,
        )

    @property
    def coordinate(self) -> Coordinate:
        return Coordinate(latitude=self.latitude, longitude=self.longitude)

    def to_place(self) -> Place:
        return Place(
            id=self.place_id,
            name=self.name,
            address=self.address,
            rating=self.rating,
            review_count=self.review_count,
            category=infer_category(self.types),
            price_range=price_range(self.price_level),
            location=self.coordinate,
            types=tuple(self.types),
            open_now=self.open_now,
            photo_reference=self.photo_reference,
        )


class PlaceSearchClient:
    """Text search against the Google Places web service."""

    def __init__(
        self,
        config: Settings | None = None,
        *,
        breaker: CircuitBreaker | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._config = config or settings
        self._transport = transport
        self._client: httpx.AsyncClient | None = None
        self._client_lock = asyncio.Lock()
        self.breaker = breaker or CircuitBreaker(
            "place_search",
            failure_threshold=self._config.CIRCUIT_FAILURE_THRESHOLD,
            cooldown_seconds=self._config.CIRCUIT_COOLDOWN_SECONDS,
        )

    @property
    def configured(self) -> bool:
        return self._config.places_configured

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            async with self._client_lock:
                if self._client is None:
                    self._client = httpx.AsyncClient(
                        base_url=self._config.PLACES_API_BASE.rstrip("/"),
                        timeout=httpx.Timeout(self._config.PLACES_TIMEOUT_SECONDS),
                        transport=self._transport,
                    )
        return self._client

    async def search(
        self, query: str, location: Coordinate, radius: int | None = None
    ) -> list[PlaceResult]:
        """Return matches for ``query`` near ``location``, nearest first."""
        return await self.breaker.call(self._bounded_search, query, location, radius)

    async def _bounded_search(
        self, query: str, location: Coordinate, radius: int | None
    ) -> list[PlaceResult]:
        return await asyncio.wait_for(
            self._search(query, location, radius),
            timeout=self._config.PLACES_TIMEOUT_SECONDS,
        )

    async def _search(
        self, query: str, location: Coordinate, radius: int | None
    ) -> list[PlaceResult]:
        if not self._config.places_configured:
            raise PlaceSearchUnavailable("PLACES_API_KEY not configured")
        client = await self._get_client()
        params = {
            "query": query,
            "location": f"{location.latitude},{location.longitude}",
            "radius": str(radius or self._config.PLACES_SEARCH_RADIUS_METERS),
            "key": self._config.PLACES_API_KEY or "",
        }
        started = time.perf_counter()
        try:
            response = await client.get("/textsearch/json", params=params)
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPError as exc:
            raise PlaceSearchUnavailable(f"Place search failed: {exc}") from exc
        except ValueError as exc:
            raise PlaceSearchUnavailable("Invalid JSON from place search") from exc

        status = data.get("status", "OK") if isinstance(data, dict) else None
        if status not in _VALID_STATUSES:
            message = data.get("error_message") if isinstance(data, dict) else None
            raise PlaceSearchUnavailable(f"Place search status {status}: {message or ''}".strip())

        results = [
            parsed
            for parsed in (PlaceResult.from_payload(item) for item in data.get("results") or [])
            if parsed is not None
        ]
        results.sort(key=lambda result: location.distance_to(result.coordinate))
        elapsed = (time.perf_counter() - started) * 1000
        logger.info(
            "Place search query=%r results=%d latency=%.1fms", query, len(results), elapsed
        )
        return results

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None


__all__ = [
    "CATEGORY_RULES",
    "PlaceResult",
    "PlaceSearchClient",
    "PlaceSearchUnavailable",
    "infer_category",
    "price_range",
]
