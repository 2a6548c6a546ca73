from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Sequence

from pydantic import ValidationError

from .cache import PlaceCache
from .metrics import enrichment_dropped_total
from .places import PlaceSearchClient
from .schemas import AIRecommendation, Coordinate, PersonalizedRecommendation, Place

logger = logging.getLogger(__name__)

SEARCH_RADIUS_METERS = 5000


def search_query(candidate: AIRecommendation) -> str:
    return f"{candidate.place_name} {candidate.category}".strip()


def lookup_key(query: str, location: Coordinate, radius: int) -> str:
    """Cache key for a search; the location is rounded to roughly a kilometre."""
    return (
        f"search:{query.lower()}@{location.latitude:.2f},{location.longitude:.2f}:{radius}"
    )


def rank(recommendations: Sequence[PersonalizedRecommendation]) -> list[PersonalizedRecommendation]:
    """Order by descending confidence; equal scores keep their input order."""
    return sorted(recommendations, key=lambda rec: -rec.confidence)


def dedupe_by_place(
    recommendations: Sequence[PersonalizedRecommendation],
) -> list[PersonalizedRecommendation]:
    """Keep the first (highest ranked) recommendation per place id."""
    seen: set[str] = set()
    unique = []
    for rec in recommendations:
        if rec.place.id in seen:
            continue
        seen.add(rec.place.id)
        unique.append(rec)
    return unique


class Enricher:
    """Resolves raw candidates into real places and ranks them."""

    def __init__(
        self,
        search_client: PlaceSearchClient,
        cache: PlaceCache | None = None,
        *,
        radius: int = SEARCH_RADIUS_METERS,
        dedupe: bool = False,
    ) -> None:
        self._search = search_client
        self._cache = cache
        self._radius = radius
        self._dedupe = dedupe

    async def enrich(
        self, candidates: Sequence[AIRecommendation], location: Coordinate
    ) -> list[PersonalizedRecommendation]:
        resolved = await asyncio.gather(
            *(self._resolve(candidate, location) for candidate in candidates)
        )
        recommendations = [
            PersonalizedRecommendation(
                id=uuid.uuid4().hex,
                place=place,
                source=candidate,
                reason=candidate.personalized_reason,
                confidence=candidate.confidence_score,
                matching_tags=candidate.matching_preferences,
            )
            for candidate, place in zip(candidates, resolved, strict=True)
            if place is not None
        ]
        ranked = rank(recommendations)
        if self._dedupe:
            ranked = dedupe_by_place(ranked)
        return ranked

    async def _resolve(self, candidate: AIRecommendation, location: Coordinate) -> Place | None:
        query = search_query(candidate)
        key = lookup_key(query, location, self._radius)
        cached = await self._cached_lookup(key)
        if cached is not None:
            return cached
        try:
            results = await self._search.search(query, location, self._radius)
        except Exception as exc:
            enrichment_dropped_total.labels(reason="search_failed").inc()
            logger.warning("Dropping %r: place search failed: %s", candidate.place_name, exc)
            return None
        if not results:
            enrichment_dropped_total.labels(reason="no_results").inc()
            logger.info("Dropping %r: no place matched %r", candidate.place_name, query)
            return None

        place = results[0].to_place()
        if self._cache is not None:
            await self._cache.put(place.id, place.model_dump_json().encode("utf-8"))
            await self._cache.put(key, place.id.encode("utf-8"))
        return place

    async def _cached_lookup(self, key: str) -> Place | None:
        if self._cache is None:
            return None
        place_id = await self._cache.get(key)
        if place_id is None:
            return None
        return await self._cached_place(place_id.decode("utf-8", errors="replace"))

    async def _cached_place(self, place_id: str) -> Place | None:
        if self._cache is None:
            return None
        payload = await self._cache.get(place_id)
        if payload is None:
            return None
        try:
            return Place.model_validate_json(payload)
        except ValidationError:
            logger.warning("Discarding unreadable cached place %s", place_id)
            return None


__all__ = [
    "Enricher",
    "SEARCH_RADIUS_METERS",
    "dedupe_by_place",
    "lookup_key",
    "rank",
    "search_query",
]
