"""Recommendation orchestration.

One run: context -> prompt -> completion -> repair -> (fallback) -> enrichment
-> publish. At most one run per user is in flight; a request that arrives
while a run is active is dropped and answered with the currently published
feed. The next fingerprint change triggers a fresh run anyway.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable, Coroutine
from dataclasses import replace
from datetime import datetime
from typing import Any

import sentry_sdk

from .enrichment import Enricher
from .events import EventChannel, FingerprintChanged, RecommendationsUpdated
from .fingerprint import FingerprintRegistry
from .json_repair import repair
from .llm_client import CompletionClient
from .metrics import (
    completion_failures_total,
    recommendation_run_duration_seconds,
    recommendation_runs_dropped_total,
    recommendation_runs_total,
)
from .prompts import FALLBACK_CANDIDATES, build_prompt
from .schemas import (
    AIRecommendation,
    BehavioralFingerprint,
    Coordinate,
    PersonalizedRecommendation,
    RecommendationContext,
    RecommendationFeed,
)
from .settings import Settings, settings
from .utils import utcnow

logger = logging.getLogger(__name__)


class RecommendationOrchestrator:
    def __init__(
        self,
        completion: CompletionClient,
        enricher: Enricher,
        fingerprints: FingerprintRegistry,
        *,
        config: Settings | None = None,
        clock: Callable[[], datetime] = utcnow,
        updates: EventChannel[RecommendationsUpdated] | None = None,
    ) -> None:
        self._completion = completion
        self._enricher = enricher
        self._fingerprints = fingerprints
        self._config = config or settings
        self._clock = clock
        self.updates: EventChannel[RecommendationsUpdated] = updates or EventChannel(
            "recommendations"
        )
        self._feeds: dict[str, RecommendationFeed] = {}
        self._in_progress: set[str] = set()
        self._last_location: dict[str, Coordinate] = {}
        self._last_weather: dict[str, str | None] = {}
        self._last_anchor: dict[str, Coordinate] = {}
        self._background: set[asyncio.Task[Any]] = set()

    # ---------- published output ----------

    def feed(self, user_id: str) -> RecommendationFeed:
        return self._feeds.get(user_id) or RecommendationFeed(user_id=user_id)

    def is_generating(self, user_id: str) -> bool:
        return user_id in self._in_progress

    def forget(self, user_id: str) -> None:
        """Drop the feed and location state kept for a user who is no longer tracked."""
        self._feeds.pop(user_id, None)
        self._last_location.pop(user_id, None)
        self._last_weather.pop(user_id, None)
        self._last_anchor.pop(user_id, None)

    async def _publish(self, feed: RecommendationFeed) -> None:
        self._feeds[feed.user_id] = feed
        await self.updates.publish(RecommendationsUpdated(user_id=feed.user_id, feed=feed))

    # ---------- context ----------

    def build_context(
        self, user_id: str, location: Coordinate, weather: str | None = None
    ) -> RecommendationContext:
        fingerprint = self._fingerprints.current(user_id) or BehavioralFingerprint.default(user_id)
        previous = tuple(rec.place.name for rec in self.feed(user_id).recommendations)
        return RecommendationContext(
            user_id=user_id,
            location=location,
            timestamp=self._clock(),
            fingerprint=fingerprint,
            weather=weather,
            previous_names=previous,
        )

    def resolve_location(self, user_id: str, explicit: Coordinate | None = None) -> Coordinate | None:
        if explicit is not None:
            return explicit
        if user_id in self._last_location:
            return self._last_location[user_id]
        fingerprint = self._fingerprints.current(user_id)
        if fingerprint is None:
            return None
        return fingerprint.current_location or fingerprint.location

    # ---------- runs ----------

    async def generate(self, context: RecommendationContext) -> list[PersonalizedRecommendation]:
        """Run the pipeline for ``context`` unless a run for the same user is active."""
        user_id = context.user_id
        if user_id in self._in_progress:
            recommendation_runs_dropped_total.inc()
            logger.info("Recommendation run already in progress for %s, dropping request", user_id)
            return list(self.feed(user_id).recommendations)
        self._in_progress.add(user_id)

        started = time.perf_counter()
        self._feeds[user_id] = replace(self.feed(user_id), is_generating=True, context=context)
        try:
            candidates, outcome = await self._candidates(context)
            with sentry_sdk.start_span(op="recommendations.enrich"):
                recommendations = await self._enricher.enrich(candidates, context.location)
            await self._publish(
                RecommendationFeed(
                    user_id=user_id,
                    recommendations=tuple(recommendations),
                    last_updated=self._clock(),
                    is_generating=False,
                    context=context,
                )
            )
            self._last_anchor[user_id] = context.location
            recommendation_runs_total.labels(outcome=outcome).inc()
            logger.info(
                "Published %d recommendations for %s (%s)",
                len(recommendations),
                user_id,
                outcome,
            )
            return recommendations
        except Exception:
            recommendation_runs_total.labels(outcome="error").inc()
            logger.exception("Recommendation run failed for %s", user_id)
            self._feeds[user_id] = replace(self.feed(user_id), is_generating=False)
            return list(self.feed(user_id).recommendations)
        finally:
            self._in_progress.discard(user_id)
            recommendation_run_duration_seconds.observe(time.perf_counter() - started)

    async def _candidates(self, context: RecommendationContext) -> tuple[list[AIRecommendation], str]:
        prompt = build_prompt(
            context,
            top_tags=self._config.PROMPT_TOP_TAGS,
            recent_items=self._config.PROMPT_RECENT_ITEMS,
        )
        sentry_sdk.add_breadcrumb(
            category="recommendations",
            message=f"completion requested for {context.user_id}",
            level="info",
        )
        with sentry_sdk.start_span(op="recommendations.completion"):
            try:
                raw = await self._completion.complete(prompt)
            except Exception as exc:
                completion_failures_total.labels(reason=type(exc).__name__).inc()
                logger.warning("Completion failed for %s: %s", context.user_id, exc)
                raw = ""

        candidates = repair(raw)
        if candidates:
            return candidates, "ai"
        logger.info("No usable candidates for %s, using fallback set", context.user_id)
        return list(FALLBACK_CANDIDATES), "fallback"

    async def refresh(
        self,
        user_id: str,
        location: Coordinate | None = None,
        weather: str | None = None,
    ) -> list[PersonalizedRecommendation]:
        await self._fingerprints.track(user_id)
        resolved = self.resolve_location(user_id, location)
        if resolved is None:
            logger.info("No location known for %s, skipping recommendation run", user_id)
            return list(self.feed(user_id).recommendations)
        self._last_location[user_id] = resolved
        if weather is not None:
            self._last_weather[user_id] = weather
        context = self.build_context(user_id, resolved, self._last_weather.get(user_id))
        return await self.generate(context)

    async def update_location(
        self, user_id: str, location: Coordinate, weather: str | None = None
    ) -> bool:
        """Record a new location; returns True when it scheduled a new run."""
        self._last_location[user_id] = location
        if weather is not None:
            self._last_weather[user_id] = weather
        if not self._config.REFRESH_ON_LOCATION_CHANGE:
            return False
        anchor = self._last_anchor.get(user_id)
        if (
            anchor is not None
            and anchor.distance_to(location) < self._config.LOCATION_REFRESH_MIN_DISTANCE_METERS
        ):
            return False
        self._schedule(self.refresh(user_id, location, weather))
        return True

    # ---------- fingerprint events ----------

    def attach(self, changes: EventChannel[FingerprintChanged]) -> Callable[[], None]:
        return changes.subscribe(self._on_fingerprint_changed)

    def _on_fingerprint_changed(self, event: FingerprintChanged) -> None:
        logger.info("Fingerprint change for %s, scheduling refresh", event.user_id)
        self._schedule(self.refresh(event.user_id))

    def _schedule(self, coro: Coroutine[Any, Any, Any]) -> None:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def wait_idle(self) -> None:
        """Wait until every scheduled background run has finished."""
        while self._background:
            await asyncio.gather(*list(self._background))


__all__ = ["RecommendationOrchestrator"]
