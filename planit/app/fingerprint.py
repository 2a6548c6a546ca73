"""Behavioral fingerprint store.

Each tracked user gets a ``FingerprintStore`` fed by a subscription on the
user document. Raw documents are flattened by ``sanitize_document``, seeded
with defaults and decoded into a frozen ``BehavioralFingerprint``. Only a
change in likes, dislikes or interaction-log length publishes a
``FingerprintChanged`` event; the store never calls into the orchestrator.
"""

from __future__ import annotations

import copy
import logging
from collections import OrderedDict
from collections.abc import Mapping
from datetime import datetime
from typing import Any, Literal

from .document_store import (
    SERVER_TIMESTAMP,
    ArrayRemove,
    ArrayUnion,
    DocumentStore,
    GeoPoint,
    Increment,
    Subscription,
    Timestamp,
)
from .events import EventChannel, FingerprintChanged
from .metrics import (
    fingerprint_changes_total,
    fingerprint_decode_failures_total,
    fingerprints_tracked,
)
from .schemas import (
    DEFAULT_CUISINE_HISTORY,
    DEFAULT_MOOD_HISTORY,
    DEFAULT_PREFERRED_PLACE_TYPES,
    DEFAULT_TAG_AFFINITIES,
    BehavioralFingerprint,
    Coordinate,
    Place,
)
from .utils import ensure_utc, utcnow

logger = logging.getLogger(__name__)

Reaction = Literal["liked", "disliked"]

SEED_DEFAULTS: dict[str, Any] = {
    "likes": [],
    "dislikes": [],
    "interactionLogs": [],
    "tagAffinities": DEFAULT_TAG_AFFINITIES,
    "moodHistory": list(DEFAULT_MOOD_HISTORY),
    "cuisineHistory": list(DEFAULT_CUISINE_HISTORY),
    "preferredPlaceTypes": list(DEFAULT_PREFERRED_PLACE_TYPES),
    "likeCount": 0,
    "dislikeCount": 0,
}

# Place-search types too generic to count as a preference signal.
GENERIC_PLACE_TYPES = frozenset({"point_of_interest", "establishment"})


def sanitize_document(value: Any) -> Any:
    """Flatten store-specific temporal and spatial values into plain scalars."""
    if isinstance(value, Timestamp):
        return value.isoformat()
    if isinstance(value, datetime):
        return ensure_utc(value).isoformat()
    if isinstance(value, GeoPoint):
        return {"latitude": value.latitude, "longitude": value.longitude}
    if isinstance(value, Mapping):
        return {str(key): sanitize_document(inner) for key, inner in value.items()}
    if isinstance(value, list | tuple):
        return [sanitize_document(item) for item in value]
    return value


def apply_defaults(document: Mapping[str, Any], user_id: str) -> dict[str, Any]:
    payload = dict(document)
    payload["userId"] = user_id
    for key, seed in SEED_DEFAULTS.items():
        if payload.get(key) is None:
            payload[key] = copy.deepcopy(seed)
    return payload


def decode_fingerprint(document: Mapping[str, Any], user_id: str) -> BehavioralFingerprint:
    return BehavioralFingerprint.model_validate(
        apply_defaults(sanitize_document(document), user_id)
    )


def is_significant_change(previous: BehavioralFingerprint, current: BehavioralFingerprint) -> bool:
    return (
        previous.likes != current.likes
        or previous.dislikes != current.dislikes
        or len(previous.interaction_logs) != len(current.interaction_logs)
    )


class FingerprintStore:
    """Owns the live fingerprint for one user."""

    def __init__(self, user_id: str, changes: EventChannel[FingerprintChanged]) -> None:
        self.user_id = user_id
        self._changes = changes
        self._current: BehavioralFingerprint | None = None
        self.subscription: Subscription | None = None

    @property
    def current(self) -> BehavioralFingerprint:
        if self._current is None:
            return BehavioralFingerprint.default(self.user_id)
        return self._current

    @property
    def loaded(self) -> bool:
        return self._current is not None

    async def apply(self, document: Mapping[str, Any] | None) -> FingerprintChanged | None:
        """Rebuild the fingerprint from a raw document; return the published event, if any."""
        try:
            if document is None:
                raise ValueError("user document does not exist")
            fingerprint = decode_fingerprint(document, self.user_id)
        except (TypeError, ValueError) as exc:
            fingerprint_decode_failures_total.inc()
            if self._current is None:
                logger.warning(
                    "Fingerprint decode failed for %s on first load, using defaults: %s",
                    self.user_id,
                    exc,
                )
                self._current = BehavioralFingerprint.default(self.user_id)
            else:
                logger.warning(
                    "Fingerprint decode failed for %s, keeping last good profile: %s",
                    self.user_id,
                    exc,
                )
            return None

        previous = self._current
        self._current = fingerprint
        if previous is None:
            logger.info("Fingerprint loaded for %s", self.user_id)
            return None
        if not is_significant_change(previous, fingerprint):
            return None

        event = FingerprintChanged(user_id=self.user_id, fingerprint=fingerprint, previous=previous)
        fingerprint_changes_total.inc()
        logger.info(
            "Fingerprint changed for %s (likes=%d dislikes=%d interactions=%d)",
            self.user_id,
            len(fingerprint.likes),
            len(fingerprint.dislikes),
            len(fingerprint.interaction_logs),
        )
        await self._changes.publish(event)
        return event


def _interaction_entry(
    place: Place,
    action: str,
    location: Coordinate | None,
    metadata: Mapping[str, Any] | None,
) -> dict[str, Any]:
    now = utcnow()
    entry: dict[str, Any] = {
        "placeId": place.id,
        "placeName": place.name,
        "category": place.category.value,
        "action": action,
        "timestamp": Timestamp.from_datetime(now),
        "rating": place.rating,
        "priceRange": place.price_range,
        "timeOfDay": _time_of_day(now),
        "dayOfWeek": now.strftime("%A"),
    }
    if location is not None:
        entry["location"] = GeoPoint(location.latitude, location.longitude)
    if metadata:
        entry["metadata"] = dict(metadata)
    return entry


def _time_of_day(moment: datetime) -> str:
    hour = moment.hour
    if 5 <= hour < 12:
        return "morning"
    if 12 <= hour < 17:
        return "afternoon"
    if 17 <= hour < 22:
        return "evening"
    return "night"


def _affinity_tags(place: Place) -> list[str]:
    tags = [place.category.value]
    for raw in place.types:
        tag = raw.replace(".", " ").strip().lower()
        if tag and tag not in GENERIC_PLACE_TYPES and tag not in tags:
            tags.append(tag)
    return tags


class FingerprintRegistry:
    """Tracks one fingerprint store per user and records behavioral writes.

    With ``max_tracked`` set, tracking one user past the limit untracks the
    least recently tracked one and publishes its id on ``untracked``.
    """

    def __init__(
        self,
        document_store: DocumentStore,
        *,
        collection: str = "users",
        changes: EventChannel[FingerprintChanged] | None = None,
        max_tracked: int | None = None,
    ) -> None:
        self._document_store = document_store
        self._collection = collection
        self.changes: EventChannel[FingerprintChanged] = changes or EventChannel("fingerprint")
        self.untracked: EventChannel[str] = EventChannel("untracked")
        self._max_tracked = max_tracked
        self._stores: OrderedDict[str, FingerprintStore] = OrderedDict()

    async def track(self, user_id: str) -> FingerprintStore:
        store = self._stores.get(user_id)
        if store is not None:
            self._stores.move_to_end(user_id)
            return store
        store = FingerprintStore(user_id, self.changes)
        self._stores[user_id] = store
        fingerprints_tracked.set(len(self._stores))
        store.subscription = await self._document_store.subscribe(
            self._collection, user_id, store.apply
        )
        if self._stores.get(user_id) is not store:
            # untracked while the subscription was being opened
            await store.subscription.cancel()
            return store
        if self._max_tracked is not None:
            while len(self._stores) > self._max_tracked:
                oldest = next(iter(self._stores))
                logger.info("Tracking limit reached, untracking %s", oldest)
                await self.untrack(oldest)
        return store

    def get(self, user_id: str) -> FingerprintStore | None:
        return self._stores.get(user_id)

    def current(self, user_id: str) -> BehavioralFingerprint | None:
        store = self._stores.get(user_id)
        return store.current if store is not None else None

    async def peek(self, user_id: str) -> tuple[bool, BehavioralFingerprint]:
        """Read a fingerprint without subscribing; untracked users are read once."""
        store = self._stores.get(user_id)
        if store is not None:
            return store.loaded, store.current
        document = await self._document_store.get(self._collection, user_id)
        if document is None:
            return False, BehavioralFingerprint.default(user_id)
        try:
            return True, decode_fingerprint(document, user_id)
        except (TypeError, ValueError) as exc:
            logger.warning("Fingerprint decode failed for %s, using defaults: %s", user_id, exc)
            return False, BehavioralFingerprint.default(user_id)

    @property
    def tracked(self) -> list[str]:
        return sorted(self._stores)

    async def untrack(self, user_id: str) -> None:
        store = self._stores.pop(user_id, None)
        if store is None:
            return
        fingerprints_tracked.set(len(self._stores))
        if store.subscription is not None:
            await store.subscription.cancel()
        await self.untracked.publish(user_id)

    async def close(self) -> None:
        for user_id in list(self._stores):
            await self.untrack(user_id)

    async def record_reaction(self, user_id: str, place: Place, reaction: Reaction) -> bool:
        """Fold a like/dislike into the user document. Returns False if the write failed."""
        name = place.name or place.id
        liked = reaction == "liked"
        updates: dict[str, Any] = {
            "likes" if liked else "dislikes": ArrayUnion(name),
            "dislikes" if liked else "likes": ArrayRemove(name),
            "likeCount" if liked else "dislikeCount": Increment(1),
            "interactionLogs": ArrayUnion(_interaction_entry(place, reaction, None, None)),
            "lastInteractionTime": SERVER_TIMESTAMP,
        }
        if liked:
            for tag in _affinity_tags(place):
                updates[f"tagAffinities.{tag}"] = Increment(1)
        return await self._write(user_id, updates, "reaction")

    async def record_interaction(
        self,
        user_id: str,
        place: Place,
        action: str,
        location: Coordinate | None = None,
        metadata: Mapping[str, Any] | None = None,
    ) -> bool:
        updates = {
            "interactionLogs": ArrayUnion(_interaction_entry(place, action, location, metadata)),
            "lastInteractionTime": SERVER_TIMESTAMP,
        }
        return await self._write(user_id, updates, "interaction")

    async def _write(self, user_id: str, updates: Mapping[str, Any], kind: str) -> bool:
        try:
            await self._document_store.set(self._collection, user_id, updates, merge=True)
        except Exception as exc:
            logger.warning("Failed to record %s for %s: %s", kind, user_id, exc)
            return False
        return True


__all__ = [
    "FingerprintRegistry",
    "FingerprintStore",
    "apply_defaults",
    "decode_fingerprint",
    "is_significant_change",
    "sanitize_document",
]
