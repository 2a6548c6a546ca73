from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Literal

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from .utils import haversine_meters

DEFAULT_PREFERRED_PLACE_TYPES = ("restaurant", "cafe", "park", "shopping")
DEFAULT_MOOD_HISTORY = ("Relaxing", "Social")
DEFAULT_CUISINE_HISTORY = ("Italian", "Mexican", "Asian")
DEFAULT_TAG_AFFINITIES = {"highly rated": 1, "local favorite": 1}
DEFAULT_CONFIDENCE = 0.7


class Coordinate(BaseModel):
    model_config = ConfigDict(frozen=True)

    latitude: float = Field(ge=-90, le=90)
    longitude: float = Field(ge=-180, le=180)

    def distance_to(self, other: Coordinate) -> float:
        return haversine_meters(self.latitude, self.longitude, other.latitude, other.longitude)


class InteractionLogEntry(BaseModel):
    """One behavioral event; unknown keys from the store are kept as metadata."""

    model_config = ConfigDict(frozen=True, extra="allow", populate_by_name=True)

    place_id: str = Field(default="", alias="placeId")
    place_name: str = Field(default="", alias="placeName")
    category: str = ""
    action: str = Field(
        default="",
        validation_alias=AliasChoices("action", "interaction", "reaction"),
        serialization_alias="action",
    )
    timestamp: datetime | str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class BehavioralFingerprint(BaseModel):
    """Normalized user profile rebuilt from the raw user document."""

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    user_id: str = Field(alias="userId")
    display_name: str | None = Field(default=None, alias="displayName")
    email: str | None = None
    location: Coordinate | None = None
    current_location: Coordinate | None = Field(default=None, alias="currentLocation")
    likes: tuple[str, ...] = ()
    dislikes: tuple[str, ...] = ()
    tag_affinities: dict[str, int] = Field(
        default_factory=lambda: dict(DEFAULT_TAG_AFFINITIES), alias="tagAffinities"
    )
    mood_history: tuple[str, ...] = Field(default=DEFAULT_MOOD_HISTORY, alias="moodHistory")
    cuisine_history: tuple[str, ...] = Field(
        default=DEFAULT_CUISINE_HISTORY, alias="cuisineHistory"
    )
    preferred_place_types: tuple[str, ...] = Field(
        default=DEFAULT_PREFERRED_PLACE_TYPES, alias="preferredPlaceTypes"
    )
    interaction_logs: tuple[InteractionLogEntry, ...] = Field(
        default=(), alias="interactionLogs"
    )
    like_count: int = Field(default=0, alias="likeCount")
    dislike_count: int = Field(default=0, alias="dislikeCount")

    @classmethod
    def default(cls, user_id: str) -> BehavioralFingerprint:
        return cls(user_id=user_id)

    def top_tags(self, limit: int = 5) -> list[tuple[str, int]]:
        ranked = sorted(self.tag_affinities.items(), key=lambda item: (-item[1], item[0]))
        return ranked[: max(0, limit)]

    @property
    def anchor(self) -> Coordinate | None:
        return self.current_location or self.location


class AIRecommendation(BaseModel):
    """One raw candidate extracted from the completion text."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    place_name: str = Field(alias="placeName", min_length=1)
    category: str = "restaurant"
    personalized_reason: str = Field(
        default="Selected based on your preferences", alias="personalizedReason"
    )
    confidence_score: float = Field(
        default=DEFAULT_CONFIDENCE, alias="confidenceScore", ge=0.0, le=1.0
    )
    matching_preferences: tuple[str, ...] = Field(default=(), alias="matchingPreferences")


class PlaceCategory(str, Enum):
    RESTAURANTS = "restaurants"
    CAFES = "cafes"
    BARS = "bars"
    SHOPPING = "shopping"
    VENUES = "venues"


class Place(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    address: str = ""
    rating: float | None = None
    review_count: int = 0
    category: PlaceCategory = PlaceCategory.RESTAURANTS
    price_range: str = "$$"
    location: Coordinate
    types: tuple[str, ...] = ()
    open_now: bool | None = None
    photo_reference: str | None = None


class PersonalizedRecommendation(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    place: Place
    source: AIRecommendation
    reason: str
    confidence: float
    matching_tags: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class RecommendationContext:
    user_id: str
    location: Coordinate
    timestamp: datetime
    fingerprint: BehavioralFingerprint
    weather: str | None = None
    previous_names: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class RecommendationFeed:
    """Published per-user output; replaced as a whole, never mutated."""

    user_id: str
    recommendations: tuple[PersonalizedRecommendation, ...] = ()
    last_updated: datetime | None = None
    is_generating: bool = False
    context: RecommendationContext | None = None


# ---------- HTTP payloads ----------


class RefreshRequest(BaseModel):
    lat: float | None = Field(default=None, ge=-90, le=90)
    lng: float | None = Field(default=None, ge=-180, le=180)
    weather: str | None = Field(default=None, max_length=64)

    def coordinate(self) -> Coordinate | None:
        if self.lat is None or self.lng is None:
            return None
        return Coordinate(latitude=self.lat, longitude=self.lng)


class LocationUpdateRequest(BaseModel):
    lat: float = Field(ge=-90, le=90)
    lng: float = Field(ge=-180, le=180)
    weather: str | None = Field(default=None, max_length=64)


class ReactionRequest(BaseModel):
    place: Place
    reaction: Literal["liked", "disliked"]


class ContextSnapshot(BaseModel):
    user_id: str
    location: Coordinate
    timestamp: datetime
    weather: str | None = None
    previous_names: list[str] = Field(default_factory=list)
    top_tags: list[tuple[str, int]] = Field(default_factory=list)

    @classmethod
    def from_context(cls, context: RecommendationContext, top_tags: int = 5) -> ContextSnapshot:
        return cls(
            user_id=context.user_id,
            location=context.location,
            timestamp=context.timestamp,
            weather=context.weather,
            previous_names=list(context.previous_names),
            top_tags=context.fingerprint.top_tags(top_tags),
        )


class FeedResponse(BaseModel):
    user_id: str
    recommendations: list[PersonalizedRecommendation] = Field(default_factory=list)
    last_updated: datetime | None = None
    is_generating: bool = False
    context: ContextSnapshot | None = None

    @classmethod
    def from_feed(cls, feed: RecommendationFeed) -> FeedResponse:
        return cls(
            user_id=feed.user_id,
            recommendations=list(feed.recommendations),
            last_updated=feed.last_updated,
            is_generating=feed.is_generating,
            context=ContextSnapshot.from_context(feed.context) if feed.context else None,
        )
