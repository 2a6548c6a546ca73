from __future__ import annotations

import json

from .schemas import AIRecommendation, RecommendationContext

RESPONSE_SCHEMA_EXAMPLE = [
    {
        "placeName": "Trending Restaurant",
        "category": "restaurant",
        "personalizedReason": "Highly rated local favorite with excellent reviews",
        "confidenceScore": 0.95,
        "matchingPreferences": ["highly rated", "local favorite"],
    },
    {
        "placeName": "Coffee Discovery",
        "category": "cafe",
        "personalizedReason": "Perfect coffee shop for your caffeine needs",
        "confidenceScore": 0.9,
        "matchingPreferences": ["coffee", "cozy atmosphere"],
    },
]

FALLBACK_CANDIDATES: tuple[AIRecommendation, ...] = (
    AIRecommendation(
        place_name="Trending Restaurant",
        category="restaurant",
        personalized_reason="Popular choice in your area with great reviews",
        confidence_score=0.8,
        matching_preferences=("highly rated", "local favorite"),
    ),
    AIRecommendation(
        place_name="Coffee Discovery",
        category="cafe",
        personalized_reason="Perfect for your coffee preferences",
        confidence_score=0.7,
        matching_preferences=("coffee", "cozy atmosphere"),
    ),
    AIRecommendation(
        place_name="Local Favorite",
        category="bar",
        personalized_reason="Highly rated spot for evening plans",
        confidence_score=0.6,
        matching_preferences=("nightlife", "good drinks"),
    ),
)


def _recent(items: tuple[str, ...], limit: int) -> list[str]:
    return list(items[-limit:]) if limit > 0 else []


def build_prompt(
    context: RecommendationContext, *, top_tags: int = 5, recent_items: int = 10
) -> str:
    """Render the instruction text sent to the completion service.

    Wording is tunable; the response schema in the closing block is what the
    repair stage expects back.
    """
    fingerprint = context.fingerprint
    lines = [
        "You are PlanIt's personalized place recommendation engine. Analyze this "
        "user's profile and suggest real places near them that they are likely to enjoy.",
        "",
        "USER PROFILE:",
    ]
    if fingerprint.display_name:
        lines.append(f"Name: {fingerprint.display_name}")

    lines.extend(["", "USER PREFERENCES:"])
    if fingerprint.preferred_place_types:
        lines.append(f"Preferred Place Types: {', '.join(fingerprint.preferred_place_types)}")
    if fingerprint.mood_history:
        lines.append(f"Recent Moods: {', '.join(_recent(fingerprint.mood_history, recent_items))}")
    if fingerprint.cuisine_history:
        lines.append(
            f"Cuisine Preferences: {', '.join(_recent(fingerprint.cuisine_history, recent_items))}"
        )

    likes = _recent(fingerprint.likes, recent_items)
    dislikes = _recent(fingerprint.dislikes, recent_items)
    if likes:
        lines.append(f"Liked Places: {', '.join(likes)}")
    if dislikes:
        lines.append(f"Disliked Places (avoid similar): {', '.join(dislikes)}")

    ranked = fingerprint.top_tags(top_tags)
    if ranked:
        lines.append(
            "Top Interests: " + ", ".join(f"{tag} ({score})" for tag, score in ranked)
        )

    lines.extend(["", "CONTEXT:"])
    lines.append(
        f"Location: {context.location.latitude:.5f}, {context.location.longitude:.5f}"
    )
    lines.append(f"Local time: {context.timestamp.strftime('%A %Y-%m-%d %H:%M %Z').strip()}")
    if context.weather:
        lines.append(f"Weather: {context.weather}")
    if context.previous_names:
        lines.append(
            f"Already recommended last time (suggest different places): "
            f"{', '.join(context.previous_names)}"
        )

    lines.extend(
        [
            "",
            "RESPOND WITH ONLY A JSON ARRAY - NO OTHER TEXT. Each element must have "
            "exactly these fields: placeName (string), category (string), "
            "personalizedReason (string), confidenceScore (number between 0 and 1), "
            "matchingPreferences (array of strings). Example:",
            json.dumps(RESPONSE_SCHEMA_EXAMPLE, indent=2),
        ]
    )
    return "\n".join(lines)


__all__ = ["FALLBACK_CANDIDATES", "RESPONSE_SCHEMA_EXAMPLE", "build_prompt"]
