from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Body, Depends, HTTPException

from ...container import ServiceContainer
from ...schemas import (
    ContextSnapshot,
    Coordinate,
    FeedResponse,
    LocationUpdateRequest,
    ReactionRequest,
    RefreshRequest,
)
from ..types import UserId
from ..utils import get_container

router = APIRouter(tags=["recommendations"])


@router.get("/users/{user_id}/recommendations", response_model=FeedResponse)
async def get_recommendations(
    user_id: UserId, container: ServiceContainer = Depends(get_container)
):
    return FeedResponse.from_feed(container.orchestrator.feed(user_id))


@router.post("/users/{user_id}/recommendations/refresh", response_model=FeedResponse)
async def refresh_recommendations(
    user_id: UserId,
    payload: RefreshRequest | None = Body(default=None),
    container: ServiceContainer = Depends(get_container),
):
    payload = payload or RefreshRequest()
    await container.orchestrator.refresh(user_id, payload.coordinate(), payload.weather)
    return FeedResponse.from_feed(container.orchestrator.feed(user_id))


@router.post("/users/{user_id}/location")
async def update_location(
    user_id: UserId,
    payload: LocationUpdateRequest,
    container: ServiceContainer = Depends(get_container),
) -> dict[str, Any]:
    await container.fingerprints.track(user_id)
    location = Coordinate(latitude=payload.lat, longitude=payload.lng)
    scheduled = await container.orchestrator.update_location(user_id, location, payload.weather)
    return {"user_id": user_id, "refresh_scheduled": scheduled}


@router.post("/users/{user_id}/reactions", status_code=202)
async def record_reaction(
    user_id: UserId,
    payload: ReactionRequest,
    container: ServiceContainer = Depends(get_container),
) -> dict[str, Any]:
    await container.fingerprints.track(user_id)
    recorded = await container.fingerprints.record_reaction(
        user_id, payload.place, payload.reaction
    )
    return {"user_id": user_id, "recorded": recorded}


@router.get("/users/{user_id}/fingerprint")
async def get_fingerprint(
    user_id: UserId, container: ServiceContainer = Depends(get_container)
) -> dict[str, Any]:
    loaded, fingerprint = await container.fingerprints.peek(user_id)
    return {
        "loaded": loaded,
        "fingerprint": fingerprint.model_dump(mode="json", by_alias=True),
    }


@router.get("/users/{user_id}/context", response_model=ContextSnapshot)
async def get_context(user_id: UserId, container: ServiceContainer = Depends(get_container)):
    context = container.orchestrator.feed(user_id).context
    if context is None:
        raise HTTPException(404, "No recommendation run yet")
    return ContextSnapshot.from_context(context, container.config.PROMPT_TOP_TAGS)
