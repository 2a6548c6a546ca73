from __future__ import annotations

from fastapi import HTTPException, Request

from ..container import ServiceContainer


def get_container(request: Request) -> ServiceContainer:
    container = getattr(request.app.state, "container", None)
    if container is None:
        raise HTTPException(503, "Recommendation services are not running")
    return container
