from __future__ import annotations

import logging
import math
from contextvars import ContextVar
from datetime import UTC, datetime
from uuid import uuid4

from fastapi import Request
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.base import BaseHTTPMiddleware

from .settings import settings

# Context variable for request ID (accessible throughout the request lifecycle)
request_id_ctx: ContextVar[str] = ContextVar("request_id", default="")

EARTH_RADIUS_METERS = 6_371_000.0


def utcnow() -> datetime:
    return datetime.now(UTC)


def ensure_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def haversine_meters(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Straight-line distance between two coordinates in meters."""
    dlat = math.radians(lat2 - lat1)
    dlon = math.radians(lon2 - lon1)
    a = (
        math.sin(dlat / 2) ** 2
        + math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) * math.sin(dlon / 2) ** 2
    )
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return EARTH_RADIUS_METERS * c


def add_cors(app):
    origins = settings.allow_origins
    if not origins:
        # Default is explicit opt-in; skip middleware when nothing configured
        return
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["*"],
    )


class RequestIDMiddleware(BaseHTTPMiddleware):
    """
    Middleware to add request ID tracing for distributed debugging.

    - Generates UUID for each request or uses existing X-Request-ID header
    - Adds X-Request-ID to response headers
    - Sets request ID in context variable for access throughout request lifecycle
    """

    async def dispatch(self, request: Request, call_next):  # type: ignore[override]
        request_id = request.headers.get("X-Request-ID")
        if not request_id:
            request_id = str(uuid4())

        request_id_ctx.set(request_id)
        request.state.request_id = request_id

        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response


class RequestIDLogFilter(logging.Filter):
    """Logging filter that adds request ID to log records."""

    def filter(self, record: logging.LogRecord) -> bool:
        request_id = request_id_ctx.get("")
        record.request_id = request_id if request_id else "-"  # type: ignore[attr-defined]
        return True


def add_request_id_tracing(app):
    """Add request ID middleware and configure logging."""
    app.add_middleware(RequestIDMiddleware)
    logging.getLogger().addFilter(RequestIDLogFilter())


def get_request_id() -> str:
    """Get the current request ID from context."""
    return request_id_ctx.get("")
