"""Prometheus metrics for monitoring and observability."""

from __future__ import annotations

import re
import sys
import time
from collections.abc import Callable
from functools import lru_cache

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    Counter,
    Gauge,
    Histogram,
    Info,
    generate_latest,
)
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

# ==============================================================================
# APPLICATION INFO
# ==============================================================================

app_info = Info("planit_recommendations", "PlanIt recommendation service information")
app_info.info(
    {
        "version": "0.1.0",
        "service": "planit-recommendations",
        "python_version": ".".join(str(part) for part in sys.version_info[:3]),
    }
)

# ==============================================================================
# HTTP METRICS
# ==============================================================================

http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status"],
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "endpoint"],
    buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)

http_requests_in_progress = Gauge(
    "http_requests_in_progress",
    "HTTP requests currently in progress",
    ["method", "endpoint"],
)

# ==============================================================================
# CIRCUIT BREAKER METRICS
# ==============================================================================

circuit_breaker_state = Gauge(
    "circuit_breaker_state",
    "Circuit breaker state (0=closed, 1=open, 2=half_open)",
    ["circuit_name"],
)

circuit_breaker_rejected_total = Counter(
    "circuit_breaker_rejected_total",
    "Total circuit breaker rejected calls",
    ["circuit_name"],
)

# ==============================================================================
# CACHE METRICS
# ==============================================================================

cache_hits_total = Counter(
    "cache_hits_total",
    "Total cache hits",
    ["cache_name", "tier"],
)

cache_misses_total = Counter(
    "cache_misses_total",
    "Total cache misses",
    ["cache_name"],
)

cache_expirations_total = Counter(
    "cache_expirations_total",
    "Total cache entries found expired on read",
    ["cache_name"],
)

cache_write_failures_total = Counter(
    "cache_write_failures_total",
    "Persistent cache writes that failed",
    ["cache_name"],
)

cache_size = Gauge(
    "cache_size",
    "Current memory tier size (number of entries)",
    ["cache_name"],
)

# ==============================================================================
# RECOMMENDATION PIPELINE METRICS
# ==============================================================================

recommendation_runs_total = Counter(
    "recommendation_runs_total",
    "Orchestration runs by outcome",
    ["outcome"],
)

recommendation_runs_dropped_total = Counter(
    "recommendation_runs_dropped_total",
    "Generate requests dropped because a run was already in progress",
)

recommendation_run_duration_seconds = Histogram(
    "recommendation_run_duration_seconds",
    "End-to-end orchestration run duration in seconds",
    buckets=(0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 15.0, 30.0),
)

completion_failures_total = Counter(
    "completion_failures_total",
    "Text completion calls that failed or timed out",
    ["reason"],
)

repair_stage_total = Counter(
    "repair_stage_total",
    "Which repair stage produced the candidates",
    ["stage"],
)

enrichment_dropped_total = Counter(
    "enrichment_dropped_total",
    "Candidates dropped during enrichment",
    ["reason"],
)

fingerprint_decode_failures_total = Counter(
    "fingerprint_decode_failures_total",
    "Fingerprint documents that failed to decode",
)

fingerprint_changes_total = Counter(
    "fingerprint_changes_total",
    "Significant fingerprint changes published",
)

fingerprints_tracked = Gauge(
    "fingerprints_tracked",
    "Users with a live fingerprint subscription",
)

# ==============================================================================
# HELPER FUNCTIONS
# ==============================================================================


@lru_cache(maxsize=2048)
def normalize_endpoint(path: str) -> str:
    """
    Normalize endpoint path to reduce cardinality.

    Examples:
        /v1/users/abc123/recommendations -> /v1/users/{id}/recommendations
    """
    path = re.sub(
        r"/[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}",
        "/{id}",
        path,
        flags=re.IGNORECASE,
    )
    path = re.sub(r"/users/[^/]+", "/users/{id}", path)
    path = re.sub(r"/\d+", "/{id}", path)
    path = re.sub(r"/[a-zA-Z0-9_-]{20,}", "/{id}", path)
    return path


# ==============================================================================
# PROMETHEUS MIDDLEWARE
# ==============================================================================


class PrometheusMiddleware(BaseHTTPMiddleware):
    """Middleware to track HTTP request metrics."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        # Skip metrics endpoint itself
        if request.url.path == "/metrics":
            return await call_next(request)

        method = request.method
        endpoint = normalize_endpoint(request.url.path)
        http_requests_in_progress.labels(method=method, endpoint=endpoint).inc()
        start_time = time.time()

        try:
            response = await call_next(request)
        except Exception:
            http_requests_total.labels(method=method, endpoint=endpoint, status="500").inc()
            raise
        finally:
            duration = time.time() - start_time
            http_request_duration_seconds.labels(method=method, endpoint=endpoint).observe(duration)
            http_requests_in_progress.labels(method=method, endpoint=endpoint).dec()

        http_requests_total.labels(
            method=method, endpoint=endpoint, status=str(response.status_code)
        ).inc()
        return response


# ==============================================================================
# METRICS ENDPOINT
# ==============================================================================


def get_metrics() -> Response:
    """Generate Prometheus metrics response."""
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)


__all__ = [
    "PrometheusMiddleware",
    "get_metrics",
    "normalize_endpoint",
    "circuit_breaker_state",
    "cache_hits_total",
    "cache_misses_total",
    "recommendation_runs_total",
]
