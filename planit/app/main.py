import warnings
from contextlib import asynccontextmanager
from typing import Any

import sentry_sdk
from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from sentry_sdk.integrations.fastapi import FastApiIntegration

from .api.routes import recommendations as recommendations_routes
from .container import build_container
from .health import health_checker
from .logging_config import SERVICE_NAME, SERVICE_VERSION, configure_structlog, get_logger
from .metrics import PrometheusMiddleware, get_metrics
from .settings import settings
from .utils import add_cors, add_request_id_tracing

# Suppress noisy multiprocessing semaphore warning on macOS dev runs
warnings.filterwarnings(
    "ignore",
    message=r"resource_tracker: There appear to be .* leaked semaphore objects",
    category=UserWarning,
)

# Configure structured logging (must be done before any logging calls)
configure_structlog(json_logs=not settings.DEBUG)

if settings.SENTRY_DSN:
    sentry_sdk.init(
        dsn=settings.SENTRY_DSN,
        environment=settings.SENTRY_ENVIRONMENT,
        release=settings.SENTRY_RELEASE or f"{SERVICE_NAME}@dev",
        integrations=[FastApiIntegration()],
        traces_sample_rate=settings.SENTRY_TRACES_SAMPLE_RATE,
    )

# Use structlog for structured logging
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    container = build_container(settings)
    app.state.container = container
    logger.info("recommendation_services_started", store=settings.DOCUMENT_STORE)
    try:
        yield
    finally:
        app.state.container = None
        await container.aclose()
        logger.info("recommendation_services_stopped")


app = FastAPI(
    title="PlanIt Recommendations API",
    version=SERVICE_VERSION,
    description="Personalized place recommendations driven by behavioral fingerprints",
    lifespan=lifespan,
)
add_cors(app)
add_request_id_tracing(app)
app.add_middleware(PrometheusMiddleware)

API_PREFIX = "/v1"

app.include_router(recommendations_routes.router, prefix=API_PREFIX)


@app.get("/health")
async def health(request: Request):
    """Return service health including upstream dependency checks."""
    container = getattr(request.app.state, "container", None)
    health_status = await health_checker.check_all(container)
    status_code = 200 if health_status["status"] == "healthy" else 503
    body = {
        "status": health_status["status"],
        "timestamp": health_status.get("timestamp"),
        "checks": health_status.get("checks", {}),
    }
    if not settings.DEBUG:
        body["checks"] = _scrub_health_details(body["checks"])
    body["service"] = SERVICE_NAME
    body["version"] = SERVICE_VERSION

    return JSONResponse(content=body, status_code=status_code)


@app.get("/metrics")
def metrics():
    """Expose Prometheus metrics."""
    try:
        return get_metrics()
    except Exception:  # pragma: no cover - defensive path
        logger.exception("Metrics export failed")
        raise HTTPException(status_code=503, detail="metrics unavailable")


if settings.DEBUG and settings.DEV_ROUTES_ENABLED:

    @app.post("/dev/cache/purge")
    async def dev_purge_cache(request: Request):
        container = request.app.state.container
        removed = await container.place_cache.purge_expired()
        health_checker.clear_cache()
        return {"ok": True, "removed": removed}

    @app.get("/dev/cache/stats")
    def dev_cache_stats(request: Request):
        return request.app.state.container.place_cache.stats()


def _scrub_health_details(payload: dict[str, Any]) -> dict[str, Any]:
    """Remove sensitive error fields before returning health details."""

    def _scrub(value: Any) -> Any:
        if isinstance(value, dict):
            cleaned: dict[str, Any] = {}
            for key, inner in value.items():
                if key in {"error", "error_type", "traceback"}:
                    continue
                cleaned[key] = _scrub(inner)
            return cleaned
        if isinstance(value, list):
            return [_scrub(item) for item in value]
        return value

    return _scrub(payload)
