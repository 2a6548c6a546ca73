"""Health check module with dependency verification."""

from __future__ import annotations

import time
from typing import TYPE_CHECKING, Any

from .circuit_breaker import CircuitBreaker, CircuitState
from .settings import settings

if TYPE_CHECKING:
    from .container import ServiceContainer


def _is_configured(value: str | None) -> bool:
    """Return True when a config string is non-empty after trimming."""
    if value is None:
        return False
    if isinstance(value, str):
        return bool(value.strip())
    return bool(value)


def _upstream_status(configured: bool, breaker: CircuitBreaker, reason: str) -> dict[str, Any]:
    if not configured:
        return {"status": "disabled", "reason": reason}
    state = breaker.state
    status = {
        "status": "ok" if state != CircuitState.OPEN else "degraded",
        "circuit": state.value,
        "consecutive_failures": breaker.stats.consecutive_failures,
    }
    if state is CircuitState.OPEN:
        status["retry_after_seconds"] = round(breaker.retry_after, 1)
    return status


class HealthChecker:
    """Health checker for monitoring service dependencies."""

    def __init__(self) -> None:
        self._check_cache: dict[str, tuple[dict[str, Any], float]] = {}
        self._cache_ttl = 30.0  # Cache health checks for 30 seconds

    async def check_all(self, container: ServiceContainer | None) -> dict[str, Any]:
        """
        Check health of all dependencies.

        Returns:
            Dict with overall status and individual component checks
        """
        if container is None:
            checks: dict[str, Any] = {"services": {"status": "error", "error": "not started"}}
        else:
            checks = {
                "document_store": await self._check_document_store(container),
                "completion": _upstream_status(
                    container.completion.configured,
                    container.completion.breaker,
                    "LLM_API_KEY not configured",
                ),
                "place_search": _upstream_status(
                    container.place_search.configured,
                    container.place_search.breaker,
                    "PLACES_API_KEY not configured",
                ),
                "place_cache": {"status": "ok", **container.place_cache.stats()},
            }
        checks["sentry"] = (
            self._check_sentry() if _is_configured(settings.SENTRY_DSN) else {"status": "disabled"}
        )

        # Overall health is OK if all enabled checks pass
        all_ok = all(check.get("status") in {"ok", "disabled"} for check in checks.values())

        return {
            "status": "healthy" if all_ok else "degraded",
            "timestamp": time.time(),
            "checks": checks,
        }

    async def _check_document_store(self, container: ServiceContainer) -> dict[str, Any]:
        """Check that the document store answers a ping."""
        cache_key = "document_store"
        cached = self._get_cached_check(cache_key)
        if cached is not None:
            return cached

        try:
            reachable = await container.document_store.ping()
            result = {
                "status": "ok" if reachable else "error",
                "backend": container.config.DOCUMENT_STORE,
                "tracked_users": len(container.fingerprints.tracked),
            }
        except Exception as exc:
            result = {
                "status": "error",
                "error": str(exc),
                "error_type": type(exc).__name__,
            }
        self._cache_check(cache_key, result)
        return result

    def _check_sentry(self) -> dict[str, Any]:
        """Check if Sentry is configured (doesn't actually test connectivity)."""
        cache_key = "sentry"
        cached = self._get_cached_check(cache_key)
        if cached is not None:
            return cached

        dsn = settings.SENTRY_DSN or ""
        if "@" in dsn and "//" in dsn:
            result = {
                "status": "ok",
                "environment": settings.SENTRY_ENVIRONMENT,
                "release": settings.SENTRY_RELEASE or "unset",
            }
        else:
            result = {
                "status": "error",
                "error": "Invalid SENTRY_DSN format",
            }
        self._cache_check(cache_key, result)
        return result

    def _get_cached_check(self, key: str) -> dict[str, Any] | None:
        """Get cached health check result if still valid."""
        if key not in self._check_cache:
            return None

        result, timestamp = self._check_cache[key]
        if time.time() - timestamp > self._cache_ttl:
            return None

        return result

    def _cache_check(self, key: str, result: dict[str, Any]) -> None:
        """Cache a health check result."""
        self._check_cache[key] = (result, time.time())

    def clear_cache(self) -> None:
        """Clear cached dependency checks (useful for tests)."""
        self._check_cache.clear()


# Global health checker instance
health_checker = HealthChecker()


__all__ = ["health_checker", "HealthChecker"]
