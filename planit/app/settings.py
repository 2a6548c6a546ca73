from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict

REPO_ROOT = Path(__file__).resolve().parents[2]
ENV_FILE = REPO_ROOT / ".env"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=str(ENV_FILE), env_file_encoding="utf-8", extra="ignore"
    )

    # whether to expose the debug routes
    DEBUG: bool = False
    DEV_ROUTES_ENABLED: bool = False

    # CORS allow origins (comma-separated). Default empty (no cross-origin).
    CORS_ALLOW_ORIGINS: str = ""

    # Text completion (OpenAI-compatible chat completions endpoint)
    LLM_API_KEY: str | None = None
    LLM_API_BASE: str = "https://api.openai.com/v1"
    LLM_MODEL: str = "gpt-4o-mini"
    LLM_TEMPERATURE: float = 0.7
    LLM_MAX_TOKENS: int = 1024
    LLM_TIMEOUT_SECONDS: float = 15.0
    LLM_CONNECT_TIMEOUT_SECONDS: float = 5.0
    LLM_MAX_PROMPT_CHARS: int = 8000

    # Place search (Google Places web service)
    PLACES_API_KEY: str | None = None
    PLACES_API_BASE: str = "https://maps.googleapis.com/maps/api/place"
    PLACES_TIMEOUT_SECONDS: float = 10.0
    PLACES_SEARCH_RADIUS_METERS: int = 5000

    # Place cache
    PLACE_CACHE_TTL_SECONDS: int = 24 * 60 * 60
    PLACE_CACHE_MAX_ENTRIES: int = 2048
    PLACE_CACHE_COLLECTION: str = "cachedPlaces"

    # Prompt shaping
    PROMPT_TOP_TAGS: int = 5
    PROMPT_RECENT_ITEMS: int = 10

    # Recommendation policy
    DEDUPE_BY_PLACE_ID: bool = False
    REFRESH_ON_LOCATION_CHANGE: bool = False
    LOCATION_REFRESH_MIN_DISTANCE_METERS: float = 500.0

    # Circuit breakers guarding upstream services
    CIRCUIT_FAILURE_THRESHOLD: int = 3
    CIRCUIT_COOLDOWN_SECONDS: float = 300.0

    # Persistent document store
    DOCUMENT_STORE: Literal["memory", "redis"] = "memory"
    USERS_COLLECTION: str = "users"
    FINGERPRINT_MAX_TRACKED_USERS: int = 1000  # 0 disables the limit
    REDIS_URL: str | None = None  # e.g., "redis://localhost:6379/0"

    # Observability
    SENTRY_DSN: str | None = None
    SENTRY_ENVIRONMENT: str = "development"
    SENTRY_RELEASE: str | None = None
    SENTRY_TRACES_SAMPLE_RATE: float = 0.2

    @property
    def allow_origins(self) -> list[str]:
        s = (self.CORS_ALLOW_ORIGINS or "").strip()
        if s == "*":
            return ["*"]
        if s == "":
            return []
        return [part.strip() for part in s.split(",") if part.strip()]

    @property
    def llm_configured(self) -> bool:
        return bool((self.LLM_API_KEY or "").strip())

    @property
    def places_configured(self) -> bool:
        return bool((self.PLACES_API_KEY or "").strip())


settings = Settings()
