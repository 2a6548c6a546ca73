from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import timedelta

from .cache import PlaceCache
from .document_store import DocumentStore, InMemoryDocumentStore, RedisDocumentStore
from .enrichment import Enricher
from .fingerprint import FingerprintRegistry
from .llm_client import CompletionClient
from .orchestrator import RecommendationOrchestrator
from .places import PlaceSearchClient
from .settings import Settings, settings

logger = logging.getLogger(__name__)


@dataclass
class ServiceContainer:
    """Composition root holding the one instance of each pipeline service."""

    config: Settings
    document_store: DocumentStore
    fingerprints: FingerprintRegistry
    place_cache: PlaceCache
    completion: CompletionClient
    place_search: PlaceSearchClient
    enricher: Enricher
    orchestrator: RecommendationOrchestrator
    _detach: list[Callable[[], None]] = field(default_factory=list)

    async def aclose(self) -> None:
        for detach in self._detach:
            detach()
        self._detach.clear()
        await self.orchestrator.wait_idle()
        await self.place_cache.flush()
        await self.fingerprints.close()
        await self.completion.aclose()
        await self.place_search.aclose()
        await self.document_store.close()


def build_document_store(config: Settings) -> DocumentStore:
    if config.DOCUMENT_STORE == "redis":
        if not config.REDIS_URL:
            raise ValueError("DOCUMENT_STORE=redis requires REDIS_URL")
        return RedisDocumentStore.from_url(config.REDIS_URL)
    return InMemoryDocumentStore()


def build_container(
    config: Settings | None = None,
    *,
    document_store: DocumentStore | None = None,
    completion: CompletionClient | None = None,
    place_search: PlaceSearchClient | None = None,
) -> ServiceContainer:
    """Wire the pipeline; collaborators can be swapped for fakes in tests."""
    config = config or settings
    store = document_store or build_document_store(config)
    fingerprints = FingerprintRegistry(
        store,
        collection=config.USERS_COLLECTION,
        max_tracked=config.FINGERPRINT_MAX_TRACKED_USERS or None,
    )
    place_cache = PlaceCache(
        store,
        collection=config.PLACE_CACHE_COLLECTION,
        ttl=timedelta(seconds=config.PLACE_CACHE_TTL_SECONDS),
        max_size=config.PLACE_CACHE_MAX_ENTRIES or None,
    )
    completion = completion or CompletionClient(config)
    place_search = place_search or PlaceSearchClient(config)
    enricher = Enricher(
        place_search,
        place_cache,
        radius=config.PLACES_SEARCH_RADIUS_METERS,
        dedupe=config.DEDUPE_BY_PLACE_ID,
    )
    orchestrator = RecommendationOrchestrator(completion, enricher, fingerprints, config=config)
    container = ServiceContainer(
        config=config,
        document_store=store,
        fingerprints=fingerprints,
        place_cache=place_cache,
        completion=completion,
        place_search=place_search,
        enricher=enricher,
        orchestrator=orchestrator,
    )
    container._detach.append(orchestrator.attach(fingerprints.changes))
    container._detach.append(fingerprints.untracked.subscribe(orchestrator.forget))
    logger.info(
        "Service container ready (store=%s, llm=%s, places=%s)",
        config.DOCUMENT_STORE,
        "configured" if config.llm_configured else "missing",
        "configured" if config.places_configured else "missing",
    )
    return container


__all__ = ["ServiceContainer", "build_container", "build_document_store"]
