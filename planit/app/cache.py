"""
Two-tier TTL cache for resolved place payloads.

The memory tier is checked first, then the persistent tier (a document store
collection shared across processes). A persistent hit repopulates the memory
tier with its original write time, so an entry never lives longer than the
TTL measured from the moment it was written. Persistent writes run in the
background; their failures are logged and never reach the caller.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import logging
from collections import OrderedDict
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from .document_store import DocumentStore, Timestamp
from .metrics import (
    cache_expirations_total,
    cache_hits_total,
    cache_misses_total,
    cache_size,
    cache_write_failures_total,
)
from .utils import ensure_utc, utcnow

logger = logging.getLogger(__name__)

DEFAULT_TTL = timedelta(hours=24)


@dataclass(frozen=True, slots=True)
class CacheEntry:
    payload: bytes
    written_at: datetime


@dataclass(slots=True)
class CacheStats:
    hits: int = 0
    persistent_hits: int = 0
    misses: int = 0
    expirations: int = 0
    evictions: int = 0
    write_failures: int = 0


def _parse_written_at(value: Any) -> datetime | None:
    if isinstance(value, Timestamp):
        return value.to_datetime()
    if isinstance(value, datetime):
        return ensure_utc(value)
    if isinstance(value, str):
        try:
            return ensure_utc(datetime.fromisoformat(value))
        except ValueError:
            return None
    return None


class PlaceCache:
    def __init__(
        self,
        store: DocumentStore | None = None,
        *,
        collection: str = "cachedPlaces",
        ttl: timedelta = DEFAULT_TTL,
        max_size: int | None = None,
        clock: Callable[[], datetime] = utcnow,
        name: str = "places",
    ) -> None:
        self._store = store
        self._collection = collection
        self._ttl = ttl
        self._max_size = max_size
        self._clock = clock
        self._name = name
        self._memory: OrderedDict[str, CacheEntry] = OrderedDict()
        self._pending: set[asyncio.Task[None]] = set()
        self._stats = CacheStats()

    @property
    def ttl(self) -> timedelta:
        return self._ttl

    def _is_fresh(self, entry: CacheEntry, now: datetime) -> bool:
        return now - entry.written_at < self._ttl

    def _remember(self, key: str, entry: CacheEntry) -> None:
        self._memory[key] = entry
        self._memory.move_to_end(key)
        if self._max_size is not None:
            while len(self._memory) > self._max_size:
                self._memory.popitem(last=False)
                self._stats.evictions += 1
        cache_size.labels(cache_name=self._name).set(len(self._memory))

    async def get(self, key: str) -> bytes | None:
        now = self._clock()
        entry = self._memory.get(key)
        if entry is not None:
            if self._is_fresh(entry, now):
                self._memory.move_to_end(key)
                self._stats.hits += 1
                cache_hits_total.labels(cache_name=self._name, tier="memory").inc()
                return entry.payload
            self._record_expiration()

        entry = await self._read_persistent(key)
        if entry is not None:
            if self._is_fresh(entry, now):
                self._remember(key, entry)
                self._stats.persistent_hits += 1
                cache_hits_total.labels(cache_name=self._name, tier="persistent").inc()
                return entry.payload
            self._record_expiration()

        self._stats.misses += 1
        cache_misses_total.labels(cache_name=self._name).inc()
        return None

    def _record_expiration(self) -> None:
        self._stats.expirations += 1
        cache_expirations_total.labels(cache_name=self._name).inc()

    async def _read_persistent(self, key: str) -> CacheEntry | None:
        if self._store is None:
            return None
        try:
            document = await self._store.get(self._collection, key)
        except Exception as exc:
            logger.warning("Persistent cache read failed for %s: %s", key, exc)
            return None
        if not document:
            return None
        written_at = _parse_written_at(document.get("updatedAt"))
        encoded = document.get("json")
        if written_at is None or not isinstance(encoded, str):
            logger.warning("Ignoring malformed cache document %s", key)
            return None
        try:
            payload = base64.b64decode(encoded, validate=True)
        except (binascii.Error, ValueError):
            logger.warning("Ignoring undecodable cache payload %s", key)
            return None
        return CacheEntry(payload=payload, written_at=written_at)

    async def put(self, key: str, payload: bytes) -> None:
        """Store ``payload`` in memory now and schedule the persistent write."""
        entry = CacheEntry(payload=payload, written_at=self._clock())
        self._remember(key, entry)
        if self._store is None:
            return
        task = asyncio.create_task(self._write_persistent(self._store, key, entry))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _write_persistent(self, store: DocumentStore, key: str, entry: CacheEntry) -> None:
        document = {
            "json": base64.b64encode(entry.payload).decode("ascii"),
            "updatedAt": Timestamp.from_datetime(entry.written_at),
        }
        try:
            await store.set(self._collection, key, document)
        except Exception as exc:
            self._stats.write_failures += 1
            cache_write_failures_total.labels(cache_name=self._name).inc()
            logger.warning("Persistent cache write failed for %s: %s", key, exc)

    async def flush(self) -> None:
        """Wait for scheduled persistent writes to finish."""
        while self._pending:
            await asyncio.gather(*list(self._pending))

    async def purge_expired(self) -> int:
        """Delete expired entries from both tiers; returns how many were removed."""
        now = self._clock()
        removed = 0
        for key in [k for k, entry in self._memory.items() if not self._is_fresh(entry, now)]:
            del self._memory[key]
            removed += 1
        cache_size.labels(cache_name=self._name).set(len(self._memory))

        if self._store is None:
            return removed
        for key in await self._store.list_ids(self._collection):
            entry = await self._read_persistent(key)
            if entry is None or not self._is_fresh(entry, now):
                await self._store.delete(self._collection, key)
                removed += 1
        if removed:
            logger.info("Purged %d expired cache entries", removed)
        return removed

    def clear(self) -> None:
        """Drop the memory tier; the persistent tier is left to expire."""
        self._memory.clear()
        cache_size.labels(cache_name=self._name).set(0)

    def stats(self) -> dict[str, Any]:
        return {
            "entries": len(self._memory),
            "max_size": self._max_size,
            "ttl_seconds": self._ttl.total_seconds(),
            "hits": self._stats.hits,
            "persistent_hits": self._stats.persistent_hits,
            "misses": self._stats.misses,
            "expirations": self._stats.expirations,
            "evictions": self._stats.evictions,
            "write_failures": self._stats.write_failures,
            "pending_writes": len(self._pending),
        }


__all__ = ["CacheEntry", "CacheStats", "DEFAULT_TTL", "PlaceCache"]
