"""Test the two-tier place cache."""

import asyncio
from datetime import UTC, datetime, timedelta

from planit.app.cache import PlaceCache
from planit.app.document_store import InMemoryDocumentStore, Timestamp

T0 = datetime(2024, 6, 1, 9, 0, tzinfo=UTC)


class Clock:
    def __init__(self, now: datetime = T0):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class FailingStore(InMemoryDocumentStore):
    async def set(self, collection, doc_id, data, *, merge=False):
        raise ConnectionError("write refused")


class TestMemoryTier:
    def test_hit_just_before_ttl(self):
        clock = Clock()
        cache = PlaceCache(clock=clock)

        async def scenario():
            await cache.put("k", b"payload")
            clock.advance(hours=23, minutes=59)
            return await cache.get("k")

        assert asyncio.run(scenario()) == b"payload"
        assert cache.stats()["hits"] == 1

    def test_miss_just_after_ttl(self):
        clock = Clock()
        cache = PlaceCache(clock=clock)

        async def scenario():
            await cache.put("k", b"payload")
            clock.advance(hours=24, seconds=1)
            return await cache.get("k")

        assert asyncio.run(scenario()) is None
        stats = cache.stats()
        assert stats["expirations"] == 1
        assert stats["misses"] == 1

    def test_exact_ttl_is_stale(self):
        clock = Clock()
        cache = PlaceCache(clock=clock, ttl=timedelta(minutes=5))

        async def scenario():
            await cache.put("k", b"v")
            clock.advance(minutes=5)
            return await cache.get("k")

        assert asyncio.run(scenario()) is None

    def test_lru_eviction(self):
        cache = PlaceCache(clock=Clock(), max_size=2)

        async def scenario():
            await cache.put("a", b"1")
            await cache.put("b", b"2")
            await cache.get("a")
            await cache.put("c", b"3")
            return [await cache.get(key) for key in ("a", "b", "c")]

        assert asyncio.run(scenario()) == [b"1", None, b"3"]
        assert cache.stats()["evictions"] == 1

    def test_clear(self):
        cache = PlaceCache(clock=Clock())

        async def scenario():
            await cache.put("a", b"1")
            cache.clear()
            return await cache.get("a")

        assert asyncio.run(scenario()) is None
        assert cache.stats()["entries"] == 0

    def test_memory_only_cache_schedules_no_writes(self):
        cache = PlaceCache(clock=Clock())

        async def scenario():
            await cache.put("k", b"v")
            pending = len(cache._pending)
            await cache.flush()
            return pending, await cache.get("k")

        assert asyncio.run(scenario()) == (0, b"v")
        assert cache.stats()["write_failures"] == 0


class TestPersistentTier:
    def test_persistent_hit_keeps_original_write_time(self):
        store = InMemoryDocumentStore()
        writer_clock = Clock()
        reader_clock = Clock(T0 + timedelta(hours=20))
        writer = PlaceCache(store, clock=writer_clock)
        reader = PlaceCache(store, clock=reader_clock)

        async def scenario():
            await writer.put("k", b"shared")
            await writer.flush()
            first = await reader.get("k")
            reader_clock.advance(hours=4, seconds=1)
            second = await reader.get("k")
            return first, second

        first, second = asyncio.run(scenario())
        assert first == b"shared"
        assert second is None
        assert reader.stats()["persistent_hits"] == 1

    def test_document_layout(self):
        store = InMemoryDocumentStore()
        cache = PlaceCache(store, clock=Clock())

        async def scenario():
            await cache.put("k", b"{}")
            await cache.flush()
            return await store.get("cachedPlaces", "k")

        document = asyncio.run(scenario())
        assert document["json"] == "e30="
        assert document["updatedAt"] == Timestamp.from_datetime(T0)

    def test_write_failure_is_tolerated(self):
        cache = PlaceCache(FailingStore(), clock=Clock())

        async def scenario():
            await cache.put("k", b"v")
            await cache.flush()
            return await cache.get("k")

        assert asyncio.run(scenario()) == b"v"
        stats = cache.stats()
        assert stats["write_failures"] == 1
        assert stats["pending_writes"] == 0

    def test_malformed_document_is_a_miss(self):
        store = InMemoryDocumentStore()
        cache = PlaceCache(store, clock=Clock())

        async def scenario():
            await store.set(
                "cachedPlaces", "k", {"json": "not base64!", "updatedAt": Timestamp.from_datetime(T0)}
            )
            return await cache.get("k")

        assert asyncio.run(scenario()) is None
        assert cache.stats()["misses"] == 1

    def test_purge_expired_cleans_both_tiers(self):
        store = InMemoryDocumentStore()
        clock = Clock()
        cache = PlaceCache(store, clock=clock)

        async def scenario():
            await cache.put("old", b"1")
            clock.advance(hours=12)
            await cache.put("fresh", b"2")
            await cache.flush()
            clock.advance(hours=12, seconds=1)
            removed = await cache.purge_expired()
            return removed, await store.list_ids("cachedPlaces")

        removed, remaining = asyncio.run(scenario())
        assert removed == 2
        assert remaining == ["fresh"]
        assert cache.stats()["entries"] == 1
