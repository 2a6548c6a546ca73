"""Persistent document store used for user documents and the shared place cache.

Two backends implement :class:`DocumentStore`:

- ``InMemoryDocumentStore`` keeps documents in process and notifies listeners
  synchronously on every write. Used in development and tests.
- ``RedisDocumentStore`` stores each document as tagged JSON under one key and
  fans out change notifications through Redis pub/sub.

Both emit the vendor value types ``Timestamp`` and ``GeoPoint`` so readers
have to flatten them before generic decoding.
"""

from __future__ import annotations

import asyncio
import contextlib
import copy
import inspect
import json
import logging
from abc import ABC, abstractmethod
from collections import defaultdict
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any

from redis.asyncio import Redis
from redis.exceptions import WatchError

from .utils import ensure_utc, utcnow

logger = logging.getLogger(__name__)

_EPOCH = datetime(1970, 1, 1, tzinfo=UTC)

Document = dict[str, Any]
DocumentCallback = Callable[[Document | None], Awaitable[Any] | Any]


class DocumentStoreError(RuntimeError):
    pass


class DocumentNotFound(DocumentStoreError):
    pass


@dataclass(frozen=True, slots=True, order=True)
class Timestamp:
    seconds: int
    nanos: int = 0

    @classmethod
    def from_datetime(cls, value: datetime) -> Timestamp:
        delta = ensure_utc(value) - _EPOCH
        return cls(seconds=delta.days * 86_400 + delta.seconds, nanos=delta.microseconds * 1000)

    def to_datetime(self) -> datetime:
        return _EPOCH + timedelta(seconds=self.seconds, microseconds=self.nanos // 1000)

    def isoformat(self) -> str:
        return self.to_datetime().isoformat()


@dataclass(frozen=True, slots=True)
class GeoPoint:
    latitude: float
    longitude: float


@dataclass(frozen=True, slots=True)
class ArrayUnion:
    values: tuple[Any, ...]

    def __init__(self, *values: Any) -> None:
        object.__setattr__(self, "values", values)


@dataclass(frozen=True, slots=True)
class ArrayRemove:
    values: tuple[Any, ...]

    def __init__(self, *values: Any) -> None:
        object.__setattr__(self, "values", values)


@dataclass(frozen=True, slots=True)
class Increment:
    amount: int | float = 1


class _ServerTimestamp:
    def __repr__(self) -> str:
        return "SERVER_TIMESTAMP"


SERVER_TIMESTAMP = _ServerTimestamp()


def _resolve_parent(document: Document, path: str) -> tuple[Document, str]:
    parts = path.split(".")
    node = document
    for part in parts[:-1]:
        child = node.get(part)
        if not isinstance(child, dict):
            child = {}
            node[part] = child
        node = child
    return node, parts[-1]


def _apply_transform(current: Any, value: Any, now: datetime) -> Any:
    if isinstance(value, ArrayUnion):
        items = list(current) if isinstance(current, list) else []
        for item in value.values:
            if item not in items:
                items.append(copy.deepcopy(item))
        return items
    if isinstance(value, ArrayRemove):
        items = list(current) if isinstance(current, list) else []
        return [item for item in items if item not in value.values]
    if isinstance(value, Increment):
        base = current if isinstance(current, int | float) and not isinstance(current, bool) else 0
        return base + value.amount
    if value is SERVER_TIMESTAMP:
        return Timestamp.from_datetime(now)
    return copy.deepcopy(value)


def apply_update(document: Mapping[str, Any], updates: Mapping[str, Any], now: datetime) -> Document:
    """Return a copy of ``document`` with field transforms and dotted paths applied."""
    result = copy.deepcopy(dict(document))
    for path, value in updates.items():
        parent, leaf = _resolve_parent(result, path)
        parent[leaf] = _apply_transform(parent.get(leaf), value, now)
    return result


async def _deliver(callback: DocumentCallback, snapshot: Document | None) -> None:
    try:
        result = callback(snapshot)
        if inspect.isawaitable(result):
            await result
    except Exception:
        logger.exception("Document listener failed")


class Subscription:
    """Handle returned by ``subscribe``; ``cancel`` stops delivery."""

    def __init__(self, cancel: Callable[[], Awaitable[None]]) -> None:
        self._cancel = cancel
        self.active = True

    async def cancel(self) -> None:
        if not self.active:
            return
        self.active = False
        await self._cancel()


class DocumentStore(ABC):
    @abstractmethod
    async def get(self, collection: str, doc_id: str) -> Document | None: ...

    @abstractmethod
    async def set(
        self, collection: str, doc_id: str, data: Mapping[str, Any], *, merge: bool = False
    ) -> None: ...

    @abstractmethod
    async def update(self, collection: str, doc_id: str, updates: Mapping[str, Any]) -> None: ...

    @abstractmethod
    async def delete(self, collection: str, doc_id: str) -> None: ...

    @abstractmethod
    async def list_ids(self, collection: str) -> list[str]: ...

    @abstractmethod
    async def subscribe(
        self, collection: str, doc_id: str, callback: DocumentCallback
    ) -> Subscription: ...

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        return None


class InMemoryDocumentStore(DocumentStore):
    def __init__(self, clock: Callable[[], datetime] = utcnow) -> None:
        self._collections: dict[str, dict[str, Document]] = defaultdict(dict)
        self._listeners: dict[tuple[str, str], list[DocumentCallback]] = defaultdict(list)
        self._clock = clock

    async def get(self, collection: str, doc_id: str) -> Document | None:
        document = self._collections[collection].get(doc_id)
        return copy.deepcopy(document) if document is not None else None

    async def set(
        self, collection: str, doc_id: str, data: Mapping[str, Any], *, merge: bool = False
    ) -> None:
        base = self._collections[collection].get(doc_id, {}) if merge else {}
        self._collections[collection][doc_id] = apply_update(base, data, self._clock())
        await self._notify(collection, doc_id)

    async def update(self, collection: str, doc_id: str, updates: Mapping[str, Any]) -> None:
        current = self._collections[collection].get(doc_id)
        if current is None:
            raise DocumentNotFound(f"{collection}/{doc_id} does not exist")
        self._collections[collection][doc_id] = apply_update(current, updates, self._clock())
        await self._notify(collection, doc_id)

    async def delete(self, collection: str, doc_id: str) -> None:
        if self._collections[collection].pop(doc_id, None) is not None:
            await self._notify(collection, doc_id)

    async def list_ids(self, collection: str) -> list[str]:
        return sorted(self._collections[collection])

    async def subscribe(
        self, collection: str, doc_id: str, callback: DocumentCallback
    ) -> Subscription:
        key = (collection, doc_id)
        self._listeners[key].append(callback)

        async def _cancel() -> None:
            with contextlib.suppress(ValueError):
                self._listeners[key].remove(callback)

        await _deliver(callback, await self.get(collection, doc_id))
        return Subscription(_cancel)

    async def _notify(self, collection: str, doc_id: str) -> None:
        listeners = list(self._listeners.get((collection, doc_id), ()))
        for callback in listeners:
            await _deliver(callback, await self.get(collection, doc_id))


# ---------- Redis backend ----------

_TYPE_KEY = "__type__"


def _encode_value(value: Any) -> Any:
    if isinstance(value, Timestamp):
        return {_TYPE_KEY: "timestamp", "seconds": value.seconds, "nanos": value.nanos}
    if isinstance(value, datetime):
        return _encode_value(Timestamp.from_datetime(value))
    if isinstance(value, GeoPoint):
        return {_TYPE_KEY: "geopoint", "latitude": value.latitude, "longitude": value.longitude}
    raise TypeError(f"Unsupported document value: {type(value).__name__}")


def _decode_object(obj: dict[str, Any]) -> Any:
    tag = obj.get(_TYPE_KEY)
    if tag == "timestamp":
        return Timestamp(seconds=int(obj["seconds"]), nanos=int(obj.get("nanos", 0)))
    if tag == "geopoint":
        return GeoPoint(latitude=float(obj["latitude"]), longitude=float(obj["longitude"]))
    return obj


def encode_document(document: Document | None) -> str:
    return json.dumps(document, default=_encode_value, separators=(",", ":"))


def decode_document(raw: str | bytes | None) -> Document | None:
    if raw is None:
        return None
    decoded = json.loads(raw, object_hook=_decode_object)
    return decoded if isinstance(decoded, dict) else None


class RedisDocumentStore(DocumentStore):
    def __init__(
        self,
        client: Redis,
        *,
        prefix: str = "planit",
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._client = client
        self._prefix = prefix
        self._clock = clock

    @classmethod
    def from_url(cls, url: str, **kwargs: Any) -> RedisDocumentStore:
        client = Redis.from_url(url, encoding="utf-8", decode_responses=True)
        return cls(client, **kwargs)

    def _key(self, collection: str, doc_id: str) -> str:
        return f"{self._prefix}:doc:{collection}:{doc_id}"

    def _channel(self, collection: str, doc_id: str) -> str:
        return f"{self._prefix}:changes:{collection}:{doc_id}"

    async def get(self, collection: str, doc_id: str) -> Document | None:
        return decode_document(await self._client.get(self._key(collection, doc_id)))

    async def set(
        self, collection: str, doc_id: str, data: Mapping[str, Any], *, merge: bool = False
    ) -> None:
        if merge:
            await self._mutate(collection, doc_id, data, require_existing=False)
            return
        document = apply_update({}, data, self._clock())
        payload = encode_document(document)
        await self._client.set(self._key(collection, doc_id), payload)
        await self._client.publish(self._channel(collection, doc_id), payload)

    async def update(self, collection: str, doc_id: str, updates: Mapping[str, Any]) -> None:
        await self._mutate(collection, doc_id, updates, require_existing=True)

    async def _mutate(
        self,
        collection: str,
        doc_id: str,
        updates: Mapping[str, Any],
        *,
        require_existing: bool,
    ) -> None:
        key = self._key(collection, doc_id)
        async with self._client.pipeline(transaction=True) as pipe:
            while True:
                try:
                    await pipe.watch(key)
                    current = decode_document(await pipe.get(key))
                    if current is None and require_existing:
                        raise DocumentNotFound(f"{collection}/{doc_id} does not exist")
                    payload = encode_document(apply_update(current or {}, updates, self._clock()))
                    pipe.multi()
                    pipe.set(key, payload)
                    await pipe.execute()
                    break
                except WatchError:
                    logger.debug("Concurrent write on %s, retrying", key)
                    continue
        await self._client.publish(self._channel(collection, doc_id), payload)

    async def delete(self, collection: str, doc_id: str) -> None:
        removed = await self._client.delete(self._key(collection, doc_id))
        if removed:
            await self._client.publish(self._channel(collection, doc_id), encode_document(None))

    async def list_ids(self, collection: str) -> list[str]:
        prefix = self._key(collection, "")
        ids = [key[len(prefix) :] async for key in self._client.scan_iter(match=f"{prefix}*")]
        return sorted(ids)

    async def subscribe(
        self, collection: str, doc_id: str, callback: DocumentCallback
    ) -> Subscription:
        pubsub = self._client.pubsub()
        await pubsub.subscribe(self._channel(collection, doc_id))
        await _deliver(callback, await self.get(collection, doc_id))
        task = asyncio.create_task(self._listen(pubsub, callback))

        async def _cancel() -> None:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
            await pubsub.unsubscribe()
            await pubsub.aclose()

        return Subscription(_cancel)

    async def _listen(self, pubsub: Any, callback: DocumentCallback) -> None:
        async for message in pubsub.listen():
            if message.get("type") != "message":
                continue
            try:
                snapshot = decode_document(message["data"])
            except ValueError:
                logger.warning("Discarding undecodable change notification")
                continue
            await _deliver(callback, snapshot)

    async def ping(self) -> bool:
        return bool(await self._client.ping())

    async def close(self) -> None:
        await self._client.aclose()


__all__ = [
    "ArrayRemove",
    "ArrayUnion",
    "DocumentNotFound",
    "DocumentStore",
    "DocumentStoreError",
    "GeoPoint",
    "Increment",
    "InMemoryDocumentStore",
    "RedisDocumentStore",
    "SERVER_TIMESTAMP",
    "Subscription",
    "Timestamp",
    "apply_update",
    "decode_document",
    "encode_document",
]
