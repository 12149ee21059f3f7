"""
Tagged two-tier cache-aside layer.

Tiers:
- local: in-process LRU with per-entry TTL (microseconds)
- shared: Redis (milliseconds), optional; disabled when REDIS_URL is empty

Read path: local -> shared -> factory, then populate both tiers.
Write path: callers invalidate by key or by tag after mutations.

Any tier failure is a forced miss: the factory (source of truth) is called and
its result is returned without being cached. Cache problems are logged and
never reach the request.

Redis layout:
- `<key>`              serialized value (JSON bytes), expires after distributed_ttl
- `tag:<prefix>:<tag>` set of keys carrying that tag; outlives its longest-lived member
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Iterable

from fastapi.encoders import jsonable_encoder
from redis import asyncio as redis_async

from .settings import CacheSettings, cache_settings

logger = logging.getLogger(__name__)

DEFAULT_LOCAL_TTL_S = 120.0
DEFAULT_DISTRIBUTED_TTL_S = 300.0

_MISSING = object()


@dataclass(frozen=True)
class CacheTTL:
    local_s: float = DEFAULT_LOCAL_TTL_S
    distributed_s: float = DEFAULT_DISTRIBUTED_TTL_S

    def normalized(self) -> "CacheTTL":
        # The local copy must never outlive the shared one.
        return CacheTTL(min(self.local_s, self.distributed_s), self.distributed_s)


# Entity reads change often; lists less so; counts are expensive to compute.
ENTITY_TTL = CacheTTL(local_s=120.0, distributed_s=300.0)
LIST_TTL = CacheTTL(local_s=300.0, distributed_s=600.0)
COUNT_TTL = CacheTTL(local_s=600.0, distributed_s=900.0)


@dataclass
class _LocalEntry:
    value: Any
    expires_at: float
    tags: frozenset[str] = field(default_factory=frozenset)


class LocalTier:
    """
    In-process LRU. Keeps its own tag index so tag invalidation does not need Redis.
    """

    def __init__(self, max_entries: int = 10_000, clock: Callable[[], float] = time.monotonic) -> None:
        self._entries: OrderedDict[str, _LocalEntry] = OrderedDict()
        self._tags: dict[str, set[str]] = {}
        self._max_entries = max_entries
        self._clock = clock

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, key: str) -> Any:
        entry = self._entries.get(key)
        if entry is None:
            return _MISSING
        if entry.expires_at <= self._clock():
            self.remove(key)
            return _MISSING
        self._entries.move_to_end(key)
        return entry.value

    def set(self, key: str, value: Any, ttl_s: float, tags: Iterable[str] = ()) -> None:
        self.remove(key)
        entry = _LocalEntry(value=value, expires_at=self._clock() + ttl_s, tags=frozenset(tags))
        self._entries[key] = entry
        for tag in entry.tags:
            self._tags.setdefault(tag, set()).add(key)
        while len(self._entries) > self._max_entries:
            oldest = next(iter(self._entries))
            self.remove(oldest)

    def remove(self, key: str) -> None:
        entry = self._entries.pop(key, None)
        if entry is None:
            return
        for tag in entry.tags:
            keys = self._tags.get(tag)
            if keys is not None:
                keys.discard(key)
                if not keys:
                    del self._tags[tag]

    def remove_tag(self, tag: str) -> int:
        keys = self._tags.pop(tag, set())
        for key in list(keys):
            self.remove(key)
        return len(keys)

    def clear(self) -> None:
        self._entries.clear()
        self._tags.clear()


def _encode(value: Any) -> bytes:
    return json.dumps(jsonable_encoder(value), separators=(",", ":")).encode("utf-8")


def _decode(raw: bytes | str) -> Any:
    return json.loads(raw)


class TieredCache:
    """
    Cache-aside front for a source-of-truth accessor.

    Concurrent misses for the same key share one factory call. Every
    invalidation bumps one generation counter; a load that started before the
    bump serves its value without writing it back. Unrelated loads caught by a
    bump simply skip caching once.
    """

    def __init__(
        self,
        *,
        local: LocalTier,
        shared: Any | None = None,
        key_prefix: str = "catalog",
    ) -> None:
        self.local = local
        self.shared = shared
        self.key_prefix = key_prefix
        self._inflight: dict[str, asyncio.Future] = {}
        self._generation = 0

    def _tag_key(self, tag: str) -> str:
        return f"tag:{self.key_prefix}:{tag}"

    def _bump(self, key: str | None = None) -> None:
        self._generation += 1
        if key is None:
            self._inflight.clear()
        else:
            self._inflight.pop(key, None)

    async def get_or_create(
        self,
        key: str,
        factory: Callable[[], Awaitable[Any]],
        *,
        ttl: CacheTTL = ENTITY_TTL,
        tags: Iterable[str] = (),
    ) -> Any:
        ttl = ttl.normalized()
        tags = frozenset(tags)

        try:
            hit = self.local.get(key)
        except Exception as exc:
            logger.warning("cache_local_error key=%s error=%s; using source", key, exc)
            return await factory()
        if hit is not _MISSING:
            return hit

        inflight = self._inflight.get(key)
        if inflight is None:
            inflight = asyncio.ensure_future(self._load(key, factory, ttl, tags))
            self._inflight[key] = inflight
            inflight.add_done_callback(lambda fut, k=key: self._forget(k, fut))
        # Shield: one caller being cancelled must not cancel the shared load.
        return await asyncio.shield(inflight)

    def _forget(self, key: str, fut: asyncio.Future) -> None:
        if self._inflight.get(key) is fut:
            del self._inflight[key]
        if not fut.cancelled():
            # Mark retrieved so a failure nobody awaited is not reported as unhandled.
            fut.exception()

    async def _load(
        self,
        key: str,
        factory: Callable[[], Awaitable[Any]],
        ttl: CacheTTL,
        tags: frozenset[str],
    ) -> Any:
        generation = self._generation

        if self.shared is not None:
            try:
                raw = await self.shared.get(key)
            except Exception as exc:
                logger.warning("cache_shared_error op=get key=%s error=%s; using source", key, exc)
                return await factory()
            if raw is not None:
                try:
                    value = _decode(raw)
                except ValueError as exc:
                    logger.warning("cache_decode_error key=%s error=%s; using source", key, exc)
                    return await factory()
                self._store_local(key, value, ttl, tags, generation)
                return value

        value = await factory()

        if self._generation != generation:
            # Invalidated while loading; serve the value but do not cache it.
            return value

        if self.shared is not None:
            try:
                await self._store_shared(key, value, ttl, tags)
            except Exception as exc:
                logger.warning("cache_shared_error op=set key=%s error=%s; not cached", key, exc)
                return value

        self._store_local(key, value, ttl, tags, generation)
        return value

    def _store_local(
        self,
        key: str,
        value: Any,
        ttl: CacheTTL,
        tags: frozenset[str],
        generation: int,
    ) -> None:
        if self._generation != generation:
            return
        try:
            self.local.set(key, value, ttl.local_s, tags)
        except Exception as exc:
            logger.warning("cache_local_error op=set key=%s error=%s", key, exc)

    async def _store_shared(self, key: str, value: Any, ttl: CacheTTL, tags: frozenset[str]) -> None:
        """
        Tag membership and the value land in one MULTI/EXEC, so a value is never
        stored without the tags that invalidate it.

        A tag set's expiry only ever moves forward (NX then GT, Redis >= 7): a
        short-lived member must not expire the set ahead of a longer-lived one.
        """
        ttl_ms = max(1, int(ttl.distributed_s * 1000))
        tag_ttl_ms = ttl_ms * 2
        async with self.shared.pipeline(transaction=True) as pipe:
            for tag in tags:
                tag_key = self._tag_key(tag)
                pipe.sadd(tag_key, key)
                pipe.pexpire(tag_key, tag_ttl_ms, nx=True)
                pipe.pexpire(tag_key, tag_ttl_ms, gt=True)
            pipe.set(key, _encode(value), px=ttl_ms)
            await pipe.execute()

    async def invalidate(self, key: str) -> bool:
        """
        Remove one key from both tiers. Returns False if the shared tier could not be reached.
        """
        self._bump(key)
        self.local.remove(key)
        if self.shared is None:
            return True
        try:
            await self.shared.delete(key)
        except Exception as exc:
            logger.warning("cache_invalidate_failed key=%s error=%s", key, exc)
            return False
        return True

    async def invalidate_by_tag(self, tag: str) -> bool:
        """
        Remove every entry carrying `tag` in one call.
        """
        # Loads that started before this call may hold pre-mutation data.
        self._bump()
        removed_local = self.local.remove_tag(tag)
        if self.shared is None:
            logger.debug("cache_tag_invalidated tag=%s local=%s", tag, removed_local)
            return True

        tag_key = self._tag_key(tag)
        try:
            members = await self.shared.smembers(tag_key)
            keys = [m.decode("utf-8") if isinstance(m, bytes) else m for m in members]
            await self.shared.delete(*keys, tag_key)
        except Exception as exc:
            logger.warning("cache_tag_invalidate_failed tag=%s error=%s", tag, exc)
            return False

        logger.debug("cache_tag_invalidated tag=%s local=%s shared=%s", tag, removed_local, len(keys))
        return True

    async def invalidate_tags(self, tags: Iterable[str]) -> bool:
        ok = True
        for tag in tags:
            ok = await self.invalidate_by_tag(tag) and ok
        return ok

    async def close(self) -> None:
        self.local.clear()
        if self.shared is not None:
            await self.shared.aclose()


_cache: TieredCache | None = None


async def init_cache(settings: CacheSettings | None = None) -> TieredCache:
    global _cache
    if _cache is not None:
        return _cache

    settings = settings or cache_settings()
    shared = None
    if settings.redis_url:
        shared = redis_async.from_url(settings.redis_url, decode_responses=False)
        try:
            await shared.ping()
        except Exception as exc:
            # Reads degrade per call; the connection may come back later.
            logger.warning("cache_shared_unreachable url_set=true error=%s", exc)

    _cache = TieredCache(
        local=LocalTier(max_entries=settings.local_max_entries),
        shared=shared,
        key_prefix=settings.key_prefix,
    )
    return _cache


async def close_cache() -> None:
    global _cache
    if _cache is None:
        return None
    await _cache.close()
    _cache = None


def get_cache() -> TieredCache:
    if _cache is None:
        raise RuntimeError("Cache is not initialized. Call init_cache() on startup.")
    return _cache
