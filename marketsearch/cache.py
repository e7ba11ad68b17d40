"""Namespaced result caching with Redis primary and in-memory fallback."""
from __future__ import annotations

import json
import logging
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional, Protocol

import redis

from .config import settings

logger = logging.getLogger(__name__)

SEARCH_CACHE = "search"


class ResultCache(Protocol):
    def get(self, cache_name: str, key: str) -> Optional[Any]: ...

    def set(self, cache_name: str, key: str, value: Any, ttl_ms: int) -> None: ...

    def delete(self, cache_name: str, key: str) -> bool: ...

    def clear(self, cache_name: str) -> None: ...

    def clear_all(self) -> None: ...


@dataclass
class CacheEntry:
    key: str
    value: Any
    expires_at: float


@dataclass
class CacheStats:
    hits: int = 0
    misses: int = 0
    evictions: int = 0


class InMemoryCache:
    """Per-namespace LRU map with lazy expiry.

    Expired entries are treated as absent on read and swept from a namespace
    whenever that namespace is written to.
    """

    backend = "memory"

    def __init__(self, max_entries: Optional[int] = None, clock: Callable[[], float] = time.monotonic) -> None:
        self.max_entries = max_entries
        self._clock = clock
        self._caches: Dict[str, "OrderedDict[str, CacheEntry]"] = {}
        self._stats: Dict[str, CacheStats] = {}
        self._lock = threading.Lock()

    def get(self, cache_name: str, key: str) -> Optional[Any]:
        with self._lock:
            stats = self._stats.setdefault(cache_name, CacheStats())
            entries = self._caches.get(cache_name)
            entry = entries.get(key) if entries else None
            if entry is None:
                stats.misses += 1
                return None
            if entry.expires_at <= self._clock():
                del entries[key]
                stats.misses += 1
                return None
            entries.move_to_end(key)
            stats.hits += 1
            return entry.value

    def set(self, cache_name: str, key: str, value: Any, ttl_ms: int) -> None:
        with self._lock:
            now = self._clock()
            entries = self._caches.setdefault(cache_name, OrderedDict())
            stats = self._stats.setdefault(cache_name, CacheStats())
            for stale_key in [k for k, e in entries.items() if e.expires_at <= now]:
                del entries[stale_key]
                stats.evictions += 1
            entries[key] = CacheEntry(key=key, value=value, expires_at=now + ttl_ms / 1000)
            entries.move_to_end(key)
            while self.max_entries and len(entries) > self.max_entries:
                entries.popitem(last=False)
                stats.evictions += 1

    def delete(self, cache_name: str, key: str) -> bool:
        with self._lock:
            entries = self._caches.get(cache_name)
            return bool(entries) and entries.pop(key, None) is not None

    def clear(self, cache_name: str) -> None:
        with self._lock:
            self._caches.pop(cache_name, None)

    def clear_all(self) -> None:
        with self._lock:
            self._caches.clear()

    def size(self, cache_name: str) -> int:
        with self._lock:
            return len(self._caches.get(cache_name, ()))

    def stats(self, cache_name: str) -> CacheStats:
        with self._lock:
            return CacheStats(**vars(self._stats.get(cache_name, CacheStats())))


@dataclass
class RedisCache:
    client: redis.Redis
    prefix: str = "marketsearch"
    backend: str = field(default="redis", init=False)

    def _key(self, cache_name: str, key: str) -> str:
        return f"{self.prefix}:{cache_name}:{key}"

    def get(self, cache_name: str, key: str) -> Optional[Any]:
        try:
            data = self.client.get(self._key(cache_name, key))
        except redis.RedisError as exc:  # pragma: no cover - protective
            logger.warning("Redis get failed: %s", exc)
            return None
        if not data:
            return None
        try:
            return json.loads(data)
        except json.JSONDecodeError:
            return None

    def set(self, cache_name: str, key: str, value: Any, ttl_ms: int) -> None:
        try:
            self.client.psetex(self._key(cache_name, key), max(int(ttl_ms), 1), json.dumps(value))
        except (redis.RedisError, TypeError) as exc:  # pragma: no cover - protective
            logger.warning("Redis set failed: %s", exc)

    def delete(self, cache_name: str, key: str) -> bool:
        try:
            return bool(self.client.delete(self._key(cache_name, key)))
        except redis.RedisError as exc:  # pragma: no cover - protective
            logger.warning("Redis delete failed: %s", exc)
            return False

    def clear(self, cache_name: str) -> None:
        self._delete_matching(f"{self.prefix}:{cache_name}:*")

    def clear_all(self) -> None:
        self._delete_matching(f"{self.prefix}:*")

    def _delete_matching(self, pattern: str) -> None:
        try:
            keys = list(self.client.scan_iter(match=pattern))
            if keys:
                self.client.delete(*keys)
        except redis.RedisError as exc:  # pragma: no cover - protective
            logger.warning("Redis clear failed: %s", exc)


_cache: ResultCache | None = None


def get_cache() -> ResultCache:
    global _cache
    if _cache is not None:
        return _cache
    if settings.cache_backend == "memory":
        _cache = InMemoryCache(max_entries=settings.cache_max_entries)
        return _cache
    try:
        client = redis.Redis(host=settings.redis_host, port=settings.redis_port, decode_responses=False)
        client.ping()
        logger.info("Using Redis cache at %s:%s", settings.redis_host, settings.redis_port)
        _cache = RedisCache(client)
    except redis.RedisError:
        if settings.cache_backend == "redis":
            raise
        logger.warning("Redis not available, using in-memory cache")
        _cache = InMemoryCache(max_entries=settings.cache_max_entries)
    return _cache
