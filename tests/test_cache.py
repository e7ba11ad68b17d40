"""Result cache backends and backend selection."""

from dataclasses import replace
from decimal import Decimal
from fnmatch import fnmatch

import pytest
import redis

from marketsearch import cache as cache_module
from marketsearch.cache import InMemoryCache, RedisCache, get_cache
from marketsearch.config import settings
from marketsearch.models import PaginationCursor, ProductSuggestion, SearchResults


def test_get_after_set_and_expiry(clock):
    cache = InMemoryCache(clock=clock)
    cache.set("search", "en:shoe", {"products": [1]}, ttl_ms=2000)

    assert cache.get("search", "en:shoe") == {"products": [1]}
    clock.advance(1.999)
    assert cache.get("search", "en:shoe") == {"products": [1]}
    clock.advance(0.01)
    assert cache.get("search", "en:shoe") is None


def test_namespaces_do_not_collide(clock):
    cache = InMemoryCache(clock=clock)
    cache.set("search", "key", "a", 1000)
    cache.set("categories", "key", "b", 1000)

    assert cache.get("search", "key") == "a"
    assert cache.get("categories", "key") == "b"

    cache.clear("search")
    assert cache.get("search", "key") is None
    assert cache.get("categories", "key") == "b"


def test_expired_entries_are_swept_on_write(clock):
    cache = InMemoryCache(clock=clock)
    cache.set("search", "old", 1, 100)
    clock.advance(1)
    cache.set("search", "new", 2, 100)

    assert cache.size("search") == 1
    assert cache.stats("search").evictions == 1


def test_lru_cap_evicts_least_recently_read(clock):
    cache = InMemoryCache(max_entries=2, clock=clock)
    cache.set("search", "a", 1, 10_000)
    cache.set("search", "b", 2, 10_000)
    assert cache.get("search", "a") == 1
    cache.set("search", "c", 3, 10_000)

    assert cache.get("search", "b") is None
    assert cache.get("search", "a") == 1
    assert cache.get("search", "c") == 3


def test_delete_and_stats(clock):
    cache = InMemoryCache(clock=clock)
    cache.set("search", "a", 1, 1000)

    assert cache.get("search", "a") == 1
    assert cache.get("search", "missing") is None
    assert cache.delete("search", "a") is True
    assert cache.delete("search", "a") is False
    assert cache.delete("other", "a") is False

    stats = cache.stats("search")
    assert (stats.hits, stats.misses) == (1, 1)


class StubRedis:
    def __init__(self, reachable=True):
        self.reachable = reachable
        self.store = {}
        self.ttls = {}

    def ping(self):
        if not self.reachable:
            raise redis.ConnectionError("connection refused")
        return True

    def get(self, key):
        return self.store.get(key)

    def psetex(self, key, ttl_ms, value):
        self.store[key] = value.encode("utf-8")
        self.ttls[key] = ttl_ms

    def delete(self, *keys):
        return sum(1 for key in keys if self.store.pop(key, None) is not None)

    def scan_iter(self, match):
        return [key for key in list(self.store) if fnmatch(key, match)]


def test_redis_cache_namespaces_keys_and_uses_millisecond_ttl():
    client = StubRedis()
    cache = RedisCache(client)
    cache.set("search", "en:shoe", {"products": [1]}, ttl_ms=120_000)

    assert client.ttls == {"marketsearch:search:en:shoe": 120_000}
    assert cache.get("search", "en:shoe") == {"products": [1]}
    assert cache.get("search", "en:boot") is None
    assert cache.delete("search", "en:shoe") is True
    assert cache.delete("search", "en:shoe") is False


def test_redis_cache_round_trips_search_results():
    cache = RedisCache(StubRedis())
    results = SearchResults(
        query="shoe",
        locale="en",
        products=[ProductSuggestion(id="p1", name="Shoe", price=Decimal("12.50"))],
        cursor=PaginationCursor(per_source_offset={"products": 1}, sources_exhausted={"shop_products"}),
        has_more_products=True,
    )
    cache.set("search", "en:shoe", results.model_dump(mode="json"), 1000)

    restored = SearchResults.model_validate(cache.get("search", "en:shoe"))

    assert restored == results
    assert restored.products[0].price == Decimal("12.50")


def test_redis_cache_clear_is_scoped_to_namespace():
    client = StubRedis()
    cache = RedisCache(client)
    cache.set("search", "a", 1, 1000)
    cache.set("search", "b", 2, 1000)
    cache.set("categories", "a", 3, 1000)
    client.store["other-app:search:a"] = b"4"

    cache.clear("search")
    assert sorted(client.store) == ["marketsearch:categories:a", "other-app:search:a"]

    cache.clear_all()
    assert list(client.store) == ["other-app:search:a"]


@pytest.fixture
def fresh_cache(monkeypatch):
    monkeypatch.setattr(cache_module, "_cache", None)

    def configure(backend, reachable=True):
        monkeypatch.setattr(cache_module, "settings", replace(settings, cache_backend=backend))
        monkeypatch.setattr(cache_module.redis, "Redis", lambda **kwargs: StubRedis(reachable))

    return configure


def test_get_cache_memory_backend_skips_redis(fresh_cache):
    fresh_cache("memory", reachable=False)

    assert isinstance(get_cache(), InMemoryCache)


def test_get_cache_auto_prefers_redis_and_is_reused(fresh_cache):
    fresh_cache("auto")
    backend = get_cache()

    assert isinstance(backend, RedisCache)
    assert get_cache() is backend


def test_get_cache_auto_falls_back_to_memory(fresh_cache):
    fresh_cache("auto", reachable=False)

    assert get_cache().backend == "memory"


def test_get_cache_redis_backend_requires_redis(fresh_cache):
    fresh_cache("redis", reachable=False)

    with pytest.raises(redis.ConnectionError):
        get_cache()
