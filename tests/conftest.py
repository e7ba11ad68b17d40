"""Shared fakes for the search backends."""
from __future__ import annotations

import asyncio
from typing import Any, Dict, List, Optional

import pytest

from marketsearch.cache import InMemoryCache
from marketsearch.circuit_breaker import CircuitBreaker
from marketsearch.config import SearchModeSwitch
from marketsearch.fetcher import MultiSourceFetcher
from marketsearch.orchestrator import SearchOrchestrator


class FakeClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeIndex:
    """In-memory stand-in for one search index.

    ``by_query`` maps a query to its own record list; other queries fall back
    to ``records``. ``delays`` maps a query to a sleep in seconds.
    """

    def __init__(
        self,
        records: Optional[List[Dict[str, Any]]] = None,
        *,
        by_query: Optional[Dict[str, List[Dict[str, Any]]]] = None,
        delays: Optional[Dict[str, float]] = None,
        error: Optional[Exception] = None,
    ) -> None:
        self.records = list(records or [])
        self.by_query = by_query or {}
        self.delays = delays or {}
        self.error = error
        self.calls: List[tuple] = []

    async def search(self, query: str, page: int, hits_per_page: int, locale: Optional[str] = None) -> List[dict]:
        self.calls.append((query, page, hits_per_page, locale))
        delay = self.delays.get(query, 0)
        if delay:
            await asyncio.sleep(delay)
        if self.error is not None:
            raise self.error
        records = self.by_query.get(query, self.records)
        start = page * hits_per_page
        return [dict(record) for record in records[start:start + hits_per_page]]


class FakeDocumentStore:
    def __init__(self, collections: Optional[Dict[str, List[Dict[str, Any]]]] = None, error: Optional[Exception] = None) -> None:
        self.collections = collections or {}
        self.error = error
        self.calls: List[tuple] = []

    async def prefix_scan(self, collection: str, prefix: str, limit: int) -> List[dict]:
        self.calls.append((collection, prefix, limit))
        if self.error is not None:
            raise self.error
        docs = sorted(self.collections.get(collection, []), key=lambda doc: doc["productName"])
        return [dict(doc) for doc in docs if doc["productName"].startswith(prefix)][:limit]


def product(product_id: str, name: str = "", price: Any = 10) -> dict:
    return {"id": product_id, "productName": name or f"Product {product_id}", "price": price}


def products(prefix: str, count: int) -> List[dict]:
    return [product(f"{prefix}{i}") for i in range(count)]


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def breaker(clock: FakeClock) -> CircuitBreaker:
    return CircuitBreaker(failure_threshold=3, cooldown_ms=1000, clock=clock)


@pytest.fixture
def mode() -> SearchModeSwitch:
    return SearchModeSwitch("primary")


@pytest.fixture
def indexes() -> Dict[str, FakeIndex]:
    return {
        "products": FakeIndex(),
        "shop_products": FakeIndex(),
        "shops": FakeIndex(),
        "categories": FakeIndex(),
    }


@pytest.fixture
def document_store() -> FakeDocumentStore:
    return FakeDocumentStore()


@pytest.fixture
def fetcher(indexes, breaker, document_store, mode) -> MultiSourceFetcher:
    return MultiSourceFetcher(
        product_index=indexes["products"],
        shop_product_index=indexes["shop_products"],
        merchant_index=indexes["shops"],
        category_index=indexes["categories"],
        breaker=breaker,
        document_store=document_store,
        mode=mode,
    )


@pytest.fixture
def cache() -> InMemoryCache:
    return InMemoryCache()


@pytest.fixture
def orchestrator(fetcher, cache) -> SearchOrchestrator:
    return SearchOrchestrator(
        fetcher,
        cache,
        debounce_ms=30,
        initial_page_size=10,
        load_more_page_size=5,
        max_products=20,
        category_limit=6,
        merchant_limit=3,
        cache_ttl_ms=120_000,
    )
