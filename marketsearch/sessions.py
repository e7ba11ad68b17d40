"""Wiring of the shared search services and per-client orchestrator sessions."""
from __future__ import annotations

import asyncio
import logging
import threading
import time
import uuid
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Tuple

from elasticsearch import Elasticsearch

from .backends import (
    CATEGORY_FIELDS,
    MERCHANT_FIELDS,
    PRODUCT_FIELDS,
    ElasticsearchDocumentStore,
    ElasticsearchIndex,
)
from .cache import ResultCache, get_cache
from .circuit_breaker import CircuitBreaker
from .config import SearchModeSwitch, Settings, settings
from .dedup import RequestDeduplicator
from .fetcher import MultiSourceFetcher
from .orchestrator import SearchOrchestrator

logger = logging.getLogger(__name__)


@dataclass
class SearchServices:
    """Process-wide collaborators shared by every session.

    The deduplicator is shared too, so identical in-flight queries from
    different sessions or one-shot requests join one backend call.
    """

    fetcher: MultiSourceFetcher
    cache: ResultCache
    breaker: CircuitBreaker
    mode: SearchModeSwitch
    es: Optional[Elasticsearch] = None
    config: Settings = field(default_factory=lambda: settings)
    deduplicator: RequestDeduplicator = field(default_factory=RequestDeduplicator)

    async def is_online(self) -> bool:
        if self.es is None:
            return True
        try:
            return bool(await asyncio.to_thread(self.es.ping))
        except Exception:
            return False

    def new_orchestrator(self) -> SearchOrchestrator:
        cfg = self.config
        return SearchOrchestrator(
            self.fetcher,
            self.cache,
            deduplicator=self.deduplicator,
            connectivity_check=self.is_online if self.es is not None else None,
            debounce_ms=cfg.debounce_ms,
            initial_page_size=cfg.initial_page_size,
            load_more_page_size=cfg.load_more_page_size,
            max_products=cfg.max_products,
            category_limit=cfg.category_limit,
            merchant_limit=cfg.merchant_limit,
            cache_ttl_ms=cfg.cache_ttl_ms,
        )


def build_services(es: Elasticsearch, cfg: Settings = settings) -> SearchServices:
    breaker = CircuitBreaker(
        failure_threshold=cfg.breaker_failure_threshold,
        cooldown_ms=cfg.breaker_cooldown_ms,
        call_timeout_ms=cfg.breaker_call_timeout_ms or None,
    )
    mode = SearchModeSwitch(cfg.search_provider)
    fetcher = MultiSourceFetcher(
        product_index=ElasticsearchIndex(es, cfg.products_index, PRODUCT_FIELDS),
        shop_product_index=ElasticsearchIndex(es, cfg.shop_products_index, PRODUCT_FIELDS),
        merchant_index=ElasticsearchIndex(es, cfg.shops_index, MERCHANT_FIELDS),
        category_index=ElasticsearchIndex(es, cfg.categories_index, CATEGORY_FIELDS),
        breaker=breaker,
        document_store=ElasticsearchDocumentStore(es),
        mode=mode,
        product_collections=(cfg.products_index, cfg.shop_products_index),
    )
    return SearchServices(fetcher=fetcher, cache=get_cache(), breaker=breaker, mode=mode, es=es, config=cfg)


class SessionRegistry:
    """Owns one :class:`SearchOrchestrator` per client session id.

    Sessions idle for longer than ``idle_ttl_ms`` are dropped, and once
    ``max_sessions`` are live the least recently used one is evicted to make
    room. Dropped orchestrators are cleared so pending debounced work stops.
    """

    def __init__(
        self,
        services: SearchServices,
        idle_ttl_ms: Optional[int] = None,
        max_sessions: Optional[int] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.services = services
        self.idle_ttl_ms = services.config.session_idle_ttl_ms if idle_ttl_ms is None else idle_ttl_ms
        self.max_sessions = max(services.config.max_sessions if max_sessions is None else max_sessions, 1)
        self._clock = clock
        self._sessions: "OrderedDict[str, Tuple[SearchOrchestrator, float]]" = OrderedDict()
        self._lock = threading.Lock()

    def create(self) -> tuple[str, SearchOrchestrator]:
        session_id = uuid.uuid4().hex
        orchestrator = self.services.new_orchestrator()
        with self._lock:
            dropped = self._expire()
            while len(self._sessions) >= self.max_sessions:
                old_id, (old, _) = self._sessions.popitem(last=False)
                logger.info("Evicted search session %s", old_id)
                dropped.append(old)
            self._sessions[session_id] = (orchestrator, self._clock())
        self._discard(dropped)
        logger.info("Created search session %s", session_id)
        return session_id, orchestrator

    def get(self, session_id: str) -> Optional[SearchOrchestrator]:
        with self._lock:
            dropped = self._expire()
            entry = self._sessions.get(session_id)
            if entry is not None:
                self._sessions[session_id] = (entry[0], self._clock())
                self._sessions.move_to_end(session_id)
        self._discard(dropped)
        return entry[0] if entry is not None else None

    def close(self, session_id: str) -> bool:
        with self._lock:
            entry = self._sessions.pop(session_id, None)
        if entry is None:
            return False
        entry[0].clear()
        logger.info("Closed search session %s", session_id)
        return True

    def sweep(self) -> int:
        """Drop idle sessions now; returns how many were removed."""
        with self._lock:
            dropped = self._expire()
        self._discard(dropped)
        return len(dropped)

    def _expire(self) -> List[SearchOrchestrator]:
        if self.idle_ttl_ms <= 0:
            return []
        now = self._clock()
        expired = [
            session_id
            for session_id, (_, last_seen) in self._sessions.items()
            if (now - last_seen) * 1000 >= self.idle_ttl_ms
        ]
        dropped = []
        for session_id in expired:
            dropped.append(self._sessions.pop(session_id)[0])
            logger.info("Expired idle search session %s", session_id)
        return dropped

    @staticmethod
    def _discard(orchestrators: List[SearchOrchestrator]) -> None:
        for orchestrator in orchestrators:
            orchestrator.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)
