"""Search session state machine tying debounce, dedup, fetch and cache together."""
from __future__ import annotations

import asyncio
import inspect
import logging
from time import perf_counter
from typing import Awaitable, Callable, List, Optional, Union

from .cache import SEARCH_CACHE, ResultCache
from .config import settings
from .debouncer import Debouncer
from .dedup import RequestDeduplicator, request_key
from .errors import PipelineFailure, classify_failure
from .fetcher import MultiSourceFetcher
from .models import PaginationCursor, SearchQuery, SearchResults, SearchState, SearchStatus

logger = logging.getLogger(__name__)

SEARCH_INPUT_KEY = "search-input"

Listener = Callable[[SearchState], None]
ConnectivityCheck = Callable[[], Union[bool, Awaitable[bool]]]


class SearchOrchestrator:
    """One live search session.

    Every pipeline run captures the session generation and term when it
    starts. Results are committed only if both are still current, so a slow
    response for an old term never overwrites the state of a newer one.
    Observers either read :attr:`state` or :meth:`subscribe` to snapshots.
    """

    def __init__(
        self,
        fetcher: MultiSourceFetcher,
        cache: ResultCache,
        debouncer: Optional[Debouncer] = None,
        deduplicator: Optional[RequestDeduplicator] = None,
        *,
        connectivity_check: Optional[ConnectivityCheck] = None,
        debounce_ms: int = settings.debounce_ms,
        initial_page_size: int = settings.initial_page_size,
        load_more_page_size: int = settings.load_more_page_size,
        max_products: int = settings.max_products,
        category_limit: int = settings.category_limit,
        merchant_limit: int = settings.merchant_limit,
        cache_ttl_ms: int = settings.cache_ttl_ms,
    ) -> None:
        self.fetcher = fetcher
        self.cache = cache
        self.debouncer = debouncer or Debouncer()
        self.deduplicator = deduplicator or RequestDeduplicator()
        self.connectivity_check = connectivity_check
        self.debounce_ms = debounce_ms
        self.initial_page_size = initial_page_size
        self.load_more_page_size = load_more_page_size
        self.max_products = max_products
        self.category_limit = category_limit
        self.merchant_limit = merchant_limit
        self.cache_ttl_ms = cache_ttl_ms

        self._state = SearchState()
        self._locale = "en"
        self._cursor = PaginationCursor()
        self._generation = 0
        self._listeners: List[Listener] = []

    @property
    def state(self) -> SearchState:
        return self._state

    @property
    def term(self) -> str:
        return self._state.term

    @property
    def cursor(self) -> PaginationCursor:
        return self._cursor.model_copy(deep=True)

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _update(self, **changes) -> None:
        self._state = self._state.model_copy(update=changes)
        for listener in list(self._listeners):
            try:
                listener(self._state)
            except Exception:
                logger.exception("Search state listener failed")

    def _is_current(self, generation: int, term: str) -> bool:
        return generation == self._generation and term == self._state.term

    def _start(self, term: str, locale: str) -> int:
        self._generation += 1
        self._locale = locale
        self._cursor = PaginationCursor()
        self._update(
            term=term,
            status=SearchStatus.LOADING,
            is_loading=True,
            is_loading_more=False,
            error_message=None,
            is_network_error=False,
        )
        return self._generation

    def _clear_results(self, term: str = "") -> None:
        self._generation += 1
        self._cursor = PaginationCursor()
        self._state = SearchState(term=term)
        self._update()

    def update_term(self, term: str, locale: str = "en") -> None:
        """Live-typing entry point; the pipeline runs once typing pauses."""
        query = SearchQuery.build(term, locale)
        if query.is_empty:
            self.debouncer.cancel(SEARCH_INPUT_KEY)
            self._clear_results()
            return
        generation = self._start(query.term, query.locale)
        self.debouncer.debounce(SEARCH_INPUT_KEY, self._run_pipeline, self.debounce_ms)(
            query.term, query.locale, generation
        )

    async def search(self, term: str, locale: str = "en") -> SearchState:
        """Explicit submission; runs the pipeline without debouncing."""
        query = SearchQuery.build(term, locale)
        self.debouncer.cancel(SEARCH_INPUT_KEY)
        if query.is_empty:
            self._clear_results()
            return self._state
        generation = self._start(query.term, query.locale)
        await self._run_pipeline(query.term, query.locale, generation)
        return self._state

    async def retry(self) -> SearchState:
        term = self._state.term
        if not term:
            self._clear_results()
            return self._state
        generation = self._start(term, self._locale)
        await self._run_pipeline(term, self._locale, generation)
        return self._state

    def clear(self) -> None:
        term = self._state.term
        self.debouncer.cancel(SEARCH_INPUT_KEY)
        if term:
            self.deduplicator.cancel(self._request_key(term, self._locale))
        self._clear_results()

    def clear_error(self) -> None:
        self._update(error_message=None, is_network_error=False)

    def _request_key(self, term: str, locale: str) -> str:
        return request_key("search", locale, term)

    def _cache_key(self, term: str, locale: str) -> str:
        return request_key(locale, term)

    async def _run_pipeline(self, term: str, locale: str, generation: int) -> None:
        if not self._is_current(generation, term):
            logger.debug("skip stale pipeline q=%r", term)
            return

        cached = self.cache.get(SEARCH_CACHE, self._cache_key(term, locale))
        if cached is not None:
            logger.info("cache hit q=%r locale=%s", term, locale)
            self._commit(SearchResults.model_validate(cached), generation)
            return

        try:
            results = await self.deduplicator.deduplicate(
                self._request_key(term, locale),
                lambda: self._aggregate(term, locale),
            )
        except Exception as exc:
            await self._fail(exc, generation, term)
            return
        self._commit(results, generation)

    async def _aggregate(self, term: str, locale: str) -> SearchResults:
        t0 = perf_counter()
        page, categories, merchants = await asyncio.gather(
            self.fetcher.fetch_product_page(term, PaginationCursor(), self.initial_page_size, locale=locale),
            self.fetcher.fetch_categories(term, locale, self.category_limit),
            self.fetcher.fetch_merchants(term, self.merchant_limit),
        )
        took_ms = (perf_counter() - t0) * 1000
        results = SearchResults(
            query=term,
            locale=locale,
            products=page.products,
            categories=categories,
            merchants=merchants,
            cursor=page.cursor,
            has_more_products=page.has_more and len(page.products) < self.max_products,
            took_ms=took_ms,
        )
        self.cache.set(SEARCH_CACHE, self._cache_key(term, locale), results.model_dump(mode="json"), self.cache_ttl_ms)
        logger.info(
            "timing: total=%.2fms q=%r locale=%s products=%s categories=%s merchants=%s",
            took_ms,
            term,
            locale,
            len(results.products),
            len(categories),
            len(merchants),
        )
        logger.debug("cache_store q=%r ttl=%sms", term, self.cache_ttl_ms)
        return results

    def _commit(self, results: SearchResults, generation: int) -> None:
        if not self._is_current(generation, results.query):
            logger.debug("discard stale results q=%r", results.query)
            return
        self._cursor = results.cursor.model_copy(deep=True)
        self._update(
            status=SearchStatus.SUCCESS,
            product_suggestions=list(results.products),
            category_suggestions=list(results.categories),
            merchant_suggestions=list(results.merchants),
            is_loading=False,
            is_loading_more=False,
            has_more_products=results.has_more_products,
            error_message=None,
            is_network_error=False,
        )

    async def _is_online(self) -> bool:
        if self.connectivity_check is None:
            return True
        try:
            result = self.connectivity_check()
            if inspect.isawaitable(result):
                result = await result
            return bool(result)
        except Exception:
            logger.warning("Connectivity check failed", exc_info=True)
            return False

    async def _fail(self, exc: Exception, generation: int, term: str, *, keep_results: bool = False) -> None:
        online = await self._is_online()
        failure: PipelineFailure = classify_failure(exc, online=online)
        logger.error("search failed q=%r network=%s: %s", term, failure.is_network_error, exc)
        if not self._is_current(generation, term):
            return
        changes = dict(
            status=SearchStatus.ERROR,
            is_loading=False,
            is_loading_more=False,
            error_message=failure.message,
            is_network_error=failure.is_network_error,
        )
        if not keep_results:
            changes.update(
                product_suggestions=[],
                category_suggestions=[],
                merchant_suggestions=[],
                has_more_products=False,
            )
        self._update(**changes)

    def can_load_more(self) -> bool:
        state = self._state
        return (
            bool(state.term)
            and state.status is SearchStatus.SUCCESS
            and not state.is_loading
            and not state.is_loading_more
            and state.has_more_products
            and len(state.product_suggestions) < self.max_products
        )

    async def load_more(self, locale: Optional[str] = None) -> SearchState:
        """Append the next product page; categories and merchants stay as they are."""
        if not self.can_load_more():
            return self._state

        term = self._state.term
        generation = self._generation
        existing = self._state.product_suggestions
        page_size = min(self.load_more_page_size, self.max_products - len(existing))
        self._update(status=SearchStatus.LOADING_MORE, is_loading_more=True)

        try:
            page = await self.fetcher.fetch_product_page(
                term,
                self._cursor,
                page_size,
                exclude_ids=[product.id for product in existing],
                locale=locale or self._locale,
            )
        except Exception as exc:
            await self._fail(exc, generation, term, keep_results=True)
            return self._state

        if not self._is_current(generation, term):
            logger.debug("discard stale page q=%r", term)
            return self._state

        products = list(existing) + page.products
        self._cursor = page.cursor
        has_more = page.has_more and len(page.products) >= self.load_more_page_size and len(products) < self.max_products
        logger.info("load_more q=%r added=%s total=%s has_more=%s", term, len(page.products), len(products), has_more)
        self._update(
            status=SearchStatus.SUCCESS,
            product_suggestions=products,
            is_loading_more=False,
            has_more_products=has_more,
        )
        return self._state
