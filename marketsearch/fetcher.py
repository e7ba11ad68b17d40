"""Parallel fan-out to the product, merchant and category backends."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from time import perf_counter
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from . import circuit_breaker as circuits
from .backends import (
    DocumentStore,
    SearchIndex,
    merchant_from_record,
    product_from_record,
    unique_categories,
)
from .circuit_breaker import CircuitBreaker
from .config import SearchModeSwitch
from .errors import PipelineFailure, SourceUnavailable
from .models import (
    CategorySuggestion,
    MerchantSuggestion,
    PaginationCursor,
    ProductPage,
    ProductSuggestion,
)
from .scoring import rank

logger = logging.getLogger(__name__)

SOURCE_PRODUCTS = "products"
SOURCE_SHOP_PRODUCTS = "shop_products"
# Merge priority: the general index wins over the merchant-scoped one.
PRODUCT_SOURCES: Tuple[str, ...] = (SOURCE_PRODUCTS, SOURCE_SHOP_PRODUCTS)
SOURCE_CIRCUITS = {
    SOURCE_PRODUCTS: circuits.PRODUCTS_MAIN,
    SOURCE_SHOP_PRODUCTS: circuits.PRODUCTS_MERCHANT,
}
CATEGORY_FETCH_SIZE = 50


@dataclass
class SourceOutcome:
    source: str
    records: List[Dict[str, Any]] = field(default_factory=list)
    requested: int = 0
    skip: int = 0
    error: Optional[SourceUnavailable] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def exhausted(self) -> bool:
        return self.ok and len(self.records) + self.skip < self.requested


def page_window(offset: int, page_size: int) -> Tuple[int, int, int]:
    """Return ``(page, hits_per_page, skip)`` covering ``page_size`` records from ``offset``."""
    if offset % page_size == 0:
        return offset // page_size, page_size, 0
    return 0, offset + page_size, offset


def merge_products(
    outcomes: Iterable[SourceOutcome],
    limit: int,
    exclude_ids: Iterable[str] = (),
) -> Tuple[List[ProductSuggestion], Dict[str, int]]:
    """Merge in the given order, first occurrence of an id wins.

    Returns the merged products and how many raw records each source gave up,
    including duplicates that were skipped.
    """
    seen = set(exclude_ids)
    merged: List[ProductSuggestion] = []
    consumed: Dict[str, int] = {}
    for outcome in outcomes:
        used = 0
        for record in outcome.records:
            if len(merged) >= limit:
                break
            used += 1
            product = product_from_record(record)
            if product is None or product.id in seen:
                continue
            seen.add(product.id)
            merged.append(product)
        consumed[outcome.source] = consumed.get(outcome.source, 0) + used
    return merged, consumed


class MultiSourceFetcher:
    def __init__(
        self,
        product_index: SearchIndex,
        shop_product_index: SearchIndex,
        merchant_index: SearchIndex,
        category_index: SearchIndex,
        breaker: CircuitBreaker,
        document_store: Optional[DocumentStore] = None,
        mode: Optional[SearchModeSwitch] = None,
        product_collections: Sequence[str] = PRODUCT_SOURCES,
    ) -> None:
        self.indexes: Dict[str, SearchIndex] = {
            SOURCE_PRODUCTS: product_index,
            SOURCE_SHOP_PRODUCTS: shop_product_index,
        }
        self.merchant_index = merchant_index
        self.category_index = category_index
        self.breaker = breaker
        self.document_store = document_store
        self.mode = mode
        self.product_collections = tuple(product_collections)

    def uses_document_store(self) -> bool:
        return self.mode is not None and self.mode.use_document_store()

    async def _guarded(
        self,
        circuit_name: str,
        source: str,
        call: Callable[[], Awaitable[List[Dict[str, Any]]]],
    ) -> SourceOutcome:
        errors: List[BaseException] = []

        async def primary() -> SourceOutcome:
            try:
                return SourceOutcome(source=source, records=list(await call()))
            except Exception as exc:
                errors.append(exc)
                raise

        def fallback() -> SourceOutcome:
            error = SourceUnavailable(source, errors[-1] if errors else None)
            logger.warning("%s", error)
            return SourceOutcome(source=source, error=error)

        return await self.breaker.execute(circuit_name, primary, fallback)

    async def fetch_products(self, term: str, limit: int) -> List[ProductSuggestion]:
        page = await self.fetch_product_page(term, PaginationCursor(), limit)
        return page.products

    async def fetch_product_page(
        self,
        term: str,
        cursor: PaginationCursor,
        page_size: int,
        exclude_ids: Iterable[str] = (),
        locale: Optional[str] = None,
    ) -> ProductPage:
        """Fetch the next ``page_size`` merged products after ``cursor``.

        Raises :class:`PipelineFailure` when every product source failed.
        """
        exclude = list(exclude_ids)
        if self.uses_document_store():
            products = await self._fetch_from_document_store(term, page_size, exclude)
            return self._document_store_page(cursor, products)

        active = [source for source in PRODUCT_SOURCES if source not in cursor.sources_exhausted]
        if not active or page_size <= 0:
            return ProductPage(products=[], cursor=cursor, has_more=False)

        t0 = perf_counter()
        outcomes = await asyncio.gather(
            *(self._search_source(source, term, cursor.offset(source), page_size, locale) for source in active)
        )

        if not any(outcome.ok for outcome in outcomes):
            causes = [outcome.error for outcome in outcomes if outcome.error is not None]
            if self.document_store is not None and cursor.merged_count == 0:
                logger.warning("All product indexes failed for q=%r, trying document store", term)
                products = await self._fetch_from_document_store(term, page_size, exclude, causes)
                return self._document_store_page(cursor, products)
            raise PipelineFailure("all product sources failed", causes)

        products, consumed = merge_products(outcomes, page_size, exclude)
        next_cursor = cursor.model_copy(deep=True)
        for outcome in outcomes:
            used = consumed.get(outcome.source, 0)
            next_cursor.per_source_offset[outcome.source] = cursor.offset(outcome.source) + used
            if outcome.exhausted and used == len(outcome.records):
                next_cursor.sources_exhausted.add(outcome.source)
        next_cursor.merged_count += len(products)

        has_more = len(products) >= page_size and not next_cursor.is_exhausted(list(PRODUCT_SOURCES))
        logger.info(
            "products q=%r sources=%s merged=%s has_more=%s took=%.2fms",
            term,
            {o.source: (len(o.records) if o.ok else "failed") for o in outcomes},
            len(products),
            has_more,
            (perf_counter() - t0) * 1000,
        )
        return ProductPage(products=products, cursor=next_cursor, has_more=has_more)

    async def _search_source(
        self,
        source: str,
        term: str,
        offset: int,
        page_size: int,
        locale: Optional[str],
    ) -> SourceOutcome:
        page, hits_per_page, skip = page_window(offset, page_size)
        index = self.indexes[source]
        outcome = await self._guarded(
            SOURCE_CIRCUITS[source],
            source,
            lambda: index.search(term, page, hits_per_page, locale),
        )
        outcome.requested = hits_per_page
        if outcome.ok and skip:
            outcome.records = outcome.records[skip:]
            outcome.skip = skip
        return outcome

    def _document_store_page(self, cursor: PaginationCursor, products: List[ProductSuggestion]) -> ProductPage:
        next_cursor = cursor.model_copy(deep=True)
        next_cursor.sources_exhausted.update(PRODUCT_SOURCES)
        next_cursor.merged_count += len(products)
        return ProductPage(products=products, cursor=next_cursor, has_more=False)

    async def _fetch_from_document_store(
        self,
        term: str,
        limit: int,
        exclude_ids: Iterable[str] = (),
        prior_causes: Optional[List[BaseException]] = None,
    ) -> List[ProductSuggestion]:
        """Prefix-range scans in both cases over both collections, merged in scan order.

        The four scans of one query form a single call on the document-store
        circuit, so a failed query counts as one failure.
        """
        store = self.document_store
        if store is None:
            raise PipelineFailure("document store not configured", prior_causes)

        lower = term.lower()
        capitalized = term.capitalize()
        scans = [(collection, prefix) for collection in self.product_collections for prefix in (lower, capitalized)]
        failures: List[BaseException] = []

        async def scan_all() -> List[SourceOutcome]:
            outcomes = await asyncio.gather(
                *(self._scan(store, collection, prefix, limit) for collection, prefix in scans)
            )
            if not any(outcome.ok for outcome in outcomes):
                failures.extend(o.error for o in outcomes if o.error is not None)
                raise PipelineFailure("document store scans failed", failures)
            return outcomes

        def unavailable() -> List[SourceOutcome]:
            causes = failures or [SourceUnavailable(circuits.DOCUMENT_STORE)]
            raise PipelineFailure("document store scans failed", list(prior_causes or []) + causes)

        outcomes = await self.breaker.execute(circuits.DOCUMENT_STORE, scan_all, unavailable)
        products, _ = merge_products(outcomes, limit, exclude_ids)
        logger.info("document store q=%r merged=%s", term, len(products))
        return products

    @staticmethod
    async def _scan(store: DocumentStore, collection: str, prefix: str, limit: int) -> SourceOutcome:
        source = f"{collection}[{prefix}]"
        try:
            records = await store.prefix_scan(collection, prefix, limit)
        except Exception as exc:
            error = SourceUnavailable(source, exc)
            logger.warning("%s", error)
            return SourceOutcome(source=source, error=error)
        return SourceOutcome(source=source, records=list(records))

    async def fetch_categories(self, term: str, locale: str, limit: int) -> List[CategorySuggestion]:
        outcome = await self._guarded(
            circuits.CATEGORIES,
            "categories",
            lambda: self.category_index.search(term, 0, CATEGORY_FETCH_SIZE, locale),
        )
        return rank(unique_categories(outcome.records, locale), term, limit)

    async def fetch_merchants(self, term: str, limit: int) -> List[MerchantSuggestion]:
        outcome = await self._guarded(
            circuits.MERCHANTS,
            "merchants",
            lambda: self.merchant_index.search(term, 0, limit),
        )
        merchants = [merchant_from_record(record) for record in outcome.records]
        return [merchant for merchant in merchants if merchant is not None][:limit]
