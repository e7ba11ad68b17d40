"""Search index and document-store adapters plus raw record conversion."""
from __future__ import annotations

import asyncio
import logging
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Iterable, List, Optional, Protocol

from elasticsearch import Elasticsearch

from .models import CategorySuggestion, MerchantSuggestion, ProductSuggestion

logger = logging.getLogger(__name__)

PRODUCT_FIELDS = ["productName^3", "brandModel^2", "category_en", "searchableText"]
MERCHANT_FIELDS = ["name^3", "categories", "searchableText"]
CATEGORY_FIELDS = [
    "category_{locale}^3",
    "subcategory_{locale}^2",
    "subsubcategory_{locale}^2",
    "category_en",
    "subcategory_en",
    "subsubcategory_en",
    "productName",
]
# Highest code point in the BMP private use area; closes a prefix range scan.
PREFIX_RANGE_END = "\uf8ff"
MERCHANT_ID_PREFIX = "shops_"


class SearchIndex(Protocol):
    async def search(
        self,
        query: str,
        page: int,
        hits_per_page: int,
        locale: Optional[str] = None,
    ) -> List[Dict[str, Any]]: ...


class DocumentStore(Protocol):
    async def prefix_scan(self, collection: str, prefix: str, limit: int) -> List[Dict[str, Any]]: ...


class ElasticsearchIndex:
    """One Elasticsearch index exposed through the :class:`SearchIndex` boundary."""

    def __init__(self, es: Elasticsearch, index: str, fields: List[str]) -> None:
        self.es = es
        self.index = index
        self.fields = fields

    def _fields(self, locale: Optional[str]) -> List[str]:
        lang = locale or "en"
        resolved: List[str] = []
        for template in self.fields:
            field = template.format(locale=lang)
            if field not in resolved:
                resolved.append(field)
        return resolved

    def build_query(self, query: str, page: int, hits_per_page: int, locale: Optional[str] = None) -> dict:
        return {
            "from": max(page, 0) * hits_per_page,
            "size": hits_per_page,
            "query": {
                "multi_match": {
                    "query": query,
                    "fields": self._fields(locale),
                    "type": "bool_prefix",
                }
            },
        }

    async def search(
        self,
        query: str,
        page: int,
        hits_per_page: int,
        locale: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        body = self.build_query(query, page, hits_per_page, locale)
        logger.debug("ES query index=%s payload=%s", self.index, body)
        response = await asyncio.to_thread(self.es.search, index=self.index, body=body)
        hits = response.get("hits", {}).get("hits", [])
        return [{**hit.get("_source", {}), "id": hit.get("_id")} for hit in hits]


class ElasticsearchDocumentStore:
    """Name-ordered prefix scans over the product collections.

    Each collection is an index with a keyword sub-field on the product name,
    so ``[prefix, prefix + U+F8FF]`` selects every name starting with
    ``prefix`` in the same case.
    """

    def __init__(self, es: Elasticsearch, name_field: str = "productName") -> None:
        self.es = es
        self.name_field = name_field

    def build_query(self, prefix: str, limit: int) -> dict:
        keyword_field = f"{self.name_field}.keyword"
        return {
            "size": limit,
            "sort": [{keyword_field: "asc"}],
            "query": {"range": {keyword_field: {"gte": prefix, "lte": prefix + PREFIX_RANGE_END}}},
        }

    async def prefix_scan(self, collection: str, prefix: str, limit: int) -> List[Dict[str, Any]]:
        body = self.build_query(prefix, limit)
        response = await asyncio.to_thread(self.es.search, index=collection, body=body)
        hits = response.get("hits", {}).get("hits", [])
        return [{**hit.get("_source", {}), "id": hit.get("_id")} for hit in hits]


def _decimal(value: Any) -> Decimal:
    if value is None or isinstance(value, bool):
        return Decimal("0")
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        return Decimal("0")


def product_from_record(record: Dict[str, Any]) -> Optional[ProductSuggestion]:
    product_id = record.get("id") or record.get("objectID")
    if not product_id:
        return None
    image_url = record.get("imageUrl")
    if not image_url:
        images = record.get("imageUrls") or []
        image_url = images[0] if images else None
    return ProductSuggestion(
        id=str(product_id),
        name=record.get("productName") or record.get("name") or "",
        price=_decimal(record.get("price")),
        image_url=image_url,
    )


def merchant_from_record(record: Dict[str, Any]) -> Optional[MerchantSuggestion]:
    merchant_id = str(record.get("id") or "")
    if merchant_id.startswith(MERCHANT_ID_PREFIX):
        merchant_id = merchant_id[len(MERCHANT_ID_PREFIX):]
    if not merchant_id or record.get("isActive") is False:
        return None
    return MerchantSuggestion(
        id=merchant_id,
        name=record.get("name") or "",
        logo_url=record.get("profileImageUrl") or record.get("logoUrl"),
        categories=[str(c) for c in record.get("categories") or []],
    )


def _localized(record: Dict[str, Any], field: str, locale: str) -> str:
    return str(record.get(f"{field}_{locale}") or record.get(f"{field}_en") or record.get(field) or "")


def categories_from_record(record: Dict[str, Any], locale: str) -> List[CategorySuggestion]:
    """Expand one product's category path into its sub-sub, sub and top entries."""
    cat = record.get("category") or ""
    sub = record.get("subcategory") or ""
    subsub = record.get("subsubcategory") or ""
    if not cat:
        return []

    cat_name = _localized(record, "category", locale)
    sub_name = _localized(record, "subcategory", locale)
    subsub_name = _localized(record, "subsubcategory", locale)

    suggestions: List[CategorySuggestion] = []
    if sub and subsub:
        suggestions.append(
            CategorySuggestion(
                display_name=f"{cat_name} > {sub_name} > {subsub_name}",
                category_key=cat,
                subcategory_key=sub,
                subsubcategory_key=subsub,
                level=2,
            )
        )
    if sub:
        suggestions.append(
            CategorySuggestion(
                display_name=f"{cat_name} > {sub_name}",
                category_key=cat,
                subcategory_key=sub,
                level=1,
            )
        )
    suggestions.append(CategorySuggestion(display_name=cat_name, category_key=cat, level=0))
    return suggestions


def category_path(suggestion: CategorySuggestion) -> str:
    parts = [suggestion.category_key, suggestion.subcategory_key, suggestion.subsubcategory_key]
    return "/".join(part for part in parts if part)


def unique_categories(records: Iterable[Dict[str, Any]], locale: str) -> List[CategorySuggestion]:
    seen: set[str] = set()
    unique: List[CategorySuggestion] = []
    for record in records:
        for suggestion in categories_from_record(record, locale):
            path = category_path(suggestion)
            if path in seen:
                continue
            seen.add(path)
            unique.append(suggestion)
    return unique
