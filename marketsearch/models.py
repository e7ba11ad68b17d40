"""Pydantic models for search suggestions, session state and API payloads."""
from __future__ import annotations

from decimal import Decimal
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class ProductSuggestion(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    price: Decimal = Decimal("0")
    image_url: str | None = None


class CategorySuggestion(BaseModel):
    model_config = ConfigDict(frozen=True)

    display_name: str
    category_key: str
    subcategory_key: str | None = None
    subsubcategory_key: str | None = None
    level: int = Field(0, ge=0, le=2)


class MerchantSuggestion(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    logo_url: str | None = None
    categories: list[str] = Field(default_factory=list)


class SearchQuery(BaseModel):
    term: str
    locale: str = "en"
    page_offset: int = 0

    @classmethod
    def build(cls, term: str, locale: str = "en", page_offset: int = 0) -> "SearchQuery":
        return cls(term=(term or "").strip(), locale=locale, page_offset=page_offset)

    @property
    def is_empty(self) -> bool:
        return not self.term


class PaginationCursor(BaseModel):
    """Per-source progress through the merged product listing."""

    sources_exhausted: set[str] = Field(default_factory=set)
    per_source_offset: dict[str, int] = Field(default_factory=dict)
    merged_count: int = 0

    def offset(self, source: str) -> int:
        return self.per_source_offset.get(source, 0)

    def is_exhausted(self, sources: list[str]) -> bool:
        return all(source in self.sources_exhausted for source in sources)


class ProductPage(BaseModel):
    products: list[ProductSuggestion]
    cursor: PaginationCursor
    has_more: bool


class SearchResults(BaseModel):
    """Aggregated response for one (term, locale) pair, as stored in the cache."""

    query: str
    locale: str
    products: list[ProductSuggestion] = Field(default_factory=list)
    categories: list[CategorySuggestion] = Field(default_factory=list)
    merchants: list[MerchantSuggestion] = Field(default_factory=list)
    cursor: PaginationCursor = Field(default_factory=PaginationCursor)
    has_more_products: bool = False
    took_ms: float = 0.0


class SearchStatus(str, Enum):
    IDLE = "idle"
    LOADING = "loading"
    LOADING_MORE = "loading_more"
    SUCCESS = "success"
    ERROR = "error"


class SearchState(BaseModel):
    """Read-only snapshot of an orchestrator session."""

    model_config = ConfigDict(frozen=True)

    term: str = ""
    status: SearchStatus = SearchStatus.IDLE
    product_suggestions: list[ProductSuggestion] = Field(default_factory=list)
    category_suggestions: list[CategorySuggestion] = Field(default_factory=list)
    merchant_suggestions: list[MerchantSuggestion] = Field(default_factory=list)
    is_loading: bool = False
    is_loading_more: bool = False
    has_more_products: bool = False
    error_message: str | None = None
    is_network_error: bool = False


class TermRequest(BaseModel):
    term: str = Field(..., description="Raw query text as typed")
    locale: str = "en"


class LoadMoreRequest(BaseModel):
    locale: str = "en"


class SessionCreated(BaseModel):
    session_id: str
    state: SearchState


class SearchModeRequest(BaseModel):
    provider: str
    reason: str | None = None


class SearchModeResponse(BaseModel):
    provider: str
    reason: str | None = None


class CircuitSnapshot(BaseModel):
    name: str
    status: str
    consecutive_failures: int
    opened_at: float | None = None
