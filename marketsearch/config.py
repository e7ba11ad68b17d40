"""Application configuration and constants."""
from __future__ import annotations

import logging
import os
import threading
from dataclasses import dataclass

logger = logging.getLogger(__name__)

PROVIDER_PRIMARY = "primary"
PROVIDER_DOCUMENT_STORE = "document_store"
PROVIDERS = {PROVIDER_PRIMARY, PROVIDER_DOCUMENT_STORE}


def _get_env(name: str, default: str) -> str:
    value = os.getenv(name)
    return value if value is not None else default


@dataclass(frozen=True)
class Settings:
    """Simple settings container with environment variable overrides."""

    es_host: str = _get_env("ES_HOST", "http://localhost:9200")
    es_request_timeout: float = float(_get_env("ES_REQUEST_TIMEOUT", "5"))
    es_max_retries: int = int(_get_env("ES_MAX_RETRIES", "2"))
    products_index: str = _get_env("PRODUCTS_INDEX", "products")
    shop_products_index: str = _get_env("SHOP_PRODUCTS_INDEX", "shop_products")
    shops_index: str = _get_env("SHOPS_INDEX", "shops")
    categories_index: str = _get_env("CATEGORIES_INDEX", "products")
    redis_host: str = _get_env("REDIS_HOST", "localhost")
    redis_port: int = int(_get_env("REDIS_PORT", "6379"))
    cache_backend: str = _get_env("CACHE_BACKEND", "auto")
    cache_ttl_ms: int = int(_get_env("CACHE_TTL_MS", "120000"))
    cache_max_entries: int = int(_get_env("CACHE_MAX_ENTRIES", "100"))
    search_provider: str = _get_env("SEARCH_PROVIDER", PROVIDER_PRIMARY)
    debounce_ms: int = int(_get_env("DEBOUNCE_MS", "300"))
    initial_page_size: int = int(_get_env("INITIAL_PAGE_SIZE", "10"))
    load_more_page_size: int = int(_get_env("LOAD_MORE_PAGE_SIZE", "5"))
    max_products: int = int(_get_env("MAX_PRODUCTS", "20"))
    category_limit: int = int(_get_env("CATEGORY_LIMIT", "15"))
    merchant_limit: int = int(_get_env("MERCHANT_LIMIT", "10"))
    breaker_failure_threshold: int = int(_get_env("BREAKER_FAILURE_THRESHOLD", "3"))
    breaker_cooldown_ms: int = int(_get_env("BREAKER_COOLDOWN_MS", "30000"))
    breaker_call_timeout_ms: int = int(_get_env("BREAKER_CALL_TIMEOUT_MS", "10000"))
    session_idle_ttl_ms: int = int(_get_env("SESSION_IDLE_TTL_MS", "900000"))
    max_sessions: int = int(_get_env("MAX_SESSIONS", "1000"))
    api_host: str = _get_env("API_HOST", "0.0.0.0")
    api_port: int = int(_get_env("API_PORT", "8000"))
    log_level: str = _get_env("LOG_LEVEL", "INFO")


settings = Settings()


class SearchModeSwitch:
    """Runtime switch between the search indexes and the document store.

    Product queries read :meth:`provider` on every fetch, so flipping the mode
    takes effect for the next aggregation without restarting sessions.
    """

    def __init__(self, provider: str = settings.search_provider) -> None:
        self._lock = threading.Lock()
        self._provider = PROVIDER_PRIMARY
        self._reason: str | None = None
        self.set(provider)

    def provider(self) -> str:
        with self._lock:
            return self._provider

    @property
    def reason(self) -> str | None:
        return self._reason

    def use_document_store(self) -> bool:
        return self.provider() == PROVIDER_DOCUMENT_STORE

    def set(self, provider: str, reason: str | None = None) -> None:
        if provider not in PROVIDERS:
            logger.warning("Unknown search provider %r, keeping %s", provider, PROVIDER_PRIMARY)
            provider = PROVIDER_PRIMARY
        with self._lock:
            if provider != self._provider:
                logger.info("Search provider switched %s -> %s (%s)", self._provider, provider, reason)
            self._provider = provider
            self._reason = reason
