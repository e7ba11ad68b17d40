"""Shared Elasticsearch client.

Every index adapter and the document-store scans use one synchronous client;
callers move blocking requests off the event loop with ``asyncio.to_thread``.
Transport retries stay low so the circuit breaker sees a failing node quickly.
"""
from __future__ import annotations

import logging
from functools import lru_cache

from elasticsearch import Elasticsearch

from .config import settings

logger = logging.getLogger(__name__)


@lru_cache(maxsize=1)
def get_client() -> Elasticsearch:
    logger.info(
        "Connecting to Elasticsearch at %s (timeout=%ss, retries=%s)",
        settings.es_host,
        settings.es_request_timeout,
        settings.es_max_retries,
    )
    return Elasticsearch(
        settings.es_host,
        request_timeout=settings.es_request_timeout,
        max_retries=settings.es_max_retries,
        retry_on_timeout=False,
    )


def close_client() -> None:
    """Close the shared client if one was created."""
    if get_client.cache_info().currsize:
        get_client().close()
        get_client.cache_clear()
        logger.info("Elasticsearch client closed")
