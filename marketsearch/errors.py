"""Search failure taxonomy and classification of pipeline errors."""
from __future__ import annotations

import asyncio

from elastic_transport import ConnectionError as TransportConnectionError
from elastic_transport import ConnectionTimeout

GENERIC_ERROR_MESSAGE = "Search error occurred"
NETWORK_ERROR_MESSAGE = "Connection failed. Please try again."

# Lower-cased fragments that mark an error message as a transport failure.
NETWORK_ERROR_MARKERS = (
    "failed to fetch",
    "connection refused",
    "connection reset",
    "connection error",
    "connectionerror",
    "network",
    "timed out",
    "timeout",
    "unreachable",
    "name or service not known",
    "temporary failure in name resolution",
)
NETWORK_EXCEPTIONS = (
    TransportConnectionError,
    ConnectionTimeout,
    ConnectionError,
    asyncio.TimeoutError,
    TimeoutError,
)


class SearchError(Exception):
    """Base class for errors raised by the search engine."""


class SourceUnavailable(SearchError):
    """A single backend failed or its circuit is open."""

    def __init__(self, source: str, cause: BaseException | None = None) -> None:
        self.source = source
        self.cause = cause
        detail = f": {cause}" if cause is not None else ""
        super().__init__(f"source {source} unavailable{detail}")


class PipelineFailure(SearchError):
    """Every product source, including the document-store path, failed."""

    message = GENERIC_ERROR_MESSAGE
    is_network_error = False

    def __init__(self, detail: str = "", causes: list[BaseException] | None = None) -> None:
        self.causes = list(causes or [])
        super().__init__(detail or self.message)


class NetworkUnavailable(PipelineFailure):
    message = NETWORK_ERROR_MESSAGE
    is_network_error = True


def is_network_error(exc: BaseException) -> bool:
    if isinstance(exc, SourceUnavailable) and exc.cause is not None:
        return is_network_error(exc.cause)
    if isinstance(exc, NETWORK_EXCEPTIONS):
        return True
    text = str(exc).lower()
    return any(marker in text for marker in NETWORK_ERROR_MARKERS)


def classify_failure(exc: BaseException, *, online: bool = True) -> PipelineFailure:
    """Map any pipeline error to the public failure reported to callers."""

    if isinstance(exc, NetworkUnavailable):
        return exc
    causes = exc.causes if isinstance(exc, PipelineFailure) else [exc]
    if not online or is_network_error(exc) or any(is_network_error(c) for c in causes):
        return NetworkUnavailable(str(exc), causes)
    if isinstance(exc, PipelineFailure):
        return exc
    return PipelineFailure(str(exc), causes)
