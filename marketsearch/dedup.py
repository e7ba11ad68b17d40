"""Collapse concurrent identical requests into one in-flight task."""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RequestDeduplicator:
    def __init__(self) -> None:
        self._pending: Dict[str, asyncio.Task] = {}

    async def deduplicate(
        self,
        key: str,
        producer: Callable[[], Awaitable[T]],
        *,
        force_refresh: bool = False,
    ) -> T:
        """Await ``producer()`` once per key; concurrent callers share the outcome.

        ``force_refresh`` starts a fresh call and makes it the one later callers
        join. A caller being cancelled does not cancel the shared task.
        """
        task = None if force_refresh else self._pending.get(key)
        if task is None:
            task = asyncio.ensure_future(producer())
            self._pending[key] = task
            task.add_done_callback(lambda done: self._settle(key, done))
        else:
            logger.debug("dedup join key=%s", key)
        return await asyncio.shield(task)

    def _settle(self, key: str, task: asyncio.Task) -> None:
        if self._pending.get(key) is task:
            del self._pending[key]
        if not task.cancelled() and task.exception() is not None:
            # Marks the exception as retrieved for callers that detached.
            logger.debug("dedup key=%s settled with %r", key, task.exception())

    def cancel(self, key: str) -> bool:
        """Forget the in-flight entry for ``key``; the running call is left alone."""
        return self._pending.pop(key, None) is not None

    def is_pending(self, key: str) -> bool:
        return key in self._pending

    def pending_count(self) -> int:
        return len(self._pending)

    def cancel_all(self) -> None:
        self._pending.clear()


def request_key(*parts: Any) -> str:
    return ":".join(str(part) for part in parts)
