"""Keyed debouncing on top of the running asyncio loop."""
from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Callable, Dict, Set, Tuple

logger = logging.getLogger(__name__)

SEARCH_DELAY_MS = 300


class DebouncedCall:
    """Callable returned by :meth:`Debouncer.debounce`."""

    def __init__(self, debouncer: "Debouncer", key: str, fn: Callable[..., Any], delay_ms: int) -> None:
        self._debouncer = debouncer
        self.key = key
        self._fn = fn
        self._delay_ms = delay_ms

    def __call__(self, *args: Any, **kwargs: Any) -> None:
        self._debouncer.schedule(self.key, self._fn, self._delay_ms, *args, **kwargs)

    def cancel(self) -> None:
        self._debouncer.cancel(self.key)

    def flush(self) -> None:
        self._debouncer.flush(self.key)

    def pending(self) -> bool:
        return self._debouncer.pending(self.key)


class Debouncer:
    """Runs a function once a key has been quiet for the given delay.

    Each key owns at most one pending timer. Scheduling again on the same key
    drops the previous timer and its arguments. Coroutine functions are run
    as tasks on the loop that scheduled them; a failing call is logged, never
    re-raised into the loop.
    """

    def __init__(self) -> None:
        self._timers: Dict[str, asyncio.TimerHandle] = {}
        self._pending_calls: Dict[str, Tuple[Callable[..., Any], tuple, dict]] = {}
        self._tasks: Set[asyncio.Task] = set()

    def debounce(self, key: str, fn: Callable[..., Any], delay_ms: int) -> DebouncedCall:
        return DebouncedCall(self, key, fn, delay_ms)

    def schedule(self, key: str, fn: Callable[..., Any], delay_ms: int, *args: Any, **kwargs: Any) -> None:
        loop = asyncio.get_running_loop()
        self._drop_timer(key)
        self._pending_calls[key] = (fn, args, kwargs)
        self._timers[key] = loop.call_later(max(delay_ms, 0) / 1000, self._fire, key)

    def cancel(self, key: str) -> None:
        self._drop_timer(key)
        self._pending_calls.pop(key, None)

    def flush(self, key: str) -> None:
        """Run the pending call for ``key`` right away, if there is one."""
        self._drop_timer(key)
        self._fire(key)

    def pending(self, key: str) -> bool:
        return key in self._timers

    def pending_count(self) -> int:
        return len(self._timers)

    def cancel_all(self) -> None:
        for timer in self._timers.values():
            timer.cancel()
        self._timers.clear()
        self._pending_calls.clear()

    def _drop_timer(self, key: str) -> None:
        timer = self._timers.pop(key, None)
        if timer is not None:
            timer.cancel()

    def _fire(self, key: str) -> None:
        self._timers.pop(key, None)
        pending = self._pending_calls.pop(key, None)
        if pending is None:
            return
        fn, args, kwargs = pending
        try:
            result = fn(*args, **kwargs)
        except Exception:
            logger.exception("Debounced call %s failed", key)
            return
        if inspect.isawaitable(result):
            task = asyncio.ensure_future(result)
            self._tasks.add(task)
            task.add_done_callback(self._task_done(key))

    def _task_done(self, key: str) -> Callable[[asyncio.Future], None]:
        def _callback(task: asyncio.Future) -> None:
            self._tasks.discard(task)
            if task.cancelled():
                return
            exc = task.exception()
            if exc is not None:
                logger.error("Debounced call %s failed: %s", key, exc)

        return _callback

    async def drain(self) -> None:
        """Wait for tasks started by fired timers to finish."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
