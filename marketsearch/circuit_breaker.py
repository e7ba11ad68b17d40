"""Per-circuit failure tracking that routes calls to a fallback while a backend degrades."""
from __future__ import annotations

import asyncio
import inspect
import logging
import threading
import time
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, TypeVar, Union

logger = logging.getLogger(__name__)

T = TypeVar("T")

PRODUCTS_MAIN = "products_main"
PRODUCTS_MERCHANT = "products_merchant"
MERCHANTS = "merchants"
CATEGORIES = "categories"
DOCUMENT_STORE = "document_store"

DEFAULT_FAILURE_THRESHOLD = 3
DEFAULT_COOLDOWN_MS = 30_000


class CircuitStatus(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass
class CircuitState:
    name: str
    status: CircuitStatus = CircuitStatus.CLOSED
    consecutive_failures: int = 0
    opened_at: Optional[float] = None
    trial_running: bool = False


Fallback = Callable[[], Union[Awaitable[T], T]]


class CircuitBreaker:
    """Closed -> Open -> HalfOpen state machine, one instance per named circuit.

    While a circuit is open, ``primary`` is skipped and ``fallback`` answers
    instead. After ``cooldown_ms`` one trial call is let through; its outcome
    closes or re-opens the circuit. Other calls arriving during the trial are
    answered by the fallback. All state transitions happen under one lock.
    """

    def __init__(
        self,
        failure_threshold: int = DEFAULT_FAILURE_THRESHOLD,
        cooldown_ms: int = DEFAULT_COOLDOWN_MS,
        call_timeout_ms: Optional[int] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.failure_threshold = max(failure_threshold, 1)
        self.cooldown_ms = cooldown_ms
        self.call_timeout_ms = call_timeout_ms
        self._clock = clock
        self._circuits: Dict[str, CircuitState] = {}
        self._lock = threading.Lock()

    async def execute(
        self,
        circuit_name: str,
        primary: Callable[[], Awaitable[T]],
        fallback: Fallback,
    ) -> T:
        if not self._admit(circuit_name):
            logger.warning("Circuit %s is open, using fallback", circuit_name)
            return await _resolve(fallback())

        try:
            if self.call_timeout_ms:
                result = await asyncio.wait_for(primary(), self.call_timeout_ms / 1000)
            else:
                result = await primary()
        except asyncio.CancelledError:
            self._release_trial(circuit_name)
            raise
        except Exception as exc:
            self._record_failure(circuit_name, exc)
            return await _resolve(fallback())

        self._record_success(circuit_name)
        return result

    def state(self, circuit_name: str) -> CircuitStatus:
        with self._lock:
            circuit = self._circuits.get(circuit_name)
            return circuit.status if circuit else CircuitStatus.CLOSED

    def stats(self) -> List[CircuitState]:
        with self._lock:
            return [replace(circuit) for circuit in self._circuits.values()]

    def reset(self, circuit_name: str) -> bool:
        with self._lock:
            circuit = self._circuits.get(circuit_name)
            if circuit is None:
                return False
            self._close(circuit)
        logger.info("Circuit %s manually reset", circuit_name)
        return True

    def reset_all(self) -> None:
        with self._lock:
            for circuit in self._circuits.values():
                self._close(circuit)

    def _get(self, circuit_name: str) -> CircuitState:
        circuit = self._circuits.get(circuit_name)
        if circuit is None:
            circuit = self._circuits[circuit_name] = CircuitState(name=circuit_name)
        return circuit

    def _admit(self, circuit_name: str) -> bool:
        with self._lock:
            circuit = self._get(circuit_name)
            if circuit.status is CircuitStatus.CLOSED:
                return True
            if circuit.status is CircuitStatus.OPEN:
                elapsed_ms = (self._clock() - (circuit.opened_at or 0.0)) * 1000
                if elapsed_ms < self.cooldown_ms:
                    return False
                logger.info("Circuit %s entering half-open state", circuit_name)
                circuit.status = CircuitStatus.HALF_OPEN
                circuit.trial_running = False
            if circuit.trial_running:
                return False
            circuit.trial_running = True
            return True

    def _record_success(self, circuit_name: str) -> None:
        with self._lock:
            circuit = self._get(circuit_name)
            if circuit.status is CircuitStatus.OPEN:
                return
            if circuit.status is CircuitStatus.HALF_OPEN:
                logger.info("Circuit %s recovered, closing", circuit_name)
            self._close(circuit)

    def _record_failure(self, circuit_name: str, exc: Exception) -> None:
        with self._lock:
            circuit = self._get(circuit_name)
            circuit.consecutive_failures += 1
            if circuit.status is CircuitStatus.HALF_OPEN:
                logger.warning("Circuit %s failed in half-open state, reopening: %s", circuit_name, exc)
                self._open(circuit)
            elif circuit.status is CircuitStatus.CLOSED:
                logger.warning(
                    "Circuit %s call failed (%s/%s): %s",
                    circuit_name,
                    circuit.consecutive_failures,
                    self.failure_threshold,
                    exc,
                )
                if circuit.consecutive_failures >= self.failure_threshold:
                    logger.warning("Circuit %s opened after %s failures", circuit_name, circuit.consecutive_failures)
                    self._open(circuit)

    def _release_trial(self, circuit_name: str) -> None:
        with self._lock:
            self._get(circuit_name).trial_running = False

    def _open(self, circuit: CircuitState) -> None:
        circuit.status = CircuitStatus.OPEN
        circuit.opened_at = self._clock()
        circuit.trial_running = False

    @staticmethod
    def _close(circuit: CircuitState) -> None:
        circuit.status = CircuitStatus.CLOSED
        circuit.consecutive_failures = 0
        circuit.opened_at = None
        circuit.trial_running = False


async def _resolve(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value
