"""Circuit breaker state transitions."""

import asyncio

import pytest

from marketsearch.circuit_breaker import CircuitBreaker, CircuitStatus


class Backend:
    def __init__(self, fail=True):
        self.fail = fail
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        await asyncio.sleep(0)
        if self.fail:
            raise RuntimeError("backend down")
        return "primary"


async def fallback():
    return "fallback"


@pytest.mark.asyncio
async def test_three_failures_open_the_circuit_and_skip_primary(breaker):
    backend = Backend()
    for _ in range(3):
        assert await breaker.execute("products_main", backend, fallback) == "fallback"

    assert breaker.state("products_main") is CircuitStatus.OPEN
    assert backend.calls == 3

    assert await breaker.execute("products_main", backend, fallback) == "fallback"
    assert backend.calls == 3


@pytest.mark.asyncio
async def test_half_open_trial_after_cooldown_closes_on_success(breaker, clock):
    backend = Backend()
    for _ in range(3):
        await breaker.execute("products_main", backend, fallback)

    clock.advance(1.0)
    backend.fail = False
    assert await breaker.execute("products_main", backend, fallback) == "primary"
    assert backend.calls == 4

    stats = {circuit.name: circuit for circuit in breaker.stats()}
    assert stats["products_main"].status is CircuitStatus.CLOSED
    assert stats["products_main"].consecutive_failures == 0
    assert stats["products_main"].opened_at is None


@pytest.mark.asyncio
async def test_failed_trial_reopens_with_fresh_timestamp(breaker, clock):
    backend = Backend()
    for _ in range(3):
        await breaker.execute("products_main", backend, fallback)
    first_opened = breaker.stats()[0].opened_at

    clock.advance(2.0)
    assert await breaker.execute("products_main", backend, fallback) == "fallback"
    assert backend.calls == 4
    circuit = breaker.stats()[0]
    assert circuit.status is CircuitStatus.OPEN
    assert circuit.opened_at > first_opened

    # still cooling down from the new timestamp
    clock.advance(0.5)
    await breaker.execute("products_main", backend, fallback)
    assert backend.calls == 4


@pytest.mark.asyncio
async def test_success_resets_failure_count(breaker):
    backend = Backend()
    await breaker.execute("merchants", backend, fallback)
    await breaker.execute("merchants", backend, fallback)
    backend.fail = False
    await breaker.execute("merchants", backend, fallback)
    backend.fail = True
    await breaker.execute("merchants", backend, fallback)
    await breaker.execute("merchants", backend, fallback)

    assert breaker.state("merchants") is CircuitStatus.CLOSED


@pytest.mark.asyncio
async def test_circuits_are_independent(breaker):
    failing = Backend()
    healthy = Backend(fail=False)
    for _ in range(3):
        await breaker.execute("products_main", failing, fallback)

    assert await breaker.execute("products_merchant", healthy, fallback) == "primary"
    assert breaker.state("products_merchant") is CircuitStatus.CLOSED
    assert breaker.state("unknown") is CircuitStatus.CLOSED


@pytest.mark.asyncio
async def test_fallback_errors_propagate(breaker):
    async def broken_fallback():
        raise ValueError("no fallback data")

    with pytest.raises(ValueError):
        await breaker.execute("categories", Backend(), broken_fallback)


@pytest.mark.asyncio
async def test_sync_fallback_value_is_accepted(breaker):
    assert await breaker.execute("categories", Backend(), lambda: []) == []


@pytest.mark.asyncio
async def test_concurrent_failures_open_once(breaker):
    backend = Backend()
    results = await asyncio.gather(*(breaker.execute("products_main", backend, fallback) for _ in range(5)))

    assert results == ["fallback"] * 5
    circuit = breaker.stats()[0]
    assert circuit.status is CircuitStatus.OPEN
    assert circuit.consecutive_failures == 5


@pytest.mark.asyncio
async def test_timeout_counts_as_failure(clock):
    breaker = CircuitBreaker(failure_threshold=1, cooldown_ms=1000, call_timeout_ms=10, clock=clock)

    async def slow():
        await asyncio.sleep(1)
        return "late"

    assert await breaker.execute("document_store", slow, fallback) == "fallback"
    assert breaker.state("document_store") is CircuitStatus.OPEN


@pytest.mark.asyncio
async def test_reset_closes_circuit(breaker):
    backend = Backend()
    for _ in range(3):
        await breaker.execute("products_main", backend, fallback)

    assert breaker.reset("products_main") is True
    assert breaker.state("products_main") is CircuitStatus.CLOSED
    assert breaker.reset("missing") is False


@pytest.mark.asyncio
async def test_half_open_admits_a_single_trial_call(breaker, clock):
    backend = Backend()
    for _ in range(3):
        await breaker.execute("products_main", backend, fallback)
    clock.advance(1.0)

    release = asyncio.Event()
    trials = 0

    async def slow_recovery():
        nonlocal trials
        trials += 1
        await release.wait()
        return "primary"

    trial = asyncio.ensure_future(breaker.execute("products_main", slow_recovery, fallback))
    await asyncio.sleep(0)
    assert breaker.state("products_main") is CircuitStatus.HALF_OPEN

    others = await asyncio.gather(*(breaker.execute("products_main", slow_recovery, fallback) for _ in range(2)))
    assert others == ["fallback", "fallback"]

    release.set()
    assert await trial == "primary"
    assert trials == 1
    assert breaker.state("products_main") is CircuitStatus.CLOSED


@pytest.mark.asyncio
async def test_cancelled_trial_call_frees_the_half_open_slot(breaker, clock):
    backend = Backend()
    for _ in range(3):
        await breaker.execute("products_main", backend, fallback)
    clock.advance(1.0)

    async def hang():
        await asyncio.Event().wait()

    trial = asyncio.ensure_future(breaker.execute("products_main", hang, fallback))
    await asyncio.sleep(0)
    trial.cancel()
    with pytest.raises(asyncio.CancelledError):
        await trial

    circuit = breaker.stats()[0]
    assert circuit.status is CircuitStatus.HALF_OPEN
    assert circuit.trial_running is False
    assert circuit.consecutive_failures == 3

    backend.fail = False
    assert await breaker.execute("products_main", backend, fallback) == "primary"
    assert breaker.state("products_main") is CircuitStatus.CLOSED
