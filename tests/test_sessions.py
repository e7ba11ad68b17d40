"""Shared service wiring and the session registry."""

import asyncio

import pytest
from conftest import product

from marketsearch.models import SearchStatus
from marketsearch.sessions import SearchServices, SessionRegistry


@pytest.fixture
def services(fetcher, cache, breaker, mode):
    return SearchServices(fetcher=fetcher, cache=cache, breaker=breaker, mode=mode)


@pytest.mark.asyncio
async def test_identical_queries_across_orchestrators_share_one_fetch(services, indexes):
    indexes["products"].records = [product("p1")]
    indexes["products"].delays = {"shoe": 0.02}

    states = await asyncio.gather(*(services.new_orchestrator().search("shoe") for _ in range(3)))

    assert len(indexes["products"].calls) == 1
    assert all(state.status is SearchStatus.SUCCESS for state in states)
    assert all([p.id for p in state.product_suggestions] == ["p1"] for state in states)


def test_idle_sessions_expire(services, clock):
    registry = SessionRegistry(services, idle_ttl_ms=1000, max_sessions=10, clock=clock)
    idle_id, _ = registry.create()
    clock.advance(0.6)
    active_id, _ = registry.create()

    clock.advance(0.5)
    assert registry.get(active_id) is not None
    assert registry.get(idle_id) is None
    assert len(registry) == 1

    clock.advance(2.0)
    assert registry.sweep() == 1
    assert len(registry) == 0


def test_registry_is_capped_and_evicts_least_recently_used(services, clock):
    registry = SessionRegistry(services, idle_ttl_ms=0, max_sessions=2, clock=clock)
    first_id, first = registry.create()
    second_id, _ = registry.create()
    assert registry.get(first_id) is first

    third_id, _ = registry.create()

    assert len(registry) == 2
    assert registry.get(second_id) is None
    assert registry.get(first_id) is first
    assert registry.get(third_id) is not None


@pytest.mark.asyncio
async def test_evicted_session_is_cleared(services, clock, indexes):
    indexes["products"].records = [product("p1")]
    registry = SessionRegistry(services, idle_ttl_ms=1000, max_sessions=10, clock=clock)
    session_id, orchestrator = registry.create()
    await orchestrator.search("shoe")
    orchestrator.update_term("shoes")
    assert orchestrator.debouncer.pending_count() == 1

    clock.advance(2.0)
    registry.sweep()

    assert registry.get(session_id) is None
    assert orchestrator.debouncer.pending_count() == 0
    assert orchestrator.state.term == ""
    assert orchestrator.state.product_suggestions == []


def test_registry_defaults_come_from_settings(services):
    registry = SessionRegistry(services)

    assert registry.idle_ttl_ms == services.config.session_idle_ttl_ms
    assert registry.max_sessions == services.config.max_sessions
