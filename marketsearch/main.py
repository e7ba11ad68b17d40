"""FastAPI application wiring the search sessions."""
from __future__ import annotations

import asyncio
import logging
from typing import List

import uvicorn
from fastapi import FastAPI, HTTPException, Query, Request

from .config import PROVIDERS, settings
from .es_client import close_client, get_client
from .models import (
    CircuitSnapshot,
    LoadMoreRequest,
    SearchModeRequest,
    SearchModeResponse,
    SearchState,
    SessionCreated,
    TermRequest,
)
from .orchestrator import SearchOrchestrator
from .sessions import SearchServices, SessionRegistry, build_services

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
LOG_LEVEL = logging.getLevelName(settings.log_level.upper())

# Force a predictable logging setup even when run under uvicorn. ``force=True``
# replaces uvicorn's default handlers.
logging.basicConfig(level=LOG_LEVEL, format=LOG_FORMAT, force=True)
for name in ("uvicorn", "uvicorn.error", "uvicorn.access", "elastic_transport"):
    logging.getLogger(name).setLevel(LOG_LEVEL)

logger = logging.getLogger(__name__)
logger.info("Logging configured at %s", settings.log_level.upper())

app = FastAPI(title="Marketplace Search Service")


def configure(services: SearchServices) -> SessionRegistry:
    registry = SessionRegistry(services)
    app.state.registry = registry
    return registry


def _registry(request: Request) -> SessionRegistry:
    return request.app.state.registry


def _session(request: Request, session_id: str) -> SearchOrchestrator:
    orchestrator = _registry(request).get(session_id)
    if orchestrator is None:
        raise HTTPException(status_code=404, detail="Unknown search session")
    return orchestrator


@app.on_event("startup")
async def startup_event() -> None:
    if getattr(app.state, "registry", None) is None:
        configure(build_services(get_client()))
    logger.info("Search provider mode: %s", app.state.registry.services.mode.provider())


@app.on_event("shutdown")
async def shutdown_event() -> None:
    registry = getattr(app.state, "registry", None)
    if registry is not None:
        logger.info("Shutting down with %s live sessions", len(registry))
    close_client()


@app.get("/health")
async def health(request: Request) -> dict:
    services = _registry(request).services
    es_status = None
    if services.es is not None:
        try:
            status = await asyncio.to_thread(services.es.cluster.health)
            es_status = status.get("status")
        except Exception as exc:
            logger.warning("Elasticsearch health check failed: %s", exc)
            es_status = "unreachable"
    return {
        "elasticsearch": es_status,
        "cache": getattr(services.cache, "backend", type(services.cache).__name__),
        "provider": services.mode.provider(),
        "sessions": len(_registry(request)),
        "circuits": {circuit.name: circuit.status.value for circuit in services.breaker.stats()},
    }


@app.get("/search", response_model=SearchState)
async def search(
    request: Request,
    q: str = Query(..., description="Search query"),
    locale: str = "en",
    limit: int = Query(settings.initial_page_size, ge=1),
) -> SearchState:
    if not q.strip():
        raise HTTPException(status_code=400, detail="Query must not be empty")
    orchestrator = _registry(request).services.new_orchestrator()
    state = await orchestrator.search(q, locale)
    if state.error_message:
        raise HTTPException(status_code=503, detail=state.error_message)
    products = state.product_suggestions
    return state.model_copy(
        update={
            "product_suggestions": products[:limit],
            "has_more_products": state.has_more_products or len(products) > limit,
        }
    )


@app.post("/sessions", response_model=SessionCreated, status_code=201)
async def create_session(request: Request) -> SessionCreated:
    session_id, orchestrator = _registry(request).create()
    return SessionCreated(session_id=session_id, state=orchestrator.state)


@app.get("/sessions/{session_id}", response_model=SearchState)
async def session_state(request: Request, session_id: str) -> SearchState:
    return _session(request, session_id).state


@app.post("/sessions/{session_id}/term", response_model=SearchState)
async def session_update_term(request: Request, session_id: str, payload: TermRequest) -> SearchState:
    orchestrator = _session(request, session_id)
    orchestrator.update_term(payload.term, payload.locale)
    return orchestrator.state


@app.post("/sessions/{session_id}/search", response_model=SearchState)
async def session_search(request: Request, session_id: str, payload: TermRequest) -> SearchState:
    return await _session(request, session_id).search(payload.term, payload.locale)


@app.post("/sessions/{session_id}/more", response_model=SearchState)
async def session_load_more(request: Request, session_id: str, payload: LoadMoreRequest) -> SearchState:
    return await _session(request, session_id).load_more(payload.locale)


@app.post("/sessions/{session_id}/retry", response_model=SearchState)
async def session_retry(request: Request, session_id: str) -> SearchState:
    return await _session(request, session_id).retry()


@app.post("/sessions/{session_id}/clear", response_model=SearchState)
async def session_clear(request: Request, session_id: str) -> SearchState:
    orchestrator = _session(request, session_id)
    orchestrator.clear()
    return orchestrator.state


@app.delete("/sessions/{session_id}", status_code=204)
async def close_session(request: Request, session_id: str) -> None:
    if not _registry(request).close(session_id):
        raise HTTPException(status_code=404, detail="Unknown search session")


@app.get("/circuits", response_model=List[CircuitSnapshot])
async def circuits(request: Request) -> List[CircuitSnapshot]:
    breaker = _registry(request).services.breaker
    return [
        CircuitSnapshot(
            name=circuit.name,
            status=circuit.status.value,
            consecutive_failures=circuit.consecutive_failures,
            opened_at=circuit.opened_at,
        )
        for circuit in breaker.stats()
    ]


@app.post("/circuits/{name}/reset")
async def reset_circuit(request: Request, name: str) -> dict:
    if not _registry(request).services.breaker.reset(name):
        raise HTTPException(status_code=404, detail="Unknown circuit")
    return {"name": name, "status": "closed"}


@app.get("/config/search", response_model=SearchModeResponse)
async def get_search_mode(request: Request) -> SearchModeResponse:
    mode = _registry(request).services.mode
    return SearchModeResponse(provider=mode.provider(), reason=mode.reason)


@app.put("/config/search", response_model=SearchModeResponse)
async def set_search_mode(request: Request, payload: SearchModeRequest) -> SearchModeResponse:
    if payload.provider not in PROVIDERS:
        raise HTTPException(status_code=400, detail=f"provider must be one of {sorted(PROVIDERS)}")
    mode = _registry(request).services.mode
    mode.set(payload.provider, payload.reason)
    return SearchModeResponse(provider=mode.provider(), reason=mode.reason)


def run() -> None:
    uvicorn.run(app, host=settings.api_host, port=settings.api_port, log_level=settings.log_level.lower())


if __name__ == "__main__":
    run()
