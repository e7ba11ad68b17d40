"""Terminal client that reuses the in-process search session."""
from __future__ import annotations

import argparse
import asyncio
from pathlib import Path
from time import perf_counter
from typing import Iterable

from marketsearch.es_client import get_client
from marketsearch.models import SearchState
from marketsearch.orchestrator import SearchOrchestrator
from marketsearch.sessions import build_services

GREEN = "\033[92m"
RED = "\033[91m"
RESET = "\033[0m"


def new_session() -> SearchOrchestrator:
    return build_services(get_client()).new_orchestrator()


async def perform_query(session: SearchOrchestrator, query: str, locale: str) -> tuple[SearchState, float]:
    t0 = perf_counter()
    state = await session.search(query, locale)
    return state, (perf_counter() - t0) * 1000


async def perform_load_more(session: SearchOrchestrator, locale: str) -> tuple[SearchState, float]:
    t0 = perf_counter()
    state = await session.load_more(locale)
    return state, (perf_counter() - t0) * 1000


def pretty_print_state(state: SearchState, eta: float) -> None:
    color = GREEN if eta < 200 else RED
    eta_label = f"{color}{eta:.1f} ms{RESET}"
    print(
        f"Query: {state.term} | products: {len(state.product_suggestions)} | "
        f"more: {state.has_more_products} | ETA: {eta_label}"
    )
    if state.error_message:
        kind = "network" if state.is_network_error else "search"
        print(f"  {RED}{kind} error: {state.error_message}{RESET}")
        return
    for merchant in state.merchant_suggestions[:3]:
        print(f"  shop  | {merchant.name} | {', '.join(merchant.categories[:3])}")
    for category in state.category_suggestions[:6]:
        print(f"  cat   | L{category.level} | {category.display_name}")
    for idx, product in enumerate(state.product_suggestions, start=1):
        print(f"  {idx:02d}. {product.name} | {product.price} | id={product.id}")


def interactive_shell(locale: str) -> None:
    print("Interactive marketplace search. Type 'more' for the next page, 'exit' to quit.")
    session = new_session()
    loop = asyncio.new_event_loop()
    try:
        while True:
            try:
                query = input("> ").strip()
            except (EOFError, KeyboardInterrupt):
                print()
                return
            if not query:
                continue
            if query.lower() in {"exit", "quit"}:
                return
            if query.lower() == "more":
                state, eta = loop.run_until_complete(perform_load_more(session, locale))
            else:
                state, eta = loop.run_until_complete(perform_query(session, query, locale))
            pretty_print_state(state, eta)
    finally:
        loop.close()


def batch_mode(file_path: Path, locale: str) -> None:
    session = new_session()
    with file_path.open("r", encoding="utf-8") as fh:
        for line in fh:
            query = line.strip()
            if not query:
                continue
            state, eta = asyncio.run(perform_query(session, query, locale))
            pretty_print_state(state, eta)


def main(argv: Iterable[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="CLI client for the marketplace search engine")
    parser.add_argument("query", nargs="?", help="Query string. If omitted, starts REPL mode.")
    parser.add_argument("--batch", type=Path, help="File with queries to execute line by line")
    parser.add_argument("--locale", default="en", help="Locale for category names")
    args = parser.parse_args(list(argv) if argv is not None else None)

    if args.batch:
        batch_mode(args.batch, args.locale)
        return 0
    if args.query:
        state, eta = asyncio.run(perform_query(new_session(), args.query, args.locale))
        pretty_print_state(state, eta)
        return 1 if state.error_message else 0
    interactive_shell(args.locale)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
