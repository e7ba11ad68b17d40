"""Weighted ranking of hierarchical category matches against a query term.

Every rule that matches adds its weight, so a category whose name starts with
the query and whose key also starts with it collects both bonuses. The level
penalty is small enough to act only as a tie-break between otherwise equal
scores, favouring broader categories:

    >>> electronics = CategorySuggestion(display_name="Electronics", category_key="Electronics")
    >>> score(electronics, "elec")
    105
"""
from __future__ import annotations

from typing import Iterable, List, Optional

from .models import CategorySuggestion

EXACT_NAME = 100
NAME_PREFIX = 50
CATEGORY_KEY_PREFIX = 30
SUBCATEGORY_KEY_PREFIX = 25
SUBSUBCATEGORY_KEY_PREFIX = 20
NAME_CONTAINS = 15
KEY_CONTAINS = 10
LEVEL_PENALTY = 2


def _fold(value: Optional[str]) -> str:
    return (value or "").strip().casefold()


def score(suggestion: CategorySuggestion, query_term: str) -> int:
    query = _fold(query_term)
    if not query:
        return 0

    name = _fold(suggestion.display_name)
    keys = [
        (_fold(suggestion.category_key), CATEGORY_KEY_PREFIX),
        (_fold(suggestion.subcategory_key), SUBCATEGORY_KEY_PREFIX),
        (_fold(suggestion.subsubcategory_key), SUBSUBCATEGORY_KEY_PREFIX),
    ]

    total = 0
    if name == query:
        total += EXACT_NAME
    if name.startswith(query):
        total += NAME_PREFIX
    for key, weight in keys:
        if key and key.startswith(query):
            total += weight
    if query in name:
        total += NAME_CONTAINS
    if any(key and query in key for key, _ in keys):
        total += KEY_CONTAINS

    return total - LEVEL_PENALTY * suggestion.level


def rank(
    suggestions: Iterable[CategorySuggestion],
    query_term: str,
    max_results: int,
) -> List[CategorySuggestion]:
    """Drop non-positive scores, order by score (stable), keep ``max_results``."""
    scored = [(score(item, query_term), item) for item in suggestions]
    kept = [(value, item) for value, item in scored if value > 0]
    kept.sort(key=lambda pair: pair[0], reverse=True)
    return [item for _, item in kept[: max(max_results, 0)]]
