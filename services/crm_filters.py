from __future__ import annotations

from typing import Any, Callable, Dict, Iterable, List, Optional

SEARCH_FIELDS = {
    "contacts": ("name", "email", "companyName"),
    "deals": ("dealName", "companyName"),
    "projects": ("title", "companyName", "leadName"),
    "tasks": ("title", "description"),
}

EXACT_FILTERS = {
    "contacts": {"status": "status", "industry": "industry", "source": "source"},
    "deals": {"stage": "stage"},
    "projects": {"status": "status", "lead": "leadId"},
    "tasks": {"status": "status", "priority": "priority"},
}


def _text(value: Any) -> str:
    return str(value or "").strip().lower()


def is_unfiltered(value: Any) -> bool:
    text = _text(value)
    return not text or text == "all"


def matches_search(item: Dict[str, Any], query: Any, fields: Iterable[str]) -> bool:
    needle = _text(query)
    if not needle:
        return True
    return any(needle in _text(item.get(field)) for field in fields)


def matches_exact(item: Dict[str, Any], field: str, expected: Any) -> bool:
    if is_unfiltered(expected):
        return True
    return _text(item.get(field)) == _text(expected)


def build_filter(entity: str, *, search: Any = None, **filters: Any) -> Callable[[Dict[str, Any]], bool]:
    """Predicate combining free-text search with the exact filters of ``entity``.

    Unknown filter names raise ``KeyError`` so callers cannot silently pass
    a filter that is never applied.
    """
    search_fields = SEARCH_FIELDS[entity]
    exact = EXACT_FILTERS[entity]
    active = []
    for name, value in filters.items():
        if name not in exact:
            raise KeyError(f"unknown {entity} filter: {name}")
        if not is_unfiltered(value):
            active.append((exact[name], value))

    def _predicate(item: Dict[str, Any]) -> bool:
        if not matches_search(item, search, search_fields):
            return False
        return all(matches_exact(item, field, value) for field, value in active)

    return _predicate


def apply_filters(
    entity: str,
    items: List[Dict[str, Any]],
    *,
    search: Optional[str] = None,
    **filters: Any,
) -> List[Dict[str, Any]]:
    predicate = build_filter(entity, search=search, **filters)
    return [item for item in items if predicate(item)]


def filters_from_params(entity: str, params: Dict[str, Any]) -> Dict[str, Any]:
    """Pick the exact filters of ``entity`` out of query-string parameters."""
    return {name: params.get(name) for name in EXACT_FILTERS[entity] if params.get(name) is not None}
