"""Slicing, sorting and paging shared by every listing endpoint."""

import math
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from pymongo import ASCENDING, DESCENDING

DEFAULT_PAGE = 1
DEFAULT_LIMIT = 10
MAX_LIMIT = 100
DEFAULT_SORT_FIELD = "created_at"


def _positive_int(value: Any, default: int) -> int:
    if value is None or isinstance(value, bool):
        return default
    try:
        number = int(str(value).strip())
    except ValueError:
        return default
    return number if number > 0 else default


def normalize_page(page: Any = None, limit: Any = None) -> Tuple[int, int]:
    """Invalid or missing values fall back to page 1, 10 per page."""
    return _positive_int(page, DEFAULT_PAGE), min(_positive_int(limit, DEFAULT_LIMIT), MAX_LIMIT)


def normalize_sort(
    sort: Optional[str] = None,
    order: Optional[str] = None,
    *,
    allowed: Optional[Sequence[str]] = None,
    default_field: str = DEFAULT_SORT_FIELD,
) -> Tuple[str, int]:
    field_name = (sort or "").strip() or default_field
    # operators and dotted paths are never valid sort keys from a client
    if field_name.startswith("$") or "." in field_name:
        field_name = default_field
    if allowed is not None and field_name not in allowed:
        field_name = default_field
    direction = ASCENDING if (order or "").strip().lower() == "asc" else DESCENDING
    return field_name, direction


@dataclass
class Page:
    items: List[Any]
    page: int
    limit: int
    total: int
    extra: Dict[str, Any] = field(default_factory=dict)

    @property
    def total_pages(self) -> int:
        return math.ceil(self.total / self.limit) if self.limit else 0

    def as_response(self) -> Dict[str, Any]:
        body = {
            "success": True,
            "count": len(self.items),
            "total": self.total,
            "totalPages": self.total_pages,
            "page": self.page,
            "data": self.items,
        }
        body.update(self.extra)
        return body


def paginate(
    collection,
    query: Optional[dict] = None,
    *,
    page: Any = None,
    limit: Any = None,
    sort: Optional[str] = None,
    order: Optional[str] = None,
    allowed_sort: Optional[Sequence[str]] = None,
    projection: Optional[dict] = None,
    transform: Optional[Callable[[dict], Any]] = None,
) -> Page:
    """Run ``query`` against ``collection`` and return one sorted page of it."""
    query = query or {}
    page_number, page_size = normalize_page(page, limit)
    sort_field, direction = normalize_sort(sort, order, allowed=allowed_sort)
    skip = (page_number - 1) * page_size

    cursor = (
        collection.find(query, projection)
        .sort([(sort_field, direction)])
        .skip(skip)
        .limit(page_size)
    )
    documents = list(cursor)
    items = [transform(document) for document in documents] if transform else documents
    total = collection.count_documents(query)
    return Page(items=items, page=page_number, limit=page_size, total=total)


__all__ = ["Page", "normalize_page", "normalize_sort", "paginate", "DEFAULT_LIMIT", "MAX_LIMIT"]
