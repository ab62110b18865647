import pytest
from pymongo import ASCENDING, DESCENDING

from pagination import MAX_LIMIT, Page, normalize_page, normalize_sort, paginate


@pytest.mark.parametrize(
    "page, limit, expected",
    [
        (None, None, (1, 10)),
        ("3", "25", (3, 25)),
        ("0", "-5", (1, 10)),
        ("abc", "1.5", (1, 10)),
        (2, 10_000, (2, MAX_LIMIT)),
    ],
)
def test_normalize_page_falls_back_to_defaults(page, limit, expected) -> None:
    assert normalize_page(page, limit) == expected


def test_normalize_sort_defaults_to_newest_first() -> None:
    assert normalize_sort() == ("created_at", DESCENDING)
    assert normalize_sort("title", "asc", allowed=("title",)) == ("title", ASCENDING)
    assert normalize_sort("$where", "asc") == ("created_at", ASCENDING)
    assert normalize_sort("password", None, allowed=("title",)) == ("created_at", DESCENDING)


def test_paginate_slices_and_counts(database) -> None:
    collection = database["video"]
    collection.insert_many([{"title": f"Lecture {n:02d}", "created_at": n} for n in range(23)])

    first = paginate(collection, {}, page="1", limit="10")
    last = paginate(collection, {}, page=3, limit=10)

    assert first.total == 23
    assert first.total_pages == 3
    assert [item["title"] for item in first.items][:2] == ["Lecture 22", "Lecture 21"]
    assert len(last.items) == 3


def test_paginate_sorts_ascending_on_request(database) -> None:
    collection = database["video"]
    collection.insert_many([{"title": name, "created_at": index} for index, name in enumerate("cab")])
    result = paginate(collection, {}, sort="title", order="asc", allowed_sort=("title",), transform=lambda d: d["title"])
    assert result.items == ["a", "b", "c"]


def test_page_response_envelope() -> None:
    body = Page(items=[{"id": "1"}], page=2, limit=1, total=3, extra={"unreadCount": 4}).as_response()
    assert body == {
        "success": True,
        "count": 1,
        "total": 3,
        "totalPages": 3,
        "page": 2,
        "data": [{"id": "1"}],
        "unreadCount": 4,
    }


def test_limit_is_capped_at_max(database) -> None:
    assert MAX_LIMIT == 100
    assert normalize_page(1, MAX_LIMIT) == (1, 100)
    assert normalize_page(1, MAX_LIMIT + 1) == (1, 100)

    collection = database["video"]
    collection.insert_many([{"title": f"Lecture {n}", "created_at": n} for n in range(105)])
    result = paginate(collection, {}, page=1, limit=500)
    assert result.limit == 100
    assert len(result.items) == 100
    assert result.total_pages == 2
