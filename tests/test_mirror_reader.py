from __future__ import annotations

from typing import Any

import pytest

from mirrorseed.mirror import MirrorReader


class _FakeResult:
    def __init__(
        self,
        *,
        rows: list[dict[str, Any]] | None = None,
        first_row: Any = None,
    ) -> None:
        self._rows = rows or []
        self._first_row = first_row

    def mappings(self) -> _FakeResult:
        return self

    def all(self) -> list[dict[str, Any]]:
        return self._rows

    def first(self) -> Any:
        return self._first_row


class _MirrorConnection:
    def __init__(self, listings: list[dict[str, Any]]) -> None:
        self.listings = listings
        self.execute_calls: list[tuple[str, dict[str, Any] | None]] = []

    def execute(self, statement: Any, params: dict[str, Any] | None = None) -> _FakeResult:
        sql = str(statement)
        self.execute_calls.append((sql, params))
        if "COUNT(*)" in sql:
            return _FakeResult(first_row={"count": len(self.listings)})
        assert params is not None
        page = [row for row in self.listings if row["id"] > params["last_id"]]
        return _FakeResult(rows=page[: params["limit"]])


def _row(row_id: int) -> dict[str, Any]:
    return {
        "id": row_id,
        "mirror_listing_id": f"P-{row_id}",
        "listing_url": f"https://www.pararius.nl/{row_id}",
        "status": "available",
        "postal_code": "5611AB",
        "house_number": str(row_id),
    }


def test_listing_pages_use_keyset_pagination() -> None:
    conn = _MirrorConnection([_row(n) for n in (3, 5, 8, 13, 21)])
    reader = MirrorReader(conn, "pararius", fetch_size=2)

    pages = list(reader.iter_listing_pages())

    assert [[record.id for record in page] for page in pages] == [[3, 5], [8, 13], [21]]
    assert [params["last_id"] for _sql, params in conn.execute_calls] == [0, 5, 13]
    for sql, _params in conn.execute_calls:
        assert "OFFSET" not in sql.upper()
        assert "ORDER BY l.id" in sql
        assert "l.pararius_id AS mirror_listing_id" in sql


def test_count_and_city_filter() -> None:
    conn = _MirrorConnection([_row(1), _row(2)])
    reader = MirrorReader(conn, "funda", city=" Eindhoven ")

    assert reader.count_listings() == 2
    list(reader.iter_price_history_pages())

    for sql, params in conn.execute_calls:
        assert "lower(a.city) = lower(:city)" in sql
        assert params is not None
        assert params["city"] == "Eindhoven"


def test_without_city_there_is_no_city_clause() -> None:
    conn = _MirrorConnection([])
    reader = MirrorReader(conn, "funda")

    assert list(reader.iter_listing_pages()) == []
    sql, params = conn.execute_calls[0]
    assert "lower(a.city)" not in sql
    assert params == {"last_id": 0, "limit": 5000}
    assert "l.funda_id AS mirror_listing_id" in sql


def test_unknown_source_is_rejected() -> None:
    with pytest.raises(ValueError):
        MirrorReader(_MirrorConnection([]), "jaap")
