from __future__ import annotations

from typing import Any

import pytest

from mirrorseed.property_index import NIL_UUID
from mirrorseed.property_index import PropertyIndex
from mirrorseed.property_index import PropertyIndexBuilder
from mirrorseed.property_index import load_property_index


def _uuid(n: int) -> str:
    return f"00000000-0000-0000-0000-{n:012d}"


class _FakeResult:
    def __init__(self, rows: list[dict[str, Any]]) -> None:
        self._rows = rows

    def mappings(self) -> _FakeResult:
        return self

    def all(self) -> list[dict[str, Any]]:
        return self._rows


class _PropertiesConnection:
    """Answers keyset page queries over an in-memory properties table."""

    def __init__(self, rows: list[dict[str, Any]]) -> None:
        self.rows = sorted(rows, key=lambda row: row["id"])
        self.execute_calls: list[tuple[str, dict[str, Any] | None]] = []

    def execute(self, statement: Any, params: dict[str, Any] | None = None) -> _FakeResult:
        self.execute_calls.append((str(statement), params))
        assert params is not None
        page = [row for row in self.rows if row["id"] > params["last_id"]]
        return _FakeResult(page[: params["page_size"]])


def _property(n: int, postal_code: str, house_number: Any, addition: str | None = None) -> dict[str, Any]:
    return {
        "id": _uuid(n),
        "postal_code": postal_code,
        "house_number": house_number,
        "house_number_addition": addition,
    }


def test_load_uses_keyset_pages_from_nil_uuid() -> None:
    conn = _PropertiesConnection(
        [_property(n, "1234AB", n) for n in range(1, 6)]
    )

    index = load_property_index(conn, page_size=2)

    assert len(index) == 5
    assert [params["last_id"] for _sql, params in conn.execute_calls] == [
        NIL_UUID,
        _uuid(2),
        _uuid(4),
    ]
    for sql, _params in conn.execute_calls:
        assert "OFFSET" not in sql.upper()
        assert "ORDER BY id" in sql


def test_load_stops_on_empty_page() -> None:
    conn = _PropertiesConnection([_property(n, "1234AB", n) for n in range(1, 5)])

    index = load_property_index(conn, page_size=2)

    assert len(index) == 4
    assert len(conn.execute_calls) == 3


def test_index_keys_are_canonical() -> None:
    conn = _PropertiesConnection(
        [
            _property(1, "1234 ab", 7, "bis"),
            _property(2, "5611AB", "10", None),
        ]
    )

    index = load_property_index(conn)

    assert index.lookup("1234AB|7|BIS") == _uuid(1)
    assert index.lookup("5611AB|10|") == _uuid(2)
    assert index.lookup("0000XX|1|") is None
    assert index.lookup(None) is None


def test_unparseable_property_addresses_are_indexed_by_raw_key() -> None:
    builder = PropertyIndexBuilder()
    builder.add("p1", "12345", "7", None)
    builder.add("p2", "1234AB", "no number", None)

    index = builder.build()

    assert index.lookup("12345|7|") == "p1"
    assert index.raw_keyed == 1
    assert builder.unkeyed == 1
    assert len(index) == 1


def test_collisions_are_last_write_wins_and_counted() -> None:
    conn = _PropertiesConnection(
        [
            _property(1, "1234AB", 7, None),
            _property(2, "1234 ab", "7", ""),
        ]
    )

    index = load_property_index(conn)

    assert index.lookup("1234AB|7|") == _uuid(2)
    assert index.collisions == 1


def test_index_is_read_only() -> None:
    index = PropertyIndex({"1234AB|7|": "p1"})

    with pytest.raises(TypeError):
        index["1234AB|8|"] = "p2"  # type: ignore[index]
    assert dict(index) == {"1234AB|7|": "p1"}
