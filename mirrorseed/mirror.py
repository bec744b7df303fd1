"""Keyset-paginated readers over the Funda and Pararius mirror databases."""

from __future__ import annotations

from collections.abc import Iterator
from typing import Any

from sqlalchemy import text
from sqlalchemy.engine import Connection

from mirrorseed.records import MirrorListingRecord
from mirrorseed.records import MirrorPriceHistoryRecord


DEFAULT_FETCH_SIZE = 5000
MIRROR_ID_COLUMNS = {"funda": "funda_id", "pararius": "pararius_id"}


class MirrorReader:
    """
    Streams one mirror's listings and price history joined to their addresses.

    Pages are read with ``WHERE id > :last_id ORDER BY id LIMIT :limit`` so a
    deep page costs the same as the first one. ``city`` narrows both tables to
    addresses in that city (case-insensitive).
    """

    def __init__(
        self,
        conn: Connection,
        source: str,
        *,
        fetch_size: int = DEFAULT_FETCH_SIZE,
        city: str | None = None,
    ) -> None:
        if source not in MIRROR_ID_COLUMNS:
            raise ValueError(f"Unknown mirror source: {source}")
        self.conn = conn
        self.source = source
        self.fetch_size = max(1, int(fetch_size))
        self.city = city.strip() if city and city.strip() else None

    def _city_clause(self) -> str:
        return " AND lower(a.city) = lower(:city)" if self.city else ""

    def _params(self, **extra: Any) -> dict[str, Any]:
        params = dict(extra)
        if self.city:
            params["city"] = self.city
        return params

    def count_listings(self) -> int:
        sql = (
            "SELECT COUNT(*) AS count FROM listings l "
            "JOIN addresses a ON l.address_id = a.id WHERE TRUE" + self._city_clause()
        )
        row = self.conn.execute(text(sql), self._params()).mappings().first()
        return int(row["count"]) if row else 0

    def count_price_history(self) -> int:
        sql = (
            "SELECT COUNT(*) AS count FROM price_history ph "
            "JOIN addresses a ON ph.address_id = a.id WHERE TRUE" + self._city_clause()
        )
        row = self.conn.execute(text(sql), self._params()).mappings().first()
        return int(row["count"]) if row else 0

    def iter_listing_pages(self) -> Iterator[list[MirrorListingRecord]]:
        id_column = MIRROR_ID_COLUMNS[self.source]
        sql = text(
            f"""
            SELECT l.*, l.{id_column} AS mirror_listing_id,
                   a.street, a.house_number, a.house_number_addition,
                   a.postal_code, a.city, a.latitude, a.longitude
            FROM listings l
            JOIN addresses a ON l.address_id = a.id
            WHERE l.id > :last_id{self._city_clause()}
            ORDER BY l.id
            LIMIT :limit
            """
        )
        for rows in self._keyset_pages(sql):
            yield [MirrorListingRecord.from_row(row) for row in rows]

    def iter_price_history_pages(self) -> Iterator[list[MirrorPriceHistoryRecord]]:
        sql = text(
            f"""
            SELECT ph.*, a.postal_code, a.house_number, a.house_number_addition
            FROM price_history ph
            JOIN addresses a ON ph.address_id = a.id
            WHERE ph.id > :last_id{self._city_clause()}
            ORDER BY ph.id
            LIMIT :limit
            """
        )
        for rows in self._keyset_pages(sql):
            yield [MirrorPriceHistoryRecord.from_row(row) for row in rows]

    def _keyset_pages(self, sql: Any) -> Iterator[list[dict[str, Any]]]:
        last_id = 0
        while True:
            rows = [
                dict(row)
                for row in self.conn.execute(
                    sql, self._params(last_id=last_id, limit=self.fetch_size)
                )
                .mappings()
                .all()
            ]
            if not rows:
                return
            yield rows
            if len(rows) < self.fetch_size:
                return
            last_id = rows[-1]["id"]
