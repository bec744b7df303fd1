"""In-memory address → property id index over the destination catalog."""

from __future__ import annotations

import time
from collections.abc import Iterator
from collections.abc import Mapping
from types import MappingProxyType

from loguru import logger
from sqlalchemy import text
from sqlalchemy.engine import Connection

from mirrorseed.address import address_key


DEFAULT_INDEX_PAGE_SIZE = 100_000
NIL_UUID = "00000000-0000-0000-0000-000000000000"

PROPERTY_PAGE_SQL = text(
    """
    SELECT id, postal_code, house_number, house_number_addition
    FROM properties
    WHERE id > CAST(:last_id AS uuid)
    ORDER BY id
    LIMIT :page_size
    """
)


class PropertyIndex(Mapping[str, str]):
    """Read-only lookup from canonical (or raw) address key to property id."""

    def __init__(
        self, entries: dict[str, str], *, collisions: int = 0, raw_keyed: int = 0
    ) -> None:
        self._entries = MappingProxyType(dict(entries))
        self.collisions = collisions
        self.raw_keyed = raw_keyed

    def __getitem__(self, key: str) -> str:
        return self._entries[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def lookup(self, key: str | None) -> str | None:
        if key is None:
            return None
        return self._entries.get(key)


class PropertyIndexBuilder:
    def __init__(self) -> None:
        self._entries: dict[str, str] = {}
        self.collisions = 0
        self.raw_keyed = 0
        self.unkeyed = 0

    def add(
        self,
        property_id: str,
        postal_code: str | None,
        house_number: str | int | None,
        addition: str | None,
    ) -> None:
        key, canonical = address_key(postal_code, house_number, addition)
        if key is None:
            self.unkeyed += 1
            return
        if not canonical:
            self.raw_keyed += 1
        previous = self._entries.get(key)
        if previous is not None and previous != property_id:
            self.collisions += 1
            logger.debug(f"Address key collision on {key}: {previous} replaced by {property_id}")
        self._entries[key] = property_id

    def build(self) -> PropertyIndex:
        return PropertyIndex(
            self._entries, collisions=self.collisions, raw_keyed=self.raw_keyed
        )


def load_property_index(
    conn: Connection, *, page_size: int = DEFAULT_INDEX_PAGE_SIZE
) -> PropertyIndex:
    """
    Stream every property address into a ``PropertyIndex``.

    Uses keyset pagination on ``properties.id`` starting from the nil UUID, so
    each page is an index range scan regardless of how deep the scan is.
    """
    page_size = max(1, int(page_size))
    builder = PropertyIndexBuilder()
    last_id = NIL_UUID
    loaded = 0
    started = time.monotonic()

    while True:
        rows = (
            conn.execute(PROPERTY_PAGE_SQL, {"last_id": last_id, "page_size": page_size})
            .mappings()
            .all()
        )
        if not rows:
            break
        for row in rows:
            builder.add(
                str(row["id"]),
                row["postal_code"],
                row["house_number"],
                row["house_number_addition"],
            )
        loaded += len(rows)
        last_id = str(rows[-1]["id"])
        elapsed = max(time.monotonic() - started, 1e-6)
        logger.info(f"Property index: {loaded:,} loaded ({loaded / elapsed:,.0f}/s)")
        if len(rows) < page_size:
            break

    index = builder.build()
    logger.info(
        f"Property index ready: {len(index):,} keys from {loaded:,} properties "
        f"(raw keys={index.raw_keyed:,}, collisions={index.collisions:,}, "
        f"unkeyed={builder.unkeyed:,})"
    )
    return index
