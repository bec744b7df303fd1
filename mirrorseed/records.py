"""Typed records at the mirror ingestion boundary and the rows we insert.

Mirror drivers hand back loosely typed mappings; they are converted into the
frozen records below right after the read so nothing untyped travels further
than canonicalization.
"""

from __future__ import annotations

import datetime as dt
import json
from collections.abc import Mapping
from dataclasses import asdict
from dataclasses import dataclass
from decimal import ROUND_HALF_UP
from decimal import Decimal
from decimal import InvalidOperation
from typing import Any

from loguru import logger


LISTING_STATUS_MAP = {
    "available": "active",
    "sold": "sold",
    "rented": "rented",
    "withdrawn": "withdrawn",
}


def _as_text(value: object | None) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text if text else None


def _as_int(value: object | None) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    try:
        return int(float(str(value).strip()))
    except ValueError:
        return None


def _as_float(value: object | None) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _as_date(value: object | None) -> dt.date | None:
    if value is None:
        return None
    if isinstance(value, dt.datetime):
        return value.date()
    if isinstance(value, dt.date):
        return value
    text = str(value).strip()
    if not text:
        return None
    try:
        return dt.date.fromisoformat(text[:10])
    except ValueError:
        return None


def _as_photo_urls(value: object | None) -> tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        try:
            value = json.loads(value)
        except json.JSONDecodeError:
            return ()
    if not isinstance(value, (list, tuple)):
        return ()
    return tuple(str(url) for url in value if url)


def cents_to_euros(cents: object | None) -> int | None:
    """Convert minor currency units to whole euros, rounding half up."""
    if cents is None or isinstance(cents, bool):
        return None
    try:
        amount = Decimal(str(cents).strip())
    except InvalidOperation:
        return None
    if not amount.is_finite():
        return None
    return int((amount / 100).quantize(Decimal(1), rounding=ROUND_HALF_UP))


def map_listing_status(mirror_status: str | None, source: str) -> str:
    status = (mirror_status or "").strip().lower()
    mapped = LISTING_STATUS_MAP.get(status)
    if mapped is None:
        logger.warning(f"Unknown {source} listing status {mirror_status!r}, defaulting to 'active'")
        return "active"
    return mapped


def map_price_event_type(mirror_status: str | None) -> str:
    # Unknown event types pass through unchanged.
    return (mirror_status or "").strip().lower()


def build_og_title(
    street: str | None,
    house_number: str | None,
    addition: str | None,
    city: str | None,
    price_type: str | None,
) -> str:
    prefix = "Te huur" if price_type == "rent" else "Te koop"
    return f"{prefix}: {street or ''} {house_number or ''}{addition or ''}, {city or ''}"


@dataclass(frozen=True, slots=True)
class MirrorListingRecord:
    id: int
    mirror_listing_id: str | None
    listing_url: str
    price_type: str | None
    asking_price_cents: str | None
    living_area_m2: int | None
    num_rooms: int | None
    energy_label: str | None
    status: str
    photo_urls: tuple[str, ...]
    first_seen_at: dt.datetime | None
    last_seen_at: dt.datetime | None
    last_changed_at: dt.datetime | None
    street: str | None
    house_number: str | None
    house_number_addition: str | None
    postal_code: str | None
    city: str | None
    latitude: float | None = None
    longitude: float | None = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> MirrorListingRecord:
        cents = row.get("asking_price_cents")
        return cls(
            id=int(row["id"]),
            mirror_listing_id=_as_text(row.get("mirror_listing_id")),
            listing_url=str(row["listing_url"]),
            price_type=_as_text(row.get("price_type")),
            asking_price_cents=None if cents is None else str(cents),
            living_area_m2=_as_int(row.get("living_area_m2")),
            num_rooms=_as_int(row.get("num_rooms")),
            energy_label=_as_text(row.get("energy_label")),
            status=str(row.get("status") or ""),
            photo_urls=_as_photo_urls(row.get("photo_urls")),
            first_seen_at=row.get("first_seen_at"),
            last_seen_at=row.get("last_seen_at"),
            last_changed_at=row.get("last_changed_at"),
            street=_as_text(row.get("street")),
            house_number=None if row.get("house_number") is None else str(row["house_number"]),
            house_number_addition=_as_text(row.get("house_number_addition")),
            postal_code=_as_text(row.get("postal_code")),
            city=_as_text(row.get("city")),
            latitude=_as_float(row.get("latitude")),
            longitude=_as_float(row.get("longitude")),
        )

    @property
    def has_coordinates(self) -> bool:
        return self.latitude is not None and self.longitude is not None

    @property
    def thumbnail_url(self) -> str | None:
        return self.photo_urls[0] if self.photo_urls else None


@dataclass(frozen=True, slots=True)
class MirrorPriceHistoryRecord:
    id: int
    listing_id: int | None
    price_cents: str | None
    price_date: dt.date | None
    status: str
    postal_code: str | None
    house_number: str | None
    house_number_addition: str | None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> MirrorPriceHistoryRecord:
        cents = row.get("price_cents")
        return cls(
            id=int(row["id"]),
            listing_id=_as_int(row.get("listing_id")),
            price_cents=None if cents is None else str(cents),
            price_date=_as_date(row.get("price_date")),
            status=str(row.get("status") or ""),
            postal_code=_as_text(row.get("postal_code")),
            house_number=None if row.get("house_number") is None else str(row["house_number"]),
            house_number_addition=_as_text(row.get("house_number_addition")),
        )


@dataclass(frozen=True, slots=True)
class UnmatchedCandidate:
    cache_key: str
    lat: float
    lon: float
    record: MirrorListingRecord
    unparseable: bool = False


@dataclass(slots=True)
class ListingRow:
    property_id: str
    source_url: str
    source_name: str
    asking_price: int | None
    price_type: str | None
    living_area_m2: int | None
    num_rooms: int | None
    energy_label: str | None
    status: str
    mirror_listing_id: str | None
    thumbnail_url: str | None
    og_title: str
    mirror_first_seen_at: dt.datetime | None
    mirror_last_changed_at: dt.datetime | None
    mirror_last_seen_at: dt.datetime | None

    @classmethod
    def from_mirror(
        cls, record: MirrorListingRecord, property_id: str, source: str
    ) -> ListingRow:
        return cls(
            property_id=property_id,
            source_url=record.listing_url,
            source_name=source,
            asking_price=cents_to_euros(record.asking_price_cents),
            price_type=record.price_type,
            living_area_m2=record.living_area_m2,
            num_rooms=record.num_rooms,
            energy_label=record.energy_label,
            status=map_listing_status(record.status, source),
            mirror_listing_id=record.mirror_listing_id,
            thumbnail_url=record.thumbnail_url,
            og_title=build_og_title(
                record.street,
                record.house_number,
                record.house_number_addition,
                record.city,
                record.price_type,
            ),
            mirror_first_seen_at=record.first_seen_at,
            mirror_last_changed_at=record.last_changed_at,
            mirror_last_seen_at=record.last_seen_at,
        )

    def as_params(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True)
class PriceHistoryRow:
    property_id: str
    price: int
    price_date: dt.date
    event_type: str
    source: str

    def as_params(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True)
class SourceStats:
    matched: int = 0
    skipped: int = 0
    duplicates: int = 0
    price_history_inserted: int = 0
    errors: int = 0
    # Breakdown counters
    spatial_matched: int = 0
    unparseable: int = 0
    listings_inserted: int = 0
    price_history_duplicates: int = 0
    price_history_skipped: int = 0
    mirror_listings_read: int = 0
    mirror_price_history_read: int = 0

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)
