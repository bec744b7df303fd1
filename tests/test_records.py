from __future__ import annotations

import datetime as dt
from typing import Any

from loguru import logger

from mirrorseed.records import ListingRow
from mirrorseed.records import MirrorListingRecord
from mirrorseed.records import MirrorPriceHistoryRecord
from mirrorseed.records import build_og_title
from mirrorseed.records import cents_to_euros
from mirrorseed.records import map_listing_status
from mirrorseed.records import map_price_event_type


def _listing_row(**overrides: Any) -> dict[str, Any]:
    row = {
        "id": 11,
        "funda_id": "F-1",
        "mirror_listing_id": "F-1",
        "listing_url": "https://www.funda.nl/koop/eindhoven/huis-1/",
        "price_type": "sale",
        "asking_price_cents": "45000000",
        "living_area_m2": 120,
        "num_rooms": "5",
        "energy_label": "A",
        "status": "available",
        "photo_urls": '["https://cdn.example/1.jpg", "https://cdn.example/2.jpg"]',
        "first_seen_at": dt.datetime(2024, 1, 1, tzinfo=dt.UTC),
        "last_seen_at": dt.datetime(2024, 2, 1, tzinfo=dt.UTC),
        "last_changed_at": None,
        "street": "Kerkstraat",
        "house_number": "12",
        "house_number_addition": "A",
        "postal_code": "5611 AB",
        "city": "Eindhoven",
        "latitude": "51.43",
        "longitude": 5.45,
    }
    row.update(overrides)
    return row


def test_cents_to_euros_rounds_half_up() -> None:
    assert cents_to_euros("450000") == 4500
    assert cents_to_euros(450050) == 4501
    assert cents_to_euros("450049") == 4500
    assert cents_to_euros(12345) == 123


def test_cents_to_euros_rejects_missing_or_garbage() -> None:
    assert cents_to_euros(None) is None
    assert cents_to_euros("") is None
    assert cents_to_euros("n/a") is None
    assert cents_to_euros(True) is None


def test_listing_status_mapping() -> None:
    assert map_listing_status("available", "funda") == "active"
    assert map_listing_status("Sold", "funda") == "sold"
    assert map_listing_status("rented", "pararius") == "rented"
    assert map_listing_status("withdrawn", "pararius") == "withdrawn"


def test_unknown_listing_status_defaults_to_active_with_warning() -> None:
    messages: list[str] = []
    handler_id = logger.add(messages.append, level="WARNING", format="{message}")
    try:
        assert map_listing_status("under_offer", "funda") == "active"
    finally:
        logger.remove(handler_id)

    assert len(messages) == 1
    assert "under_offer" in messages[0]


def test_price_event_type_passes_unknown_values_through() -> None:
    assert map_price_event_type("asking_price") == "asking_price"
    assert map_price_event_type("sold") == "sold"
    assert map_price_event_type("price_drop") == "price_drop"


def test_og_title_for_sale_and_rent() -> None:
    assert (
        build_og_title("Kerkstraat", "12", "A", "Eindhoven", "sale")
        == "Te koop: Kerkstraat 12A, Eindhoven"
    )
    assert (
        build_og_title("Stratumsedijk", "3", None, "Eindhoven", "rent")
        == "Te huur: Stratumsedijk 3, Eindhoven"
    )


def test_listing_record_parses_loose_driver_values() -> None:
    record = MirrorListingRecord.from_row(_listing_row())

    assert record.num_rooms == 5
    assert record.latitude == 51.43
    assert record.has_coordinates
    assert record.photo_urls == ("https://cdn.example/1.jpg", "https://cdn.example/2.jpg")
    assert record.thumbnail_url == "https://cdn.example/1.jpg"


def test_listing_record_without_photos_or_coordinates() -> None:
    record = MirrorListingRecord.from_row(
        _listing_row(photo_urls=None, latitude=None, longitude=None)
    )

    assert record.thumbnail_url is None
    assert not record.has_coordinates


def test_listing_row_from_mirror_builds_insert_params() -> None:
    record = MirrorListingRecord.from_row(_listing_row())

    params = ListingRow.from_mirror(record, "prop-1", "funda").as_params()

    assert len(params) == 15
    assert params["property_id"] == "prop-1"
    assert params["source_url"] == record.listing_url
    assert params["source_name"] == "funda"
    assert params["asking_price"] == 450000
    assert params["status"] == "active"
    assert params["mirror_listing_id"] == "F-1"
    assert params["og_title"] == "Te koop: Kerkstraat 12A, Eindhoven"
    assert params["thumbnail_url"] == "https://cdn.example/1.jpg"
    assert params["mirror_last_seen_at"] == dt.datetime(2024, 2, 1, tzinfo=dt.UTC)


def test_price_history_record_parses_date_strings() -> None:
    record = MirrorPriceHistoryRecord.from_row(
        {
            "id": 3,
            "address_id": 9,
            "listing_id": None,
            "price_cents": 39500000,
            "price_date": "2024-03-05",
            "source": "funda",
            "status": "asking_price",
            "postal_code": "5611AB",
            "house_number": 12,
            "house_number_addition": None,
        }
    )

    assert record.price_date == dt.date(2024, 3, 5)
    assert record.price_cents == "39500000"
    assert record.house_number == "12"
