from __future__ import annotations

import datetime as dt

from sqlalchemy import BigInteger
from sqlalchemy import Date
from sqlalchemy import DateTime
from sqlalchemy import ForeignKey
from sqlalchemy import Index
from sqlalchemy import Integer
from sqlalchemy import String
from sqlalchemy import Text
from sqlalchemy import text
from sqlalchemy.dialects.postgresql import ENUM
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.orm import Mapped
from sqlalchemy.orm import mapped_column
from sqlalchemy.types import UserDefinedType


LISTING_SOURCES = ("funda", "pararius")
LISTING_STATUSES = ("active", "sold", "rented", "withdrawn")


class PointGeometry(UserDefinedType):
    """PostGIS ``geometry(Point, 4326)``; values are only touched from SQL."""

    cache_ok = True

    def get_col_spec(self, **kw) -> str:
        return "geometry(Point, 4326)"


class Base(DeclarativeBase):
    pass


class Property(Base):
    __tablename__ = "properties"

    id: Mapped[str] = mapped_column(
        UUID(as_uuid=False), primary_key=True, server_default=text("gen_random_uuid()")
    )
    bag_identificatie: Mapped[str | None] = mapped_column(String(50), nullable=True)
    street: Mapped[str] = mapped_column(String(255), nullable=False)
    house_number: Mapped[int] = mapped_column(Integer, nullable=False)
    house_number_addition: Mapped[str | None] = mapped_column(String(20), nullable=True)
    city: Mapped[str] = mapped_column(String(100), nullable=False)
    postal_code: Mapped[str] = mapped_column(String(10), nullable=False)
    geometry = mapped_column(PointGeometry(), nullable=True)

    __table_args__ = (
        Index(
            "properties_address_unique_idx",
            "postal_code",
            "house_number",
            "house_number_addition",
            unique=True,
        ),
        Index("properties_geometry_gist_idx", "geometry", postgresql_using="gist"),
    )


class Listing(Base):
    __tablename__ = "listings"

    id: Mapped[str] = mapped_column(
        UUID(as_uuid=False), primary_key=True, server_default=text("gen_random_uuid()")
    )
    property_id: Mapped[str] = mapped_column(
        UUID(as_uuid=False), ForeignKey("properties.id", ondelete="CASCADE"), nullable=False
    )
    source_url: Mapped[str] = mapped_column(Text, nullable=False)
    source_name: Mapped[str] = mapped_column(
        ENUM(*LISTING_SOURCES, name="listing_source", create_type=False), nullable=False
    )
    asking_price: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    price_type: Mapped[str | None] = mapped_column(String(10), nullable=True)
    living_area_m2: Mapped[int | None] = mapped_column(Integer, nullable=True)
    num_rooms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    energy_label: Mapped[str | None] = mapped_column(String(10), nullable=True)
    status: Mapped[str] = mapped_column(
        ENUM(*LISTING_STATUSES, name="listing_status", create_type=False),
        nullable=False,
        server_default="active",
    )
    mirror_listing_id: Mapped[str | None] = mapped_column(String(50), nullable=True)
    thumbnail_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    og_title: Mapped[str | None] = mapped_column(Text, nullable=True)
    mirror_first_seen_at: Mapped[dt.datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    mirror_last_changed_at: Mapped[dt.datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    mirror_last_seen_at: Mapped[dt.datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    __table_args__ = (
        Index("listings_source_url_idx", "source_url", unique=True),
        Index("listings_property_id_idx", "property_id"),
    )


class PriceHistory(Base):
    __tablename__ = "price_history"

    id: Mapped[str] = mapped_column(
        UUID(as_uuid=False), primary_key=True, server_default=text("gen_random_uuid()")
    )
    property_id: Mapped[str] = mapped_column(
        UUID(as_uuid=False), ForeignKey("properties.id", ondelete="CASCADE"), nullable=False
    )
    listing_id: Mapped[str | None] = mapped_column(
        UUID(as_uuid=False), ForeignKey("listings.id", ondelete="SET NULL"), nullable=True
    )
    price: Mapped[int] = mapped_column(BigInteger, nullable=False)
    price_date: Mapped[dt.date] = mapped_column(Date, nullable=False)
    event_type: Mapped[str] = mapped_column(String(20), nullable=False)
    source: Mapped[str] = mapped_column(String(20), nullable=False)

    __table_args__ = (
        Index(
            "price_history_dedup_idx",
            "property_id",
            "price_date",
            "price",
            "event_type",
            unique=True,
        ),
        Index("price_history_property_date_idx", "property_id", "price_date"),
    )


# Natural keys the batch inserts resolve conflicts on. The unique indexes
# backing them must survive the maintenance window.
LISTING_CONFLICT_COLUMNS = ("source_url",)
PRICE_HISTORY_CONFLICT_COLUMNS = ("property_id", "price_date", "price", "event_type")
CONFLICT_INDEX_NAMES = frozenset({"listings_source_url_idx", "price_history_dedup_idx"})
# Unique indexes that stay in place for the whole load.
PRESERVED_INDEX_NAMES = CONFLICT_INDEX_NAMES | {"listings_mirror_dedup_idx"}
