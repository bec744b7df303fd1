"""End-to-end seeding of listings and price history from the mirror databases.

One ``MirrorSeeder.run`` loads the property index once, opens the maintenance
window on the destination and then drives a ``SourceImporter`` per mirror,
strictly one source after the other.
"""

from __future__ import annotations

import threading
import time
from contextlib import ExitStack
from dataclasses import dataclass
from dataclasses import fields
from pathlib import Path
from typing import Any

from loguru import logger
from sqlalchemy.engine import Connection
from sqlalchemy.exc import SQLAlchemyError

from mirrorseed.batch_writer import DEFAULT_BATCH_SIZE
from mirrorseed.batch_writer import BatchWriter
from mirrorseed.batch_writer import FlushResult
from mirrorseed.db import dsn_tag
from mirrorseed.db import get_engine
from mirrorseed.db import resolve_main_dsn
from mirrorseed.db import resolve_mirror_dsn
from mirrorseed.errors import IndexRestoreError
from mirrorseed.errors import SeedCancelled
from mirrorseed.errors import SeedSetupError
from mirrorseed.indexes import maintenance_window
from mirrorseed.matching import ExactMatcher
from mirrorseed.matching import cache_key_for
from mirrorseed.mirror import DEFAULT_FETCH_SIZE
from mirrorseed.mirror import MirrorReader
from mirrorseed.models import LISTING_CONFLICT_COLUMNS
from mirrorseed.models import LISTING_SOURCES
from mirrorseed.models import PRICE_HISTORY_CONFLICT_COLUMNS
from mirrorseed.models import Listing
from mirrorseed.models import PriceHistory
from mirrorseed.property_index import DEFAULT_INDEX_PAGE_SIZE
from mirrorseed.property_index import PropertyIndex
from mirrorseed.property_index import load_property_index
from mirrorseed.records import ListingRow
from mirrorseed.records import MirrorListingRecord
from mirrorseed.records import PriceHistoryRow
from mirrorseed.records import SourceStats
from mirrorseed.records import UnmatchedCandidate
from mirrorseed.records import cents_to_euros
from mirrorseed.records import map_price_event_type
from mirrorseed.spatial import DEFAULT_RADIUS_M
from mirrorseed.spatial import SpatialFallbackMatcher


LISTING_COLUMNS = len(fields(ListingRow))
PRICE_HISTORY_COLUMNS = len(fields(PriceHistoryRow))
MAX_LOGGED_LISTING_ERRORS = 5
MAX_LOGGED_PRICE_HISTORY_ERRORS = 10


@dataclass(slots=True)
class SeedSettings:
    dry_run: bool = False
    source: str = "both"
    city: str | None = None
    # Connection overrides; environment / defaults otherwise
    db_url: str | None = None
    funda_url: str | None = None
    pararius_url: str | None = None
    # Batching
    batch_size: int = DEFAULT_BATCH_SIZE
    fetch_size: int = DEFAULT_FETCH_SIZE
    index_page_size: int = DEFAULT_INDEX_PAGE_SIZE
    spatial_radius_m: float = DEFAULT_RADIUS_M
    # Logging
    log_level: str = "INFO"
    log_file: Path | None = None

    @property
    def sources(self) -> tuple[str, ...]:
        if self.source == "both":
            return LISTING_SOURCES
        if self.source not in LISTING_SOURCES:
            raise ValueError(f"Unknown source: {self.source}")
        return (self.source,)

    def mirror_url(self, source: str) -> str | None:
        return self.funda_url if source == "funda" else self.pararius_url


class SourceImporter:
    """
    Imports one mirror: listings first, then its price history.

    Listings that miss the exact index but carry coordinates are buffered and
    resolved in one spatial pass at the end of the listing stream. Those
    resolutions are handed to the price history matcher as overrides, so the
    shared property index is never modified.
    """

    def __init__(
        self,
        source: str,
        mirror_conn: Connection,
        main_conn: Connection,
        matcher: ExactMatcher,
        settings: SeedSettings,
        *,
        cancel_event: threading.Event | None = None,
    ) -> None:
        self.source = source
        self.main_conn = main_conn
        self.matcher = matcher
        self.settings = settings
        self.cancel_event = cancel_event or threading.Event()
        self.stats = SourceStats()
        self.reader = MirrorReader(
            mirror_conn, source, fetch_size=settings.fetch_size, city=settings.city
        )
        self.spatial = SpatialFallbackMatcher(
            radius_m=settings.spatial_radius_m, batch_size=settings.batch_size
        )
        self.listing_writer = BatchWriter(
            main_conn,
            Listing.__table__,
            LISTING_CONFLICT_COLUMNS,
            LISTING_COLUMNS,
            batch_size=settings.batch_size,
            dry_run=settings.dry_run,
            label=f"{source} listing batch",
            max_logged_errors=MAX_LOGGED_LISTING_ERRORS,
        )
        self.price_writer = BatchWriter(
            main_conn,
            PriceHistory.__table__,
            PRICE_HISTORY_CONFLICT_COLUMNS,
            PRICE_HISTORY_COLUMNS,
            batch_size=settings.batch_size,
            dry_run=settings.dry_run,
            label=f"{source} price history batch",
            max_logged_errors=MAX_LOGGED_PRICE_HISTORY_ERRORS,
        )
        self.spatial_overrides: dict[str, str] = {}

    def run(self) -> SourceStats:
        logger.info(f"Importing {self.source} listings")
        try:
            self._import_listings()
            self._import_price_history()
        finally:
            self._fold_writer_totals()
        return self.stats

    def _check_cancelled(self) -> None:
        if self.cancel_event.is_set():
            raise SeedCancelled(f"Cancelled while importing {self.source}")

    def _after_flush(self, result: FlushResult | None) -> None:
        if result is not None:
            self._check_cancelled()

    def _import_listings(self) -> None:
        total = self.reader.count_listings()
        logger.info(f"Total {self.source} listings: {total:,}")
        unmatched: list[UnmatchedCandidate] = []
        started = time.monotonic()

        for page in self.reader.iter_listing_pages():
            self._check_cancelled()
            for record in page:
                self.stats.mirror_listings_read += 1
                outcome = self.matcher.match(
                    record.postal_code, record.house_number, record.house_number_addition
                )
                if outcome.matched:
                    self._queue_listing(record, outcome.property_id)
                    continue
                cache_key = cache_key_for(
                    record.postal_code, record.house_number, record.house_number_addition
                )
                if cache_key is not None and record.has_coordinates:
                    unmatched.append(
                        UnmatchedCandidate(
                            cache_key=cache_key,
                            lat=record.latitude,
                            lon=record.longitude,
                            record=record,
                            unparseable=outcome.unparseable,
                        )
                    )
                else:
                    self._skip_listing(outcome.unparseable)
            read = self.stats.mirror_listings_read
            rate = read / max(time.monotonic() - started, 1e-6)
            logger.info(
                f"{self.source} listings: {read:,}/{total:,} read | {self.stats.matched:,} matched "
                f"| {len(unmatched):,} pending spatial | {rate:,.0f}/s"
            )

        self._check_cancelled()
        self._resolve_spatially(unmatched)
        self._after_flush(self.listing_writer.flush())
        logger.info(
            f"{self.source} listings done: {self.listing_writer.inserted:,} inserted, "
            f"{self.listing_writer.duplicates:,} duplicates in {time.monotonic() - started:.1f}s"
        )

    def _skip_listing(self, unparseable: bool) -> None:
        self.stats.skipped += 1
        if unparseable:
            self.stats.unparseable += 1

    def _queue_listing(self, record: MirrorListingRecord, property_id: str) -> None:
        row = ListingRow.from_mirror(record, property_id, self.source)
        self.stats.matched += 1
        self._after_flush(self.listing_writer.add(row.as_params()))

    def _resolve_spatially(self, unmatched: list[UnmatchedCandidate]) -> None:
        if not unmatched:
            return
        matches = self.spatial.resolve(self.main_conn, unmatched)
        resolved = 0
        for candidate in unmatched:
            match = matches.get(candidate.cache_key)
            if match is None:
                self._skip_listing(candidate.unparseable)
                continue
            self.spatial_overrides[candidate.cache_key] = match.property_id
            self.stats.spatial_matched += 1
            resolved += 1
            self._queue_listing(candidate.record, match.property_id)
        logger.info(
            f"Spatial fallback for {self.source}: {len(matches):,} addresses matched, "
            f"{len(unmatched) - resolved:,} listings skipped"
        )

    def _import_price_history(self) -> None:
        total = self.reader.count_price_history()
        logger.info(f"Importing {self.source} price history ({total:,} entries)")
        matcher = self.matcher.with_overrides(self.spatial_overrides)
        started = time.monotonic()

        for page in self.reader.iter_price_history_pages():
            self._check_cancelled()
            for record in page:
                self.stats.mirror_price_history_read += 1
                outcome = matcher.match(
                    record.postal_code, record.house_number, record.house_number_addition
                )
                price = cents_to_euros(record.price_cents)
                if not outcome.matched or price is None or record.price_date is None:
                    self.stats.price_history_skipped += 1
                    continue
                row = PriceHistoryRow(
                    property_id=outcome.property_id,
                    price=price,
                    price_date=record.price_date,
                    event_type=map_price_event_type(record.status),
                    source=self.source,
                )
                self._after_flush(self.price_writer.add(row.as_params()))
            read = self.stats.mirror_price_history_read
            rate = read / max(time.monotonic() - started, 1e-6)
            logger.info(f"{self.source} price history: {read:,}/{total:,} read | {rate:,.0f}/s")

        self._check_cancelled()
        self._after_flush(self.price_writer.flush())
        logger.info(
            f"{self.source} price history done: {self.price_writer.inserted:,} inserted, "
            f"{self.price_writer.duplicates:,} duplicates in {time.monotonic() - started:.1f}s"
        )

    def _fold_writer_totals(self) -> None:
        self.stats.listings_inserted = self.listing_writer.inserted
        self.stats.duplicates = self.listing_writer.duplicates
        self.stats.price_history_inserted = self.price_writer.inserted
        self.stats.price_history_duplicates = self.price_writer.duplicates
        self.stats.errors = (
            self.spatial.errors + self.listing_writer.errors + self.price_writer.errors
        )


class MirrorSeeder:
    def __init__(
        self,
        settings: SeedSettings,
        *,
        cancel_event: threading.Event | None = None,
    ) -> None:
        self.settings = settings
        self.cancel_event = cancel_event or threading.Event()
        self.main_dsn = resolve_main_dsn(settings.db_url)
        self.mirror_dsns = {
            source: resolve_mirror_dsn(source, settings.mirror_url(source))
            for source in settings.sources
        }
        self.stats: dict[str, SourceStats] = {}

    def _connect(
        self, stack: ExitStack, dsn: str, name: str, *, autocommit: bool = False
    ) -> Connection:
        try:
            conn = stack.enter_context(get_engine(dsn).connect())
            if autocommit:
                conn = conn.execution_options(isolation_level="AUTOCOMMIT")
            conn.exec_driver_sql("SELECT 1")
        except SQLAlchemyError as exc:
            raise SeedSetupError(f"Cannot connect to {name} database ({dsn_tag(dsn)}): {exc}") from exc
        logger.info(f"Connected to {name} database ({dsn_tag(dsn)})")
        return conn

    def run(self) -> dict[str, Any]:
        started = time.monotonic()
        settings = self.settings
        logger.info(
            f"Seeding listings: sources={','.join(settings.sources)} dry_run={settings.dry_run} "
            f"city={settings.city or '*'}"
        )
        cancelled = False
        restore_failures: list[str] = []
        index: PropertyIndex | None = None

        with ExitStack() as stack:
            stack.callback(logger.info, "Closed database connections")
            # Every database is checked before anything is written.
            main_conn = self._connect(stack, self.main_dsn, "main", autocommit=True)
            mirror_conns = {
                source: self._connect(stack, dsn, f"{source} mirror")
                for source, dsn in self.mirror_dsns.items()
            }

            index = load_property_index(main_conn, page_size=settings.index_page_size)
            matcher = ExactMatcher(index)

            try:
                with maintenance_window(main_conn, dry_run=settings.dry_run):
                    for source in settings.sources:
                        importer = SourceImporter(
                            source,
                            mirror_conns[source],
                            main_conn,
                            matcher,
                            settings,
                            cancel_event=self.cancel_event,
                        )
                        self.stats[source] = importer.stats
                        try:
                            importer.run()
                        except SQLAlchemyError:
                            importer.stats.errors += 1
                            logger.opt(exception=True).error(
                                f"{source} import aborted by a database error, "
                                "continuing with the next source"
                            )
            except SeedCancelled as exc:
                cancelled = True
                logger.warning(f"{exc}; partial results follow")
            except IndexRestoreError as exc:
                restore_failures = exc.failed

        summary = self._summary(
            index, cancelled, restore_failures, time.monotonic() - started
        )
        self._log_summary(summary)
        return summary

    def _summary(
        self,
        index: PropertyIndex | None,
        cancelled: bool,
        restore_failures: list[str],
        elapsed: float,
    ) -> dict[str, Any]:
        return {
            "dry_run": self.settings.dry_run,
            "cancelled": cancelled,
            "city": self.settings.city,
            "main_db": dsn_tag(self.main_dsn),
            "sources": {source: stats.as_dict() for source, stats in self.stats.items()},
            "property_index_size": len(index) if index is not None else 0,
            "property_index_collisions": index.collisions if index is not None else 0,
            "index_restore_failures": restore_failures,
            "elapsed_seconds": round(elapsed, 2),
        }

    @staticmethod
    def _log_summary(summary: dict[str, Any]) -> None:
        logger.info("=" * 60)
        logger.info("Summary")
        logger.info("=" * 60)
        for source, stats in summary["sources"].items():
            logger.info(
                f"{source.capitalize()}: {stats['matched']:,} matched "
                f"({stats['spatial_matched']:,} spatial), {stats['skipped']:,} skipped, "
                f"{stats['duplicates']:,} duplicates, "
                f"{stats['price_history_inserted']:,} price_history"
            )
            if stats["errors"]:
                logger.warning(f"  Errors: {stats['errors']:,}")
        logger.info(f"Property cache entries: {summary['property_index_size']:,}")
        logger.info(f"Total time: {summary['elapsed_seconds']:.1f}s")
        if summary["index_restore_failures"]:
            logger.error(
                f"Not restored: {', '.join(summary['index_restore_failures'])}"
            )
        if summary["cancelled"]:
            logger.warning("Run was cancelled before all sources finished")
        if summary["dry_run"]:
            logger.info("(DRY RUN - no database changes were made)")
