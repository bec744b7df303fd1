"""Drop secondary indexes for the bulk load and always put them back."""

from __future__ import annotations

import re
import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass

from loguru import logger
from sqlalchemy import text
from sqlalchemy.engine import Connection
from sqlalchemy.exc import SQLAlchemyError

from mirrorseed.errors import IndexRestoreError
from mirrorseed.models import PRESERVED_INDEX_NAMES


MANAGED_TABLES = ("listings", "price_history")
DEFAULT_STATEMENT_TIMEOUT = "600s"

# Secondary indexes the schema defines on the managed tables. Recreated on
# every exit even when they were not found on entry, which repairs a database
# left behind by a run that died inside the window.
KNOWN_INDEX_DEFINITIONS = {
    "listings_property_id_idx": (
        "CREATE INDEX IF NOT EXISTS listings_property_id_idx "
        "ON listings USING btree (property_id)"
    ),
    "listings_mirror_dedup_idx": (
        "CREATE UNIQUE INDEX IF NOT EXISTS listings_mirror_dedup_idx "
        "ON listings USING btree (source_name, mirror_listing_id) "
        "WHERE mirror_listing_id IS NOT NULL"
    ),
    "listings_source_status_idx": (
        "CREATE INDEX IF NOT EXISTS listings_source_status_idx "
        "ON listings USING btree (source_name, status)"
    ),
    "listings_mirror_last_changed_idx": (
        "CREATE INDEX IF NOT EXISTS listings_mirror_last_changed_idx "
        "ON listings USING btree (mirror_last_changed_at)"
    ),
    "listings_mirror_last_seen_idx": (
        "CREATE INDEX IF NOT EXISTS listings_mirror_last_seen_idx "
        "ON listings USING btree (mirror_last_seen_at) WHERE status = 'active'"
    ),
    "price_history_property_date_idx": (
        "CREATE INDEX IF NOT EXISTS price_history_property_date_idx "
        "ON price_history USING btree (property_id, price_date)"
    ),
    "price_history_listing_idx": (
        "CREATE INDEX IF NOT EXISTS price_history_listing_idx "
        "ON price_history USING btree (listing_id)"
    ),
}

DISCOVER_INDEXES_SQL = text(
    """
    SELECT i.indexname, i.tablename, i.indexdef
    FROM pg_indexes i
    WHERE i.schemaname = current_schema()
      AND i.tablename IN ('listings', 'price_history')
      AND NOT EXISTS (
          SELECT 1
          FROM pg_constraint c
          WHERE c.conname = i.indexname
            AND c.conrelid = (quote_ident(i.schemaname) || '.' || quote_ident(i.tablename))::regclass
      )
    ORDER BY i.tablename, i.indexname
    """
)

_CREATE_INDEX_RE = re.compile(r"^\s*CREATE\s+(UNIQUE\s+)?INDEX\s+(?!IF\s+NOT\s+EXISTS)", re.IGNORECASE)
_SAFE_IDENTIFIER_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


@dataclass(frozen=True, slots=True)
class IndexDefinition:
    name: str
    table: str
    definition: str


def idempotent_index_sql(indexdef: str) -> str:
    """Rewrite a ``pg_indexes.indexdef`` into ``CREATE ... INDEX IF NOT EXISTS``."""
    return _CREATE_INDEX_RE.sub(
        lambda m: f"CREATE {m.group(1) or ''}INDEX IF NOT EXISTS ", indexdef, count=1
    )


def discover_droppable_indexes(conn: Connection) -> list[IndexDefinition]:
    rows = conn.execute(DISCOVER_INDEXES_SQL).mappings().all()
    found: list[IndexDefinition] = []
    for row in rows:
        name = str(row["indexname"])
        if name in PRESERVED_INDEX_NAMES:
            continue
        if not _SAFE_IDENTIFIER_RE.match(name):
            logger.warning(f"Leaving index with unexpected name in place: {name!r}")
            continue
        found.append(IndexDefinition(name, str(row["tablename"]), str(row["indexdef"])))
    return found


def drop_indexes(conn: Connection, indexes: list[IndexDefinition]) -> None:
    for index in indexes:
        conn.execute(text(f"DROP INDEX IF EXISTS {index.name}"))
        logger.info(f"Dropped index {index.name} on {index.table}")


def _execute_logged(conn: Connection, statement: str, label: str) -> bool:
    started = time.monotonic()
    try:
        conn.execute(text(statement))
    except SQLAlchemyError:
        logger.opt(exception=True).error(f"{label} failed")
        return False
    logger.info(f"{label} done ({time.monotonic() - started:.1f}s)")
    return True


def recreate_indexes(conn: Connection, indexes: list[IndexDefinition]) -> list[str]:
    """Recreate ``indexes`` plus the known definitions; return the names that failed."""
    statements: dict[str, str] = {
        index.name: idempotent_index_sql(index.definition) for index in indexes
    }
    for name, statement in KNOWN_INDEX_DEFINITIONS.items():
        statements.setdefault(name, statement)
    return [
        name
        for name, statement in statements.items()
        if not _execute_logged(conn, statement, f"Index {name}")
    ]


def close_window(conn: Connection, dropped: list[IndexDefinition]) -> list[str]:
    """
    Reset the timeout, recreate indexes and analyze both tables.

    Every statement is attempted even when an earlier one fails. Returns what
    could not be restored.
    """
    logger.info(f"Recreating indexes ({len(dropped)} dropped this run)")
    started = time.monotonic()
    failed: list[str] = []
    if not _execute_logged(conn, "RESET statement_timeout", "Statement timeout reset"):
        failed.append("statement_timeout")
    failed.extend(recreate_indexes(conn, dropped))
    for table in MANAGED_TABLES:
        if not _execute_logged(conn, f"ANALYZE {table}", f"ANALYZE {table}"):
            failed.append(f"ANALYZE {table}")
    if failed:
        logger.error(f"Maintenance window closed with failures: {', '.join(failed)}")
    else:
        logger.info(f"Indexes restored and tables analyzed in {time.monotonic() - started:.1f}s")
    return failed


@contextmanager
def maintenance_window(
    conn: Connection,
    *,
    dry_run: bool = False,
    statement_timeout: str = DEFAULT_STATEMENT_TIMEOUT,
) -> Iterator[list[IndexDefinition]]:
    """
    Drop the secondary indexes of ``listings`` and ``price_history`` for the load.

    The unique indexes in ``PRESERVED_INDEX_NAMES`` and constraint-backed
    indexes stay in place. On exit, including on exceptions and cancellation,
    the statement timeout is reset, every dropped index is recreated and both
    tables are analyzed. When the load itself succeeded but part of that
    cleanup failed, ``IndexRestoreError`` is raised once everything was
    attempted. A dry run yields an empty list and touches nothing.
    """
    if dry_run:
        logger.info("Dry run: leaving indexes in place")
        yield []
        return

    if not re.match(r"^\d+(ms|s|min)?$", statement_timeout):
        raise ValueError(f"Invalid statement timeout: {statement_timeout!r}")

    dropped: list[IndexDefinition] = []
    load_failed = False
    try:
        indexes = discover_droppable_indexes(conn)
        logger.info(f"Dropping {len(indexes)} secondary indexes for bulk load")
        for index in indexes:
            drop_indexes(conn, [index])
            dropped.append(index)
        conn.execute(text(f"SET statement_timeout = '{statement_timeout}'"))
        yield dropped
    except BaseException:
        load_failed = True
        raise
    finally:
        failed = close_window(conn, dropped)
        if failed and not load_failed:
            raise IndexRestoreError(failed)
