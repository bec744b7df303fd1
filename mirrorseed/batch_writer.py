"""Buffered multi-row inserts that skip rows already present on the natural key."""

from __future__ import annotations

import datetime as dt
import uuid
from collections.abc import Mapping
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any

from loguru import logger
from sqlalchemy import Table
from sqlalchemy import select
from sqlalchemy import tuple_
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.engine import Connection
from sqlalchemy.exc import SQLAlchemyError


PG_MAX_BIND_PARAMS = 65535
DEFAULT_BATCH_SIZE = 4000


def effective_batch_size(requested_batch_size: int, columns_per_row: int) -> int:
    if requested_batch_size <= 0:
        requested_batch_size = 1
    if columns_per_row <= 0:
        return requested_batch_size
    # Keep margin for dialect/bookkeeping parameters in complex statements.
    max_rows = max(1, (PG_MAX_BIND_PARAMS - 512) // columns_per_row)
    return max(1, min(requested_batch_size, max_rows))


def _key_value(value: Any) -> Any:
    if isinstance(value, uuid.UUID):
        return str(value)
    if isinstance(value, (dt.date, dt.datetime)):
        return value.isoformat()
    return value


@dataclass(frozen=True, slots=True)
class FlushResult:
    inserted: int = 0
    duplicates: int = 0
    failed: int = 0


class BatchWriter:
    """
    Accumulates rows for one table and writes them in bounded batches.

    Each flush is a single ``INSERT ... ON CONFLICT (<key>) DO NOTHING``. The
    batch size is capped so one statement never exceeds the PostgreSQL bind
    parameter limit. A failing batch is dropped as a whole; the error is
    counted and only the first ``max_logged_errors`` are logged.

    With ``dry_run`` nothing is inserted. Existing keys are probed read-only
    and combined with the keys seen earlier in the run, so the counts match
    what a live run would report against the same database.
    """

    def __init__(
        self,
        conn: Connection,
        table: Table,
        conflict_columns: Sequence[str],
        columns_per_row: int,
        *,
        batch_size: int = DEFAULT_BATCH_SIZE,
        dry_run: bool = False,
        label: str = "batch",
        max_logged_errors: int = 5,
    ) -> None:
        if not conflict_columns:
            raise ValueError("conflict_columns must name the natural key")
        self.conn = conn
        self.table = table
        self.conflict_columns = tuple(conflict_columns)
        self.batch_size = effective_batch_size(batch_size, columns_per_row)
        self.dry_run = dry_run
        self.label = label
        self.max_logged_errors = max_logged_errors
        self._buffer: list[dict[str, Any]] = []
        self._seen_keys: set[tuple[Any, ...]] = set()
        # Totals
        self.inserted = 0
        self.duplicates = 0
        self.failed_rows = 0
        self.errors = 0
        self.batches = 0

    def __len__(self) -> int:
        return len(self._buffer)

    def add(self, row: Mapping[str, Any]) -> FlushResult | None:
        self._buffer.append(dict(row))
        if len(self._buffer) >= self.batch_size:
            return self.flush()
        return None

    def flush(self) -> FlushResult:
        if not self._buffer:
            return FlushResult()
        rows = self._buffer
        self._buffer = []
        self.batches += 1

        try:
            inserted = self._count_new_rows(rows) if self.dry_run else self._insert_rows(rows)
        except SQLAlchemyError as exc:
            self._record_failure(exc, len(rows))
            return FlushResult(failed=len(rows))

        result = FlushResult(inserted=inserted, duplicates=len(rows) - inserted)
        self.inserted += result.inserted
        self.duplicates += result.duplicates
        return result

    def _insert_rows(self, rows: list[dict[str, Any]]) -> int:
        stmt = (
            pg_insert(self.table)
            .values(rows)
            .on_conflict_do_nothing(index_elements=list(self.conflict_columns))
        )
        result = self.conn.execute(stmt)
        return max(int(result.rowcount or 0), 0)

    def _row_key(self, row: Mapping[str, Any]) -> tuple[Any, ...]:
        return tuple(_key_value(row[column]) for column in self.conflict_columns)

    def _count_new_rows(self, rows: list[dict[str, Any]]) -> int:
        batch_keys = [self._row_key(row) for row in rows]
        # Probe with the original values so the driver binds proper types.
        to_probe: dict[tuple[Any, ...], tuple[Any, ...]] = {}
        for key, row in zip(batch_keys, rows):
            if key not in self._seen_keys:
                to_probe.setdefault(key, tuple(row[column] for column in self.conflict_columns))
        existing = self._existing_keys(list(to_probe.values())) if to_probe else set()

        new_rows = 0
        for key in batch_keys:
            if key in self._seen_keys or key in existing:
                self._seen_keys.add(key)
                continue
            self._seen_keys.add(key)
            new_rows += 1
        return new_rows

    def _existing_keys(self, keys: list[tuple[Any, ...]]) -> set[tuple[Any, ...]]:
        columns = [self.table.c[name] for name in self.conflict_columns]
        if len(columns) == 1:
            stmt = select(*columns).where(columns[0].in_([key[0] for key in keys]))
        else:
            stmt = select(*columns).where(tuple_(*columns).in_(keys))
        rows = self.conn.execute(stmt).mappings().all()
        return {self._row_key(row) for row in rows}

    def _record_failure(self, exc: SQLAlchemyError, row_count: int) -> None:
        self.errors += 1
        self.failed_rows += row_count
        if self.errors <= self.max_logged_errors:
            logger.error(f"Error in {self.label} ({row_count:,} rows dropped): {exc}")
        elif self.errors == self.max_logged_errors + 1:
            logger.error(f"Further {self.label} errors suppressed")
        try:
            self.conn.rollback()
        except SQLAlchemyError as reset_exc:
            logger.warning(f"Could not reset connection after {self.label} failure: {reset_exc}")
