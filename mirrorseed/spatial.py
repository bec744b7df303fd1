"""Nearest-property fallback for mirror addresses that missed the exact index.

Candidates are loaded into a session-scoped scratch table and resolved with a
single set-based join against ``properties.geometry`` instead of one query per
address.
"""

from __future__ import annotations

import math
import time
from collections.abc import Iterable
from dataclasses import dataclass

from loguru import logger
from sqlalchemy import text
from sqlalchemy.engine import Connection
from sqlalchemy.exc import SQLAlchemyError

from mirrorseed.batch_writer import effective_batch_size
from mirrorseed.records import UnmatchedCandidate


DEFAULT_RADIUS_M = 50.0
REFERENCE_LATITUDE = 52.0
BBOX_SAFETY_FACTOR = 1.5
METERS_PER_DEGREE_LAT = 111_320.0
SCRATCH_TABLE = "_spatial_lookup"
SCRATCH_COLUMNS = 3

CREATE_SCRATCH_SQL = f"""
CREATE TEMP TABLE {SCRATCH_TABLE} (
    cache_key text PRIMARY KEY,
    lon double precision NOT NULL,
    lat double precision NOT NULL,
    geom geometry(Point, 4326)
        GENERATED ALWAYS AS (ST_SetSRID(ST_MakePoint(lon, lat), 4326)) STORED
)
"""
INSERT_SCRATCH_SQL = f"""
INSERT INTO {SCRATCH_TABLE} (cache_key, lon, lat)
VALUES (:cache_key, :lon, :lat)
ON CONFLICT (cache_key) DO NOTHING
"""
NEAREST_PROPERTY_SQL = f"""
SELECT DISTINCT ON (sl.cache_key)
       sl.cache_key,
       p.id AS property_id,
       ST_Distance(p.geometry::geography, sl.geom::geography) AS distance_m
FROM {SCRATCH_TABLE} sl
JOIN properties p ON p.geometry && ST_Expand(sl.geom, :bbox_deg)
WHERE ST_DWithin(p.geometry::geography, sl.geom::geography, :radius_m)
ORDER BY sl.cache_key, distance_m, p.id
"""


@dataclass(frozen=True, slots=True)
class SpatialMatch:
    property_id: str
    distance_m: float


def bbox_degrees(
    radius_m: float,
    reference_latitude: float = REFERENCE_LATITUDE,
    safety_factor: float = BBOX_SAFETY_FACTOR,
) -> float:
    """
    Degrees to expand a point by so the box covers ``radius_m`` in every direction.

    A degree of longitude shrinks with latitude, so the longitude span is the
    wider one and bounds both axes.
    """
    cos_lat = max(math.cos(math.radians(reference_latitude)), 0.01)
    return radius_m / (METERS_PER_DEGREE_LAT * cos_lat) * safety_factor


class SpatialFallbackMatcher:
    def __init__(
        self,
        *,
        radius_m: float = DEFAULT_RADIUS_M,
        reference_latitude: float = REFERENCE_LATITUDE,
        batch_size: int = 4000,
    ) -> None:
        if radius_m <= 0:
            raise ValueError(f"Spatial radius must be positive, got {radius_m}")
        self.radius_m = float(radius_m)
        self.bbox_deg = bbox_degrees(self.radius_m, reference_latitude)
        self.chunk_size = effective_batch_size(batch_size, SCRATCH_COLUMNS)
        self.errors = 0

    def resolve(
        self, conn: Connection, candidates: Iterable[UnmatchedCandidate]
    ) -> dict[str, SpatialMatch]:
        """
        Map each candidate cache key to its nearest property within the radius.

        The first coordinate seen for a cache key is the one used. Keys without
        a property in range are absent from the result. A database failure is
        logged and counted, and yields no matches.
        """
        coordinates: dict[str, dict[str, object]] = {}
        for candidate in candidates:
            coordinates.setdefault(
                candidate.cache_key,
                {"cache_key": candidate.cache_key, "lon": candidate.lon, "lat": candidate.lat},
            )
        if not coordinates:
            return {}

        started = time.monotonic()
        logger.info(
            f"Spatial fallback: {len(coordinates):,} unmatched addresses "
            f"(radius={self.radius_m:g} m)"
        )
        try:
            self._load_scratch(conn, list(coordinates.values()))
            rows = (
                conn.execute(
                    text(NEAREST_PROPERTY_SQL),
                    {"bbox_deg": self.bbox_deg, "radius_m": self.radius_m},
                )
                .mappings()
                .all()
            )
        except SQLAlchemyError as exc:
            self.errors += 1
            logger.error(f"Spatial fallback failed, {len(coordinates):,} addresses stay unmatched: {exc}")
            return {}
        finally:
            self._drop_scratch(conn)

        matches: dict[str, SpatialMatch] = {}
        for row in rows:
            distance = float(row["distance_m"])
            if distance > self.radius_m or row["property_id"] is None:
                continue
            matches[row["cache_key"]] = SpatialMatch(str(row["property_id"]), distance)

        logger.info(
            f"Spatial fallback: {len(matches):,}/{len(coordinates):,} matched "
            f"in {time.monotonic() - started:.1f}s"
        )
        return matches

    def _load_scratch(self, conn: Connection, rows: list[dict[str, object]]) -> None:
        conn.execute(text(f"DROP TABLE IF EXISTS {SCRATCH_TABLE}"))
        conn.execute(text(CREATE_SCRATCH_SQL))
        insert = text(INSERT_SCRATCH_SQL)
        for start in range(0, len(rows), self.chunk_size):
            conn.execute(insert, rows[start : start + self.chunk_size])
        conn.execute(
            text(f"CREATE INDEX {SCRATCH_TABLE}_geom_idx ON {SCRATCH_TABLE} USING GIST (geom)")
        )
        conn.execute(text(f"ANALYZE {SCRATCH_TABLE}"))

    def _drop_scratch(self, conn: Connection) -> None:
        try:
            conn.execute(text(f"DROP TABLE IF EXISTS {SCRATCH_TABLE}"))
        except SQLAlchemyError as exc:
            # Temp tables vanish with the session anyway.
            logger.warning(f"Could not drop {SCRATCH_TABLE}: {exc}")
