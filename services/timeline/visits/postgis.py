"""
PostGIS-backed ping store (asyncpg).

PostGIS functions used:
  ST_MakePoint  — construct a point from longitude, latitude
  ST_SetSRID    — assign SRID 4326
  ST_DWithin    — radius filter on geography (meters), index-backed by the
                  expression GIST index in db/sql/place_visit_indexes.sql
  ST_Distance   — exact geography distance in meters

The SQL time filter is the requested local-date window widened by one day
on each side in UTC (no timezone is more than 14h from UTC). The exact
local date of each ping is resolved in Python from its own timezone, and
pings outside the window are dropped there.
"""

from __future__ import annotations

import logging
from datetime import datetime, time, timedelta, timezone
from typing import Any

from services.timeline.visits.geo import local_date_for
from services.timeline.visits.types import DateWindow, PingHit, PlaceRecord

logger = logging.getLogger(__name__)

_PING_POINT = 'ST_SetSRID(ST_MakePoint(l.longitude, l.latitude), 4326)::geography'

_RANGE_SQL = f"""
SELECT
    l."timestamp",
    l."localTimestamp",
    l."timeZoneId",
    COALESCE(l."isUserInvoked", false) AS is_user_invoked,
    ST_Distance(
        {_PING_POINT},
        ST_SetSRID(ST_MakePoint($2, $3), 4326)::geography
    ) AS distance_m
FROM locations l
WHERE l."userId" = $1
  AND ST_DWithin(
        {_PING_POINT},
        ST_SetSRID(ST_MakePoint($2, $3), 4326)::geography,
        $4
  )
  AND ($5::timestamptz IS NULL OR l."timestamp" >= $5)
  AND ($6::timestamptz IS NULL OR l."timestamp" < $6)
ORDER BY l."timestamp"
"""

# One round trip per chunk: places are passed as three parallel arrays
_BATCH_SQL = f"""
SELECT
    p.place_id,
    hit."timestamp",
    hit."localTimestamp",
    hit."timeZoneId",
    hit.is_user_invoked,
    hit.distance_m
FROM unnest($2::text[], $3::float8[], $4::float8[]) AS p(place_id, longitude, latitude)
CROSS JOIN LATERAL (
    SELECT
        l."timestamp",
        l."localTimestamp",
        l."timeZoneId",
        COALESCE(l."isUserInvoked", false) AS is_user_invoked,
        ST_Distance(
            {_PING_POINT},
            ST_SetSRID(ST_MakePoint(p.longitude, p.latitude), 4326)::geography
        ) AS distance_m
    FROM locations l
    WHERE l."userId" = $1
      AND ST_DWithin(
            {_PING_POINT},
            ST_SetSRID(ST_MakePoint(p.longitude, p.latitude), 4326)::geography,
            $5
      )
      AND ($6::timestamptz IS NULL OR l."timestamp" >= $6)
      AND ($7::timestamptz IS NULL OR l."timestamp" < $7)
) hit
ORDER BY p.place_id, hit."timestamp"
"""

_COUNT_SQL = """
SELECT COUNT(*)
FROM locations
WHERE "userId" = $1
  AND ($2::timestamp IS NULL OR "localTimestamp" >= $2)
  AND ($3::timestamp IS NULL OR "localTimestamp" < $3)
"""


def utc_bounds(window: DateWindow) -> tuple[datetime | None, datetime | None]:
    """UTC [lower, upper) bounds covering every ping whose local date can fall in window."""
    lower = upper = None
    if window.date_from is not None:
        lower = datetime.combine(window.date_from - timedelta(days=1), time.min, tzinfo=timezone.utc)
    if window.date_to is not None:
        upper = datetime.combine(window.date_to + timedelta(days=2), time.min, tzinfo=timezone.utc)
    return lower, upper


def local_bounds(window: DateWindow) -> tuple[datetime | None, datetime | None]:
    """Naive device-local [lower, upper) bounds for count estimates."""
    lower = upper = None
    if window.date_from is not None:
        lower = datetime.combine(window.date_from, time.min)
    if window.date_to is not None:
        upper = datetime.combine(window.date_to + timedelta(days=1), time.min)
    return lower, upper


def row_to_hit(row: Any, window: DateWindow) -> PingHit | None:
    local_date = local_date_for(row["timestamp"], row["timeZoneId"], row["localTimestamp"])
    if not window.contains(local_date):
        return None
    return PingHit(
        timestamp_utc=row["timestamp"],
        local_date=local_date,
        distance_meters=float(row["distance_m"]),
        is_user_invoked=bool(row["is_user_invoked"]),
    )


class PostgisPingStore:
    """
    Injected dependencies for testability:
      db  — asyncpg pool (app.state.db) or connection
    """

    def __init__(self, db: Any) -> None:
        self._db = db

    async def range_query(
        self,
        user_id: str,
        place: PlaceRecord,
        outer_radius_meters: float,
        window: DateWindow,
    ) -> list[PingHit]:
        if place.coordinate is None:
            return []
        lower, upper = utc_bounds(window)
        rows = await self._db.fetch(
            _RANGE_SQL,
            user_id,
            place.coordinate.longitude,
            place.coordinate.latitude,
            outer_radius_meters,
            lower,
            upper,
        )
        hits = [row_to_hit(row, window) for row in rows]
        return [h for h in hits if h is not None]

    async def range_query_batch(
        self,
        user_id: str,
        places: list[PlaceRecord],
        outer_radius_meters: float,
        window: DateWindow,
    ) -> dict[str, list[PingHit]]:
        pinned = [p for p in places if p.coordinate is not None]
        if not pinned:
            return {}
        lower, upper = utc_bounds(window)
        rows = await self._db.fetch(
            _BATCH_SQL,
            user_id,
            [p.place_id for p in pinned],
            [p.coordinate.longitude for p in pinned],
            [p.coordinate.latitude for p in pinned],
            outer_radius_meters,
            lower,
            upper,
        )

        by_place: dict[str, list[PingHit]] = {p.place_id: [] for p in pinned}
        for row in rows:
            hit = row_to_hit(row, window)
            if hit is not None:
                by_place[row["place_id"]].append(hit)
        logger.debug("Batched query: %d places, %d rows", len(pinned), len(rows))
        return by_place

    async def count_pings(self, user_id: str, window: DateWindow) -> int:
        lower, upper = local_bounds(window)
        count = await self._db.fetchval(_COUNT_SQL, user_id, lower, upper)
        return int(count or 0)
