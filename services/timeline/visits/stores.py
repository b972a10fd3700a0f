"""
Boundaries the engine reads from and writes to.

PingStore is backed by asyncpg + PostGIS (postgis.py); PlaceCatalog and
VisitStore by a SQLAlchemy AsyncSession (repository.py). Tests substitute
in-memory fakes.
"""

from __future__ import annotations

from datetime import date
from typing import Protocol

from services.timeline.visits.types import (
    DateWindow,
    PingHit,
    PlaceRecord,
    TripInfo,
    VisitRecord,
)


class PingStore(Protocol):
    """Read-only range queries over one user's location pings."""

    async def range_query(
        self,
        user_id: str,
        place: PlaceRecord,
        outer_radius_meters: float,
        window: DateWindow,
    ) -> list[PingHit]:
        """Pings within outer_radius_meters of the place whose local date is in window."""
        ...

    async def range_query_batch(
        self,
        user_id: str,
        places: list[PlaceRecord],
        outer_radius_meters: float,
        window: DateWindow,
    ) -> dict[str, list[PingHit]]:
        """Same as range_query for a whole chunk in one round trip, keyed by place id."""
        ...

    async def count_pings(self, user_id: str, window: DateWindow) -> int:
        ...


class PlaceCatalog(Protocol):
    """Read-only trip and place lookup."""

    async def get_trip(self, user_id: str, trip_id: str) -> TripInfo | None:
        """The trip if it exists and belongs to user_id."""
        ...

    async def list_places(self, trip_id: str) -> list[PlaceRecord]:
        """Every place in the trip, with or without a coordinate."""
        ...


class VisitStore(Protocol):
    """
    Persisted PlaceVisitEvent access.

    Writes are staged until commit(); rollback() discards them. insert()
    reports a uniqueness violation by returning False and leaves the rest
    of the staged batch intact.
    """

    async def list_visits(
        self, user_id: str, trip_id: str, place_ids: list[str]
    ) -> list[VisitRecord]:
        """Visits whose place is in place_ids or whose trip snapshot is trip_id."""
        ...

    async def count_visits(self, user_id: str, trip_id: str, place_ids: list[str]) -> int:
        ...

    async def exists(self, user_id: str, place_id: str, visit_date: date) -> bool:
        ...

    async def insert(self, record: VisitRecord) -> bool:
        ...

    async def delete(
        self, user_id: str, visit_id: str, trip_id: str, place_ids: list[str]
    ) -> bool:
        """False when the id is unknown or outside the trip scope."""
        ...

    async def delete_for_trip(self, user_id: str, trip_id: str) -> int:
        ...

    async def commit(self) -> None:
        ...

    async def rollback(self) -> None:
        ...
