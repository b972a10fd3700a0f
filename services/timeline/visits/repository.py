"""
SQLAlchemy-backed place catalog and visit store.

Both wrap the request-scoped AsyncSession. SqlVisitStore stages writes on
that session; the caller (ApplyEngine / VisitBackfillService.clear) decides
when to commit or roll back. Every insert runs inside a SAVEPOINT so a
uniqueness violation only discards that one row.
"""

from __future__ import annotations

import logging
from datetime import date, datetime, timezone

from sqlalchemy import delete, func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from services.timeline.db.models import Place, PlaceVisitEvent, Region, Trip
from services.timeline.visits.types import Coordinate, PlaceRecord, TripInfo, VisitRecord

logger = logging.getLogger(__name__)


def place_to_record(place: Place, region_name: str) -> PlaceRecord:
    coordinate = None
    if place.latitude is not None and place.longitude is not None:
        coordinate = Coordinate(latitude=place.latitude, longitude=place.longitude)
    return PlaceRecord(
        place_id=place.id,
        name=place.name,
        region_name=region_name,
        coordinate=coordinate,
        icon_name=place.iconName,
        marker_color=place.markerColor,
        notes_html=place.descriptionHtml,
    )


def event_to_record(row: PlaceVisitEvent) -> VisitRecord:
    snapshot = None
    if row.placeLatitudeSnapshot is not None and row.placeLongitudeSnapshot is not None:
        snapshot = Coordinate(
            latitude=row.placeLatitudeSnapshot, longitude=row.placeLongitudeSnapshot
        )
    return VisitRecord(
        visit_id=row.id,
        user_id=row.userId,
        place_id=row.placeId,
        visit_date=row.visitDate,
        arrived_at_utc=row.arrivedAtUtc,
        last_seen_at_utc=row.lastSeenAtUtc,
        ended_at_utc=row.endedAtUtc,
        trip_id_snapshot=row.tripIdSnapshot,
        trip_name_snapshot=row.tripNameSnapshot,
        region_name_snapshot=row.regionNameSnapshot,
        place_name_snapshot=row.placeNameSnapshot,
        place_coordinate_snapshot=snapshot,
        icon_name_snapshot=row.iconNameSnapshot,
        marker_color_snapshot=row.markerColorSnapshot,
        notes_html=row.notesHtml,
        source=row.source,
    )


def record_to_event(record: VisitRecord) -> PlaceVisitEvent:
    coordinate = record.place_coordinate_snapshot
    return PlaceVisitEvent(
        id=record.visit_id,
        userId=record.user_id,
        placeId=record.place_id,
        visitDate=record.visit_date,
        arrivedAtUtc=record.arrived_at_utc,
        lastSeenAtUtc=record.last_seen_at_utc,
        endedAtUtc=record.ended_at_utc,
        tripIdSnapshot=record.trip_id_snapshot,
        tripNameSnapshot=record.trip_name_snapshot,
        regionNameSnapshot=record.region_name_snapshot,
        placeNameSnapshot=record.place_name_snapshot,
        placeLatitudeSnapshot=coordinate.latitude if coordinate else None,
        placeLongitudeSnapshot=coordinate.longitude if coordinate else None,
        iconNameSnapshot=record.icon_name_snapshot,
        markerColorSnapshot=record.marker_color_snapshot,
        notesHtml=record.notes_html,
        source=record.source,
        createdAt=datetime.now(timezone.utc),
    )


def _trip_scope(user_id: str, trip_id: str, place_ids: list[str]):
    """Visits to a place currently in the trip, or created for the trip."""
    return (
        PlaceVisitEvent.userId == user_id,
        or_(
            PlaceVisitEvent.placeId.in_(place_ids),
            PlaceVisitEvent.tripIdSnapshot == trip_id,
        ),
    )


class SqlPlaceCatalog:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get_trip(self, user_id: str, trip_id: str) -> TripInfo | None:
        result = await self._session.execute(
            select(Trip).where(Trip.id == trip_id, Trip.userId == user_id)
        )
        trip = result.scalars().first()
        if trip is None:
            return None
        return TripInfo(trip_id=trip.id, name=trip.name, user_id=trip.userId)

    async def list_places(self, trip_id: str) -> list[PlaceRecord]:
        result = await self._session.execute(
            select(Place, Region.name)
            .join(Region, Place.regionId == Region.id)
            .where(Region.tripId == trip_id)
            .order_by(Region.displayOrder, Place.displayOrder, Place.id)
        )
        return [place_to_record(place, region_name) for place, region_name in result.all()]


class SqlVisitStore:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def list_visits(
        self, user_id: str, trip_id: str, place_ids: list[str]
    ) -> list[VisitRecord]:
        result = await self._session.execute(
            select(PlaceVisitEvent)
            .where(*_trip_scope(user_id, trip_id, place_ids))
            .order_by(PlaceVisitEvent.arrivedAtUtc.desc())
        )
        return [event_to_record(row) for row in result.scalars().all()]

    async def count_visits(self, user_id: str, trip_id: str, place_ids: list[str]) -> int:
        result = await self._session.execute(
            select(func.count())
            .select_from(PlaceVisitEvent)
            .where(*_trip_scope(user_id, trip_id, place_ids))
        )
        return result.scalar() or 0

    async def exists(self, user_id: str, place_id: str, visit_date: date) -> bool:
        result = await self._session.execute(
            select(PlaceVisitEvent.id)
            .where(
                PlaceVisitEvent.userId == user_id,
                PlaceVisitEvent.placeId == place_id,
                PlaceVisitEvent.visitDate == visit_date,
            )
            .limit(1)
        )
        return result.scalars().first() is not None

    async def insert(self, record: VisitRecord) -> bool:
        try:
            async with self._session.begin_nested():
                self._session.add(record_to_event(record))
                await self._session.flush()
        except IntegrityError:
            logger.warning(
                "Unique constraint rejected visit for place %s on %s",
                record.place_id,
                record.visit_date,
            )
            return False
        return True

    async def delete(
        self, user_id: str, visit_id: str, trip_id: str, place_ids: list[str]
    ) -> bool:
        result = await self._session.execute(
            delete(PlaceVisitEvent)
            .where(PlaceVisitEvent.id == visit_id, *_trip_scope(user_id, trip_id, place_ids))
            .execution_options(synchronize_session=False)
        )
        return result.rowcount > 0

    async def delete_for_trip(self, user_id: str, trip_id: str) -> int:
        result = await self._session.execute(
            delete(PlaceVisitEvent)
            .where(
                PlaceVisitEvent.userId == user_id,
                PlaceVisitEvent.tripIdSnapshot == trip_id,
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount

    async def commit(self) -> None:
        await self._session.commit()

    async def rollback(self) -> None:
        await self._session.rollback()
