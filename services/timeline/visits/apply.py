"""
Apply engine: commits a user-approved subset of a preview.

All creates and deletes are staged on one VisitStore unit of work and
committed once at the end; any exception (including cancellation) rolls
the whole batch back.

Per-item skips are expected outcomes, not errors:
  - the place no longer exists in the trip
  - a visit for (user, place, date) is already on record, was staged
    earlier in this batch, or appeared concurrently (exists() pre-check)
  - the uniqueness index rejected the insert (a concurrent apply won)
  - a delete targets an id that is gone or outside the trip
"""

from __future__ import annotations

import logging
import uuid
from datetime import date

from services.timeline.visits.cancellation import CancellationSignal
from services.timeline.visits.engine_config import VisitEngineConfig
from services.timeline.visits.results import ApplyItem, ApplyRequest, BackfillResult
from services.timeline.visits.stores import VisitStore
from services.timeline.visits.types import PlaceRecord, TripInfo, VisitRecord, VisitSource

logger = logging.getLogger(__name__)


def truncate_notes(notes_html: str | None, max_chars: int) -> str | None:
    if notes_html is None or len(notes_html) <= max_chars:
        return notes_html
    return notes_html[:max_chars]


def build_visit_record(
    *,
    user_id: str,
    trip: TripInfo,
    place: PlaceRecord,
    item: ApplyItem,
    source: VisitSource,
    config: VisitEngineConfig,
) -> VisitRecord:
    """Copy the live place into an immutable snapshot record."""
    return VisitRecord(
        visit_id=str(uuid.uuid4()),
        user_id=user_id,
        place_id=place.place_id,
        visit_date=item.visit_date,
        arrived_at_utc=item.first_seen_utc,
        last_seen_at_utc=item.last_seen_utc,
        # Backfilled visits are historical, so they are closed on creation
        ended_at_utc=item.last_seen_utc,
        trip_id_snapshot=trip.trip_id,
        trip_name_snapshot=trip.name,
        region_name_snapshot=place.region_name,
        place_name_snapshot=place.name,
        place_coordinate_snapshot=place.coordinate,
        icon_name_snapshot=place.icon_name,
        marker_color_snapshot=place.marker_color,
        notes_html=truncate_notes(place.notes_html, config.notes_snapshot_max_chars),
        source=source.value,
    )


class ApplyEngine:
    def __init__(self, visits: VisitStore, config: VisitEngineConfig) -> None:
        self._visits = visits
        self._config = config

    async def apply(
        self,
        *,
        user_id: str,
        trip: TripInfo,
        places: list[PlaceRecord],
        request: ApplyRequest,
        signal: CancellationSignal | None = None,
    ) -> BackfillResult:
        signal = signal or CancellationSignal()
        places_by_id = {p.place_id: p for p in places}
        place_ids = sorted(places_by_id)

        existing = await self._visits.list_visits(user_id, trip.trip_id, place_ids)
        recorded_by_place: set[tuple[str, date]] = set()
        recorded_by_name: set[tuple[str, date]] = set()
        for visit in existing:
            if visit.place_id is not None and visit.place_id in places_by_id:
                recorded_by_place.add((visit.place_id, visit.visit_date))
            else:
                recorded_by_name.add((visit.place_name_snapshot, visit.visit_date))

        result = BackfillResult()

        async def create(item: ApplyItem, source: VisitSource) -> bool:
            signal.raise_if_cancelled()
            place = places_by_id.get(item.place_id)
            if place is None:
                logger.info("Skipping %s on %s: place no longer in trip", item.place_id, item.visit_date)
                return False

            key = (place.place_id, item.visit_date)
            if key in recorded_by_place or (place.name, item.visit_date) in recorded_by_name:
                return False
            if await self._visits.exists(user_id, place.place_id, item.visit_date):
                return False

            record = build_visit_record(
                user_id=user_id,
                trip=trip,
                place=place,
                item=item,
                source=source,
                config=self._config,
            )
            if not await self._visits.insert(record):
                logger.warning(
                    "Visit for place %s on %s already exists (concurrent apply); skipped",
                    place.place_id,
                    item.visit_date,
                )
                return False

            recorded_by_place.add(key)
            return True

        try:
            for item in request.create_visits:
                if await create(item, VisitSource.BACKFILL):
                    result.visits_created += 1
                else:
                    result.skipped += 1

            for item in request.confirmed_suggestions:
                if await create(item, VisitSource.BACKFILL_USER_CONFIRMED):
                    result.suggestions_confirmed += 1
                else:
                    result.skipped += 1

            for visit_id in dict.fromkeys(request.delete_visit_ids):
                signal.raise_if_cancelled()
                if await self._visits.delete(user_id, visit_id, trip.trip_id, place_ids):
                    result.visits_deleted += 1
                else:
                    result.skipped += 1

            signal.raise_if_cancelled()
            await self._visits.commit()
        except BaseException:
            await self._visits.rollback()
            raise

        total = result.visits_created + result.suggestions_confirmed
        result.message = (
            f"Created {total} visits ({result.visits_created} matched, "
            f"{result.suggestions_confirmed} confirmed), "
            f"deleted {result.visits_deleted} stale visits, skipped {result.skipped}."
        )
        logger.info(
            "Backfill applied for trip %s: %d created, %d confirmed suggestions, %d deleted, %d skipped",
            trip.trip_id,
            result.visits_created,
            result.suggestions_confirmed,
            result.visits_deleted,
            result.skipped,
        )
        return result
