"""
VisitBackfillService: the preview / apply entry points of the visit
inference engine.

Flow (preview):
  1. Validate the date window and trip ownership (InputError before any scan).
  2. Load every trip place and the visits already on record.
  3. CandidateGenerator scans pings chunk by chunk.
  4. scoring.classify_all splits candidates into confirmed / suggested.
  5. reconcile() emits new / suggested / stale / existing.

Preview performs no writes, so a cancelled or timed-out preview is simply
returned with truncated=True. Apply is all-or-nothing apart from per-item
skips (see apply.py).
"""

from __future__ import annotations

import logging
import math
import time
from datetime import date

from services.timeline.visits.apply import ApplyEngine
from services.timeline.visits.cancellation import CancellationSignal
from services.timeline.visits.candidates import CandidateGenerator
from services.timeline.visits.engine_config import VisitEngineConfig
from services.timeline.visits.errors import InvalidDateRange, TripNotFound
from services.timeline.visits.reconcile import reconcile
from services.timeline.visits.results import (
    ApplyRequest,
    BackfillInfo,
    BackfillPreview,
    BackfillResult,
)
from services.timeline.visits.scoring import classify_all
from services.timeline.visits.stores import PingStore, PlaceCatalog, VisitStore
from services.timeline.visits.types import DateWindow, PlaceRecord, TripInfo

logger = logging.getLogger(__name__)

# Estimate model for the info endpoint (batched query timings)
ESTIMATE_BASE_MS = 50
ESTIMATE_MS_PER_PLACE = 2
ESTIMATE_LOCATIONS_PER_MS = 100


def validate_window(date_from: date | None, date_to: date | None) -> DateWindow:
    if date_from is not None and date_to is not None and date_from > date_to:
        raise InvalidDateRange(
            f"fromDate ({date_from.isoformat()}) must not be after toDate ({date_to.isoformat()})"
        )
    return DateWindow(date_from=date_from, date_to=date_to)


def estimate_seconds(places_with_coordinates: int, estimated_locations: int) -> int:
    ms = (
        ESTIMATE_BASE_MS
        + places_with_coordinates * ESTIMATE_MS_PER_PLACE
        + estimated_locations // ESTIMATE_LOCATIONS_PER_MS
    )
    return max(1, math.ceil(ms / 1000))


class VisitBackfillService:
    """
    Injected dependencies for testability:
      places  — PlaceCatalog (SQLAlchemy)
      pings   — PingStore (asyncpg + PostGIS)
      visits  — VisitStore (SQLAlchemy, one unit of work per request)
    """

    def __init__(
        self,
        *,
        places: PlaceCatalog,
        pings: PingStore,
        visits: VisitStore,
        config: VisitEngineConfig,
    ) -> None:
        self._places = places
        self._pings = pings
        self._visits = visits
        self._config = config
        self._generator = CandidateGenerator(pings, config)
        self._apply_engine = ApplyEngine(visits, config)

    async def _load_trip(self, user_id: str, trip_id: str) -> tuple[TripInfo, list[PlaceRecord]]:
        trip = await self._places.get_trip(user_id, trip_id)
        if trip is None:
            raise TripNotFound(trip_id)
        places = await self._places.list_places(trip_id)
        return trip, places

    async def preview(
        self,
        *,
        user_id: str,
        trip_id: str,
        date_from: date | None = None,
        date_to: date | None = None,
        signal: CancellationSignal | None = None,
    ) -> BackfillPreview:
        window = validate_window(date_from, date_to)
        started = time.perf_counter()
        signal = signal or CancellationSignal(timeout_s=self._config.preview_timeout_s)

        trip, places = await self._load_trip(user_id, trip_id)
        existing = await self._visits.list_visits(
            user_id, trip_id, sorted(p.place_id for p in places)
        )
        logger.info(
            "Backfill analysis for trip %s (%s): %d places, %d with coords, %d existing visits",
            trip_id,
            trip.name,
            len(places),
            sum(1 for p in places if p.has_coordinate),
            len(existing),
        )

        scan = await self._generator.generate(
            user_id=user_id, places=places, window=window, signal=signal
        )
        confirmed, suggested = classify_all(scan.candidates, self._config)
        buckets = reconcile(
            confirmed=confirmed,
            suggested=suggested,
            existing=existing,
            places=places,
            config=self._config,
        )

        preview = BackfillPreview(
            trip_id=trip.trip_id,
            trip_name=trip.name,
            locations_scanned=scan.locations_scanned,
            places_analyzed=scan.places_scanned,
            analysis_duration_ms=int((time.perf_counter() - started) * 1000),
            new_visits=buckets.new_visits,
            stale_visits=buckets.stale_visits,
            existing_visits=buckets.existing_visits,
            suggested_visits=buckets.suggested_visits,
            warnings=scan.warnings,
            truncated=scan.truncated,
        )
        logger.info(
            "Backfill preview for trip %s: %d candidates, %d suggestions, %d stale, %d unchanged in %dms%s",
            trip_id,
            len(preview.new_visits),
            len(preview.suggested_visits),
            len(preview.stale_visits),
            len(preview.existing_visits),
            preview.analysis_duration_ms,
            " (truncated)" if preview.truncated else "",
        )
        return preview

    async def apply(
        self,
        *,
        user_id: str,
        trip_id: str,
        request: ApplyRequest,
        signal: CancellationSignal | None = None,
    ) -> BackfillResult:
        trip, places = await self._load_trip(user_id, trip_id)
        return await self._apply_engine.apply(
            user_id=user_id, trip=trip, places=places, request=request, signal=signal
        )

    async def info(
        self,
        *,
        user_id: str,
        trip_id: str,
        date_from: date | None = None,
        date_to: date | None = None,
    ) -> BackfillInfo:
        window = validate_window(date_from, date_to)
        trip, places = await self._load_trip(user_id, trip_id)

        with_coords = sum(1 for p in places if p.has_coordinate)
        locations = await self._pings.count_pings(user_id, window)
        existing = await self._visits.count_visits(
            user_id, trip_id, sorted(p.place_id for p in places)
        )
        return BackfillInfo(
            trip_id=trip.trip_id,
            trip_name=trip.name,
            total_places=len(places),
            places_with_coordinates=with_coords,
            estimated_locations=locations,
            estimated_seconds=estimate_seconds(with_coords, locations),
            existing_visits=existing,
        )

    async def clear(self, *, user_id: str, trip_id: str) -> BackfillResult:
        """Delete every visit recorded against the trip."""
        trip = await self._places.get_trip(user_id, trip_id)
        if trip is None:
            raise TripNotFound(trip_id)

        try:
            deleted = await self._visits.delete_for_trip(user_id, trip_id)
            await self._visits.commit()
        except BaseException:
            await self._visits.rollback()
            raise

        logger.info("Cleared %d visits for trip %s", deleted, trip_id)
        return BackfillResult(visits_deleted=deleted, message=f"Deleted {deleted} visits.")
