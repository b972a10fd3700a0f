"""
End-to-end tests for VisitBackfillService over the in-memory stores:
preview -> apply round trips, input errors, info estimates and clear.
"""

from __future__ import annotations

from dataclasses import replace
from datetime import date, timedelta

import pytest

from services.timeline.tests.conftest import (
    ORIGIN,
    OTHER_USER_ID,
    USER_ID,
    make_ping,
    make_place,
    make_trip,
    make_visit,
    utc,
)
from services.timeline.tests.helpers.fakes import FakeVisitStore, offset_north
from services.timeline.visits import VisitBackfillService
from services.timeline.visits.errors import InvalidDateRange, TripNotFound
from services.timeline.visits.results import ApplyItem, ApplyRequest
from services.timeline.visits.service import estimate_seconds


def _items(scored_list) -> list[ApplyItem]:
    return [
        ApplyItem(
            place_id=s.candidate.place.place_id,
            visit_date=s.candidate.visit_date,
            first_seen_utc=s.candidate.first_seen_utc,
            last_seen_utc=s.candidate.last_seen_utc,
        )
        for s in scored_list
    ]


def _spaced(name: str, place_id: str, slot: int):
    """Places far enough apart that no ping falls inside two outer radii."""
    return make_place(name, place_id=place_id, coordinate=offset_north(ORIGIN, 20_000 * slot))


@pytest.fixture
def trip(catalog):
    trip = make_trip()
    catalog.add_trip(trip)
    return trip


class TestPreviewInputs:
    async def test_from_after_to_is_rejected(self, service, trip, ping_store):
        with pytest.raises(InvalidDateRange):
            await service.preview(
                user_id=USER_ID,
                trip_id=trip.trip_id,
                date_from=date(2025, 4, 5),
                date_to=date(2025, 4, 1),
            )
        assert ping_store.range_calls == []

    async def test_unknown_trip(self, service):
        with pytest.raises(TripNotFound):
            await service.preview(user_id=USER_ID, trip_id="missing")

    async def test_someone_elses_trip(self, service, trip):
        with pytest.raises(TripNotFound):
            await service.preview(user_id=OTHER_USER_ID, trip_id=trip.trip_id)

    async def test_same_day_window_is_valid(self, service, trip):
        preview = await service.preview(
            user_id=USER_ID, trip_id=trip.trip_id, date_from=date(2025, 4, 1), date_to=date(2025, 4, 1)
        )
        assert preview.new_visits == []


class TestPreview:
    async def test_buckets(self, service, catalog, ping_store, visit_db, trip):
        confirmed = _spaced("Miradouro", "confirmed", 0)
        suggested = _spaced("Tram 28 Stop", "suggested", 1)
        noise = _spaced("Bakery", "noise", 2)
        recorded = _spaced("Cathedral", "recorded", 3)
        catalog.add_trip(trip, [confirmed, suggested, noise, recorded])

        day = utc(2025, 4, 2, 10)
        for minute in range(5):
            ping_store.add(make_ping(confirmed, 20, day + timedelta(minutes=minute)))
        for minute in range(6):
            ping_store.add(make_ping(suggested, 200, day + timedelta(minutes=minute)))
        for minute in range(4):
            ping_store.add(make_ping(suggested, 500, day + timedelta(minutes=10 + minute)))
        ping_store.add(make_ping(noise, 10, day))
        for minute in range(3):
            ping_store.add(make_ping(recorded, 10, day + timedelta(minutes=minute)))
        visit_db.seed(make_visit(recorded, trip, date(2025, 4, 2)))

        preview = await service.preview(user_id=USER_ID, trip_id=trip.trip_id)

        assert [s.candidate.place.place_id for s in preview.new_visits] == ["confirmed"]
        assert preview.new_visits[0].confidence > 0
        assert [s.candidate.place.place_id for s in preview.suggested_visits] == ["suggested"]
        assert "cross-tier" in preview.suggested_visits[0].reason.lower()
        assert [v.place_id for v in preview.existing_visits] == ["recorded"]
        assert preview.stale_visits == []
        assert preview.places_analyzed == 4
        assert preview.locations_scanned >= 5 + 10 + 1 + 3
        assert preview.truncated is False
        assert preview.trip_name == trip.name

    async def test_checkin_only_is_suggested(self, service, catalog, ping_store, trip):
        place = make_place("Castle", place_id="castle")
        catalog.add_trip(trip, [place])
        ping_store.add(make_ping(place, 2000, utc(2025, 4, 2), is_user_invoked=True))

        preview = await service.preview(user_id=USER_ID, trip_id=trip.trip_id)

        assert preview.new_visits == []
        [suggestion] = preview.suggested_visits
        assert suggestion.candidate.has_user_checkin is True
        assert "checked in" in suggestion.reason.lower()

    async def test_stale_buckets(self, service, catalog, visit_db, trip):
        live = make_place("Moved Bar", place_id="moved")
        deleted = make_place("Closed Shop", place_id="deleted")
        catalog.add_trip(trip, [replace(live, coordinate=offset_north(ORIGIN, 500))])
        visit_db.seed(make_visit(live, trip, date(2025, 4, 2)))
        visit_db.seed(make_visit(deleted, trip, date(2025, 4, 3), place_id=None))

        preview = await service.preview(user_id=USER_ID, trip_id=trip.trip_id)

        reasons = {s.place_name: s for s in preview.stale_visits}
        assert "deleted" in reasons["Closed Shop"].reason.lower()
        assert reasons["Moved Bar"].distance_meters == pytest.approx(500, abs=0.1)
        assert preview.existing_visits == []

    async def test_preview_is_repeatable(self, service, catalog, ping_store, trip):
        places = [make_place(f"Place {i}", place_id=f"p{i}") for i in range(6)]
        catalog.add_trip(trip, places)
        for i, place in enumerate(places):
            for k in range(i + 1):
                ping_store.add(make_ping(place, 10 + 30 * k, utc(2025, 4, 1 + k % 2, 8 + k)))

        first = await service.preview(user_id=USER_ID, trip_id=trip.trip_id)
        second = await service.preview(user_id=USER_ID, trip_id=trip.trip_id)

        def summary(preview):
            return (
                [(s.candidate.key, s.confidence) for s in preview.new_visits],
                [(s.candidate.key, s.reason) for s in preview.suggested_visits],
            )

        assert summary(first) == summary(second)

    async def test_window_limits_candidates(self, service, catalog, ping_store, trip):
        place = make_place(place_id="p")
        catalog.add_trip(trip, [place])
        for day in (1, 5, 9):
            for minute in range(3):
                ping_store.add(make_ping(place, 10, utc(2025, 4, day, 10, minute)))

        preview = await service.preview(
            user_id=USER_ID, trip_id=trip.trip_id, date_from=date(2025, 4, 4), date_to=date(2025, 4, 6)
        )

        assert [s.candidate.visit_date for s in preview.new_visits] == [date(2025, 4, 5)]

    async def test_to_dict_shape(self, service, catalog, ping_store, trip):
        place = make_place(place_id="p")
        catalog.add_trip(trip, [place])
        for minute in range(4):
            ping_store.add(make_ping(place, 10, utc(2025, 4, 2, 10, minute)))

        data = (await service.preview(user_id=USER_ID, trip_id=trip.trip_id)).to_dict()

        assert data["tripId"] == trip.trip_id
        assert set(data) >= {
            "tripName",
            "locationsScanned",
            "placesAnalyzed",
            "analysisDurationMs",
            "newVisits",
            "staleVisits",
            "existingVisits",
            "suggestedVisits",
            "warnings",
            "truncated",
        }
        [visit] = data["newVisits"]
        assert visit["visitDate"] == "2025-04-02"
        assert visit["confidence"] == 62
        assert visit["locationCount"] == 4


class TestPreviewApplyRoundTrip:
    async def test_apply_then_preview_again(self, service, catalog, ping_store, visit_db, trip):
        place = make_place(place_id="p")
        catalog.add_trip(trip, [place])
        for minute in range(4):
            ping_store.add(make_ping(place, 15, utc(2025, 4, 2, 10, minute)))

        preview = await service.preview(user_id=USER_ID, trip_id=trip.trip_id)
        result = await service.apply(
            user_id=USER_ID,
            trip_id=trip.trip_id,
            request=ApplyRequest(create_visits=_items(preview.new_visits)),
        )
        again = await service.preview(user_id=USER_ID, trip_id=trip.trip_id)

        assert result.visits_created == 1
        assert again.new_visits == []
        assert [v.place_id for v in again.existing_visits] == ["p"]
        [record] = visit_db.rows.values()
        assert record.source == "backfill"

    async def test_place_deleted_between_preview_and_apply(self, service, catalog, ping_store, trip):
        place = make_place(place_id="p")
        catalog.add_trip(trip, [place])
        for minute in range(4):
            ping_store.add(make_ping(place, 15, utc(2025, 4, 2, 10, minute)))

        preview = await service.preview(user_id=USER_ID, trip_id=trip.trip_id)
        catalog.remove_place(trip.trip_id, "p")
        result = await service.apply(
            user_id=USER_ID,
            trip_id=trip.trip_id,
            request=ApplyRequest(create_visits=_items(preview.new_visits)),
        )

        assert (result.visits_created, result.skipped) == (0, 1)

    async def test_apply_unknown_trip(self, service):
        with pytest.raises(TripNotFound):
            await service.apply(user_id=USER_ID, trip_id="missing", request=ApplyRequest())


class TestInfo:
    async def test_counts_and_estimate(self, service, catalog, ping_store, visit_db, trip):
        pinned = make_place(place_id="pinned")
        unpinned = make_place(place_id="unpinned", coordinate=None)
        catalog.add_trip(trip, [pinned, unpinned])
        for hour in range(5):
            ping_store.add(make_ping(pinned, 10, utc(2025, 4, 2, hour)))
        ping_store.add(make_ping(pinned, 10, utc(2025, 4, 2), user_id=OTHER_USER_ID))
        visit_db.seed(make_visit(pinned, trip, date(2025, 4, 2)))

        info = await service.info(user_id=USER_ID, trip_id=trip.trip_id)

        assert info.total_places == 2
        assert info.places_with_coordinates == 1
        assert info.estimated_locations == 5
        assert info.existing_visits == 1
        assert info.estimated_seconds == 1

    async def test_invalid_window(self, service, trip):
        with pytest.raises(InvalidDateRange):
            await service.info(
                user_id=USER_ID, trip_id=trip.trip_id, date_from=date(2025, 5, 1), date_to=date(2025, 4, 1)
            )

    def test_estimate_seconds(self):
        assert estimate_seconds(0, 0) == 1
        # 50 + 2 * 1000 + 500_000 / 100 = 7050ms
        assert estimate_seconds(1000, 500_000) == 8


class TestClear:
    async def test_deletes_trip_visits_only(self, catalog, ping_store, visit_db, config, trip):
        other_trip = make_trip()
        place = make_place()
        visit_db.seed(make_visit(place, trip, date(2025, 4, 2)))
        visit_db.seed(make_visit(place, trip, date(2025, 4, 3)))
        keep = make_visit(place, other_trip, date(2025, 4, 4))
        visit_db.seed(keep)
        store = FakeVisitStore(visit_db)
        service = VisitBackfillService(places=catalog, pings=ping_store, visits=store, config=config)

        result = await service.clear(user_id=USER_ID, trip_id=trip.trip_id)

        assert result.visits_deleted == 2
        assert result.message == "Deleted 2 visits."
        assert list(visit_db.rows) == [keep.visit_id]
        assert store.commits == 1

    async def test_unknown_trip(self, service):
        with pytest.raises(TripNotFound):
            await service.clear(user_id=USER_ID, trip_id="missing")
