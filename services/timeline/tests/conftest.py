"""
Shared test fixtures for the timeline service test suite.

Provides:
- engine config + in-memory stores wired into a VisitBackfillService
- factory functions for trips, places, pings and visit records
- async FastAPI test client with the backfill service dependency overridden
"""

import os
import uuid
from datetime import date, datetime, timedelta, timezone
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest
from httpx import ASGITransport, AsyncClient

# Ensure test env vars before any app imports
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("DATABASE_URL", "")
os.environ.setdefault("REDIS_URL", "")
os.environ.setdefault("SENTRY_DSN", "")

from services.timeline.tests.helpers.fakes import (  # noqa: E402
    FakePing,
    FakePingStore,
    FakePlaceCatalog,
    FakeVisitDatabase,
    FakeVisitStore,
    offset_north,
)
from services.timeline.visits import VisitBackfillService, VisitEngineConfig  # noqa: E402
from services.timeline.visits.types import (  # noqa: E402
    Coordinate,
    PlaceRecord,
    TripInfo,
    VisitRecord,
)

USER_ID = "user-1"
OTHER_USER_ID = "user-2"

# Lisbon, Praça do Comércio
ORIGIN = Coordinate(latitude=38.7075, longitude=-9.1364)


# ---------------------------------------------------------------------------
# Factory functions
# ---------------------------------------------------------------------------


def _gen_id() -> str:
    return str(uuid.uuid4())


def make_trip(user_id: str = USER_ID, **overrides: Any) -> TripInfo:
    base = {"trip_id": f"trip-{uuid.uuid4().hex[:8]}", "name": "Lisbon Spring", "user_id": user_id}
    base.update(overrides)
    return TripInfo(**base)


def make_place(name: str = "Cafe A Brasileira", **overrides: Any) -> PlaceRecord:
    base = {
        "place_id": f"place-{uuid.uuid4().hex[:8]}",
        "name": name,
        "region_name": "Chiado",
        "coordinate": ORIGIN,
        "icon_name": "coffee",
        "marker_color": "bg-blue",
        "notes_html": "<p>Try the bica.</p>",
    }
    base.update(overrides)
    return PlaceRecord(**base)


def make_ping(
    place: PlaceRecord,
    meters: float,
    at: datetime,
    user_id: str = USER_ID,
    **overrides: Any,
) -> FakePing:
    """A ping `meters` north of the place, captured at UTC time `at`."""
    base = {
        "user_id": user_id,
        "timestamp_utc": at,
        "coordinate": offset_north(place.coordinate, meters),
        "time_zone_id": "UTC",
        "local_timestamp": None,
        "is_user_invoked": False,
    }
    base.update(overrides)
    return FakePing(**base)


def make_visit(
    place: PlaceRecord,
    trip: TripInfo,
    visit_date: date,
    user_id: str = USER_ID,
    **overrides: Any,
) -> VisitRecord:
    arrived = datetime.combine(visit_date, datetime.min.time(), tzinfo=timezone.utc) + timedelta(hours=10)
    base = {
        "visit_id": _gen_id(),
        "user_id": user_id,
        "place_id": place.place_id,
        "visit_date": visit_date,
        "arrived_at_utc": arrived,
        "last_seen_at_utc": arrived + timedelta(minutes=45),
        "ended_at_utc": arrived + timedelta(minutes=45),
        "trip_id_snapshot": trip.trip_id,
        "trip_name_snapshot": trip.name,
        "region_name_snapshot": place.region_name,
        "place_name_snapshot": place.name,
        "place_coordinate_snapshot": place.coordinate,
        "icon_name_snapshot": place.icon_name,
        "marker_color_snapshot": place.marker_color,
        "source": "backfill",
    }
    base.update(overrides)
    return VisitRecord(**base)


def utc(year: int, month: int, day: int, hour: int = 12, minute: int = 0) -> datetime:
    return datetime(year, month, day, hour, minute, tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Engine fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def config() -> VisitEngineConfig:
    return VisitEngineConfig(chunk_size=4, workers=2, batched_query_threshold=100)


@pytest.fixture
def ping_store() -> FakePingStore:
    return FakePingStore()


@pytest.fixture
def catalog() -> FakePlaceCatalog:
    return FakePlaceCatalog()


@pytest.fixture
def visit_db() -> FakeVisitDatabase:
    return FakeVisitDatabase()


@pytest.fixture
def visit_store(visit_db: FakeVisitDatabase) -> FakeVisitStore:
    return FakeVisitStore(visit_db)


@pytest.fixture
def service(catalog, ping_store, visit_store, config) -> VisitBackfillService:
    return VisitBackfillService(
        places=catalog, pings=ping_store, visits=visit_store, config=config
    )


# ---------------------------------------------------------------------------
# FastAPI test client (backfill service overridden, no external services)
# ---------------------------------------------------------------------------


@pytest.fixture
def mock_redis():
    """Mock Redis client for rate limiter tests."""
    redis = AsyncMock()
    pipe = MagicMock()
    pipe.execute = AsyncMock(return_value=[None, 0, None, None])
    redis.pipeline = MagicMock(return_value=pipe)
    redis.zrange = AsyncMock(return_value=[])
    redis.ping = AsyncMock()
    return redis


@pytest.fixture
async def app(service, config):
    """The FastAPI app with the backfill service wired to the in-memory stores."""
    from services.timeline.config import settings
    from services.timeline.main import app as _app
    from services.timeline.routers.backfill import get_backfill_service

    _app.state.settings = settings
    _app.state.visit_config = config
    _app.state.redis = None
    _app.dependency_overrides[get_backfill_service] = lambda: service
    yield _app
    _app.dependency_overrides.clear()


@pytest.fixture
async def client(app):
    """Async HTTP client bound to the test app."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
