"""
Value types shared across the visit backfill engine.

Everything here is plain data. Stores produce PlaceRecord / PingHit /
VisitRecord, the generator produces VisitCandidate, the scorer produces
ScoredCandidate. None of the candidate types are persisted.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum


class VisitSource(str, Enum):
    """Origin tag stored on PlaceVisitEvent.source."""

    REALTIME = "realtime"
    BACKFILL = "backfill"
    BACKFILL_USER_CONFIRMED = "backfill-user-confirmed"


class Classification(str, Enum):
    CONFIRMED = "confirmed"
    SUGGESTED = "suggested"
    REJECTED = "rejected"


@dataclass(frozen=True)
class Coordinate:
    latitude: float
    longitude: float


@dataclass(frozen=True)
class DateWindow:
    """Inclusive local-date window. Either bound may be open."""

    date_from: date | None = None
    date_to: date | None = None

    def contains(self, day: date) -> bool:
        if self.date_from is not None and day < self.date_from:
            return False
        if self.date_to is not None and day > self.date_to:
            return False
        return True


@dataclass(frozen=True)
class TripInfo:
    trip_id: str
    name: str
    user_id: str


@dataclass(frozen=True)
class PlaceRecord:
    """A trip place as seen by the engine (read-only)."""

    place_id: str
    name: str
    region_name: str
    coordinate: Coordinate | None
    icon_name: str | None = None
    marker_color: str | None = None
    notes_html: str | None = None

    @property
    def has_coordinate(self) -> bool:
        return self.coordinate is not None


@dataclass(frozen=True)
class PingHit:
    """One ping returned by a ping-store range query."""

    timestamp_utc: datetime
    local_date: date
    distance_meters: float
    is_user_invoked: bool = False


@dataclass
class VisitCandidate:
    """
    Aggregated ping evidence for one (place, local date).

    Built incrementally by the generator; only handed out once every ping
    for the place has been folded in.
    """

    place: PlaceRecord
    visit_date: date
    first_seen_utc: datetime
    last_seen_utc: datetime
    min_distance_meters: float
    avg_distance_meters: float = 0.0
    hits_tier1: int = 0
    hits_tier2: int = 0
    hits_tier3: int = 0
    hits_total: int = 0
    has_user_checkin: bool = False

    @property
    def key(self) -> tuple[str, date]:
        return (self.place.place_id, self.visit_date)


@dataclass(frozen=True)
class ScoredCandidate:
    """A candidate after classification."""

    candidate: VisitCandidate
    classification: Classification
    confidence: int | None = None
    reason: str | None = None


@dataclass
class VisitRecord:
    """A persisted PlaceVisitEvent, as read or written by the visit store."""

    visit_id: str
    user_id: str
    place_id: str | None
    visit_date: date
    arrived_at_utc: datetime
    last_seen_at_utc: datetime
    trip_id_snapshot: str
    trip_name_snapshot: str
    region_name_snapshot: str
    place_name_snapshot: str
    place_coordinate_snapshot: Coordinate | None = None
    icon_name_snapshot: str | None = None
    marker_color_snapshot: str | None = None
    notes_html: str | None = None
    ended_at_utc: datetime | None = None
    source: str | None = None

    @property
    def is_open(self) -> bool:
        return self.ended_at_utc is None


@dataclass
class ScanResult:
    """Output of one candidate-generation run."""

    candidates: list[VisitCandidate] = field(default_factory=list)
    locations_scanned: int = 0
    places_scanned: int = 0
    warnings: list[str] = field(default_factory=list)
    truncated: bool = False
