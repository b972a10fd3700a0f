"""
Preview / apply / info shapes returned to callers.

to_dict() produces the camelCase JSON the web client consumes. Confidence
and tier-hit counts appear here only; they are never persisted.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any

from services.timeline.visits.types import ScoredCandidate, VisitRecord


def _iso(value: date | datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _place_fields(scored: ScoredCandidate) -> dict[str, Any]:
    c = scored.candidate
    place = c.place
    return {
        "placeId": place.place_id,
        "placeName": place.name,
        "regionName": place.region_name,
        "visitDate": _iso(c.visit_date),
        "firstSeenUtc": _iso(c.first_seen_utc),
        "lastSeenUtc": _iso(c.last_seen_utc),
        "latitude": place.coordinate.latitude if place.coordinate else None,
        "longitude": place.coordinate.longitude if place.coordinate else None,
        "iconName": place.icon_name,
        "markerColor": place.marker_color,
    }


def confirmed_to_dict(scored: ScoredCandidate) -> dict[str, Any]:
    c = scored.candidate
    return {
        **_place_fields(scored),
        "locationCount": c.hits_total,
        "avgDistanceMeters": round(c.avg_distance_meters, 1),
        "minDistanceMeters": round(c.min_distance_meters, 1),
        "confidence": scored.confidence,
    }


def suggested_to_dict(scored: ScoredCandidate) -> dict[str, Any]:
    c = scored.candidate
    return {
        **_place_fields(scored),
        "minDistanceMeters": round(c.min_distance_meters, 1),
        "hitsTier1": c.hits_tier1,
        "hitsTier2": c.hits_tier2,
        "hitsTier3": c.hits_tier3,
        "hitsTotal": c.hits_total,
        "hasUserCheckin": c.has_user_checkin,
        "suggestionReason": scored.reason,
    }


def existing_to_dict(visit: VisitRecord) -> dict[str, Any]:
    return {
        "visitId": visit.visit_id,
        "placeId": visit.place_id,
        "placeName": visit.place_name_snapshot,
        "regionName": visit.region_name_snapshot,
        "visitDate": _iso(visit.visit_date),
        "arrivedAtUtc": _iso(visit.arrived_at_utc),
        "isOpen": visit.is_open,
        "source": visit.source,
    }


@dataclass(frozen=True)
class StaleVisit:
    visit_id: str
    place_id: str | None
    place_name: str
    region_name: str
    visit_date: date
    reason: str
    distance_meters: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "visitId": self.visit_id,
            "placeId": self.place_id,
            "placeName": self.place_name,
            "regionName": self.region_name,
            "visitDate": _iso(self.visit_date),
            "reason": self.reason,
            "distanceMeters": self.distance_meters,
        }


@dataclass
class BackfillPreview:
    trip_id: str
    trip_name: str
    locations_scanned: int = 0
    places_analyzed: int = 0
    analysis_duration_ms: int = 0
    new_visits: list[ScoredCandidate] = field(default_factory=list)
    stale_visits: list[StaleVisit] = field(default_factory=list)
    existing_visits: list[VisitRecord] = field(default_factory=list)
    suggested_visits: list[ScoredCandidate] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    truncated: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "tripId": self.trip_id,
            "tripName": self.trip_name,
            "locationsScanned": self.locations_scanned,
            "placesAnalyzed": self.places_analyzed,
            "analysisDurationMs": self.analysis_duration_ms,
            "newVisits": [confirmed_to_dict(s) for s in self.new_visits],
            "staleVisits": [s.to_dict() for s in self.stale_visits],
            "existingVisits": [existing_to_dict(v) for v in self.existing_visits],
            "suggestedVisits": [suggested_to_dict(s) for s in self.suggested_visits],
            "warnings": list(self.warnings),
            "truncated": self.truncated,
        }


@dataclass(frozen=True)
class ApplyItem:
    """One create / confirm entry, identified by (place id, local date)."""

    place_id: str
    visit_date: date
    first_seen_utc: datetime
    last_seen_utc: datetime


@dataclass
class ApplyRequest:
    create_visits: list[ApplyItem] = field(default_factory=list)
    confirmed_suggestions: list[ApplyItem] = field(default_factory=list)
    delete_visit_ids: list[str] = field(default_factory=list)


@dataclass
class BackfillResult:
    success: bool = True
    visits_created: int = 0
    suggestions_confirmed: int = 0
    visits_deleted: int = 0
    skipped: int = 0
    message: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "visitsCreated": self.visits_created,
            "suggestionsConfirmed": self.suggestions_confirmed,
            "visitsDeleted": self.visits_deleted,
            "skipped": self.skipped,
            "message": self.message,
        }


@dataclass(frozen=True)
class BackfillInfo:
    trip_id: str
    trip_name: str
    total_places: int
    places_with_coordinates: int
    estimated_locations: int
    estimated_seconds: int
    existing_visits: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "tripId": self.trip_id,
            "tripName": self.trip_name,
            "totalPlaces": self.total_places,
            "placesWithCoordinates": self.places_with_coordinates,
            "estimatedLocations": self.estimated_locations,
            "estimatedSeconds": self.estimated_seconds,
            "existingVisits": self.existing_visits,
        }
