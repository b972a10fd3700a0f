"""
Reconciler: cross-references scored candidates with the visits already on
record and emits the four preview buckets.

Matching: a candidate matches an existing visit on the same local date when
  - the place id matches, or
  - the visit is orphaned (place id null or no longer in the trip) and its
    place-name snapshot equals the candidate place's current name.
Name matching is restricted to orphans so two live places sharing a name
never suppress each other.

Staleness: a visit is stale when its place is gone, or when the live place
sits farther than the strict radius from the snapshot coordinate.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date

from services.timeline.visits.engine_config import VisitEngineConfig
from services.timeline.visits.geo import coordinate_distance
from services.timeline.visits.results import StaleVisit
from services.timeline.visits.types import PlaceRecord, ScoredCandidate, VisitRecord

logger = logging.getLogger(__name__)

REASON_PLACE_DELETED = "Place was deleted"
REASON_PLACE_REMOVED = "Place no longer exists"
REASON_PLACE_MOVED = "Place was moved"


@dataclass
class Reconciliation:
    new_visits: list[ScoredCandidate] = field(default_factory=list)
    suggested_visits: list[ScoredCandidate] = field(default_factory=list)
    stale_visits: list[StaleVisit] = field(default_factory=list)
    existing_visits: list[VisitRecord] = field(default_factory=list)


def stale_reason(
    visit: VisitRecord, places_by_id: dict[str, PlaceRecord], config: VisitEngineConfig
) -> StaleVisit | None:
    if visit.place_id is None:
        reason, distance = REASON_PLACE_DELETED, None
    elif visit.place_id not in places_by_id:
        reason, distance = REASON_PLACE_REMOVED, None
    else:
        place = places_by_id[visit.place_id]
        # Places without a pin (or visits without a coordinate snapshot) cannot drift
        if place.coordinate is None or visit.place_coordinate_snapshot is None:
            return None
        drift = coordinate_distance(visit.place_coordinate_snapshot, place.coordinate)
        if drift <= config.strict_radius_meters:
            return None
        reason, distance = REASON_PLACE_MOVED, round(drift, 1)

    return StaleVisit(
        visit_id=visit.visit_id,
        place_id=visit.place_id,
        place_name=visit.place_name_snapshot,
        region_name=visit.region_name_snapshot,
        visit_date=visit.visit_date,
        reason=reason,
        distance_meters=distance,
    )


def reconcile(
    *,
    confirmed: list[ScoredCandidate],
    suggested: list[ScoredCandidate],
    existing: list[VisitRecord],
    places: list[PlaceRecord],
    config: VisitEngineConfig,
) -> Reconciliation:
    """
    Partition into new / suggested / stale / existing.

    `places` must be every place in the trip (with or without coordinate) so
    a visit to an unpinned place is not reported as deleted.
    """
    places_by_id = {p.place_id: p for p in places}

    by_place: set[tuple[str, date]] = set()
    by_orphan_name: set[tuple[str, date]] = set()
    for visit in existing:
        if visit.place_id is not None and visit.place_id in places_by_id:
            by_place.add((visit.place_id, visit.visit_date))
        else:
            by_orphan_name.add((visit.place_name_snapshot, visit.visit_date))

    def already_recorded(scored: ScoredCandidate) -> bool:
        c = scored.candidate
        return (c.place.place_id, c.visit_date) in by_place or (
            c.place.name,
            c.visit_date,
        ) in by_orphan_name

    out = Reconciliation()
    out.new_visits = [s for s in confirmed if not already_recorded(s)]
    proposed = {s.candidate.key for s in out.new_visits}
    out.suggested_visits = [
        s for s in suggested if not already_recorded(s) and s.candidate.key not in proposed
    ]

    stale_ids: set[str] = set()
    for visit in existing:
        stale = stale_reason(visit, places_by_id, config)
        if stale is not None:
            out.stale_visits.append(stale)
            stale_ids.add(visit.visit_id)

    out.stale_visits.sort(key=lambda s: (-s.visit_date.toordinal(), s.place_name, s.visit_id))
    out.existing_visits = sorted(
        (v for v in existing if v.visit_id not in stale_ids),
        key=lambda v: (v.arrived_at_utc, v.visit_id),
        reverse=True,
    )

    suppressed = len(confirmed) + len(suggested) - len(out.new_visits) - len(out.suggested_visits)
    if suppressed:
        logger.debug("Suppressed %d candidates already on record", suppressed)
    return out
