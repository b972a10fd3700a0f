"""
Tier classifier and confidence scorer.

Pure functions over VisitCandidate hit statistics; no I/O, no clock.

Classification:
  confirmed: tier-1 hits >= required_hits
  suggested: a check-in within the outer radius, or cross-tier evidence:
                 tier1 >= pair_tier1_hits and tier2 >= pair_tier2_hits
                 tier2 >= 1 and tier3 >= 1 and tier2 + tier3 >= min_cross_tier_hits
               or enough pings in one band, or in total:
                 tier1 >= suggestion_tier1_hits
                 tier2 >= suggestion_tier2_hits
                 tier3 >= suggestion_tier3_hits
                 total >= suggestion_max_hits
  rejected:  everything else (pass-by noise)

The defaults (1+2 pair, 2/3/10 per band, 50 total) keep a lone strict ping
and a handful of distant pass-by pings out of the suggestions.

Confidence (confirmed only):
  hit_score = min(100, 40 + 5.5 * tier1)
  penalty   = 0 within min_radius, growing linearly to 20 at the strict radius
  confidence = clamp(round(hit_score - penalty), 0, 100)

A check-in never confirms on its own; it only flags for review.
"""

from __future__ import annotations

import logging

from services.timeline.visits.engine_config import VisitEngineConfig
from services.timeline.visits.types import Classification, ScoredCandidate, VisitCandidate

logger = logging.getLogger(__name__)

BASE_SCORE = 40.0
SCORE_PER_HIT = 5.5
MAX_DISTANCE_PENALTY = 20.0

CHECKIN_REASON = "User checked in nearby"


def distance_penalty(avg_distance_meters: float, config: VisitEngineConfig) -> float:
    """0 up to the min radius, then linear up to MAX_DISTANCE_PENALTY at the strict radius."""
    lo = config.min_radius_meters
    hi = config.strict_radius_meters
    if avg_distance_meters <= lo or hi <= lo:
        return 0.0
    ratio = (avg_distance_meters - lo) / (hi - lo)
    return min(MAX_DISTANCE_PENALTY, MAX_DISTANCE_PENALTY * ratio)


def confidence_score(hits_tier1: int, avg_distance_meters: float, config: VisitEngineConfig) -> int:
    hit_score = min(100.0, BASE_SCORE + hits_tier1 * SCORE_PER_HIT)
    score = round(hit_score - distance_penalty(avg_distance_meters, config))
    return max(0, min(100, int(score)))


def _format_radius(meters: float) -> str:
    return f"{meters:.0f}m"


def _pings(count: int, radius: str) -> str:
    return f"{count} ping{'s' if count != 1 else ''} within {radius}"


def suggestion_reason(candidate: VisitCandidate, config: VisitEngineConfig) -> str | None:
    """
    Human-readable reason a candidate deserves review, or None if it does not.

    Checked in order: check-in, the two cross-tier rules, then each band on
    its own, then the total count inside the outer radius.
    """
    tiers = config.tiers
    t1, t2, t3 = candidate.hits_tier1, candidate.hits_tier2, candidate.hits_tier3

    if candidate.has_user_checkin:
        return CHECKIN_REASON

    if t1 >= config.pair_tier1_hits and t2 >= config.pair_tier2_hits:
        return (
            f"Cross-tier: {t1} within {_format_radius(tiers.tier1)}"
            f" + {t2} within {_format_radius(tiers.tier2)}"
        )

    if t2 >= 1 and t3 >= 1 and t2 + t3 >= config.min_cross_tier_hits:
        return (
            f"Cross-tier: {t2} pings within {_format_radius(tiers.tier2)}"
            f" + {t3} within {_format_radius(tiers.tier3)}"
        )

    if t1 >= config.suggestion_tier1_hits:
        return _pings(t1, _format_radius(tiers.tier1))
    if t2 >= config.suggestion_tier2_hits:
        return _pings(t2, _format_radius(tiers.tier2))
    if t3 >= config.suggestion_tier3_hits:
        return _pings(t3, _format_radius(tiers.tier3))
    if candidate.hits_total >= config.suggestion_max_hits:
        return _pings(candidate.hits_total, "extended range")

    return None


def classify(candidate: VisitCandidate, config: VisitEngineConfig) -> ScoredCandidate:
    if candidate.hits_tier1 >= config.required_hits:
        return ScoredCandidate(
            candidate=candidate,
            classification=Classification.CONFIRMED,
            confidence=confidence_score(
                candidate.hits_tier1, candidate.avg_distance_meters, config
            ),
        )

    reason = suggestion_reason(candidate, config)
    if reason is not None:
        return ScoredCandidate(
            candidate=candidate,
            classification=Classification.SUGGESTED,
            reason=reason,
        )

    logger.debug(
        "Rejected %s on %s: tiers=%d/%d/%d total=%d",
        candidate.place.place_id,
        candidate.visit_date,
        candidate.hits_tier1,
        candidate.hits_tier2,
        candidate.hits_tier3,
        candidate.hits_total,
    )
    return ScoredCandidate(candidate=candidate, classification=Classification.REJECTED)


def rank_key(scored: ScoredCandidate) -> tuple:
    """
    Total order: confidence desc, avg distance asc, tier-1 hits desc,
    then place name and id so equal evidence still sorts deterministically.
    """
    c = scored.candidate
    return (
        -(scored.confidence or 0),
        c.avg_distance_meters,
        -c.hits_tier1,
        c.place.name,
        c.place.place_id,
    )


def display_key(scored: ScoredCandidate) -> tuple:
    """Newest visit date first, ranking key within a date."""
    return (-scored.candidate.visit_date.toordinal(), *rank_key(scored))


def classify_all(
    candidates: list[VisitCandidate], config: VisitEngineConfig
) -> tuple[list[ScoredCandidate], list[ScoredCandidate]]:
    """Split candidates into (confirmed, suggested), each in display order."""
    confirmed: list[ScoredCandidate] = []
    suggested: list[ScoredCandidate] = []
    for candidate in candidates:
        scored = classify(candidate, config)
        if scored.classification is Classification.CONFIRMED:
            confirmed.append(scored)
        elif scored.classification is Classification.SUGGESTED:
            suggested.append(scored)

    confirmed.sort(key=display_key)
    suggested.sort(key=display_key)
    return confirmed, suggested
