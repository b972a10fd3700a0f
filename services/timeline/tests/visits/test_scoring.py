"""
Tests for the tier classifier and confidence scorer.

Pure functions; no stores or event loop.
"""

from __future__ import annotations

from datetime import date, timedelta

import pytest

from services.timeline.tests.conftest import make_place, utc
from services.timeline.visits.engine_config import VisitEngineConfig
from services.timeline.visits.scoring import (
    CHECKIN_REASON,
    classify,
    classify_all,
    confidence_score,
    distance_penalty,
    rank_key,
)
from services.timeline.visits.types import Classification, ScoredCandidate, VisitCandidate

CONFIG = VisitEngineConfig()


def _candidate(
    tier1: int = 0,
    tier2: int = 0,
    tier3: int = 0,
    beyond: int = 0,
    avg: float = 20.0,
    checkin: bool = False,
    place=None,
    visit_date: date = date(2025, 4, 2),
) -> VisitCandidate:
    seen = utc(2025, 4, 2, 10)
    return VisitCandidate(
        place=place or make_place(),
        visit_date=visit_date,
        first_seen_utc=seen,
        last_seen_utc=seen + timedelta(minutes=30),
        min_distance_meters=avg,
        avg_distance_meters=avg,
        hits_tier1=tier1,
        hits_tier2=tier2,
        hits_tier3=tier3,
        hits_total=tier1 + tier2 + tier3 + beyond,
        has_user_checkin=checkin,
    )


# ---------------------------------------------------------------------------
# Classification thresholds
# ---------------------------------------------------------------------------


class TestClassification:
    def test_five_strict_hits_close_by_is_confirmed(self):
        scored = classify(_candidate(tier1=5, avg=20.0), CONFIG)
        assert scored.classification is Classification.CONFIRMED
        assert scored.confidence is not None
        assert 0 < scored.confidence <= 100
        assert scored.reason is None

    def test_single_strict_hit_is_rejected(self):
        scored = classify(_candidate(tier1=1), CONFIG)
        assert scored.classification is Classification.REJECTED
        assert scored.confidence is None

    def test_required_hits_is_configurable(self):
        strict = VisitEngineConfig(required_hits=6)
        assert classify(_candidate(tier1=5), strict).classification is not Classification.CONFIRMED
        assert classify(_candidate(tier1=6), strict).classification is Classification.CONFIRMED

    def test_cross_tier_spread_is_suggested_not_confirmed(self):
        scored = classify(_candidate(tier1=0, tier2=6, tier3=4, avg=400.0), CONFIG)
        assert scored.classification is Classification.SUGGESTED
        assert "cross-tier" in scored.reason.lower()
        assert "6" in scored.reason
        assert "4" in scored.reason

    def test_cross_tier_below_minimum_total_is_rejected(self):
        scored = classify(_candidate(tier2=2, tier3=2, avg=400.0), CONFIG)
        assert scored.classification is Classification.REJECTED

    def test_cross_tier_needs_both_bands(self):
        scored = classify(_candidate(tier2=0, tier3=9, avg=600.0), CONFIG)
        assert scored.classification is Classification.REJECTED

    def test_one_strict_plus_two_moderate_is_suggested(self):
        scored = classify(_candidate(tier1=1, tier2=2, avg=160.0), CONFIG)
        assert scored.classification is Classification.SUGGESTED
        assert scored.reason.startswith("Cross-tier:")

    def test_checkin_alone_is_suggested_never_confirmed(self):
        scored = classify(_candidate(beyond=1, checkin=True, avg=2000.0), CONFIG)
        assert scored.classification is Classification.SUGGESTED
        assert scored.reason == CHECKIN_REASON
        assert scored.confidence is None

    def test_checkin_does_not_block_confirmation(self):
        scored = classify(_candidate(tier1=3, checkin=True), CONFIG)
        assert scored.classification is Classification.CONFIRMED

    def test_pings_beyond_tier3_alone_are_noise(self):
        scored = classify(_candidate(beyond=40, avg=3000.0), CONFIG)
        assert scored.classification is Classification.REJECTED


class TestSuggestionThresholds:
    def test_moderate_band_alone(self):
        assert classify(_candidate(tier2=2, avg=250.0), CONFIG).classification is Classification.REJECTED
        scored = classify(_candidate(tier2=3, avg=250.0), CONFIG)
        assert scored.classification is Classification.SUGGESTED
        assert scored.reason == "3 pings within 300m"

    def test_wide_band_alone(self):
        scored = classify(_candidate(tier3=10, avg=600.0), CONFIG)
        assert scored.classification is Classification.SUGGESTED
        assert scored.reason == "10 pings within 750m"

    def test_total_inside_outer_radius(self):
        scored = classify(_candidate(beyond=50, avg=3000.0), CONFIG)
        assert scored.classification is Classification.SUGGESTED
        assert scored.reason == "50 pings within extended range"

    def test_strict_band_below_required_hits(self):
        config = VisitEngineConfig(required_hits=6)
        scored = classify(_candidate(tier1=5), config)
        assert scored.classification is Classification.SUGGESTED
        assert scored.reason == "5 pings within 150m"

    def test_singular_ping(self):
        config = VisitEngineConfig(required_hits=3, suggestion_tier1_hits=1)
        assert classify(_candidate(tier1=1), config).reason == "1 ping within 150m"

    def test_cross_tier_reason_wins_over_single_band(self):
        scored = classify(_candidate(tier2=6, tier3=4, avg=400.0), CONFIG)
        assert scored.reason == "Cross-tier: 6 pings within 300m + 4 within 750m"

    def test_pair_rule_is_tunable(self):
        config = VisitEngineConfig(pair_tier2_hits=3)
        assert classify(_candidate(tier1=1, tier2=2), config).classification is Classification.REJECTED
        scored = classify(_candidate(tier1=1, tier2=3), config)
        assert scored.reason == "Cross-tier: 1 within 150m + 3 within 300m"

    def test_band_thresholds_are_tunable(self):
        config = VisitEngineConfig(suggestion_tier2_hits=5, suggestion_max_hits=100)
        assert classify(_candidate(tier2=4), config).classification is Classification.REJECTED
        assert classify(_candidate(beyond=60), config).classification is Classification.REJECTED
        assert classify(_candidate(beyond=100), config).classification is Classification.SUGGESTED


# ---------------------------------------------------------------------------
# Confidence curve
# ---------------------------------------------------------------------------


class TestConfidence:
    def test_no_penalty_inside_min_radius(self):
        assert distance_penalty(10.0, CONFIG) == 0.0
        assert distance_penalty(CONFIG.min_radius_meters, CONFIG) == 0.0

    def test_full_penalty_at_strict_radius(self):
        assert distance_penalty(CONFIG.strict_radius_meters, CONFIG) == pytest.approx(20.0)

    def test_zero_width_penalty_band(self):
        flat = VisitEngineConfig(strict_radius_meters=50, min_radius_meters=50)
        assert distance_penalty(49.0, flat) == 0.0
        assert distance_penalty(50.0, flat) == 0.0

    def test_monotone_in_hits(self):
        scores = [confidence_score(n, 80.0, CONFIG) for n in range(0, 30)]
        assert scores == sorted(scores)

    def test_monotone_in_distance(self):
        scores = [confidence_score(5, d, CONFIG) for d in range(0, 200, 5)]
        assert scores == sorted(scores, reverse=True)

    def test_saturates_at_100(self):
        assert confidence_score(50, 0.0, CONFIG) == 100
        assert confidence_score(500, 0.0, CONFIG) == 100

    def test_bounded_to_0_100(self):
        for hits in (0, 1, 2, 11, 200):
            for avg in (0.0, 35.0, 149.0, 150.0):
                assert 0 <= confidence_score(hits, avg, CONFIG) <= 100

    def test_known_values(self):
        # 40 + 5 * 5.5 = 67.5 -> 68 with no distance penalty
        assert confidence_score(5, 20.0, CONFIG) == 68
        # halfway through the penalty band costs 10 points
        assert confidence_score(5, 92.5, CONFIG) == 58


# ---------------------------------------------------------------------------
# Ranking / determinism
# ---------------------------------------------------------------------------


class TestRanking:
    def _scored(self, **kwargs) -> ScoredCandidate:
        return classify(_candidate(**kwargs), CONFIG)

    def test_higher_confidence_first(self):
        strong = self._scored(tier1=10, avg=10.0)
        weak = self._scored(tier1=2, avg=10.0)
        assert sorted([weak, strong], key=rank_key) == [strong, weak]

    def test_tie_broken_by_lower_average_distance(self):
        near = self._scored(tier1=4, avg=20.0)
        far = self._scored(tier1=4, avg=30.0)
        # both inside min radius -> equal confidence
        assert near.confidence == far.confidence
        assert sorted([far, near], key=rank_key) == [near, far]

    def test_tie_then_broken_by_hit_count(self):
        few = ScoredCandidate(_candidate(tier1=3, avg=20.0), Classification.CONFIRMED, confidence=70)
        many = ScoredCandidate(_candidate(tier1=4, avg=20.0), Classification.CONFIRMED, confidence=70)
        assert sorted([few, many], key=rank_key) == [many, few]

    def test_classify_all_is_deterministic_and_newest_first(self):
        place_a = make_place("Alpha", place_id="a")
        place_b = make_place("Beta", place_id="b")
        candidates = [
            _candidate(tier1=3, place=place_b, visit_date=date(2025, 4, 1)),
            _candidate(tier1=3, place=place_a, visit_date=date(2025, 4, 3)),
            _candidate(tier1=3, place=place_a, visit_date=date(2025, 4, 1)),
            _candidate(tier2=6, tier3=4, avg=400.0, place=place_b, visit_date=date(2025, 4, 2)),
            _candidate(tier1=1, place=place_a, visit_date=date(2025, 4, 5)),
        ]

        first = classify_all(candidates, CONFIG)
        second = classify_all(list(reversed(candidates)), CONFIG)

        confirmed, suggested = first
        assert [(s.candidate.place.place_id, s.candidate.visit_date) for s in confirmed] == [
            ("a", date(2025, 4, 3)),
            ("a", date(2025, 4, 1)),
            ("b", date(2025, 4, 1)),
        ]
        assert len(suggested) == 1
        assert [s.candidate.key for s in first[0]] == [s.candidate.key for s in second[0]]
        assert [s.confidence for s in first[0]] == [s.confidence for s in second[0]]
