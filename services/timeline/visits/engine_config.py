"""
VisitEngineConfig: the tunables the engine runs with, decoupled from the
global Settings object so the pure modules never read the environment.

Tier derivation (strict radius r, outer multiplier m, 2 <= m <= 100):

    k3 = min(5, m)
    k2 = min(2, (1 + k3) / 2)

    tier 1 = r, tier 2 = r * k2, tier 3 = r * k3, outer = r * m

Defaults (150m, 50x) give 150m / 300m / 750m / 7,500m. k2 < k3 <= m holds
for every valid multiplier.
"""

from __future__ import annotations

from dataclasses import dataclass

MIN_RADIUS_MULTIPLIER = 2
MAX_RADIUS_MULTIPLIER = 100

# PostgreSQL bind parameter ceiling for one statement
MAX_QUERY_PARAMETERS = 32_767
# placeId, latitude, longitude
PARAMETERS_PER_PLACE = 3

SUGGESTION_THRESHOLDS = (
    "min_cross_tier_hits",
    "pair_tier1_hits",
    "pair_tier2_hits",
    "suggestion_tier1_hits",
    "suggestion_tier2_hits",
    "suggestion_tier3_hits",
    "suggestion_max_hits",
)


@dataclass(frozen=True)
class TierRadii:
    tier1: float
    tier2: float
    tier3: float
    outer: float

    def tier_of(self, distance_meters: float) -> int:
        """Exclusive band for a distance: 1, 2, 3, or 0 (beyond tier 3)."""
        if distance_meters <= self.tier1:
            return 1
        if distance_meters <= self.tier2:
            return 2
        if distance_meters <= self.tier3:
            return 3
        return 0


@dataclass(frozen=True)
class VisitEngineConfig:
    strict_radius_meters: float = 150.0
    min_radius_meters: float = 35.0
    required_hits: int = 2
    radius_multiplier: int = 50
    min_cross_tier_hits: int = 5
    pair_tier1_hits: int = 1
    pair_tier2_hits: int = 2
    suggestion_tier1_hits: int = 2
    suggestion_tier2_hits: int = 3
    suggestion_tier3_hits: int = 10
    suggestion_max_hits: int = 50
    notes_snapshot_max_chars: int = 20_000
    chunk_size: int = 500
    workers: int = 4
    query_timeout_s: float = 120.0
    preview_timeout_s: float = 600.0
    batched_query_threshold: int = 10

    def __post_init__(self) -> None:
        if not MIN_RADIUS_MULTIPLIER <= self.radius_multiplier <= MAX_RADIUS_MULTIPLIER:
            raise ValueError(
                f"radius_multiplier must be between {MIN_RADIUS_MULTIPLIER} "
                f"and {MAX_RADIUS_MULTIPLIER}, got {self.radius_multiplier}"
            )
        if self.strict_radius_meters <= 0:
            raise ValueError("strict_radius_meters must be positive")
        if not 0 <= self.min_radius_meters <= self.strict_radius_meters:
            raise ValueError("min_radius_meters must be within [0, strict_radius_meters]")
        if self.required_hits < 1:
            raise ValueError("required_hits must be at least 1")
        for name in SUGGESTION_THRESHOLDS:
            if getattr(self, name) < 1:
                raise ValueError(f"{name} must be at least 1")
        if self.chunk_size < 1 or self.chunk_size * PARAMETERS_PER_PLACE > MAX_QUERY_PARAMETERS:
            raise ValueError(
                f"chunk_size must be between 1 and {MAX_QUERY_PARAMETERS // PARAMETERS_PER_PLACE}"
            )
        if self.workers < 1:
            raise ValueError("workers must be at least 1")

    @property
    def tiers(self) -> TierRadii:
        r = self.strict_radius_meters
        k3 = min(5.0, float(self.radius_multiplier))
        k2 = min(2.0, (1.0 + k3) / 2.0)
        return TierRadii(
            tier1=r,
            tier2=r * k2,
            tier3=r * k3,
            outer=r * self.radius_multiplier,
        )

    @classmethod
    def from_settings(cls, settings) -> "VisitEngineConfig":
        return cls(
            strict_radius_meters=float(settings.visit_strict_radius_meters),
            min_radius_meters=float(settings.visit_min_radius_meters),
            required_hits=settings.visit_required_hits,
            radius_multiplier=settings.visit_suggestion_max_radius_multiplier,
            min_cross_tier_hits=settings.visit_suggestion_min_cross_tier_hits,
            pair_tier1_hits=settings.visit_suggestion_pair_tier1_hits,
            pair_tier2_hits=settings.visit_suggestion_pair_tier2_hits,
            suggestion_tier1_hits=settings.visit_suggestion_tier1_hits,
            suggestion_tier2_hits=settings.visit_suggestion_tier2_hits,
            suggestion_tier3_hits=settings.visit_suggestion_tier3_hits,
            suggestion_max_hits=settings.visit_suggestion_max_hits,
            notes_snapshot_max_chars=settings.visit_notes_snapshot_max_chars,
            chunk_size=settings.visit_scan_chunk_size,
            workers=settings.visit_scan_workers,
            query_timeout_s=settings.visit_scan_query_timeout_s,
            preview_timeout_s=settings.visit_preview_timeout_s,
            batched_query_threshold=settings.visit_batched_query_threshold,
        )
