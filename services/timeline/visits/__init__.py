"""
Visit inference engine ("backfill analysis + apply").

Public API:
    VisitBackfillService  — preview / apply / info / clear entry points
    VisitEngineConfig     — tunables (radii, thresholds, scan limits)
    CancellationSignal    — cooperative cancellation for previews
    ApplyRequest / ApplyItem — the user-approved subset of a preview
"""

from services.timeline.visits.cancellation import CancellationSignal
from services.timeline.visits.engine_config import VisitEngineConfig
from services.timeline.visits.errors import (
    BackfillError,
    InputError,
    InvalidDateRange,
    TripNotFound,
)
from services.timeline.visits.results import ApplyItem, ApplyRequest
from services.timeline.visits.service import VisitBackfillService

__all__ = [
    "ApplyItem",
    "ApplyRequest",
    "BackfillError",
    "CancellationSignal",
    "InputError",
    "InvalidDateRange",
    "TripNotFound",
    "VisitBackfillService",
    "VisitEngineConfig",
]
