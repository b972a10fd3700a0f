"""
Backfill engine exceptions.

InputError subclasses are raised before any scanning starts and map to
4xx responses. PartialScanFailure never escapes the candidate generator:
it is recorded as a warning on the preview instead.
"""

from __future__ import annotations


class BackfillError(Exception):
    """Base class for backfill engine errors."""


class InputError(BackfillError):
    """The request cannot be processed as given."""

    code = "INVALID_INPUT"


class InvalidDateRange(InputError):
    code = "INVALID_DATE_RANGE"


class TripNotFound(InputError):
    """Unknown trip, or a trip that belongs to another user."""

    code = "NOT_FOUND"

    def __init__(self, trip_id: str) -> None:
        super().__init__("Trip not found or access denied.")
        self.trip_id = trip_id


class PartialScanFailure(BackfillError):
    """A single place (or chunk) query failed; the rest of the scan continues."""

    def __init__(self, place_id: str, place_name: str, cause: BaseException) -> None:
        super().__init__(f"Place {place_id} ({place_name}) skipped: {cause}")
        self.place_id = place_id
        self.place_name = place_name
        self.cause = cause


class ScanCancelled(BackfillError):
    """Raised inside a worker when the cancellation signal fires."""
