"""
Distance and local-date helpers.

haversine_distance matches the PostGIS ST_Distance(geography) result to
within ~0.5%, which is well inside the tier band widths.
"""

from __future__ import annotations

import logging
import math
from datetime import date, datetime, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from services.timeline.visits.types import Coordinate

logger = logging.getLogger(__name__)

# Earth radius in meters
_EARTH_RADIUS_M = 6_371_000


def haversine_distance(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """Great-circle distance between two points in meters."""
    lat1_r = math.radians(lat1)
    lat2_r = math.radians(lat2)
    dlat = math.radians(lat2 - lat1)
    dlng = math.radians(lng2 - lng1)

    a = (
        math.sin(dlat / 2) ** 2
        + math.cos(lat1_r) * math.cos(lat2_r) * math.sin(dlng / 2) ** 2
    )
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return _EARTH_RADIUS_M * c


def coordinate_distance(a: Coordinate, b: Coordinate) -> float:
    return haversine_distance(a.latitude, a.longitude, b.latitude, b.longitude)


def _zone(tz_name: str | None) -> ZoneInfo | None:
    if not tz_name:
        return None
    try:
        return ZoneInfo(tz_name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.debug("Unknown timezone %r on ping, falling back", tz_name)
        return None


def local_date_for(
    timestamp_utc: datetime,
    tz_name: str | None = None,
    local_timestamp: datetime | None = None,
) -> date:
    """
    Calendar date of a ping in the timezone it was captured in.

    Resolution order:
      1. UTC timestamp converted with the ping's IANA timezone
      2. the device wall-clock timestamp's date
      3. the UTC date (last resort; logged)

    Never truncates a UTC timestamp while a timezone or local timestamp is
    available, so 23:55 and 00:05 local land on different dates even when
    they share a UTC date.
    """
    if timestamp_utc.tzinfo is None:
        timestamp_utc = timestamp_utc.replace(tzinfo=timezone.utc)

    zone = _zone(tz_name)
    if zone is not None:
        return timestamp_utc.astimezone(zone).date()

    if local_timestamp is not None:
        return local_timestamp.date()

    logger.debug("Ping at %s has no timezone or local time, using UTC date", timestamp_utc)
    return timestamp_utc.astimezone(timezone.utc).date()
