"""
SQLAlchemy async database module.

Re-exports engine, session, and model utilities for the FastAPI service.
"""

from services.timeline.db.engine import create_engine
from services.timeline.db.session import get_db
from services.timeline.db.models import (
    Base,
    Trip,
    Region,
    Place,
    Location,
    PlaceVisitEvent,
)

__all__ = [
    "create_engine",
    "get_db",
    "Base",
    "Trip",
    "Region",
    "Place",
    "Location",
    "PlaceVisitEvent",
]
