"""
SQLAlchemy DeclarativeBase models -- mirrors of the schema subset the
timeline service touches.

Column names use camelCase to match the actual PostgreSQL column names;
SA does NOT convert them, so attribute access is camelCase too.

Coordinates are stored as plain latitude/longitude doubles. Spatial queries
build geography points on the fly with ST_MakePoint(longitude, latitude); the
expression GIST indexes in sql/ keep those queries index-backed.

Trips, regions, places and locations are owned by the web application and
are read-only here. place_visit_events is written by the backfill apply path.
"""

import uuid as _uuid
from datetime import date, datetime
from typing import Optional

from sqlalchemy import BigInteger, Boolean, Date, DateTime, Float, Index, Integer, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    pass


class Trip(Base):
    __tablename__ = "trips"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(_uuid.uuid4()))
    userId: Mapped[str] = mapped_column(String)
    name: Mapped[str] = mapped_column(String)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    isPublic: Mapped[bool] = mapped_column(Boolean, default=False)
    createdAt: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    updatedAt: Mapped[datetime] = mapped_column(DateTime(timezone=True))


class Region(Base):
    __tablename__ = "regions"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(_uuid.uuid4()))
    userId: Mapped[str] = mapped_column(String)
    tripId: Mapped[str] = mapped_column(String)
    name: Mapped[str] = mapped_column(String)
    displayOrder: Mapped[int] = mapped_column(Integer, default=0)


class Place(Base):
    __tablename__ = "places"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(_uuid.uuid4()))
    userId: Mapped[str] = mapped_column(String)
    regionId: Mapped[str] = mapped_column(String)
    name: Mapped[str] = mapped_column(String)
    # NULL when the place has no pin on the map yet
    latitude: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    longitude: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    iconName: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    markerColor: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    descriptionHtml: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    displayOrder: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)


class Location(Base):
    """One raw location ping. Append-only from the tracking/import side."""

    __tablename__ = "locations"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    userId: Mapped[str] = mapped_column(String)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    # Device wall-clock time; naive on purpose
    localTimestamp: Mapped[datetime] = mapped_column(DateTime(timezone=False))
    timeZoneId: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    latitude: Mapped[float] = mapped_column(Float)
    longitude: Mapped[float] = mapped_column(Float)
    accuracy: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    source: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    isUserInvoked: Mapped[Optional[bool]] = mapped_column(Boolean, nullable=True)


class PlaceVisitEvent(Base):
    """
    A visit to a planned place. Snapshot columns are copied from the place
    at creation time and never updated afterwards.

    placeId is nullable (ON DELETE SET NULL) so history survives place deletion.
    """

    __tablename__ = "place_visit_events"
    __table_args__ = (
        # Final guard against two concurrent applies for the same day.
        # NULL placeId rows are exempt (NULLs are distinct in a unique index).
        Index(
            "ux_place_visit_events_user_place_date",
            "userId",
            "placeId",
            "visitDate",
            unique=True,
        ),
        Index("ix_place_visit_events_trip_snapshot", "userId", "tripIdSnapshot"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(_uuid.uuid4()))
    userId: Mapped[str] = mapped_column(String)
    placeId: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    visitDate: Mapped[date] = mapped_column(Date)
    arrivedAtUtc: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    lastSeenAtUtc: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    endedAtUtc: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    tripIdSnapshot: Mapped[str] = mapped_column(String)
    tripNameSnapshot: Mapped[str] = mapped_column(String)
    regionNameSnapshot: Mapped[str] = mapped_column(String)
    placeNameSnapshot: Mapped[str] = mapped_column(String)
    placeLatitudeSnapshot: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    placeLongitudeSnapshot: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    iconNameSnapshot: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    markerColorSnapshot: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    notesHtml: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    # realtime | backfill | backfill-user-confirmed
    source: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    createdAt: Mapped[datetime] = mapped_column(DateTime(timezone=True))
