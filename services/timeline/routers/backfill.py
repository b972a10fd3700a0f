"""
/backfill: visit backfill preview / apply for a trip.

Auth model: the fronting web layer authenticates the session and forwards
the user id in the X-User-Id header.

Endpoints:
  GET    /backfill/preview/{tripId}?fromDate&toDate  — read-only analysis
  POST   /backfill/apply/{tripId}                     — commit approved items
  GET    /backfill/info/{tripId}?fromDate&toDate     — size / run-time estimate
  DELETE /backfill/clear/{tripId}                     — delete all trip visits

A preview whose client disconnects (or that exceeds the preview budget) is
cancelled cooperatively and returned with truncated=true; it is never an error.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import date, datetime, timezone
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Path, Query, Request
from pydantic import BaseModel, Field, model_validator
from sqlalchemy.ext.asyncio import AsyncSession

from services.timeline.db.session import get_db
from services.timeline.visits import (
    ApplyItem,
    ApplyRequest,
    CancellationSignal,
    InputError,
    InvalidDateRange,
    TripNotFound,
    VisitBackfillService,
    VisitEngineConfig,
)
from services.timeline.visits.postgis import PostgisPingStore
from services.timeline.visits.repository import SqlPlaceCatalog, SqlVisitStore

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/backfill", tags=["backfill"])

# How often a running preview checks whether the client went away
DISCONNECT_POLL_S = 1.0

MAX_APPLY_ITEMS = 5_000

TripId = Annotated[str, Path(min_length=1, max_length=64, pattern=r"^[A-Za-z0-9_-]+$")]

# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class ApplyItemBody(BaseModel):
    place_id: str = Field(..., min_length=1, max_length=64, alias="placeId")
    visit_date: date = Field(..., alias="visitDate")
    first_seen_utc: datetime = Field(..., alias="firstSeenUtc")
    last_seen_utc: datetime = Field(..., alias="lastSeenUtc")

    model_config = {"populate_by_name": True}

    @model_validator(mode="after")
    def _seen_order(self) -> "ApplyItemBody":
        if _as_utc(self.last_seen_utc) < _as_utc(self.first_seen_utc):
            raise ValueError("lastSeenUtc must not be before firstSeenUtc")
        return self

    def to_item(self) -> ApplyItem:
        return ApplyItem(
            place_id=self.place_id,
            visit_date=self.visit_date,
            first_seen_utc=_as_utc(self.first_seen_utc),
            last_seen_utc=_as_utc(self.last_seen_utc),
        )


class ApplyBody(BaseModel):
    create_visits: list[ApplyItemBody] = Field(
        default_factory=list, max_length=MAX_APPLY_ITEMS, alias="createVisits"
    )
    confirmed_suggestions: list[ApplyItemBody] = Field(
        default_factory=list, max_length=MAX_APPLY_ITEMS, alias="confirmedSuggestions"
    )
    delete_visit_ids: list[str] = Field(
        default_factory=list, max_length=MAX_APPLY_ITEMS, alias="deleteVisitIds"
    )

    model_config = {"populate_by_name": True}

    def to_request(self) -> ApplyRequest:
        return ApplyRequest(
            create_visits=[i.to_item() for i in self.create_visits],
            confirmed_suggestions=[i.to_item() for i in self.confirmed_suggestions],
            delete_visit_ids=list(self.delete_visit_ids),
        )


def _as_utc(value: datetime) -> datetime:
    """Naive timestamps from the client are UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------


def require_user_id(request: Request) -> str:
    user_id = request.headers.get("X-User-Id", "").strip()
    if not user_id:
        raise HTTPException(
            status_code=400,
            detail={
                "code": "MISSING_USER_ID",
                "message": "X-User-Id header is required.",
            },
        )
    return user_id


def get_engine_config(request: Request) -> VisitEngineConfig:
    return request.app.state.visit_config


def get_backfill_service(
    request: Request,
    db: AsyncSession = Depends(get_db),
    config: VisitEngineConfig = Depends(get_engine_config),
) -> VisitBackfillService:
    return VisitBackfillService(
        places=SqlPlaceCatalog(db),
        pings=PostgisPingStore(request.app.state.db),
        visits=SqlVisitStore(db),
        config=config,
    )


def _input_error(exc: InputError) -> HTTPException:
    if isinstance(exc, TripNotFound):
        status = 404
    elif isinstance(exc, InvalidDateRange):
        status = 422
    else:
        status = 400
    return HTTPException(status_code=status, detail={"code": exc.code, "message": str(exc)})


def _envelope(request: Request, data: dict) -> dict:
    return {"success": True, "data": data, "requestId": request.state.request_id}


async def _watch_disconnect(request: Request, signal: CancellationSignal) -> None:
    while not signal.cancelled:
        if await request.is_disconnected():
            logger.info("Client disconnected, cancelling preview")
            signal.cancel("client disconnected")
            return
        await asyncio.sleep(DISCONNECT_POLL_S)


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------


@router.get("/preview/{trip_id}", summary="Analyze ping history against the trip's places")
async def preview_backfill(
    request: Request,
    trip_id: TripId,
    from_date: date | None = Query(default=None, alias="fromDate"),
    to_date: date | None = Query(default=None, alias="toDate"),
    user_id: str = Depends(require_user_id),
    service: VisitBackfillService = Depends(get_backfill_service),
    config: VisitEngineConfig = Depends(get_engine_config),
) -> dict:
    """
    HTTP errors:
    - 400 if X-User-Id header is missing
    - 404 if the trip does not exist or belongs to another user
    - 422 if fromDate is after toDate
    """
    signal = CancellationSignal(timeout_s=config.preview_timeout_s)
    watcher = asyncio.create_task(_watch_disconnect(request, signal))
    try:
        preview = await service.preview(
            user_id=user_id,
            trip_id=trip_id,
            date_from=from_date,
            date_to=to_date,
            signal=signal,
        )
    except InputError as e:
        raise _input_error(e) from e
    except Exception:
        logger.exception("Backfill preview failed for trip %s", trip_id)
        raise
    finally:
        watcher.cancel()

    return _envelope(request, preview.to_dict())


@router.post("/apply/{trip_id}", summary="Commit user-approved visits from a preview")
async def apply_backfill(
    body: ApplyBody,
    request: Request,
    trip_id: TripId,
    user_id: str = Depends(require_user_id),
    service: VisitBackfillService = Depends(get_backfill_service),
) -> dict:
    """
    Creates and deletes visits in one transaction. Items that are already
    recorded (or whose place is gone) are counted as skipped, not failed.
    """
    try:
        result = await service.apply(user_id=user_id, trip_id=trip_id, request=body.to_request())
    except InputError as e:
        raise _input_error(e) from e
    except Exception:
        logger.exception("Backfill apply failed for trip %s", trip_id)
        raise

    return _envelope(request, result.to_dict())


@router.get("/info/{trip_id}", summary="Estimate the size and run time of a preview")
async def backfill_info(
    request: Request,
    trip_id: TripId,
    from_date: date | None = Query(default=None, alias="fromDate"),
    to_date: date | None = Query(default=None, alias="toDate"),
    user_id: str = Depends(require_user_id),
    service: VisitBackfillService = Depends(get_backfill_service),
) -> dict:
    try:
        info = await service.info(
            user_id=user_id, trip_id=trip_id, date_from=from_date, date_to=to_date
        )
    except InputError as e:
        raise _input_error(e) from e

    return _envelope(request, info.to_dict())


@router.delete("/clear/{trip_id}", summary="Delete every visit recorded for the trip")
async def clear_visits(
    request: Request,
    trip_id: TripId,
    user_id: str = Depends(require_user_id),
    service: VisitBackfillService = Depends(get_backfill_service),
) -> dict:
    try:
        result = await service.clear(user_id=user_id, trip_id=trip_id)
    except InputError as e:
        raise _input_error(e) from e
    except Exception:
        logger.exception("Clearing visits failed for trip %s", trip_id)
        raise

    return _envelope(request, result.to_dict())
