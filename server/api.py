"""REST API endpoints: manual check-in, location pings, schedule trigger, check-in listing, engine status."""

import datetime
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from checkins import manual_checkin
from database import get_db
from engine import trigger_schedule
from errors import (
    AlreadyCheckedInToday, CheckinError, GeolocationNotConfigured, InvalidCoordinate, NotFound,
    PersistenceUnavailable, ScheduleConfigError,
)
from models import Checkin, User
from store import add_location_ping, persistence_errors

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api")


# ---------------------------------------------------------------------------
# Pydantic schemas
# ---------------------------------------------------------------------------

class CheckinRequest(BaseModel):
    user_id: int
    tag_id: int
    latitude: float
    longitude: float


class CheckinResponse(BaseModel):
    checkin_id: int
    is_within_radius: bool
    distance_meters: float
    radius_meters: int
    schedule_id: Optional[int] = None
    redirect_url: Optional[str] = None


class LocationPingRequest(BaseModel):
    user_id: int
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)
    accuracy: Optional[float] = None
    timestamp: Optional[str] = Field(None, description="ISO 8601 timestamp from the device; defaults to now")


class LocationPingResponse(BaseModel):
    id: int
    user_id: int
    timestamp: str


class CheckinRecord(BaseModel):
    id: int
    user_id: int
    tag_id: int
    schedule_id: Optional[int] = None
    latitude: float
    longitude: float
    distance_meters: float
    is_within_radius: bool
    type: str
    status: str
    error_message: Optional[str] = None
    checkin_day: str
    created_at: str


class TriggerResponse(BaseModel):
    schedule_id: int
    schedule_name: Optional[str] = None
    users_processed: int
    users_within_radius: int
    users_skipped: int
    errors: int
    results: list[dict]
    skipped: list[dict]


# ---------------------------------------------------------------------------
# Error mapping
# ---------------------------------------------------------------------------

_STATUS_CODES = {
    NotFound: 404,
    GeolocationNotConfigured: 400,
    ScheduleConfigError: 400,
    InvalidCoordinate: 422,
    PersistenceUnavailable: 503,
}


def _http_error(exc: CheckinError) -> HTTPException:
    if isinstance(exc, AlreadyCheckedInToday):
        return HTTPException(status_code=409, detail={
            "error": "already_checked_in_today",
            "message": str(exc),
            "checkin_id": exc.checkin_id,
            "tag_uid": exc.tag_uid,
            "redirect_url": exc.redirect_url,
        })
    for cls, code in _STATUS_CODES.items():
        if isinstance(exc, cls):
            return HTTPException(status_code=code, detail=str(exc))
    return HTTPException(status_code=400, detail=str(exc))


# ---------------------------------------------------------------------------
# Check-in endpoints
# ---------------------------------------------------------------------------

@router.post("/checkins", response_model=CheckinResponse, status_code=201)
def create_checkin(req: CheckinRequest, db: Session = Depends(get_db)):
    try:
        with persistence_errors():
            result = manual_checkin(db, req.user_id, req.tag_id, req.latitude, req.longitude)
    except CheckinError as e:
        logger.info("Manual check-in rejected for user=%d tag=%d: %s", req.user_id, req.tag_id, e)
        raise _http_error(e)

    return CheckinResponse(
        checkin_id=result.checkin.id,
        is_within_radius=result.is_within_radius,
        distance_meters=round(result.distance_meters, 1),
        radius_meters=result.radius_meters,
        schedule_id=result.schedule_id,
        redirect_url=result.redirect_url,
    )


@router.get("/checkins", response_model=list[CheckinRecord])
def list_checkins(
    tag_id: Optional[int] = None,
    user_id: Optional[int] = None,
    schedule_id: Optional[int] = None,
    type: Optional[str] = None,
    limit: int = 100,
    offset: int = 0,
    db: Session = Depends(get_db),
):
    query = db.query(Checkin)
    if tag_id is not None:
        query = query.filter(Checkin.tag_id == tag_id)
    if user_id is not None:
        query = query.filter(Checkin.user_id == user_id)
    if schedule_id is not None:
        query = query.filter(Checkin.schedule_id == schedule_id)
    if type is not None:
        query = query.filter(Checkin.type == type)

    rows = query.order_by(Checkin.created_at.desc(), Checkin.id.desc()).offset(offset).limit(min(limit, 1000)).all()
    return [
        CheckinRecord(
            id=c.id,
            user_id=c.user_id,
            tag_id=c.tag_id,
            schedule_id=c.schedule_id,
            latitude=c.latitude,
            longitude=c.longitude,
            distance_meters=c.distance_meters,
            is_within_radius=c.is_within_radius,
            type=c.type,
            status=c.status,
            error_message=c.error_message,
            checkin_day=c.checkin_day.isoformat(),
            created_at=c.created_at.isoformat(),
        )
        for c in rows
    ]


# ---------------------------------------------------------------------------
# Location endpoints
# ---------------------------------------------------------------------------

@router.post("/locations", response_model=LocationPingResponse, status_code=201)
def upload_location(req: LocationPingRequest, db: Session = Depends(get_db)):
    user = db.query(User).filter(User.id == req.user_id).first()
    if user is None or not user.is_active:
        raise HTTPException(status_code=404, detail="User not found")

    timestamp = None
    if req.timestamp:
        try:
            timestamp = datetime.datetime.fromisoformat(req.timestamp)
        except ValueError:
            raise HTTPException(status_code=422, detail="timestamp must be ISO 8601")

    ping = add_location_ping(db, user.id, req.latitude, req.longitude, req.accuracy, timestamp)
    logger.debug("Location ping %d from user=%d", ping.id, user.id)
    return LocationPingResponse(id=ping.id, user_id=ping.user_id, timestamp=ping.timestamp.isoformat())


# ---------------------------------------------------------------------------
# Schedule / engine endpoints
# ---------------------------------------------------------------------------

@router.post("/schedules/{schedule_id}/trigger", response_model=TriggerResponse)
def trigger_checkin(schedule_id: int, db: Session = Depends(get_db)):
    """Run automatic check-in for one schedule now, regardless of its time window."""
    try:
        with persistence_errors():
            result = trigger_schedule(db, schedule_id)
    except CheckinError as e:
        raise _http_error(e)
    return TriggerResponse(
        schedule_id=result.schedule_id,
        schedule_name=result.schedule_name,
        users_processed=result.users_processed,
        users_within_radius=result.users_within_radius,
        users_skipped=result.users_skipped,
        errors=result.errors,
        results=result.results,
        skipped=result.skipped,
    )


@router.get("/engine/status")
def engine_status(request: Request):
    engine = getattr(request.app.state, "checkin_engine", None)
    if engine is None:
        raise HTTPException(status_code=503, detail="Check-in engine not configured")
    return {
        "running": engine.running,
        "last_tick": engine.last_stats.as_dict() if engine.last_stats else None,
    }
