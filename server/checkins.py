"""Manual check-in: a user scans a tag and is told synchronously whether they are close enough."""

import datetime
import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.orm import Session

from database import get_settings
from errors import AlreadyCheckedInToday, GeolocationNotConfigured, NotFound
from geo import haversine_m, is_within_radius
from groups import ensure_membership
from ledger import manual_checkin_on_day, record_manual
from models import TAG_ACTIVE, Checkin, Schedule, Tag, User
from schedules import is_schedule_active, local_day
from store import get_tag, is_user_linked_to_tag, list_tag_schedules

logger = logging.getLogger(__name__)


@dataclass
class ManualCheckinResult:
    checkin: Checkin
    distance_meters: float
    is_within_radius: bool
    radius_meters: int
    schedule_id: Optional[int] = None
    redirect_url: Optional[str] = None
    groups_joined: int = 0


def current_schedule_for_tag(db: Session, tag: Tag, now: datetime.datetime) -> Optional[Schedule]:
    """The first of the tag's schedules whose window is open right now, if any."""
    for schedule in list_tag_schedules(db, tag.id):
        if is_schedule_active(schedule, now):
            return schedule
    return None


def manual_checkin(
    db: Session,
    user_id: int,
    tag_id: int,
    latitude: float,
    longitude: float,
    now: Optional[datetime.datetime] = None,
) -> ManualCheckinResult:
    """Record a manual check-in and report distance and radius to the caller.

    Raises NotFound, GeolocationNotConfigured, AlreadyCheckedInToday or
    InvalidCoordinate. Out-of-radius attempts are still recorded (as failed).
    """
    now = now or datetime.datetime.now(datetime.timezone.utc)
    settings = get_settings(db)

    tag = get_tag(db, tag_id)
    if tag is None:
        raise NotFound(f"Tag {tag_id} not found")
    if not tag.checkin_enabled or tag.status != TAG_ACTIVE:
        raise NotFound(f"Check-in is not available for tag {tag.uid}")

    user = db.query(User).filter(User.id == user_id).first()
    if user is None or not user.is_active:
        raise NotFound(f"User {user_id} not found")
    if not is_user_linked_to_tag(db, user_id, tag.id):
        raise NotFound(f"User {user_id} is not linked to tag {tag.uid}")

    if not tag.has_geolocation:
        raise GeolocationNotConfigured(f"Tag {tag.uid} has no geolocation configured")

    day = local_day(now, settings["timezone"])
    # fast path only; record_manual raises the same error if a concurrent scan wins
    existing = manual_checkin_on_day(db, user_id, tag.id, day)
    if existing is not None:
        raise AlreadyCheckedInToday(existing.id, tag.uid, tag.redirect_url)

    radius = tag.radius_meters or settings["default_radius_m"]
    distance = haversine_m(latitude, longitude, tag.latitude, tag.longitude)
    within = is_within_radius(distance, radius)
    schedule = current_schedule_for_tag(db, tag, now)
    schedule_id = schedule.id if schedule is not None else None

    checkin = record_manual(
        db, user_id, tag.id, latitude, longitude, distance, within, day,
        schedule_id=schedule_id, radius_m=radius,
    )
    logger.info(
        "Manual check-in user=%d tag=%s: %.0fm (radius %sm, within=%s)",
        user_id, tag.uid, distance, radius, within,
    )

    joined = 0
    if within and schedule_id is not None:
        try:
            joined = ensure_membership(db, user_id, schedule_id)
        except Exception:
            logger.warning("Group association failed for user %d schedule %d", user_id, schedule_id, exc_info=True)

    return ManualCheckinResult(
        checkin=checkin,
        distance_meters=distance,
        is_within_radius=within,
        radius_meters=radius,
        schedule_id=schedule_id,
        redirect_url=tag.redirect_url,
        groups_joined=joined,
    )
