"""Read/write queries the engine depends on: schedules, tags, recent locations, groups.

Everything here talks to the database; nothing here decides whether a user is
close enough to a tag. That is geo.py's job.
"""

import datetime
import logging
from contextlib import contextmanager
from typing import Optional

from sqlalchemy import func
from sqlalchemy.exc import DisconnectionError, IntegrityError, OperationalError
from sqlalchemy.orm import Session

from errors import PersistenceUnavailable
from models import (
    ADDED_BY_AUTO, CHECKIN_AUTOMATIC, Checkin, GroupMembership, LocationPing, NotificationGroup,
    Schedule, Tag, User, UserTagLink, group_schedules, schedule_tags, utcnow,
)

logger = logging.getLogger(__name__)


@contextmanager
def persistence_errors():
    """Translate connection-level database failures into PersistenceUnavailable."""
    try:
        yield
    except (OperationalError, DisconnectionError) as e:
        raise PersistenceUnavailable(str(e)) from e


def _naive_utc(now: Optional[datetime.datetime]) -> datetime.datetime:
    if now is None:
        return utcnow()
    if now.tzinfo is not None:
        return now.astimezone(datetime.timezone.utc).replace(tzinfo=None)
    return now


# ---------------------------------------------------------------------------
# Schedules and tags
# ---------------------------------------------------------------------------

def list_active_schedules(db: Session) -> list[Schedule]:
    """Schedules flagged active; whether their window is open is not checked here."""
    return db.query(Schedule).filter(Schedule.is_active.is_(True)).order_by(Schedule.id).all()


def get_schedule(db: Session, schedule_id: int) -> Optional[Schedule]:
    return db.query(Schedule).filter(Schedule.id == schedule_id).first()


def list_schedule_tags(db: Session, schedule_id: int) -> list[Tag]:
    return (
        db.query(Tag)
        .join(schedule_tags, schedule_tags.c.tag_id == Tag.id)
        .filter(schedule_tags.c.schedule_id == schedule_id)
        .order_by(Tag.id)
        .all()
    )


def list_tag_schedules(db: Session, tag_id: int) -> list[Schedule]:
    return (
        db.query(Schedule)
        .join(schedule_tags, schedule_tags.c.schedule_id == Schedule.id)
        .filter(schedule_tags.c.tag_id == tag_id, Schedule.is_active.is_(True))
        .order_by(Schedule.id)
        .all()
    )


def get_tag(db: Session, tag_id: int) -> Optional[Tag]:
    return db.query(Tag).filter(Tag.id == tag_id).first()


def is_user_linked_to_tag(db: Session, user_id: int, tag_id: int) -> bool:
    return (
        db.query(UserTagLink.id)
        .filter(UserTagLink.user_id == user_id, UserTagLink.tag_id == tag_id)
        .first()
        is not None
    )


# ---------------------------------------------------------------------------
# Location freshness
# ---------------------------------------------------------------------------

def recent_users_near_tag(
    db: Session,
    tag_id: int,
    freshness_minutes: int,
    now: Optional[datetime.datetime] = None,
) -> list[tuple[User, LocationPing]]:
    """Return (user, most recent ping) for active users linked to the tag.

    A user whose latest ping is older than `freshness_minutes` is left out
    entirely. No proximity filtering happens here. Returns [] when nobody has
    recent data.
    """
    cutoff = _naive_utc(now) - datetime.timedelta(minutes=freshness_minutes)

    latest = (
        db.query(
            LocationPing.user_id.label("user_id"),
            func.max(LocationPing.timestamp).label("latest_ts"),
        )
        .join(UserTagLink, UserTagLink.user_id == LocationPing.user_id)
        .filter(UserTagLink.tag_id == tag_id, LocationPing.timestamp >= cutoff)
        .group_by(LocationPing.user_id)
        .subquery()
    )

    rows = (
        db.query(User, LocationPing)
        .join(LocationPing, LocationPing.user_id == User.id)
        .join(
            latest,
            (latest.c.user_id == LocationPing.user_id) & (latest.c.latest_ts == LocationPing.timestamp),
        )
        .filter(User.is_active.is_(True))
        .order_by(User.id, LocationPing.id.desc())
        .all()
    )

    # Two pings sharing the latest timestamp: keep the one inserted last
    result = []
    seen = set()
    for user, ping in rows:
        if user.id in seen:
            continue
        seen.add(user.id)
        result.append((user, ping))
    return result


def add_location_ping(
    db: Session,
    user_id: int,
    latitude: float,
    longitude: float,
    accuracy: Optional[float] = None,
    timestamp: Optional[datetime.datetime] = None,
) -> LocationPing:
    ping = LocationPing(
        user_id=user_id,
        latitude=latitude,
        longitude=longitude,
        accuracy=accuracy,
        timestamp=_naive_utc(timestamp),
    )
    db.add(ping)
    db.commit()
    db.refresh(ping)
    return ping


# ---------------------------------------------------------------------------
# Check-in lookups
# ---------------------------------------------------------------------------

def has_automatic_checkin_today(db: Session, schedule_id: int, user_id: int, day: datetime.date) -> bool:
    """True if the user already has an automatic check-in for the schedule on `day`.

    Never used to decide whether to write; the ledger inserts and lets the
    unique index decide. This only confirms what an IntegrityError meant.
    """
    return (
        db.query(Checkin.id)
        .filter(
            Checkin.type == CHECKIN_AUTOMATIC,
            Checkin.schedule_id == schedule_id,
            Checkin.user_id == user_id,
            Checkin.checkin_day == day,
        )
        .first()
        is not None
    )


# ---------------------------------------------------------------------------
# Groups
# ---------------------------------------------------------------------------

def groups_linked_to_schedule(db: Session, schedule_id: int) -> list[int]:
    rows = (
        db.query(NotificationGroup.id)
        .join(group_schedules, group_schedules.c.group_id == NotificationGroup.id)
        .filter(group_schedules.c.schedule_id == schedule_id, NotificationGroup.is_active.is_(True))
        .order_by(NotificationGroup.id)
        .all()
    )
    return [row.id for row in rows]


def upsert_group_membership(
    db: Session,
    group_id: int,
    user_id: int,
    source_schedule_id: Optional[int],
    added_by: str = ADDED_BY_AUTO,
) -> bool:
    """Add the user to the group. Returns False (not an error) if already a member."""
    db.add(GroupMembership(
        group_id=group_id,
        user_id=user_id,
        added_by=added_by,
        source_schedule_id=source_schedule_id,
    ))
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        exists = (
            db.query(GroupMembership.id)
            .filter(GroupMembership.group_id == group_id, GroupMembership.user_id == user_id)
            .first()
        )
        if exists is None:
            raise
        return False
    return True
