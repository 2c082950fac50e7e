"""Check-in ledger: persists check-ins and enforces the once-per-day rules.

The per-day guarantees live in the `uq_automatic_checkin_per_day` and
`uq_manual_checkin_per_day` partial unique indexes. try_record_automatic()
always inserts and treats a unique violation as "already exists"; it never
reads first to decide whether to write. record_manual() turns the same
violation into AlreadyCheckedInToday.
"""

import datetime
import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from errors import AlreadyCheckedInToday
from models import (
    CHECKIN_AUTOMATIC, CHECKIN_MANUAL, STATUS_COMPLETED, STATUS_FAILED, Checkin, utcnow,
)
from store import has_automatic_checkin_today

logger = logging.getLogger(__name__)

ALREADY_EXISTS = "already_exists"


@dataclass
class LedgerOutcome:
    created: bool
    checkin: Optional[Checkin] = None
    reason: Optional[str] = None

    @property
    def skipped(self) -> bool:
        return not self.created


def _outside_message(distance_m: float, radius_m: Optional[float]) -> str:
    if radius_m is None:
        return f"outside radius ({round(distance_m)}m)"
    return f"outside radius ({round(distance_m)}m > {round(radius_m)}m)"


def _build(
    checkin_type: str,
    user_id: int,
    tag_id: int,
    schedule_id: Optional[int],
    latitude: float,
    longitude: float,
    distance_m: float,
    within_radius: bool,
    day: datetime.date,
    radius_m: Optional[float],
    now: Optional[datetime.datetime],
) -> Checkin:
    return Checkin(
        user_id=user_id,
        tag_id=tag_id,
        schedule_id=schedule_id,
        latitude=latitude,
        longitude=longitude,
        distance_meters=max(0.0, float(distance_m)),
        is_within_radius=within_radius,
        type=checkin_type,
        status=STATUS_COMPLETED if within_radius else STATUS_FAILED,
        error_message=None if within_radius else _outside_message(distance_m, radius_m),
        checkin_day=day,
        created_at=now or utcnow(),
    )


def try_record_automatic(
    db: Session,
    schedule_id: int,
    user_id: int,
    tag_id: int,
    latitude: float,
    longitude: float,
    distance_m: float,
    within_radius: bool,
    day: datetime.date,
    radius_m: Optional[float] = None,
    now: Optional[datetime.datetime] = None,
) -> LedgerOutcome:
    """Insert an automatic check-in unless one exists for (user, schedule, day).

    Concurrent callers for the same triple get exactly one `created`; the rest
    get `skipped` with reason ALREADY_EXISTS.
    """
    checkin = _build(
        CHECKIN_AUTOMATIC, user_id, tag_id, schedule_id, latitude, longitude,
        distance_m, within_radius, day, radius_m, now,
    )
    db.add(checkin)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        # Anything other than the per-day index is a real error
        if not has_automatic_checkin_today(db, schedule_id, user_id, day):
            raise
        logger.debug(
            "Automatic check-in already recorded: user=%d schedule=%d day=%s",
            user_id, schedule_id, day,
        )
        return LedgerOutcome(created=False, reason=ALREADY_EXISTS)

    db.refresh(checkin)
    return LedgerOutcome(created=True, checkin=checkin)


def record_manual(
    db: Session,
    user_id: int,
    tag_id: int,
    latitude: float,
    longitude: float,
    distance_m: float,
    within_radius: bool,
    day: datetime.date,
    schedule_id: Optional[int] = None,
    radius_m: Optional[float] = None,
    now: Optional[datetime.datetime] = None,
) -> Checkin:
    """Write a manual check-in; out-of-radius attempts are kept as failed for history.

    A second completed check-in for (user, tag, day) violates
    `uq_manual_checkin_per_day` and raises AlreadyCheckedInToday with the
    row that got there first.
    """
    checkin = _build(
        CHECKIN_MANUAL, user_id, tag_id, schedule_id, latitude, longitude,
        distance_m, within_radius, day, radius_m, now,
    )
    db.add(checkin)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        existing = manual_checkin_on_day(db, user_id, tag_id, day)
        if existing is None:
            raise
        logger.debug("Manual check-in already recorded: user=%d tag=%d day=%s", user_id, tag_id, day)
        raise AlreadyCheckedInToday(existing.id, existing.tag.uid, existing.tag.redirect_url) from None

    db.refresh(checkin)
    return checkin


def manual_checkin_on_day(db: Session, user_id: int, tag_id: int, day: datetime.date) -> Optional[Checkin]:
    """First completed manual check-in for (user, tag, day); failed attempts do not count."""
    return (
        db.query(Checkin)
        .filter(
            Checkin.type == CHECKIN_MANUAL,
            Checkin.status == STATUS_COMPLETED,
            Checkin.user_id == user_id,
            Checkin.tag_id == tag_id,
            Checkin.checkin_day == day,
        )
        .order_by(Checkin.id)
        .first()
    )
