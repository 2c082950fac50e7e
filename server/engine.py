"""Automatic check-in engine: on every tick, check in users found near the tags of open schedules.

Tick pipeline:
1. Load schedules flagged active; stop early if there are none
2. Keep those whose day/time window is open right now
3. For each schedule tag with geolocation, load users with a fresh location
4. Measure each user's distance to the tag; within-radius users are recorded
   in the ledger (one automatic check-in per user/schedule/day)
5. Newly checked-in users join the schedule's groups (best effort)

Errors for one user or tag are logged and counted without stopping the tick.
A database outage aborts the tick; the next scheduled tick retries.
"""

import datetime
import logging
import threading
import time
from dataclasses import asdict, dataclass, field
from typing import Callable, Optional

from apscheduler.schedulers.background import BackgroundScheduler
from sqlalchemy.orm import Session

from database import SessionLocal, get_settings
from errors import GeolocationNotConfigured, InvalidCoordinate, NotFound, PersistenceUnavailable
from geo import haversine_m, is_within_radius
from groups import ensure_membership
from ledger import try_record_automatic
from schedules import is_schedule_active, local_day
from store import (
    get_schedule, list_active_schedules, list_schedule_tags, persistence_errors, recent_users_near_tag,
)

logger = logging.getLogger(__name__)

FRESHNESS_MINUTES = 30
TRIGGER_FRESHNESS_MINUTES = 60
DEFAULT_RADIUS_M = 100
TICK_INTERVAL_MINUTES = 10

JOB_ID = "automatic-checkins"

CREATED = "created"
DUPLICATE = "duplicate"
OUT_OF_RADIUS = "out_of_radius"


def _utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


# ---------------------------------------------------------------------------
# Counters
# ---------------------------------------------------------------------------

@dataclass
class ScheduleStats:
    schedule_id: int
    tags_skipped: int = 0
    users_processed: int = 0
    checkins_created: int = 0
    checkins_skipped: int = 0
    out_of_radius: int = 0
    errors: int = 0


@dataclass
class TickStats:
    started_at: datetime.datetime
    schedules_loaded: int = 0
    schedules_active: int = 0
    tags_skipped: int = 0
    users_processed: int = 0
    checkins_created: int = 0
    checkins_skipped: int = 0
    out_of_radius: int = 0
    errors: int = 0
    aborted: bool = False
    duration_ms: int = 0
    schedules: list[ScheduleStats] = field(default_factory=list)

    def add(self, s: ScheduleStats) -> None:
        self.schedules.append(s)
        self.tags_skipped += s.tags_skipped
        self.users_processed += s.users_processed
        self.checkins_created += s.checkins_created
        self.checkins_skipped += s.checkins_skipped
        self.out_of_radius += s.out_of_radius
        self.errors += s.errors

    def as_dict(self) -> dict:
        data = asdict(self)
        data["started_at"] = self.started_at.isoformat()
        return data


@dataclass
class TriggerResult:
    schedule_id: int
    schedule_name: Optional[str]
    users_processed: int = 0
    users_within_radius: int = 0
    users_skipped: int = 0
    errors: int = 0
    results: list[dict] = field(default_factory=list)
    skipped: list[dict] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Tick
# ---------------------------------------------------------------------------

def _check_in_candidate(db: Session, schedule, tag, user, ping, day, radius, now) -> str:
    """Run distance + ledger + groups for one user. Returns CREATED, DUPLICATE or OUT_OF_RADIUS."""
    distance = haversine_m(ping.latitude, ping.longitude, tag.latitude, tag.longitude)
    if not is_within_radius(distance, radius):
        return OUT_OF_RADIUS

    outcome = try_record_automatic(
        db, schedule.id, user.id, tag.id, ping.latitude, ping.longitude,
        distance, True, day, radius_m=radius, now=now,
    )
    if not outcome.created:
        return DUPLICATE

    logger.info(
        "Check-in registered for user %d at tag %s (%.0fm, radius %sm)",
        user.id, tag.uid, distance, radius,
    )
    try:
        ensure_membership(db, user.id, schedule.id)
    except Exception:
        # the check-in stands even if group membership could not be updated
        db.rollback()
        logger.warning("Error adding user %d to groups of schedule %d", user.id, schedule.id, exc_info=True)
    return CREATED


def process_schedule(
    db: Session,
    schedule,
    now: datetime.datetime,
    freshness_minutes: int = FRESHNESS_MINUTES,
    default_radius: int = DEFAULT_RADIUS_M,
) -> ScheduleStats:
    """Process every tag of one (already known to be open) schedule."""
    stats = ScheduleStats(schedule_id=schedule.id)
    schedule_id = schedule.id
    day = local_day(now, schedule.timezone)

    tags = list_schedule_tags(db, schedule_id)
    if not tags:
        logger.info("Schedule %d has no tags, skipping", schedule_id)
        return stats

    for tag in tags:
        if not tag.has_geolocation:
            logger.info("Tag %s has no geolocation, skipping", tag.uid)
            stats.tags_skipped += 1
            continue

        radius = tag.radius_meters or default_radius
        try:
            with persistence_errors():
                candidates = recent_users_near_tag(db, tag.id, freshness_minutes, now)
        except PersistenceUnavailable:
            raise
        except Exception:
            db.rollback()
            logger.exception("Error loading recent locations for tag %s", tag.uid)
            stats.errors += 1
            continue

        if not candidates:
            logger.debug("Tag %s: no users with recent location", tag.uid)
            continue

        for user, ping in candidates:
            user_id = user.id
            stats.users_processed += 1
            try:
                with persistence_errors():
                    result = _check_in_candidate(db, schedule, tag, user, ping, day, radius, now)
            except PersistenceUnavailable:
                raise
            except InvalidCoordinate as e:
                logger.warning("Bad coordinates for user %d at tag %s: %s", user_id, tag.uid, e)
                stats.errors += 1
                continue
            except Exception:
                db.rollback()
                logger.exception("Error processing user %d for schedule %d", user_id, schedule_id)
                stats.errors += 1
                continue

            if result == CREATED:
                stats.checkins_created += 1
            elif result == DUPLICATE:
                stats.checkins_skipped += 1
            else:
                stats.out_of_radius += 1

    logger.info(
        "Schedule %d complete: %d created, %d already checked in, %d out of radius, %d errors",
        schedule_id, stats.checkins_created, stats.checkins_skipped, stats.out_of_radius, stats.errors,
    )
    return stats


def process_active_schedules(
    db: Session,
    now: datetime.datetime,
    stats: Optional[TickStats] = None,
) -> TickStats:
    """One full tick. Raises PersistenceUnavailable if the database goes away."""
    stats = stats or TickStats(started_at=now)
    settings = get_settings(db)

    schedules = list_active_schedules(db)
    stats.schedules_loaded = len(schedules)
    if not schedules:
        logger.info("No active schedules found")
        return stats

    open_schedules = [s for s in schedules if is_schedule_active(s, now)]
    stats.schedules_active = len(open_schedules)
    if not open_schedules:
        logger.info("No schedule is open at %s", now.isoformat())
        return stats

    for schedule in open_schedules:
        schedule_id = schedule.id
        try:
            with persistence_errors():
                stats.add(process_schedule(
                    db, schedule, now,
                    freshness_minutes=settings["freshness_minutes"],
                    default_radius=settings["default_radius_m"],
                ))
        except PersistenceUnavailable:
            raise
        except Exception:
            db.rollback()
            logger.exception("Error processing schedule %d", schedule_id)
            stats.errors += 1
    return stats


# ---------------------------------------------------------------------------
# Administrative "run now"
# ---------------------------------------------------------------------------

def trigger_schedule(db: Session, schedule_id: int, now: Optional[datetime.datetime] = None) -> TriggerResult:
    """Run automatic check-in for one schedule immediately, ignoring its time window.

    Unlike a tick, every user is recorded, including those outside the radius
    (as failed), so an administrator can see why nobody was checked in.
    """
    now = now or _utcnow()
    schedule = get_schedule(db, schedule_id)
    if schedule is None:
        raise NotFound(f"Schedule {schedule_id} not found")

    settings = get_settings(db)
    tags = [t for t in list_schedule_tags(db, schedule_id) if t.has_geolocation]
    if not tags:
        raise GeolocationNotConfigured(f"Schedule {schedule_id} has no tag with geolocation")

    result = TriggerResult(schedule_id=schedule.id, schedule_name=schedule.name)
    day = local_day(now, schedule.timezone)

    for tag in tags:
        tag_id, tag_uid = tag.id, tag.uid
        radius = tag.radius_meters or settings["default_radius_m"]
        try:
            with persistence_errors():
                candidates = recent_users_near_tag(db, tag_id, settings["trigger_freshness_minutes"], now)
        except PersistenceUnavailable:
            raise
        except Exception:
            db.rollback()
            logger.exception("Error loading recent locations for tag %s", tag_uid)
            result.errors += 1
            continue

        for user, ping in candidates:
            user_id, user_name = user.id, user.name
            try:
                with persistence_errors():
                    distance = haversine_m(ping.latitude, ping.longitude, tag.latitude, tag.longitude)
                    within = is_within_radius(distance, radius)
                    outcome = try_record_automatic(
                        db, schedule_id, user_id, tag_id, ping.latitude, ping.longitude,
                        distance, within, day, radius_m=radius, now=now,
                    )
            except PersistenceUnavailable:
                raise
            except InvalidCoordinate as e:
                result.errors += 1
                result.skipped.append({"user_id": user_id, "user_name": user_name, "reason": str(e)})
                continue
            except Exception as e:
                db.rollback()
                logger.exception("Error triggering check-in for user %d on schedule %d", user_id, schedule_id)
                result.errors += 1
                result.skipped.append({"user_id": user_id, "user_name": user_name, "reason": f"error: {e}"})
                continue

            if not outcome.created:
                result.skipped.append({
                    "user_id": user_id,
                    "user_name": user_name,
                    "reason": "already checked in for this schedule today",
                })
                continue

            if within:
                try:
                    ensure_membership(db, user_id, schedule_id)
                except Exception:
                    db.rollback()
                    logger.warning("Error adding user %d to groups of schedule %d", user_id, schedule_id, exc_info=True)

            result.results.append({
                "user_id": user_id,
                "user_name": user_name,
                "tag_id": tag_id,
                "distance_meters": round(distance),
                "is_within_radius": within,
                "checkin_id": outcome.checkin.id,
            })

    result.users_processed = len(result.results)
    result.users_within_radius = sum(1 for r in result.results if r["is_within_radius"])
    result.users_skipped = len(result.skipped)
    logger.info(
        "Manual trigger for schedule %d: %d processed, %d within radius, %d skipped",
        schedule_id, result.users_processed, result.users_within_radius, result.users_skipped,
    )
    return result


# ---------------------------------------------------------------------------
# Ticker service
# ---------------------------------------------------------------------------

class CheckinEngine:
    """Owns the periodic ticker. Ticks never overlap; stop() waits for a running tick."""

    def __init__(
        self,
        session_factory: Callable[[], Session] = SessionLocal,
        interval_minutes: Optional[int] = None,
        clock: Callable[[], datetime.datetime] = _utcnow,
    ):
        self._session_factory = session_factory
        self._interval_minutes = interval_minutes
        self._clock = clock
        self._scheduler: Optional[BackgroundScheduler] = None
        self._tick_lock = threading.Lock()
        self.last_stats: Optional[TickStats] = None

    @property
    def running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    def _resolve_interval(self) -> int:
        if self._interval_minutes:
            return self._interval_minutes
        db = self._session_factory()
        try:
            return get_settings(db)["tick_interval_minutes"]
        except Exception:
            logger.warning("Could not read tick interval, using %d minutes", TICK_INTERVAL_MINUTES, exc_info=True)
            return TICK_INTERVAL_MINUTES
        finally:
            db.close()

    def start(self) -> None:
        if self.running:
            return
        interval = self._resolve_interval()
        self._scheduler = BackgroundScheduler(timezone="UTC")
        self._scheduler.add_job(
            self.run_tick,
            "interval",
            minutes=interval,
            id=JOB_ID,
            max_instances=1,
            coalesce=True,
        )
        self._scheduler.start()
        logger.info("Automatic check-in engine started (every %d minutes)", interval)

    def stop(self) -> None:
        if self._scheduler is None:
            return
        logger.info("Stopping automatic check-in engine...")
        if self._scheduler.running:
            self._scheduler.shutdown(wait=True)
        self._scheduler = None
        logger.info("Automatic check-in engine stopped")

    def run_tick(self, now: Optional[datetime.datetime] = None) -> TickStats:
        """Run one tick synchronously; never raises."""
        now = now or self._clock()
        stats = TickStats(started_at=now)
        started = time.monotonic()

        with self._tick_lock:
            db = self._session_factory()
            try:
                with persistence_errors():
                    process_active_schedules(db, now, stats)
            except PersistenceUnavailable as e:
                stats.aborted = True
                logger.error("Database unavailable, aborting tick (will retry next tick): %s", e)
            except Exception:
                stats.aborted = True
                logger.exception("Fatal error in automatic check-in tick")
            finally:
                db.close()

        self._log_tick(stats, started)
        return stats

    def trigger(self, schedule_id: int, now: Optional[datetime.datetime] = None) -> TriggerResult:
        """Run one schedule now in its own session. Errors propagate to the caller."""
        db = self._session_factory()
        try:
            with persistence_errors():
                return trigger_schedule(db, schedule_id, now or self._clock())
        finally:
            db.close()

    def _log_tick(self, stats: TickStats, started: float) -> None:
        stats.duration_ms = int((time.monotonic() - started) * 1000)
        self.last_stats = stats
        logger.info(
            "Tick complete: schedules %d/%d open, %d tags skipped, %d users, "
            "%d created, %d already checked in, %d out of radius, %d errors, %dms%s",
            stats.schedules_active, stats.schedules_loaded, stats.tags_skipped, stats.users_processed,
            stats.checkins_created, stats.checkins_skipped, stats.out_of_radius, stats.errors,
            stats.duration_ms, " (aborted)" if stats.aborted else "",
        )

