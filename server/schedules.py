"""Schedule activation: is a recurring day-of-week/time window open at a given instant?

Days of week follow the 0 = Sunday ... 6 = Saturday convention and are stored
as a comma-separated string ("1,3,5"). Times are "HH:MM" strings within a
single day; windows that wrap past midnight are rejected, not evaluated.
"""

import datetime
import logging
import re
from typing import Iterable, Union
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from errors import ScheduleConfigError

logger = logging.getLogger(__name__)

DEFAULT_TIMEZONE = "America/Campo_Grande"

_TIME_RE = re.compile(r"^([01]?[0-9]|2[0-3]):([0-5][0-9])$")


# ---------------------------------------------------------------------------
# Parsing / validation
# ---------------------------------------------------------------------------

def parse_time(value: str) -> int:
    """Parse "HH:MM" into minutes since midnight."""
    match = _TIME_RE.match((value or "").strip())
    if not match:
        raise ScheduleConfigError(f"Invalid time {value!r}, expected HH:MM")
    return int(match.group(1)) * 60 + int(match.group(2))


def parse_days(value: Union[str, Iterable[int], None]) -> set[int]:
    """Parse a day set ("0,3,6" or an iterable of ints) into {0..6}."""
    if value is None:
        raise ScheduleConfigError("Days of week are required")
    parts = value.split(",") if isinstance(value, str) else list(value)
    days = set()
    for part in parts:
        if isinstance(part, str):
            part = part.strip()
            if not part:
                continue
        try:
            day = int(part)
        except (TypeError, ValueError):
            raise ScheduleConfigError(f"Invalid day of week {part!r}") from None
        if not 0 <= day <= 6:
            raise ScheduleConfigError(f"Day of week {day} out of range, use 0-6 (0=Sunday)")
        days.add(day)
    if not days:
        raise ScheduleConfigError("At least one day of week is required")
    return days


def get_zone(name: str | None) -> ZoneInfo:
    try:
        return ZoneInfo(name or DEFAULT_TIMEZONE)
    except (ZoneInfoNotFoundError, ValueError):
        raise ScheduleConfigError(f"Unknown timezone {name!r}") from None


def validate_schedule_fields(days_of_week, start_time: str, end_time: str, timezone: str | None) -> None:
    """Reject a schedule configuration the evaluator cannot handle.

    Overnight windows (start after end, e.g. 22:00-02:00) are not supported.
    """
    parse_days(days_of_week)
    start = parse_time(start_time)
    end = parse_time(end_time)
    if start > end:
        raise ScheduleConfigError(
            f"Window {start_time}-{end_time} spans midnight; overnight schedules are not supported"
        )
    get_zone(timezone)


# ---------------------------------------------------------------------------
# Time helpers
# ---------------------------------------------------------------------------

def _aware(now: datetime.datetime) -> datetime.datetime:
    """Treat naive datetimes as UTC."""
    if now.tzinfo is None:
        return now.replace(tzinfo=datetime.timezone.utc)
    return now


def to_local(now: datetime.datetime, tz_name: str | None) -> datetime.datetime:
    return _aware(now).astimezone(get_zone(tz_name))


def weekday_sunday_first(dt: datetime.datetime) -> int:
    """Day of week with 0 = Sunday, 6 = Saturday."""
    return (dt.weekday() + 1) % 7


def local_day(now: datetime.datetime, tz_name: str | None) -> datetime.date:
    """Calendar date of `now` in the given timezone."""
    return to_local(now, tz_name).date()


# ---------------------------------------------------------------------------
# Evaluator
# ---------------------------------------------------------------------------

def is_schedule_active(schedule, now: datetime.datetime) -> bool:
    """Return True if the schedule's window is open at `now`.

    `now` is converted to the schedule's timezone; both window bounds are
    inclusive at minute resolution. A schedule whose stored configuration is
    invalid is logged and reported inactive.
    """
    if not schedule.is_active:
        return False

    try:
        days = parse_days(schedule.days_of_week)
        start = parse_time(schedule.start_time)
        end = parse_time(schedule.end_time)
        local = to_local(now, schedule.timezone)
    except ScheduleConfigError as e:
        logger.warning("Schedule %s is misconfigured, treating as inactive: %s", schedule.id, e)
        return False

    if start > end:
        logger.warning(
            "Schedule %s has an overnight window %s-%s, treating as inactive",
            schedule.id, schedule.start_time, schedule.end_time,
        )
        return False

    if weekday_sunday_first(local) not in days:
        return False

    current = local.hour * 60 + local.minute
    return start <= current <= end
