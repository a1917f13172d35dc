"""Time-of-day ranges and calendar day/week boundaries.

All functions are pure. Instants are timezone-aware datetimes; calendar
questions ("is this a new day?") are answered in the user's local timezone.
"""

from datetime import date, datetime, time, timedelta, timezone
from typing import Optional, Union
from zoneinfo import ZoneInfo

TimeOfDay = Union[time, str]


def parse_time_of_day(value: TimeOfDay) -> time:
    """Parse ``"HH:MM"`` (or ``"HH:MM:SS"``) into a time; times pass through."""
    if isinstance(value, time):
        return value
    parts = value.strip().split(":")
    if len(parts) not in (2, 3):
        raise ValueError(f"Invalid time of day: {value!r}")
    hour, minute = int(parts[0]), int(parts[1])
    return time(hour, minute)


def _minute_of_day(value: TimeOfDay) -> int:
    parsed = parse_time_of_day(value)
    return parsed.hour * 60 + parsed.minute


def is_in_range(current: TimeOfDay, start: TimeOfDay, end: TimeOfDay) -> bool:
    """Check whether ``current`` falls in ``[start, end)`` at minute resolution.

    When ``start >= end`` the window wraps past midnight, so 23:30-08:00
    contains 02:00 but not 10:00.
    """
    now_m = _minute_of_day(current)
    start_m = _minute_of_day(start)
    end_m = _minute_of_day(end)

    if start_m < end_m:
        return start_m <= now_m < end_m
    return now_m >= start_m or now_m < end_m


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def local_now(tz: str, now: Optional[datetime] = None) -> datetime:
    """``now`` (default: current instant) expressed in ``tz``."""
    return (now or utcnow()).astimezone(ZoneInfo(tz))


def local_date(moment: datetime, tz: str) -> date:
    return moment.astimezone(ZoneInfo(tz)).date()


def local_day_start(tz: str, now: Optional[datetime] = None) -> datetime:
    """UTC instant of the most recent local midnight in ``tz``."""
    local = local_now(tz, now)
    midnight = datetime.combine(local.date(), time.min, tzinfo=local.tzinfo)
    return midnight.astimezone(timezone.utc)


def next_local_midnight(tz: str, now: Optional[datetime] = None) -> datetime:
    """UTC instant of the next local midnight in ``tz``."""
    local = local_now(tz, now)
    tomorrow = local.date() + timedelta(days=1)
    return datetime.combine(tomorrow, time.min, tzinfo=local.tzinfo).astimezone(timezone.utc)


def sunday_weekday(day: date) -> int:
    """Day-of-week index with Sunday as 0 and Saturday as 6."""
    return (day.weekday() + 1) % 7


def local_week_start(tz: str, now: Optional[datetime] = None) -> datetime:
    """UTC instant of local midnight on the most recent Sunday in ``tz``."""
    local = local_now(tz, now)
    sunday = local.date() - timedelta(days=sunday_weekday(local.date()))
    return datetime.combine(sunday, time.min, tzinfo=local.tzinfo).astimezone(timezone.utc)


def is_new_day(last: datetime, now: datetime, tz: str) -> bool:
    return local_date(now, tz) != local_date(last, tz)


def is_new_week(last: datetime, now: datetime, tz: str) -> bool:
    """Detect a Sunday-based week rollover between ``last`` and ``now``.

    Either the day-of-week index went backwards (e.g. Friday -> Monday), or
    at least seven calendar days elapsed, which also covers long idle gaps
    that land on a later weekday.
    """
    last_day = local_date(last, tz)
    today = local_date(now, tz)
    if today <= last_day:
        return False
    if (today - last_day).days >= 7:
        return True
    return sunday_weekday(today) < sunday_weekday(last_day)
