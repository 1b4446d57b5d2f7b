"""Next-execution calculation for onetime, daily, and weekly schedules.

Every function here is pure: given the same schedule parameters and the same
`now`, the result is identical. Wall-clock times are interpreted in the task's
IANA zone and converted to aware UTC datetimes.

Recurring schedules are always derived from their canonical parameters
(`scheduled_time` and `time_zone`), never from the previous run plus a fixed
interval, so a delayed execution does not shift later occurrences.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import UTC, date, datetime, timedelta
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from chatsched.scheduling.errors import InvalidScheduleError
from chatsched.scheduling.types import ScheduleType

_TIME_RE = re.compile(r"^(\d{1,2}):(\d{2})$")
_WEEKLY_TIME_RE = re.compile(r"^(-?\d+):(\d{1,2}):(\d{2})$")
_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")


@dataclass(frozen=True)
class WallClockTime:
    hour: int
    minute: int
    weekday: int | None = None  # 0-6, Sunday=0; weekly schedules only


def utc_now() -> datetime:
    return datetime.now(UTC)


def iso_utc(value: datetime | None) -> str | None:
    """Serialize to an ISO string in UTC so stored timestamps sort lexically."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).isoformat()


def load_zone(time_zone: str) -> ZoneInfo:
    if not time_zone or not time_zone.strip():
        raise InvalidScheduleError("Time zone is required", {"timeZone": time_zone})
    try:
        return ZoneInfo(time_zone)
    except (ZoneInfoNotFoundError, ValueError, OSError):
        raise InvalidScheduleError(f"Invalid timezone: {time_zone}", {"timeZone": time_zone})


def coerce_schedule_type(value: ScheduleType | str) -> ScheduleType:
    try:
        return ScheduleType(value)
    except ValueError:
        raise InvalidScheduleError(f"Invalid schedule type: {value}", {"scheduleType": value})


def parse_scheduled_time(schedule_type: ScheduleType | str, scheduled_time: str) -> WallClockTime:
    """Parse "HH:MM" (onetime, daily) or "D:HH:MM" (weekly)."""
    schedule_type = coerce_schedule_type(schedule_type)
    raw = (scheduled_time or "").strip()

    weekday: int | None = None
    if schedule_type is ScheduleType.WEEKLY:
        match = _WEEKLY_TIME_RE.match(raw)
        if not match:
            raise InvalidScheduleError(
                f"Invalid weekly time (expected D:HH:MM): {scheduled_time}", {"scheduledTime": scheduled_time}
            )
        weekday = int(match.group(1))
        hour, minute = int(match.group(2)), int(match.group(3))
        if not 0 <= weekday <= 6:
            raise InvalidScheduleError(
                f"Weekday out of range (0-6, Sunday=0): {weekday}", {"scheduledTime": scheduled_time}
            )
    else:
        match = _TIME_RE.match(raw)
        if not match:
            raise InvalidScheduleError(
                f"Invalid time (expected HH:MM): {scheduled_time}", {"scheduledTime": scheduled_time}
            )
        hour, minute = int(match.group(1)), int(match.group(2))

    if hour > 23 or minute > 59:
        raise InvalidScheduleError(f"Time out of range: {scheduled_time}", {"scheduledTime": scheduled_time})
    return WallClockTime(hour=hour, minute=minute, weekday=weekday)


def parse_scheduled_date(scheduled_date: str) -> date:
    """Parse a strict "YYYY-MM-DD" date."""
    raw = (scheduled_date or "").strip()
    if not _DATE_RE.match(raw):
        raise InvalidScheduleError(
            f"Invalid date (expected YYYY-MM-DD): {scheduled_date}", {"scheduledDate": scheduled_date}
        )
    try:
        return date.fromisoformat(raw)
    except ValueError:
        raise InvalidScheduleError(f"Invalid date: {scheduled_date}", {"scheduledDate": scheduled_date})


def validate_schedule(
    schedule_type: ScheduleType | str,
    scheduled_time: str,
    time_zone: str,
    scheduled_date: str | None = None,
) -> None:
    """Raise InvalidScheduleError when any schedule parameter does not parse."""
    schedule_type = coerce_schedule_type(schedule_type)
    load_zone(time_zone)
    parse_scheduled_time(schedule_type, scheduled_time)
    if schedule_type is ScheduleType.ONETIME and scheduled_date:
        parse_scheduled_date(scheduled_date)


def to_utc(day: date, wall: WallClockTime, zone: ZoneInfo) -> datetime:
    """Convert a wall-clock time on `day` in `zone` to UTC.

    A time inside a spring-forward gap is read with the offset in force
    before the transition, so 02:30 on a 02:00->03:00 night lands on 03:30
    local. An ambiguous fall-back time resolves to its first occurrence.
    """
    local = datetime(day.year, day.month, day.day, wall.hour, wall.minute, tzinfo=zone)
    return local.astimezone(UTC)


def _normalize_now(now: datetime | None) -> datetime:
    if now is None:
        return utc_now()
    if now.tzinfo is None:
        return now.replace(tzinfo=UTC)
    return now.astimezone(UTC)


def compute_next_execution(
    schedule_type: ScheduleType | str,
    scheduled_time: str,
    time_zone: str,
    scheduled_date: str | None = None,
    now: datetime | None = None,
) -> datetime:
    """Return the next UTC execution instant for a schedule.

    onetime: `scheduled_date` (tomorrow in the task zone when absent) at
    `scheduled_time`; no forward search, callers reject past instants.
    daily: the first occurrence strictly after `now`, advancing by calendar
    days in the task zone.
    weekly: the target weekday this week, or the same weekday next week when
    that instant is not strictly after `now`.
    """
    schedule_type = coerce_schedule_type(schedule_type)
    zone = load_zone(time_zone)
    wall = parse_scheduled_time(schedule_type, scheduled_time)
    now = _normalize_now(now)
    local_today = now.astimezone(zone).date()

    if schedule_type is ScheduleType.ONETIME:
        day = parse_scheduled_date(scheduled_date) if scheduled_date else local_today + timedelta(days=1)
        return to_utc(day, wall, zone)

    if schedule_type is ScheduleType.DAILY:
        day = local_today
        candidate = to_utc(day, wall, zone)
        while candidate <= now:
            day += timedelta(days=1)
            candidate = to_utc(day, wall, zone)
        return candidate

    assert wall.weekday is not None
    current_weekday = (local_today.weekday() + 1) % 7  # Python: Monday=0 -> Sunday=0
    day = local_today + timedelta(days=(wall.weekday - current_weekday + 7) % 7)
    candidate = to_utc(day, wall, zone)
    if candidate <= now:
        candidate = to_utc(day + timedelta(days=7), wall, zone)
    return candidate
