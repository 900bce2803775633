"""
Recurring schedule calculator.

Pure functions over ScheduleDefinition:
    due(schedule, now)       enabled and nextExecutionAt <= now
    advance(schedule, now)   schedule with its next slot after a run
    first_execution(...)     initial nextExecutionAt for a new schedule

RECURRENCE RULES (wall-clock in the recurrence's timezone):
    once      fires at `at`, then disables itself
    daily     next HH:MM strictly after now
    weekly    next (dayOfWeek, HH:MM) strictly after now, 0 = Sunday
    monthly   next (dayOfMonth, HH:MM) strictly after now, one month at a
              time; days past the end of a month clamp to its last day

Any malformed recurrence raises ScheduleComputationError.
"""

import calendar
import re
from datetime import date, datetime, time, timedelta, timezone, tzinfo
from typing import Optional, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .. import config
from ..errors import ScheduleComputationError
from ..models.schedule import Recurrence, RecurrenceType, ScheduleDefinition

_TIME_RE = re.compile(r"^\s*(\d{1,2}):(\d{2})\s*$")


def resolve_timezone(name: Optional[str]) -> tzinfo:
    name = name or config.SCHEDULE_TIMEZONE
    if name.upper() == "UTC":
        return timezone.utc
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise ScheduleComputationError(f"Unknown timezone {name!r}") from e


def parse_time_of_day(text: Optional[str]) -> Tuple[int, int]:
    """'HH:MM' -> (hour, minute)"""
    match = _TIME_RE.match(text or "")
    if not match:
        raise ScheduleComputationError(f"Invalid time of day {text!r}, expected HH:MM")
    hour, minute = int(match.group(1)), int(match.group(2))
    if hour > 23 or minute > 59:
        raise ScheduleComputationError(f"Time of day out of range: {text!r}")
    return hour, minute


def _recurrence_type(recurrence: Recurrence) -> RecurrenceType:
    try:
        return RecurrenceType(recurrence.type)
    except ValueError:
        raise ScheduleComputationError(f"Unknown recurrence type {recurrence.type!r}") from None


def _aware(moment: datetime, tz: tzinfo) -> datetime:
    if moment.tzinfo is None:
        return moment.replace(tzinfo=tz)
    return moment


def _at(day: date, hour: int, minute: int, tz: tzinfo) -> datetime:
    return datetime.combine(day, time(hour, minute), tzinfo=tz)


def _add_months(year: int, month: int, months: int) -> Tuple[int, int]:
    index = year * 12 + (month - 1) + months
    return index // 12, index % 12 + 1


def next_occurrence(recurrence: Recurrence, after: datetime) -> datetime:
    """First slot of a recurring schedule strictly after `after` (UTC)"""
    kind = _recurrence_type(recurrence)
    if kind is RecurrenceType.ONCE:
        raise ScheduleComputationError("One-shot schedules have no next occurrence")

    tz = resolve_timezone(recurrence.timezone)
    hour, minute = parse_time_of_day(recurrence.time)
    local = _aware(after, timezone.utc).astimezone(tz)

    if kind is RecurrenceType.DAILY:
        candidate = _at(local.date(), hour, minute, tz)
        if candidate <= local:
            candidate = _at(local.date() + timedelta(days=1), hour, minute, tz)

    elif kind is RecurrenceType.WEEKLY:
        day_of_week = recurrence.day_of_week
        if day_of_week is None or not 0 <= day_of_week <= 6:
            raise ScheduleComputationError(f"dayOfWeek must be 0-6 (0 = Sunday), got {day_of_week!r}")
        # Python weekday(): Monday = 0
        target = (day_of_week - 1) % 7
        days_ahead = (target - local.weekday()) % 7
        candidate = _at(local.date() + timedelta(days=days_ahead), hour, minute, tz)
        if candidate <= local:
            candidate = _at(local.date() + timedelta(days=days_ahead + 7), hour, minute, tz)

    else:
        day_of_month = recurrence.day_of_month
        if day_of_month is None or not 1 <= day_of_month <= 31:
            raise ScheduleComputationError(f"dayOfMonth must be 1-31, got {day_of_month!r}")
        candidate = None
        for months in range(0, 13):
            year, month = _add_months(local.year, local.month, months)
            day = min(day_of_month, calendar.monthrange(year, month)[1])
            slot = _at(date(year, month, day), hour, minute, tz)
            if slot > local:
                candidate = slot
                break

    return candidate.astimezone(timezone.utc)


def first_execution(recurrence: Recurrence, now: datetime) -> datetime:
    """nextExecutionAt for a newly enqueued schedule"""
    if _recurrence_type(recurrence) is RecurrenceType.ONCE:
        if recurrence.at is None:
            raise ScheduleComputationError("One-shot schedule has no 'at' instant")
        return _aware(recurrence.at, resolve_timezone(recurrence.timezone)).astimezone(timezone.utc)
    return next_occurrence(recurrence, now)


def due(schedule: ScheduleDefinition, now: datetime) -> bool:
    if not schedule.enabled or schedule.next_execution_at is None:
        return False
    return _aware(schedule.next_execution_at, timezone.utc) <= _aware(now, timezone.utc)


def advance(schedule: ScheduleDefinition, now: datetime) -> ScheduleDefinition:
    """Schedule after the slot due at `now` has been executed"""
    if _recurrence_type(schedule.recurrence) is RecurrenceType.ONCE:
        return schedule.model_copy(update={"enabled": False, "next_execution_at": None})
    try:
        next_at = next_occurrence(schedule.recurrence, now)
    except ScheduleComputationError as e:
        e.schedule_id = schedule.id
        raise
    return schedule.model_copy(update={"next_execution_at": next_at})
