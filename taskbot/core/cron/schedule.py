"""Timezone-aware schedule evaluation (fixed instants and cron expressions)."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from apscheduler.triggers.cron import CronTrigger

from taskbot.core.errors import ValidationError
from taskbot.core.timeutil import parse_iso


def resolve_timezone(name: str) -> ZoneInfo:
    """IANA name → ZoneInfo. Unknown names raise ``ValidationError``."""
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError, TypeError) as e:
        raise ValidationError(f"Unknown timezone: {name}") from e


def normalize_run_at(value: str | datetime) -> datetime:
    """Parse a one-time run instant into an aware UTC datetime.

    Strings without an offset are taken as UTC.
    """
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)
    try:
        return parse_iso(value)
    except (TypeError, ValueError, AttributeError) as e:
        raise ValidationError(f"Invalid datetime: {value!r}") from e


def parse_cron(expression: str, tz: str) -> CronTrigger:
    """Build a CronTrigger evaluated in ``tz``.

    Standard 5-field crontab syntax; numeric weekdays count from Sunday
    (0 or 7).
    """
    zone = resolve_timezone(tz)
    fields = expression.split()
    if len(fields) != 5:
        raise ValidationError(
            f"Invalid cron expression '{expression}': expected 5 fields, got {len(fields)}"
        )
    minute, hour, day, month, day_of_week = fields
    try:
        return CronTrigger(
            minute=minute,
            hour=hour,
            day=day,
            month=month,
            day_of_week=_crontab_weekdays(day_of_week),
            timezone=zone,
        )
    except (ValueError, KeyError, LookupError, AttributeError) as e:
        raise ValidationError(f"Invalid cron expression '{expression}': {e}") from e


_WEEKDAYS = ["sun", "mon", "tue", "wed", "thu", "fri", "sat", "sun"]


def _crontab_weekdays(field: str) -> str:
    """Crontab weekday field → APScheduler names (APScheduler counts from Monday)."""
    if not any(ch.isdigit() for ch in field):
        return field
    days: list[str] = []
    for part in field.split(","):
        base, _, step = part.partition("/")
        if base == "*":
            start, end = 0, 6
        elif not any(ch.isdigit() for ch in base):
            days.append(part)
            continue
        elif "-" in base:
            start, end = (int(v) for v in base.split("-", 1))
        else:
            start = int(base)
            end = 6 if step else start
        if not (0 <= start <= 7 and 0 <= end <= 7) or start > end:
            raise ValueError(f"weekday out of range: {part}")
        for n in range(start, end + 1, int(step) if step else 1):
            name = _WEEKDAYS[n]
            if name not in days:
                days.append(name)
    return ",".join(days)


def compute_next_run(expression: str, tz: str, after: datetime) -> datetime:
    """First fire time strictly after ``after``, returned in UTC.

    The expression is evaluated in ``tz`` so wall-clock schedules keep
    their local hour across DST changes.
    """
    trigger = parse_cron(expression, tz)
    if after.tzinfo is None:
        after = after.replace(tzinfo=timezone.utc)
    # get_next_fire_time returns times >= now; shift by 1µs for "strictly after"
    fire = trigger.get_next_fire_time(None, after + timedelta(microseconds=1))
    if fire is None:
        raise ValidationError(f"Cron expression '{expression}' never fires")
    return fire.astimezone(timezone.utc)


def format_local(dt: datetime, tz: str) -> str:
    """Human-readable local time, e.g. ``Sat, Jan 31, 3:00 PM``."""
    try:
        zone = ZoneInfo(tz)
    except (ZoneInfoNotFoundError, ValueError):
        zone = timezone.utc
    local = dt.astimezone(zone)
    hour = local.hour % 12 or 12
    return f"{local:%a, %b} {local.day}, {hour}:{local:%M %p}"
