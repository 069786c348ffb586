"""UTC timestamp helpers.

All timestamps are persisted in one fixed-width UTC format so SQLite can
compare them as strings.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(dt: datetime) -> str:
    """Format an aware (or naive-UTC) datetime as a storage timestamp."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).strftime(_FORMAT)


def now_iso() -> str:
    return to_iso(utc_now())


def parse_iso(value: str) -> datetime:
    """Parse an ISO-8601 string. Naive values are taken as UTC.

    Raises ``ValueError`` on malformed input.
    """
    text = value.strip()
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    dt = datetime.fromisoformat(text)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def iso_after(seconds: float, now: datetime | None = None) -> str:
    """Storage timestamp ``seconds`` after ``now``."""
    return to_iso((now or utc_now()) + timedelta(seconds=seconds))
