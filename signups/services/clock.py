"""Time windows used by the reminder scheduler."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone, tzinfo

from dateutil import tz

from signups.domain.errors import UnknownTimeZone

REMINDER_WINDOW = timedelta(days=3)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(moment: datetime) -> datetime:
    """Naive timestamps are taken to be UTC; aware ones are converted."""
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)


def due_window(
    now: datetime, window: timedelta = REMINDER_WINDOW
) -> tuple[datetime, datetime]:
    """Return the open interval ``(now, now + window)`` as a pair."""
    return now, now + window


def is_due(starts_at: datetime, now: datetime, window: timedelta = REMINDER_WINDOW) -> bool:
    """True when ``starts_at`` lies strictly inside the due window.

    Anything that already started, starts exactly now, or starts at or beyond
    the far edge of the window is not due.
    """
    start, end = due_window(now, window)
    return start < starts_at < end


def resolve_time_zone(name: str) -> tzinfo:
    zone = tz.gettz(name)
    if zone is None:
        raise UnknownTimeZone(f"Unknown time zone: {name}")
    return zone


def localize(moment: datetime, time_zone: str) -> datetime:
    """Render a stored UTC timestamp in the event's display time zone."""
    return moment.astimezone(resolve_time_zone(time_zone))
