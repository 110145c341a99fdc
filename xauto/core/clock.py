"""Clock abstraction and calendar keys.

Every time-dependent decision (token expiry, budget month, sync interval,
digest cooldown, prompt cache TTL, digest periods) reads the time from a
Clock so tests can pin it.
"""

from datetime import date, datetime, time, timedelta, timezone
from typing import Protocol
from zoneinfo import ZoneInfo


class Clock(Protocol):
    def now(self) -> datetime: ...


class SystemClock:
    """Wall clock returning timezone-aware UTC datetimes."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class FixedClock:
    """Manually driven clock for tests and replays."""

    def __init__(self, current: datetime):
        if current.tzinfo is None:
            current = current.replace(tzinfo=timezone.utc)
        self.current = current

    def now(self) -> datetime:
        return self.current

    def advance(self, **kwargs: float) -> datetime:
        """Move the clock forward by a timedelta built from kwargs."""
        self.current = self.current + timedelta(**kwargs)
        return self.current


def utc_iso(value: datetime) -> str:
    """Serialize an aware datetime as a UTC ISO-8601 string."""
    return value.astimezone(timezone.utc).isoformat()


def parse_iso(value: str | None) -> datetime | None:
    """Parse an ISO-8601 string, assuming UTC when no offset is given."""
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def local_date(now: datetime, tz: ZoneInfo) -> date:
    return now.astimezone(tz).date()


def month_key(now: datetime, tz: ZoneInfo) -> str:
    """Return YYYY-MM for the month containing `now` in `tz`."""
    local = now.astimezone(tz)
    return f"{local.year:04d}-{local.month:02d}"


def day_key(now: datetime, tz: ZoneInfo) -> str:
    """Return YYYY-MM-DD for the local day containing `now`."""
    return local_date(now, tz).isoformat()


def week_key(now: datetime, tz: ZoneInfo) -> str:
    """Return the ISO week key YYYY-Www for the local day containing `now`."""
    iso_year, iso_week, _ = local_date(now, tz).isocalendar()
    return f"{iso_year:04d}-W{iso_week:02d}"


def day_range(now: datetime, tz: ZoneInfo) -> tuple[datetime, datetime]:
    """Return the [start, end) UTC bounds of the local day containing `now`."""
    start_local = datetime.combine(local_date(now, tz), time.min, tzinfo=tz)
    end_local = start_local + timedelta(days=1)
    return start_local.astimezone(timezone.utc), end_local.astimezone(timezone.utc)


def week_range(now: datetime, tz: ZoneInfo) -> tuple[datetime, datetime]:
    """Return the [start, end) UTC bounds of the local ISO week (Monday start)."""
    today = local_date(now, tz)
    monday = today - timedelta(days=today.isoweekday() - 1)
    start_local = datetime.combine(monday, time.min, tzinfo=tz)
    end_local = start_local + timedelta(days=7)
    return start_local.astimezone(timezone.utc), end_local.astimezone(timezone.utc)
