"""
Time helpers: the injectable clock, ISO-8601 round-tripping for SQLite
columns, and the regular-session market-hours check.

All timestamps stored by the engine are timezone-aware UTC datetimes
serialized with ``to_iso()``.  Naive datetimes read back from older rows are
assumed to be UTC.
"""

from __future__ import annotations

from datetime import datetime, time, timezone
from typing import Optional, Protocol
from zoneinfo import ZoneInfo


class Clock(Protocol):
    """Source of the current time.  Injected everywhere ``now`` matters."""

    def now(self) -> datetime:
        ...


class SystemClock:
    """Wall-clock UTC time."""

    def now(self) -> datetime:
        return utcnow()


def utcnow() -> datetime:
    """Return the current UTC datetime with timezone info.

    Prefer this over ``datetime.utcnow()`` (which returns naive datetimes).
    """
    return datetime.now(tz=timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes and convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_iso(value: Optional[datetime]) -> Optional[str]:
    """Serialize a datetime for storage, or pass ``None`` through."""
    if value is None:
        return None
    return ensure_utc(value).isoformat()


def parse_iso(value: Optional[str]) -> Optional[datetime]:
    """Parse a stored ISO-8601 string back into an aware UTC datetime."""
    if not value:
        return None
    return ensure_utc(datetime.fromisoformat(value))


def _parse_hhmm(value: str) -> time:
    hour, minute = (int(p) for p in value.split(":"))
    return time(hour=hour, minute=minute)


def is_market_open(
    now: datetime,
    tz_name: str = "America/New_York",
    open_time: str = "09:30",
    close_time: str = "16:00",
) -> bool:
    """Return ``True`` if ``now`` falls inside the regular weekday session.

    Exchange holidays are not modelled; a closed-market day simply yields
    unavailable prices and the transaction waits for the next pass.

    Args:
        now: Instant to check (any timezone; naive is treated as UTC).
        tz_name: IANA zone the session hours are expressed in.
        open_time: Session open, ``HH:MM`` local time (inclusive).
        close_time: Session close, ``HH:MM`` local time (exclusive).
    """
    local = ensure_utc(now).astimezone(ZoneInfo(tz_name))
    if local.weekday() >= 5:
        return False
    return _parse_hhmm(open_time) <= local.time() < _parse_hhmm(close_time)
