"""
Date helpers: ISO parsing/formatting in UTC and relative date phrases ('today', 'tomorrow')
resolved in the user's timezone.
"""
from __future__ import annotations

import re
from datetime import date, datetime, time, timedelta, timezone

from zoneinfo import ZoneInfo

# Already ISO date
_ISO_DATE = re.compile(r"^\d{4}-\d{2}-\d{2}$")

_WEEKDAY_NAMES = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")

# Phrase -> days from today
_FIXED_OFFSETS = {"today": 0, "tomorrow": 1, "yesterday": -1, "next week": 7, "in a week": 7}

_IN_N = re.compile(r"^in\s+(\d+)\s+(days?|weeks?)$")


def utc_now() -> datetime:
    """Current time in UTC, truncated to whole seconds (the stored precision)."""
    return datetime.now(timezone.utc).replace(microsecond=0)


def to_iso(dt: datetime) -> str:
    """Format as YYYY-MM-DDTHH:MM:SSZ. Naive datetimes are taken to be UTC."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def parse_datetime(value: str | datetime) -> datetime:
    """
    Parse an ISO date or datetime into an aware UTC datetime.
    Accepts "YYYY-MM-DD" (midnight UTC), "YYYY-MM-DDTHH:MM[:SS]" (UTC), a trailing "Z", or an explicit offset.
    Raises ValueError on anything else.
    """
    if isinstance(value, datetime):
        dt = value
    else:
        raw = str(value).strip()
        if not raw:
            raise ValueError("empty datetime")
        if _ISO_DATE.match(raw):
            dt = datetime.combine(date.fromisoformat(raw), time.min)
        else:
            if raw.endswith("Z"):
                raw = raw[:-1] + "+00:00"
            dt = datetime.fromisoformat(raw)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).replace(microsecond=0)


def parse_date(value: str | date) -> date:
    """Parse YYYY-MM-DD (or the date part of an ISO datetime)."""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    raw = str(value).strip()
    if not _ISO_DATE.match(raw[:10]):
        raise ValueError(f"invalid date: {value!r}")
    return date.fromisoformat(raw[:10])


def _today_in_tz(tz_name: str) -> date:
    name = (tz_name or "").strip() or "UTC"
    tz = ZoneInfo(name)
    return datetime.now(tz).date()


def resolve_relative_date(value: str | None, tz_name: str = "UTC") -> date | None:
    """
    Resolve a day phrase to a calendar date in the user's timezone.
    Handles ISO dates, today/tomorrow/yesterday, next week, "in N days|weeks" and weekday names
    (the next such day, never today). Returns None for anything else.
    """
    raw = str(value or "").strip().lower()
    if not raw:
        return None
    if _ISO_DATE.match(raw):
        return date.fromisoformat(raw)
    today = _today_in_tz(tz_name)
    if raw in _FIXED_OFFSETS:
        return today + timedelta(days=_FIXED_OFFSETS[raw])
    m = _IN_N.match(raw)
    if m:
        n = int(m.group(1))
        return today + timedelta(weeks=n) if m.group(2).startswith("week") else today + timedelta(days=n)
    if raw in _WEEKDAY_NAMES:
        ahead = (_WEEKDAY_NAMES.index(raw) - today.weekday() - 1) % 7 + 1
        return today + timedelta(days=ahead)
    return None


def resolve_datetime_input(value: str | None, tz_name: str = "UTC") -> str | None:
    """
    Normalize an API datetime field to stored form (ISO UTC with Z).
    Day phrases resolve to midnight of that day in the user's timezone; ISO input is parsed as-is.
    Returns None for empty input; raises ValueError if the value cannot be understood.
    """
    if value is None or not str(value).strip():
        return None
    raw = str(value).strip()
    if _ISO_DATE.match(raw) or raw[:1].isdigit():
        return to_iso(parse_datetime(raw))
    day = resolve_relative_date(raw, tz_name)
    if day is None:
        raise ValueError(f"unrecognized date: {raw!r}")
    tz = ZoneInfo((tz_name or "").strip() or "UTC")
    return to_iso(datetime.combine(day, time.min, tzinfo=tz))
