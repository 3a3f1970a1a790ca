"""Shared utility functions.

as_utc:          normalise naive SQLite datetimes to UTC-aware
utcnow:          single source of "now" for services
parse_datetime:  ISO datetime/date parser for request payloads (raises ValueError)
parse_int:       tolerant int parser for query strings
"""
from datetime import date, datetime, time, timezone


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(dt: datetime | None) -> datetime | None:
    """Normalise a datetime to UTC-aware regardless of whether SQLite stored it naive.

    SQLite's DateTime columns return naive datetimes; PostgreSQL returns tz-aware.
    All comparisons against utcnow() go through this helper so the same code
    works in both environments.
    """
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def parse_datetime(value) -> datetime | None:
    """Parse an ISO-8601 datetime or date into a UTC-aware datetime.

    Accepts a trailing ``Z``. Date-only input maps to midnight UTC.
    Raises ValueError on malformed input so callers can report a field error.
    """
    if value in (None, ""):
        return None
    if isinstance(value, datetime):
        return as_utc(value)
    if isinstance(value, date):
        return datetime.combine(value, time.min, tzinfo=timezone.utc)
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        return as_utc(datetime.fromisoformat(text))
    except ValueError as exc:
        raise ValueError(f"Invalid datetime: {value!r}") from exc


def parse_int(value, default=None):
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


LIKE_ESCAPE = "\\"


def like_pattern(term: str) -> str:
    """``%term%`` with LIKE wildcards in ``term`` matched literally (use ``escape=LIKE_ESCAPE``)."""
    escaped = term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"
