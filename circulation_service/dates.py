"""
Timestamp normalisation.

The store hands timestamps back in whatever shape the column type and driver
produce: full ISO-8601 with fractional seconds and an offset, ISO-8601 without
fractions, or a bare date. Everything is normalised to an aware UTC datetime.
"""
import re
from datetime import date, datetime, timezone

from .errors import MalformedTimestamp

# Tried in order; the first match wins.
ACCEPTED_FORMATS = (
    "%Y-%m-%dT%H:%M:%S.%f%z",
    "%Y-%m-%dT%H:%M:%S%z",
    "%Y-%m-%dT%H:%M:%S.%f",
    "%Y-%m-%dT%H:%M:%S",
    "%Y-%m-%dT%H:%M%z",
    "%Y-%m-%dT%H:%M",
    "%Y-%m-%d",
)

_SPACE_SEPARATOR = re.compile(r"^(\d{4}-\d{2}-\d{2}) (\d)")
# strptime reads at most six fractional digits
_LONG_FRACTION = re.compile(r"(\.\d{6})\d+")


def utcnow():
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes, convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse(raw: str) -> datetime:
    if not isinstance(raw, str):
        raise MalformedTimestamp(raw)

    text = _SPACE_SEPARATOR.sub(r"\1T\2", raw.strip())
    text = _LONG_FRACTION.sub(r"\1", text)
    for fmt in ACCEPTED_FORMATS:
        try:
            parsed = datetime.strptime(text, fmt)
        except ValueError:
            continue
        return ensure_utc(parsed)

    raise MalformedTimestamp(raw)


def coerce(value):
    """
    Accept whatever a record carries (None, date, datetime, string) and
    return an aware UTC datetime, or None.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        return ensure_utc(value)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
    return parse(value)


def days_between(start: datetime, end: datetime) -> int:
    """Whole calendar days from start to end, counted on UTC dates."""
    return (ensure_utc(end).date() - ensure_utc(start).date()).days
