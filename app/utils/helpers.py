"""Shared date/time helpers.

parse_date_input:      strict date parsing for request bodies (raises ValueError)
parse_datetime_input:  ISO-8601 timestamp -> aware UTC datetime
as_utc:                normalise DB datetimes (SQLite drops tzinfo) to aware UTC
day_start_utc:         a calendar date as the aware UTC datetime of its midnight
"""
from datetime import UTC, date, datetime, time


def parse_date_input(value):
    """Parse a job start/end date, raising ValueError on bad input.

    Accepts YYYY-MM-DD, a full ISO timestamp (its date part) or DD.MM.YYYY.
    Blueprints catch ValueError for 400 responses.
    """
    if not value:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = str(value).strip()
    for parse in (date.fromisoformat, lambda v: datetime.fromisoformat(v).date()):
        try:
            return parse(text)
        except ValueError:
            continue
    try:
        return datetime.strptime(text, "%d.%m.%Y").date()
    except ValueError as exc:
        raise ValueError(
            "Invalid date format. Use YYYY-MM-DD or DD.MM.YYYY."
        ) from exc


def parse_datetime_input(value):
    """Parse an ISO-8601 timestamp into an aware UTC datetime.

    Naive input is taken as UTC. Raises ValueError on bad input.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return as_utc(value)
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        return as_utc(datetime.fromisoformat(text))
    except ValueError as exc:
        raise ValueError(f"Invalid timestamp: {value!r}") from exc


def as_utc(value):
    """Return ``value`` as an aware UTC datetime (None passes through)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def day_start_utc(value):
    """Midnight UTC of a calendar date (None passes through)."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return as_utc(value)
    return datetime.combine(value, time.min, tzinfo=UTC)
