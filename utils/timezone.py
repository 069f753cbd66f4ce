"""UTC-everywhere time handling for challenge and token timestamps."""

from datetime import datetime, timezone


def now_utc() -> datetime:
    """
    Current time in UTC.

    Expiry, lockout and usage timestamps are all compared against this.
    """
    return datetime.now(timezone.utc)


def to_utc(dt: datetime) -> datetime:
    """
    Convert a datetime to UTC.

    Raises ValueError if datetime is naive (no timezone).
    """
    if dt.tzinfo is None:
        raise ValueError(
            "Cannot convert naive datetime to UTC. Datetime must be timezone-aware."
        )
    return dt.astimezone(timezone.utc)


def from_timestamp(seconds: int | float) -> datetime:
    """Convert a unix timestamp (as sent by API clients) to a UTC datetime."""
    return datetime.fromtimestamp(seconds, tz=timezone.utc)


def parse_iso(iso_string: str) -> datetime:
    """
    Parse ISO 8601 datetime string to UTC datetime.

    Raises ValueError if string has no timezone info.
    """
    dt = datetime.fromisoformat(iso_string)
    if dt.tzinfo is None:
        raise ValueError(
            "Cannot parse naive datetime string. "
            "Include timezone offset (e.g., 'Z' or '+00:00')."
        )
    return to_utc(dt)
