"""UTC timestamp helpers shared by the terminal and the server.

All persisted timestamps use one fixed-width ISO-8601 form with
microseconds and a trailing ``Z`` so they sort correctly as strings.
"""

from datetime import datetime, timezone

TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"

EPOCH = "1970-01-01T00:00:00.000000Z"


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def to_timestamp(dt: datetime) -> str:
    """Serialize a datetime to the canonical timestamp string.

    Naive datetimes are treated as UTC.
    """
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).strftime(TIMESTAMP_FORMAT)


def now_timestamp() -> str:
    return to_timestamp(utcnow())


def parse_timestamp(value: str | None) -> datetime | None:
    """Parse an ISO-8601 string into an aware UTC datetime.

    - None / "" -> None
    - trailing "Z" and "+HH:MM" offsets are accepted
    - naive values are interpreted as UTC

    Raises:
        ValueError: If the string is not ISO-8601.
    """
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValueError(f"Expected an ISO-8601 string, got {type(value).__name__}")
    s = value.strip()
    if not s:
        return None

    if s.endswith("Z"):
        s = s[:-1] + "+00:00"

    dt = datetime.fromisoformat(s)
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def normalize_timestamp(value: str | None) -> str | None:
    """Re-serialize any ISO-8601 string into the canonical form."""
    dt = parse_timestamp(value)
    return to_timestamp(dt) if dt else None
