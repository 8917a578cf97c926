"""
Time helpers. All timestamps are stored as naive UTC.
"""
from datetime import datetime, timezone


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def seconds_between(earlier: datetime | None, later: datetime) -> float:
    """Elapsed seconds, 0 when the start is unknown or in the future"""
    if earlier is None:
        return 0.0
    return max((later - earlier).total_seconds(), 0.0)


def to_naive_utc(value: datetime | None) -> datetime | None:
    """Normalise an incoming datetime to naive UTC; naive input is taken as UTC"""
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)
