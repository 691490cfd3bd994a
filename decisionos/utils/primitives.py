"""Time and weight primitives shared by the ledger and the weight engine."""

from datetime import datetime, timedelta

LATE_HOUR_THRESHOLD = 20  # 8pm


def now_local() -> datetime:
    """Current time, timezone-aware in the server's local offset."""
    return datetime.now().astimezone()


def parse_timestamp(value: datetime | str) -> datetime:
    """Accept a datetime or an ISO 8601 string (``Z`` suffix allowed)."""
    if isinstance(value, datetime):
        return value
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    return datetime.fromisoformat(text)


def clamp(value: float, lower: float, upper: float) -> float:
    """Clamp value into [lower, upper]."""
    return max(lower, min(upper, value))


def hour_of(value: datetime | str) -> int:
    """
    Hour-of-day as encoded in the timestamp.

    The offset carried by the value is respected as-is; no conversion to
    the server zone or UTC happens here.
    """
    return parse_timestamp(value).hour


def is_late_hour(value: datetime | str) -> bool:
    """True at or after 20:00 in the timestamp's own offset."""
    return hour_of(value) >= LATE_HOUR_THRESHOLD


def elapsed(since: datetime | str, now: datetime | str) -> timedelta:
    """now - since. Both sides must agree on naive vs aware."""
    return parse_timestamp(now) - parse_timestamp(since)
