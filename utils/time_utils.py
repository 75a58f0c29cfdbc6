from datetime import datetime, timezone
from typing import Optional


def utcnow() -> datetime:
    """Returns the current UTC time as a naive datetime (the form stored in the database)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """Normalizes an aware datetime to naive UTC. Naive values are assumed to be UTC already."""
    if dt is None:
        return None
    if dt.tzinfo is not None:
        return dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt


def seconds_until(target: Optional[datetime], now: datetime) -> float:
    """Seconds from `now` until `target`; 0 when the target is unset or already past."""
    if target is None:
        return 0.0
    return max(0.0, (target - now).total_seconds())
