"""
Injectable clock.

Services take a ``clock`` callable instead of calling ``datetime.now``
directly so tests can pin "now" and staleness math stays deterministic.
"""

from datetime import datetime, timezone
from typing import Callable, Optional

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    """Default clock: current time in UTC."""
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """
    Return a timezone-aware UTC datetime.

    SQLite drops tzinfo on round-trip, so naive values read back from the
    database are assumed to already be UTC.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def from_timestamp(value: Optional[int]) -> Optional[datetime]:
    """Convert a provider unix timestamp to a UTC datetime."""
    if value is None:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)
