"""
Clock abstraction and time zone helpers.

All persisted timestamps are naive UTC datetimes. Services never call
``datetime.now`` directly; they receive a ``Clock`` so sweeps, quotas and
quiet-hour checks can be driven deterministically.
"""

import threading
from datetime import datetime, timedelta, timezone
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError


def utc_now() -> datetime:
    """Current time as a naive UTC datetime."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Clock:
    """Source of the current time as a naive UTC datetime."""

    def now(self) -> datetime:
        raise NotImplementedError


class SystemClock(Clock):
    """Wall clock."""

    def now(self) -> datetime:
        return utc_now()


class FrozenClock(Clock):
    """
    Manually advanced clock.

    Used by tests and by offline simulations of sweeps.

    Example:
        >>> clock = FrozenClock(datetime(2025, 3, 1, 9, 0))
        >>> clock.advance(hours=3)
        >>> clock.now()
        datetime.datetime(2025, 3, 1, 12, 0)
    """

    def __init__(self, start: datetime):
        self._now = to_naive_utc(start)
        self._lock = threading.Lock()

    def now(self) -> datetime:
        with self._lock:
            return self._now

    def set(self, value: datetime) -> None:
        with self._lock:
            self._now = to_naive_utc(value)

    def advance(self, **kwargs) -> datetime:
        """Move the clock forward by ``timedelta(**kwargs)``."""
        with self._lock:
            self._now = self._now + timedelta(**kwargs)
            return self._now


def get_timezone(name: str) -> ZoneInfo:
    """Resolve an IANA timezone name, raising ValueError when unknown."""
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ValueError(f"Invalid timezone: {name}") from exc


def to_naive_utc(value: datetime) -> datetime:
    """Normalize an aware or naive datetime to naive UTC (naive input is taken as UTC)."""
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def to_local(value: datetime, tz_name: str) -> datetime:
    """Convert a naive UTC datetime to the given zone."""
    return value.replace(tzinfo=timezone.utc).astimezone(get_timezone(tz_name))


def local_midnight_utc(now: datetime, tz_name: str) -> datetime:
    """
    Start of the local calendar day containing ``now``, as naive UTC.

    Args:
        now: Naive UTC instant
        tz_name: IANA zone defining "local"
    """
    local_now = to_local(now, tz_name)
    midnight = local_now.replace(hour=0, minute=0, second=0, microsecond=0)
    return to_naive_utc(midnight)


def hours_between(start: datetime, end: Optional[datetime]) -> int:
    """Whole hours elapsed from start to end (floored, never negative)."""
    if end is None or end <= start:
        return 0
    return int((end - start).total_seconds() // 3600)
