# =============================================================================
# File: eventcore/utils/datetime_utils.py
# Description: Clock abstraction and datetime helpers
# =============================================================================

import time
from datetime import datetime, timezone
from typing import Optional, Protocol, Union


class Clock(Protocol):
    """Source of wall-clock and monotonic time."""

    def now(self) -> datetime:
        ...

    def monotonic(self) -> float:
        ...


class SystemClock:
    """Clock backed by the system time (UTC)."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    def monotonic(self) -> float:
        return time.monotonic()


SYSTEM_CLOCK = SystemClock()


def ensure_utc(value: Union[str, datetime, None], fallback: Optional[datetime] = None) -> Optional[datetime]:
    """
    Normalize a timestamp to an aware UTC datetime.

    Accepts ISO 8601 strings (with 'Z' or offset) and naive datetimes,
    which are assumed to be UTC.
    """
    if value is None:
        return fallback
    if isinstance(value, str):
        try:
            value = datetime.fromisoformat(value.strip().replace('Z', '+00:00'))
        except ValueError:
            return fallback
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
