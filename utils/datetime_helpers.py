"""
Datetime helper utilities to ensure consistent timezone handling across the application.

All timestamp columns are timezone-naive (DateTime(timezone=False)) and hold UTC.
"""

from datetime import datetime, timezone
from typing import Optional
import logging

logger = logging.getLogger(__name__)


def ensure_naive_datetime(dt: Optional[datetime]) -> Optional[datetime]:
    """
    Convert timezone-aware datetime to naive UTC datetime.

    Args:
        dt: Datetime that may be timezone-aware or naive

    Returns:
        Naive datetime in UTC, or None if input is None
    """
    if dt is None:
        return None

    if dt.tzinfo is not None:
        return dt.astimezone(timezone.utc).replace(tzinfo=None)

    return dt


def get_naive_utc_now() -> datetime:
    """Current UTC time without timezone info"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def seconds_since(moment: Optional[datetime], now: Optional[datetime] = None) -> Optional[float]:
    """
    Seconds elapsed since ``moment``, or None when there is no moment.

    Aware datetimes are normalised to naive UTC first so values read back
    from different drivers compare cleanly.
    """
    if moment is None:
        return None
    current = ensure_naive_datetime(now) if now is not None else get_naive_utc_now()
    return (current - ensure_naive_datetime(moment)).total_seconds()


def has_elapsed(moment: Optional[datetime], seconds: float, now: Optional[datetime] = None) -> bool:
    """True when no moment was recorded or at least ``seconds`` have passed since it"""
    elapsed = seconds_since(moment, now)
    return elapsed is None or elapsed >= seconds

