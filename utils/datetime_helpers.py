"""
Datetime helper utilities to ensure consistent timezone handling across the ledger.

CRITICAL: every model column uses timezone-naive UTC datetimes (DateTime(timezone=False)).
This module keeps timezone-aware values from leaking into those columns.
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

    Example:
        >>> aware_dt = datetime.now(timezone.utc)
        >>> naive_dt = ensure_naive_datetime(aware_dt)
        >>> assert naive_dt.tzinfo is None
    """
    if dt is None:
        return None

    if dt.tzinfo is not None:
        # Convert to UTC and remove timezone info
        utc_dt = dt.astimezone(timezone.utc)
        return utc_dt.replace(tzinfo=None)

    return dt


def get_naive_utc_now() -> datetime:
    """
    Get current UTC time as naive datetime.

    This is the recommended way to get timestamps for ledger columns.

    Returns:
        Current UTC time without timezone info
    """
    return datetime.now(timezone.utc).replace(tzinfo=None)
