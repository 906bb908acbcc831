"""
Time utilities for epoch timestamps.
"""

import time
from datetime import datetime, timezone
from typing import Optional


def now_millis() -> int:
    """Current time as epoch milliseconds."""
    return int(time.time() * 1000)


def millis_to_datetime(value: Optional[int]) -> Optional[datetime]:
    """
    Convert epoch milliseconds to an aware UTC datetime.

    Args:
        value: Epoch milliseconds, or None

    Returns:
        UTC datetime, or None when value is None
    """
    if value is None:
        return None
    return datetime.fromtimestamp(value / 1000, tz=timezone.utc)


def format_millis(value: Optional[int]) -> str:
    """Human readable UTC timestamp for logs and status output."""
    dt = millis_to_datetime(value)
    if dt is None:
        return "never"
    return dt.strftime("%Y-%m-%d %H:%M:%S UTC")
