"""
Timestamp utilities for consistent time handling across graph and vector stores.

Stores keep creation times as integer epoch milliseconds so that facts written
in the same second still order by recency.
"""

import time
from typing import Optional


def now_millis() -> int:
    """Current time as epoch milliseconds."""
    return int(time.time() * 1000)


def to_millis_str(timestamp_ms: Optional[int] = None) -> str:
    """Convert epoch milliseconds to the string form stored on graph properties.

    Args:
        timestamp_ms: Epoch milliseconds (optional, uses current time if None)

    Returns:
        Milliseconds timestamp as string
    """
    if timestamp_ms is None:
        timestamp_ms = now_millis()
    return str(int(timestamp_ms))


def from_millis_str(value: Optional[str], default: int = 0) -> int:
    """Parse a stored milliseconds string, tolerating missing values."""
    if value is None or value == '':
        return default
    return int(value)

