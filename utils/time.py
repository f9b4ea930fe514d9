"""
utils/time.py

Timestamp utilities shared by the monitor, incident and remediation records.
All wall-clock values are timezone-aware UTC datetimes.
"""

from datetime import datetime, timezone
from typing import Optional


def utc_now() -> datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def now_ms() -> int:
    """
    Get current UTC time in epoch milliseconds.

    Returns:
        int: Current time as epoch milliseconds (UTC)
    """
    return int(utc_now().timestamp() * 1000)


def to_iso(ts: Optional[datetime]) -> Optional[str]:
    """
    Convert a datetime to an ISO 8601 string with a trailing Z.

    Naive datetimes are assumed to be UTC. None passes through.
    """
    if ts is None:
        return None
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")
