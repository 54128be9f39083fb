"""
Utility functions for the workflow automation engine.

Includes:
- Prefixed id generation
- UTC datetime helpers
- Pagination helpers
- Small statistics helpers used by analytics
"""

import secrets
import time
from datetime import datetime, timezone
from typing import Any, Optional, Sequence


def generate_id(prefix: str) -> str:
    """
    Generate a sortable, prefixed identifier such as ``exec_lx3k9a_4f2c9e1b``.

    Args:
        prefix: Entity prefix (``wf``, ``exec``, ``err``...)

    Returns:
        Identifier string
    """
    stamp = _base36(int(time.time() * 1000))
    return f"{prefix}_{stamp}_{secrets.token_hex(4)}"


def _base36(value: int) -> str:
    alphabet = "0123456789abcdefghijklmnopqrstuvwxyz"
    out = ""
    while value:
        value, rem = divmod(value, 36)
        out = alphabet[rem] + out
    return out or "0"


def utc_now() -> datetime:
    """
    Get the current UTC datetime.

    Returns:
        Current datetime in UTC timezone
    """
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes (SQLite drops tzinfo)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def duration_ms(start: Optional[datetime], end: Optional[datetime]) -> Optional[int]:
    """Milliseconds between two datetimes, or None if either is missing."""
    if start is None or end is None:
        return None
    return max(0, int((ensure_utc(end) - ensure_utc(start)).total_seconds() * 1000))


def mean(values: Sequence[float]) -> float:
    return sum(values) / len(values) if values else 0.0


def median(values: Sequence[float]) -> float:
    """Median of a sequence; averages the two middle values for even lengths."""
    if not values:
        return 0.0
    ordered = sorted(values)
    mid = len(ordered) // 2
    if len(ordered) % 2:
        return float(ordered[mid])
    return (ordered[mid - 1] + ordered[mid]) / 2


def paginate(
    items: list[Any],
    total: int,
    offset: int = 0,
    limit: int = 20,
) -> dict:
    """
    Helper to create an offset/limit paginated response.

    Args:
        items: Items for the current window
        total: Total number of items across all windows
        offset: Index of the first item returned
        limit: Window size

    Returns:
        Dictionary with pagination metadata
    """
    return {
        "items": items,
        "total": total,
        "offset": offset,
        "limit": limit,
        "has_next": offset + len(items) < total,
        "has_prev": offset > 0,
    }
