"""Time utilities for block handling.

KEY PRINCIPLE: every timestamp handled by the engine is timezone-aware.
Block indices are positions in the current horizon, starting at 0 for the
first block that has not yet ended.
"""

import logging
from datetime import UTC, date, datetime, timedelta

logger = logging.getLogger(__name__)

# Constants
DEFAULT_BLOCK_MINUTES = 15
MINUTES_PER_HOUR = 60


def now_utc() -> datetime:
    return datetime.now(tz=UTC)


def ensure_aware(dt: datetime, what: str = "Timestamp") -> datetime:
    """Reject naive datetimes.

    Raises:
        ValueError: If dt is not timezone-aware
    """
    if dt.tzinfo is None or dt.tzinfo.utcoffset(dt) is None:
        raise ValueError(f"{what} must be timezone-aware, got {dt!r}")
    return dt


def duration_minutes(duration: timedelta) -> float:
    return duration.total_seconds() / 60.0


def blocks_for_hours(hours: float, block_minutes: int = DEFAULT_BLOCK_MINUTES) -> int:
    """Convert an hour budget into a whole number of blocks.

    Example:
        >>> blocks_for_hours(0.25)
        1
        >>> blocks_for_hours(2.0)
        8
    """
    if hours <= 0:
        return 0
    return max(1, round(hours * MINUTES_PER_HOUR / block_minutes))


def group_by_date(blocks) -> dict[date, list]:
    """Group blocks by the calendar date of their start time, keeping order."""
    grouped: dict[date, list] = {}
    for block in blocks:
        grouped.setdefault(block.start_time.date(), []).append(block)
    return grouped
