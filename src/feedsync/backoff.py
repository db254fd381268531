"""Exponential backoff for feed polling."""

from datetime import datetime, timedelta

from feedsync.models import utcnow

DEFAULT_BASE_INTERVAL = timedelta(minutes=15)
MAX_BACKOFF_EXPONENT = 8  # caps the delay at 256x the base interval
FAILURE_THRESHOLD = 15


def backoff_delay(
    failure_count: int, base_interval: timedelta = DEFAULT_BASE_INTERVAL
) -> timedelta:
    """Delay before the next check after `failure_count` consecutive failures."""
    multiplier = 2 ** min(max(failure_count, 0), MAX_BACKOFF_EXPONENT)
    return base_interval * multiplier


def next_check_time(
    failure_count: int,
    base_interval: timedelta = DEFAULT_BASE_INTERVAL,
    now: datetime | None = None,
) -> datetime:
    """Compute when a feed should next be checked.

    Args:
        failure_count: Number of consecutive failed fetches (0 after a success).
        base_interval: Interval used when the feed is healthy.
        now: Reference time, defaults to the current UTC time.

    Returns:
        `now + base_interval * 2**min(failure_count, 8)`.
    """
    if now is None:
        now = utcnow()
    return now + backoff_delay(failure_count, base_interval)


def is_available(failure_count: int) -> bool:
    """A feed stays in poll selection until it reaches the failure threshold."""
    return failure_count < FAILURE_THRESHOLD
