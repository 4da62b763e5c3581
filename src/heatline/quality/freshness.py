"""Poll freshness for the station's live data."""

from datetime import datetime
from typing import NamedTuple

from heatline.models import DailyStats
from heatline.timeutil import ensure_utc


class PollFreshness(NamedTuple):
    poll_stale_seconds: int | None
    is_stale: bool


def compute_poll_freshness(
    now: datetime, last_successful_poll_at: datetime | None, stale_poll_seconds: int
) -> PollFreshness:
    """Seconds since the last good poll; stale when unknown or over threshold."""
    if last_successful_poll_at is None:
        return PollFreshness(None, True)
    elapsed = int((ensure_utc(now) - ensure_utc(last_successful_poll_at)).total_seconds())
    elapsed = max(0, elapsed)
    return PollFreshness(elapsed, elapsed > stale_poll_seconds)


def is_data_stale(stats: DailyStats | None, now: datetime, stale_poll_seconds: int) -> bool:
    """Stale when there are no stats, the stored flag is set, or the last poll is too old."""
    if stats is None or stats.is_stale:
        return True
    return compute_poll_freshness(now, stats.last_successful_poll_at, stale_poll_seconds).is_stale
