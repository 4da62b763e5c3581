"""Health checks for the station's observation stream."""

from collections.abc import Sequence
from datetime import datetime, timedelta

import structlog

from heatline.models import DailyStats, Observation, QualityCheckResult, QualityStatus
from heatline.quality.freshness import compute_poll_freshness
from heatline.storage import Storage
from heatline.timeutil import day_key, utcnow

log = structlog.get_logger()


class StationHealthChecker:
    """Runs health checks on a day's ingested observations."""

    def __init__(self, stale_poll_seconds: int = 180) -> None:
        self.stale_poll_seconds = stale_poll_seconds

    def check_day(
        self,
        observations: Sequence[Observation],
        stats: DailyStats | None,
        now: datetime | None = None,
    ) -> list[QualityCheckResult]:
        """Run all checks for one station day."""
        now = now or utcnow()
        results = []

        results.append(self._check_poll_freshness(stats, now))
        results.append(self._check_completeness(observations))
        results.append(self._check_temperature_range(observations))
        results.append(self._check_uniqueness(observations))
        results.append(self._check_no_gaps(observations))
        results.append(self._check_high_consistency(observations, stats))

        passed = sum(1 for r in results if r.status == QualityStatus.PASS)
        log.info("station_health_complete", passed=passed, total=len(results))

        return results

    def _check_poll_freshness(self, stats: DailyStats | None, now: datetime) -> QualityCheckResult:
        if stats is None:
            return QualityCheckResult(
                check_name="poll_freshness",
                status=QualityStatus.FAIL,
                message="No polling state recorded for this day",
            )

        freshness = compute_poll_freshness(now, stats.last_successful_poll_at, self.stale_poll_seconds)
        if freshness.poll_stale_seconds is None:
            return QualityCheckResult(
                check_name="poll_freshness",
                status=QualityStatus.FAIL,
                threshold=self.stale_poll_seconds,
                message="No successful poll recorded",
            )

        age = freshness.poll_stale_seconds
        if not freshness.is_stale and not stats.is_stale:
            status = QualityStatus.PASS
            message = f"Last successful poll {age}s ago"
        elif age <= self.stale_poll_seconds * 2:
            status = QualityStatus.WARN
            message = f"Polling is stale: {age}s since last success (threshold: {self.stale_poll_seconds}s)"
        else:
            status = QualityStatus.FAIL
            message = f"Polling is very stale: {age}s since last success (threshold: {self.stale_poll_seconds}s)"

        return QualityCheckResult(
            check_name="poll_freshness",
            status=status,
            metric_value=age,
            threshold=self.stale_poll_seconds,
            message=message,
        )

    def _check_completeness(self, observations: Sequence[Observation]) -> QualityCheckResult:
        count = len(observations)
        threshold = 1

        if count >= threshold:
            status = QualityStatus.PASS
            message = f"Found {count} observations"
        else:
            status = QualityStatus.FAIL
            message = "No observations ingested for this day"

        return QualityCheckResult(
            check_name="observation_completeness",
            status=status,
            metric_value=count,
            threshold=threshold,
            message=message,
        )

    def _check_temperature_range(self, observations: Sequence[Observation]) -> QualityCheckResult:
        temps = [o.derived_temp_whole_f for o in observations if o.derived_temp_whole_f is not None]
        if not temps:
            return QualityCheckResult(
                check_name="temperature_range",
                status=QualityStatus.FAIL,
                message="No derived temperatures to check",
            )

        # Plausible surface range for a US station
        min_temp, max_temp = -40, 120
        out_of_range = [t for t in temps if not (min_temp <= t <= max_temp)]

        if not out_of_range:
            status = QualityStatus.PASS
            message = f"All {len(temps)} temperatures within range [{min_temp}, {max_temp}]°F"
        else:
            status = QualityStatus.FAIL
            message = f"{len(out_of_range)} temps outside range [{min_temp}, {max_temp}]°F"

        return QualityCheckResult(
            check_name="temperature_range",
            status=status,
            metric_value=len(out_of_range),
            threshold=0,
            message=message,
        )

    def _check_uniqueness(self, observations: Sequence[Observation]) -> QualityCheckResult:
        if not observations:
            return QualityCheckResult(
                check_name="uniqueness",
                status=QualityStatus.WARN,
                message="No observations to check",
            )

        seen = set()
        duplicates = 0
        for o in observations:
            if o.obs_time in seen:
                duplicates += 1
            seen.add(o.obs_time)

        # Corrected reports legitimately share a timestamp with the original
        if duplicates == 0:
            status = QualityStatus.PASS
            message = f"All {len(observations)} observations have distinct timestamps"
        else:
            status = QualityStatus.WARN
            message = f"Found {duplicates} reports sharing a timestamp (corrections or specials)"

        return QualityCheckResult(
            check_name="uniqueness",
            status=status,
            metric_value=duplicates,
            threshold=0,
            message=message,
        )

    def _check_no_gaps(self, observations: Sequence[Observation]) -> QualityCheckResult:
        if len(observations) < 2:
            return QualityCheckResult(
                check_name="no_gaps",
                status=QualityStatus.WARN,
                message="Not enough observations to check for gaps",
            )

        timestamps = sorted(o.obs_time for o in observations)
        total_gaps = 0
        for i in range(1, len(timestamps)):
            # Routine reports are hourly; allow 15min tolerance
            if timestamps[i] - timestamps[i - 1] > timedelta(hours=1, minutes=15):
                total_gaps += 1

        if total_gaps == 0:
            status = QualityStatus.PASS
            message = "No gaps detected in hourly reports"
        elif total_gaps <= 2:
            status = QualityStatus.WARN
            message = f"Found {total_gaps} gaps in hourly reports"
        else:
            status = QualityStatus.FAIL
            message = f"Found {total_gaps} gaps in hourly reports (stream may be incomplete)"

        return QualityCheckResult(
            check_name="no_gaps",
            status=status,
            metric_value=total_gaps,
            threshold=0,
            message=message,
        )

    def _check_high_consistency(
        self, observations: Sequence[Observation], stats: DailyStats | None
    ) -> QualityCheckResult:
        temps = [o.derived_temp_whole_f for o in observations if o.derived_temp_whole_f is not None]
        if stats is None or stats.high_so_far_whole_f is None or not temps:
            return QualityCheckResult(
                check_name="high_consistency",
                status=QualityStatus.WARN,
                message="No daily high to compare",
            )

        observed_max = max(temps)
        if stats.high_so_far_whole_f >= observed_max:
            status = QualityStatus.PASS
            message = f"Daily high {stats.high_so_far_whole_f}°F covers observed max {observed_max}°F"
        else:
            status = QualityStatus.FAIL
            message = f"Daily high {stats.high_so_far_whole_f}°F is below observed max {observed_max}°F"

        return QualityCheckResult(
            check_name="high_consistency",
            status=status,
            metric_value=observed_max,
            threshold=stats.high_so_far_whole_f,
            message=message,
        )


def run_health_checks(
    storage: Storage, day: str | None = None, now: datetime | None = None
) -> tuple[str, list[QualityCheckResult]]:
    """Check one station day (today by default) with the stored staleness threshold."""
    now = now or utcnow()
    settings = storage.load_settings()
    day = day or day_key(now, settings.timezone)
    checker = StationHealthChecker(stale_poll_seconds=settings.stale_poll_seconds)
    results = checker.check_day(storage.get_latest_observations(day, limit=500), storage.get_daily_stats(day), now=now)
    return day, results
