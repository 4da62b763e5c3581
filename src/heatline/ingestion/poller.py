"""One polling cycle: fetch the latest report and update the day's truth state."""

import hashlib
from dataclasses import dataclass
from datetime import datetime

import structlog

from heatline.errors import WeatherFetchError
from heatline.ingestion.metar import zulu_stamp_to_utc
from heatline.ingestion.weather import WeatherClient
from heatline.models import Alert, Observation
from heatline.quality.freshness import compute_poll_freshness
from heatline.storage import Storage
from heatline.timeutil import day_key as to_day_key
from heatline.timeutil import utcnow

log = structlog.get_logger()


def build_dedup_key(station: str, obs_zulu_stamp: str, raw_metar: str) -> str:
    digest = hashlib.sha256(raw_metar.encode("utf-8")).hexdigest()[:12]
    return f"{station.upper()}|{obs_zulu_stamp}|{digest}"


@dataclass
class PollResult:
    day_key: str
    dedup_key: str
    source: str
    duplicate: bool
    temp_whole_f: int | None = None
    high_so_far_whole_f: int | None = None
    is_new_high: bool = False


class WeatherPoller:
    """Fetches one report per call and keeps DailyStats current."""

    def __init__(self, storage: Storage, client: WeatherClient | None = None) -> None:
        self.storage = storage
        self.client = client or WeatherClient()

    def _mark_stale(self, day_key: str, now: datetime, was_stale: bool) -> None:
        settings = self.storage.load_settings()
        stats = self.storage.get_daily_stats(day_key)
        freshness = compute_poll_freshness(
            now, stats.last_successful_poll_at if stats else None, settings.stale_poll_seconds
        )
        self.storage.upsert_daily_stats(
            day_key,
            {"poll_stale_seconds": freshness.poll_stale_seconds, "is_stale": freshness.is_stale},
        )
        if freshness.is_stale and not was_stale:
            self.storage.insert_alert(
                Alert(
                    day_key=day_key,
                    type="DATA_STALE",
                    payload={
                        "stale_poll_seconds": freshness.poll_stale_seconds,
                        "stale_threshold_seconds": settings.stale_poll_seconds,
                        "last_successful_poll_at": stats.last_successful_poll_at if stats else None,
                    },
                    created_at=now,
                )
            )

    def poll_once(self, now: datetime | None = None) -> PollResult:
        """Run one polling cycle.

        Raises:
            WeatherFetchError: when both sources fail (after the day is marked stale)
        """
        now = now or utcnow()
        settings = self.storage.load_settings()
        day_key = to_day_key(now, settings.timezone)
        previous = self.storage.get_daily_stats(day_key)
        was_stale = bool(previous and previous.is_stale)

        try:
            fetched = self.client.fetch_with_failover(
                settings.weather_primary_url,
                settings.weather_backup_url,
                settings.station,
                settings.temp_extraction,
                settings.rounding,
            )
        except WeatherFetchError:
            self._mark_stale(day_key, now, was_stale)
            raise

        report = fetched.report
        dedup_key = build_dedup_key(settings.station, report.obs_zulu_stamp, report.raw_metar)
        obs_time = zulu_stamp_to_utc(report.obs_zulu_stamp, now)
        derived = fetched.derived

        previous_high = previous.high_so_far_whole_f if previous else None
        is_new_high = previous_high is None or derived.temp_whole_f > previous_high
        high_so_far = derived.temp_whole_f if previous_high is None else max(previous_high, derived.temp_whole_f)

        inserted = self.storage.insert_observation_if_new(
            Observation(
                dedup_key=dedup_key,
                day_key=day_key,
                station=settings.station,
                source=report.source,
                raw_report=report.raw_metar,
                obs_time=obs_time,
                derived_temp_whole_f=derived.temp_whole_f,
                is_new_high=is_new_high,
                created_at=now,
            )
        )

        if fetched.failover_reason:
            self.storage.insert_alert(
                Alert(
                    day_key=day_key,
                    type="SOURCE_FAILOVER",
                    payload={
                        "station": settings.station,
                        "from": "NWS",
                        "to": report.source,
                        "reason": fetched.failover_reason,
                    },
                    created_at=now,
                )
            )

        health_patch = {"last_successful_poll_at": now, "poll_stale_seconds": 0, "is_stale": False}
        if inserted:
            patch = {
                **health_patch,
                "current_temp_whole_f": derived.temp_whole_f,
                "high_so_far_whole_f": high_so_far,
                "last_observation_time": obs_time,
            }
            if is_new_high:
                patch["time_of_high"] = obs_time
            self.storage.upsert_daily_stats(day_key, patch)
        else:
            self.storage.upsert_daily_stats(day_key, health_patch)

        if was_stale:
            self.storage.insert_alert(
                Alert(
                    day_key=day_key,
                    type="DATA_HEALTHY",
                    payload={
                        "recovered_at": now,
                        "stale_threshold_seconds": settings.stale_poll_seconds,
                        "stale_poll_seconds_before_recovery": previous.poll_stale_seconds if previous else None,
                    },
                    created_at=now,
                )
            )

        if inserted and is_new_high:
            self.storage.insert_alert(
                Alert(
                    day_key=day_key,
                    type="NEW_HIGH",
                    payload={
                        "previous_high": previous_high,
                        "new_high": high_so_far,
                        "raw_metar": report.raw_metar,
                        "source": report.source,
                        "obs_zulu_stamp": report.obs_zulu_stamp,
                    },
                    created_at=now,
                )
            )

        log.info(
            "poll_complete",
            day_key=day_key,
            source=report.source,
            duplicate=not inserted,
            temp_whole_f=derived.temp_whole_f,
            high_so_far_whole_f=high_so_far,
        )
        return PollResult(
            day_key=day_key,
            dedup_key=dedup_key,
            source=report.source,
            duplicate=not inserted,
            temp_whole_f=derived.temp_whole_f,
            high_so_far_whole_f=high_so_far,
            is_new_high=inserted and is_new_high,
        )
