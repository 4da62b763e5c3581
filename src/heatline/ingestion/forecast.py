"""Hourly temperature forecast from the NWS gridpoint API."""

from datetime import datetime
from typing import Any

import httpx
import structlog

from heatline.errors import ForecastFetchError
from heatline.models import Alert, ForecastSnapshot, HourlyPeriod
from heatline.settings import nws_user_agent
from heatline.storage import Storage
from heatline.timeutil import day_key as to_day_key
from heatline.timeutil import ensure_utc, utcnow

log = structlog.get_logger()


def _to_temp_f(temperature: Any, unit: str) -> float | None:
    if isinstance(temperature, bool) or not isinstance(temperature, int | float):
        return None
    if unit == "F":
        return float(temperature)
    if unit == "C":
        return temperature * 9 / 5 + 32
    return None


def _parse_iso(value: Any) -> datetime | None:
    if not isinstance(value, str) or not value.strip():
        return None
    try:
        return ensure_utc(datetime.fromisoformat(value.strip().replace("Z", "+00:00")))
    except ValueError:
        return None


def normalize_hourly_periods(periods: Any) -> list[HourlyPeriod]:
    """Keep periods with a parseable start time, converting to Fahrenheit."""
    normalized = []
    for period in periods if isinstance(periods, list) else []:
        if not isinstance(period, dict):
            continue
        start = _parse_iso(period.get("startTime"))
        if start is None:
            continue
        unit = str(period.get("temperatureUnit") or "").upper()
        normalized.append(
            HourlyPeriod(
                start_time=start,
                temp_f=_to_temp_f(period.get("temperature"), unit),
                short_forecast=period.get("shortForecast"),
            )
        )
    return normalized


def predicted_peak(periods: list[HourlyPeriod]) -> tuple[float | None, datetime | None]:
    """Return the max forecast temperature and the start of its first hour."""
    peak: HourlyPeriod | None = None
    for period in periods:
        if period.temp_f is None:
            continue
        if peak is None or peak.temp_f is None or period.temp_f > peak.temp_f:
            peak = period
    if peak is None:
        return None, None
    return peak.temp_f, peak.start_time


def build_snapshot(
    payload: dict[str, Any], day_key: str, fetched_at: datetime, timezone: str
) -> ForecastSnapshot:
    """Turn an hourly forecast payload into a snapshot for one station day."""
    properties = payload.get("properties") or {}
    periods = [
        p
        for p in normalize_hourly_periods(properties.get("periods"))
        if to_day_key(p.start_time, timezone) == day_key
    ]
    max_temp_f, max_at = predicted_peak(periods)
    return ForecastSnapshot(
        day_key=day_key,
        fetched_at=fetched_at,
        source="NWS_HOURLY",
        forecast_generated_at=_parse_iso(properties.get("updateTime")),
        hourly=periods,
        predicted_max_temp_f=max_temp_f,
        predicted_max_at=max_at,
    )


class ForecastClient:
    """Client for the NWS points -> hourly forecast lookup."""

    def __init__(self, user_agent: str, timeout: float = 20.0, client: httpx.Client | None = None) -> None:
        headers = {"User-Agent": user_agent, "Accept": "application/geo+json"}
        self._client = client or httpx.Client(timeout=timeout, headers=headers)

    def _get_json(self, url: str, label: str) -> dict[str, Any]:
        try:
            response = self._client.get(url)
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPStatusError as e:
            raise ForecastFetchError(f"NWS {label} endpoint returned HTTP {e.response.status_code}") from e
        except (httpx.HTTPError, ValueError) as e:
            raise ForecastFetchError(f"NWS {label} request failed: {e}") from e
        if not isinstance(data, dict):
            raise ForecastFetchError(f"NWS {label} payload is not a JSON object")
        return data

    def fetch_snapshot(
        self, points_url: str, day_key: str, fetched_at: datetime, timezone: str
    ) -> ForecastSnapshot:
        points = self._get_json(points_url, "points")
        hourly_url = (points.get("properties") or {}).get("forecastHourly")
        if not hourly_url:
            raise ForecastFetchError("NWS points payload is missing properties.forecastHourly")

        hourly = self._get_json(hourly_url, "hourly")
        snapshot = build_snapshot(hourly, day_key, fetched_at, timezone)
        log.info(
            "forecast_fetched",
            day_key=day_key,
            periods=len(snapshot.hourly),
            predicted_max_temp_f=snapshot.predicted_max_temp_f,
        )
        return snapshot

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> "ForecastClient":
        return self

    def __exit__(self, *args: object) -> None:
        self.close()


def refresh_forecast(
    storage: Storage,
    client: ForecastClient | None = None,
    day_key: str | None = None,
    now: datetime | None = None,
) -> ForecastSnapshot:
    """Fetch and store a new snapshot for the station day.

    Raises:
        ForecastFetchError: after recording a FORECAST_REFRESH_FAILED alert
    """
    now = now or utcnow()
    settings = storage.load_settings()
    day_key = day_key or to_day_key(now, settings.timezone)
    owns_client = client is None
    client = client or ForecastClient(nws_user_agent())
    try:
        snapshot = client.fetch_snapshot(settings.forecast_points_url, day_key, now, settings.timezone)
    except ForecastFetchError as e:
        log.warning("forecast_refresh_failed", day_key=day_key, error=str(e))
        storage.insert_alert(
            Alert(day_key=day_key, type="FORECAST_REFRESH_FAILED", payload={"reason": str(e)}, created_at=now)
        )
        raise
    finally:
        if owns_client:
            client.close()

    storage.save_forecast_snapshot(snapshot)
    return snapshot
