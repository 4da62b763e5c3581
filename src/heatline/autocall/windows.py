"""Call-window classification around the forecast peak.

Two policies share one interface and are selected by the ``window_policy``
setting:

* ``MULTI_WINDOW`` places pre-peak, peak and post-peak windows at configured
  offsets around the predicted peak instant and gates each on live signals.
* ``PEAK_2H`` picks the hottest two consecutive forecast hours and is
  eligible for the whole block, with no further gating.
"""

import math
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime, timedelta

from heatline.models import (
    DailyStats,
    ForecastSnapshot,
    HourlyPeriod,
    Observation,
    ReasonCode,
    Window,
    WindowPolicyName,
)
from heatline.settings import Settings
from heatline.timeutil import ensure_utc

RECENT_HIGH_MINUTES = 60
# Hourly periods further apart than this are not treated as adjacent
ADJACENT_PERIOD_GAP = timedelta(minutes=75)
BLOCK_LENGTH = timedelta(hours=2)


@dataclass(frozen=True)
class Signals:
    current_temp_whole_f: int | None
    predicted_max_temp_f: float | None
    near_forecast_max: bool
    rising_now: bool
    high_changed_recently: bool

    def as_detail(self) -> dict[str, object]:
        return {
            "current_temp_whole_f": self.current_temp_whole_f,
            "predicted_max_temp_f": self.predicted_max_temp_f,
            "near_forecast_max": self.near_forecast_max,
            "rising_now": self.rising_now,
            "high_changed_recently": self.high_changed_recently,
        }


NO_SIGNALS = Signals(None, None, False, False, False)


@dataclass(frozen=True)
class WindowClassification:
    window: Window
    eligible: bool
    # Call reason when eligible, otherwise the skip reason
    reason_code: ReasonCode
    window_start: datetime | None = None
    window_end: datetime | None = None

    def as_detail(self) -> dict[str, object]:
        return {
            "window": self.window.value,
            "eligible": self.eligible,
            "window_start": self.window_start.isoformat() if self.window_start else None,
            "window_end": self.window_end.isoformat() if self.window_end else None,
        }


OUTSIDE = WindowClassification(Window.OUTSIDE, False, ReasonCode.SKIP_OUTSIDE_WINDOW)


def _finite(value: float | int | None) -> bool:
    return isinstance(value, int | float) and not isinstance(value, bool) and math.isfinite(value)


def compute_rising_trend(observations: Sequence[Observation]) -> bool:
    """True when the newest finite reading is strictly above the one before it.

    ``observations`` must be ordered newest first.
    """
    temps = [o.derived_temp_whole_f for o in observations if _finite(o.derived_temp_whole_f)]
    if len(temps) < 2:
        return False
    return temps[0] > temps[1]


def has_recent_high(
    observations: Sequence[Observation], now: datetime, within_minutes: int = RECENT_HIGH_MINUTES
) -> bool:
    cutoff = ensure_utc(now) - timedelta(minutes=within_minutes)
    return any(o.is_new_high and ensure_utc(o.obs_time) >= cutoff for o in observations)


def near_forecast_max(current_f: float | None, predicted_max_f: float | None, threshold_f: float) -> bool:
    if not (_finite(current_f) and _finite(predicted_max_f) and _finite(threshold_f)):
        return False
    return abs(current_f - predicted_max_f) <= abs(threshold_f)


def compute_signals(
    stats: DailyStats | None,
    observations: Sequence[Observation],
    forecast: ForecastSnapshot | None,
    settings: Settings,
    now: datetime,
) -> Signals:
    current = stats.current_temp_whole_f if stats else None
    predicted = forecast.predicted_max_temp_f if forecast else None
    return Signals(
        current_temp_whole_f=current,
        predicted_max_temp_f=predicted,
        near_forecast_max=near_forecast_max(current, predicted, settings.auto_call_near_max_threshold_f),
        rising_now=compute_rising_trend(observations),
        high_changed_recently=has_recent_high(observations, now),
    )


class WindowPolicy:
    """Interface shared by the window policies."""

    name: WindowPolicyName
    # Whether the daily cap and minimum spacing guards apply
    enforces_call_budget: bool = True

    def has_usable_forecast(self, forecast: ForecastSnapshot | None) -> bool:
        raise NotImplementedError

    def classify(
        self,
        now: datetime,
        forecast: ForecastSnapshot | None,
        settings: Settings,
        signals: Signals = NO_SIGNALS,
    ) -> WindowClassification:
        raise NotImplementedError


class MultiWindowPolicy(WindowPolicy):
    name = WindowPolicyName.MULTI_WINDOW
    enforces_call_budget = True

    CALL_REASONS = {
        Window.PRE_PEAK: ReasonCode.CALL_PRE_PEAK,
        Window.PEAK: ReasonCode.CALL_PEAK,
        Window.POST_PEAK: ReasonCode.CALL_POST_PEAK,
    }
    SKIP_REASONS = {
        Window.PRE_PEAK: ReasonCode.SKIP_PRE_PEAK_NOT_READY,
        Window.PEAK: ReasonCode.SKIP_PEAK_NOT_READY,
        Window.POST_PEAK: ReasonCode.SKIP_POST_PEAK_NO_UPTREND,
    }

    def has_usable_forecast(self, forecast: ForecastSnapshot | None) -> bool:
        return forecast is not None and forecast.predicted_max_at is not None

    def intervals(self, peak: datetime, settings: Settings) -> list[tuple[Window, datetime, datetime]]:
        """Half-open intervals in match order: PEAK, PRE_PEAK, POST_PEAK."""

        def minutes(value: int) -> timedelta:
            return timedelta(minutes=value)

        return [
            (
                Window.PEAK,
                peak - minutes(settings.auto_call_peak_lead_minutes),
                peak + minutes(settings.auto_call_peak_lag_minutes),
            ),
            (
                Window.PRE_PEAK,
                peak - minutes(settings.auto_call_pre_peak_lead_minutes),
                peak - minutes(settings.auto_call_pre_peak_lag_minutes),
            ),
            (
                Window.POST_PEAK,
                peak + minutes(settings.auto_call_post_peak_lead_minutes),
                peak + minutes(settings.auto_call_post_peak_lag_minutes),
            ),
        ]

    @staticmethod
    def signals_allow(window: Window, signals: Signals) -> bool:
        if window is Window.PRE_PEAK:
            return signals.near_forecast_max and signals.rising_now
        if window is Window.PEAK:
            return signals.near_forecast_max or signals.rising_now
        if window is Window.POST_PEAK:
            return signals.high_changed_recently or signals.rising_now
        return False

    def classify(
        self,
        now: datetime,
        forecast: ForecastSnapshot | None,
        settings: Settings,
        signals: Signals = NO_SIGNALS,
    ) -> WindowClassification:
        if not self.has_usable_forecast(forecast):
            return OUTSIDE

        now = ensure_utc(now)
        peak = ensure_utc(forecast.predicted_max_at)
        for window, start, end in self.intervals(peak, settings):
            if start <= now < end:
                eligible = self.signals_allow(window, signals)
                reason = self.CALL_REASONS[window] if eligible else self.SKIP_REASONS[window]
                return WindowClassification(window, eligible, reason, start, end)
        return OUTSIDE


def find_peak_block(periods: Sequence[HourlyPeriod]) -> tuple[datetime, datetime] | None:
    """Locate the hottest two-hour block in an hourly forecast.

    Adjacent pairs are ranked by summed temperature, then by the higher
    single-hour value, then by earlier start. With no adjacent pair, the
    block is centered on the single hottest hour.
    """
    usable = sorted(
        (p for p in periods if _finite(p.temp_f)),
        key=lambda p: ensure_utc(p.start_time),
    )
    if not usable:
        return None

    best: tuple[float, float, float] | None = None
    best_start: datetime | None = None
    for first, second in zip(usable, usable[1:], strict=False):
        start = ensure_utc(first.start_time)
        if ensure_utc(second.start_time) - start > ADJACENT_PERIOD_GAP:
            continue
        score = (first.temp_f + second.temp_f, max(first.temp_f, second.temp_f), -start.timestamp())
        if best is None or score > best:
            best, best_start = score, start

    if best_start is not None:
        return best_start, best_start + BLOCK_LENGTH

    hottest = max(usable, key=lambda p: (p.temp_f, -ensure_utc(p.start_time).timestamp()))
    center = ensure_utc(hottest.start_time)
    return center - timedelta(hours=1), center + timedelta(hours=1)


class PeakTwoHourPolicy(WindowPolicy):
    name = WindowPolicyName.PEAK_2H
    enforces_call_budget = False

    def has_usable_forecast(self, forecast: ForecastSnapshot | None) -> bool:
        return forecast is not None and any(_finite(p.temp_f) for p in forecast.hourly)

    def classify(
        self,
        now: datetime,
        forecast: ForecastSnapshot | None,
        settings: Settings,
        signals: Signals = NO_SIGNALS,
    ) -> WindowClassification:
        if forecast is None:
            return OUTSIDE
        block = find_peak_block(forecast.hourly)
        if block is None:
            return OUTSIDE

        start, end = block
        if start <= ensure_utc(now) < end:
            return WindowClassification(Window.PEAK_2H, True, ReasonCode.CALL_PEAK_2H_WINDOW, start, end)
        return WindowClassification(Window.OUTSIDE, False, ReasonCode.SKIP_OUTSIDE_WINDOW, start, end)


POLICIES: dict[WindowPolicyName, WindowPolicy] = {
    WindowPolicyName.MULTI_WINDOW: MultiWindowPolicy(),
    WindowPolicyName.PEAK_2H: PeakTwoHourPolicy(),
}


def get_policy(name: WindowPolicyName | str) -> WindowPolicy:
    return POLICIES[WindowPolicyName(name)]
