"""Data models for the Heatline pipeline."""

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class TempExtraction(str, Enum):
    """How the Celsius value is pulled out of a METAR report."""

    TGROUP_PREFERRED = "TGROUP_PREFERRED"
    INTEGER_ONLY = "INTEGER_ONLY"


class ExtractionSource(str, Enum):
    """Which report group actually produced the temperature."""

    TGROUP = "TGROUP"
    INTEGER_GROUP = "INTEGER_GROUP"


class RoundingRule(str, Enum):
    """Whole-degree Fahrenheit rounding rule."""

    NEAREST = "NEAREST"
    FLOOR = "FLOOR"
    CEIL = "CEIL"
    MAX_OF_ROUNDED = "MAX_OF_ROUNDED"


class WindowPolicyName(str, Enum):
    MULTI_WINDOW = "MULTI_WINDOW"
    PEAK_2H = "PEAK_2H"


class Window(str, Enum):
    PRE_PEAK = "PRE_PEAK"
    PEAK = "PEAK"
    POST_PEAK = "POST_PEAK"
    PEAK_2H = "PEAK_2H"
    OUTSIDE = "OUTSIDE"


class Decision(str, Enum):
    CALL = "CALL"
    SKIP = "SKIP"


class ReasonCode(str, Enum):
    """Closed set of terminal reason codes recorded on every decision."""

    PENDING_EVALUATION = "PENDING_EVALUATION"
    SKIP_DISABLED = "SKIP_DISABLED"
    SKIP_NO_FORECAST = "SKIP_NO_FORECAST"
    SKIP_DATA_STALE = "SKIP_DATA_STALE"
    SKIP_OUTSIDE_WINDOW = "SKIP_OUTSIDE_WINDOW"
    SKIP_CALL_IN_FLIGHT = "SKIP_CALL_IN_FLIGHT"
    SKIP_DAILY_CAP = "SKIP_DAILY_CAP"
    SKIP_MIN_SPACING = "SKIP_MIN_SPACING"
    SKIP_SHADOW_MODE = "SKIP_SHADOW_MODE"
    SKIP_PRE_PEAK_NOT_READY = "SKIP_PRE_PEAK_NOT_READY"
    SKIP_PEAK_NOT_READY = "SKIP_PEAK_NOT_READY"
    SKIP_POST_PEAK_NO_UPTREND = "SKIP_POST_PEAK_NO_UPTREND"
    CALL_PRE_PEAK = "CALL_PRE_PEAK"
    CALL_PEAK = "CALL_PEAK"
    CALL_POST_PEAK = "CALL_POST_PEAK"
    CALL_PEAK_2H_WINDOW = "CALL_PEAK_2H_WINDOW"
    CALL_FAILED = "CALL_FAILED"


class CallStatus(str, Enum):
    """Phone call lifecycle."""

    REQUESTED = "REQUESTED"
    CALL_INITIATED = "CALL_INITIATED"
    RECORDING_READY = "RECORDING_READY"
    PROCESSED = "PROCESSED"
    PARSE_FAILED = "PARSE_FAILED"
    FAILED = "FAILED"


IN_FLIGHT_STATUSES = frozenset(
    {CallStatus.REQUESTED, CallStatus.CALL_INITIATED, CallStatus.RECORDING_READY}
)


class QualityStatus(str, Enum):
    """Health check result status."""

    PASS = "pass"
    FAIL = "fail"
    WARN = "warn"


class RawReport(BaseModel):
    """A normalized METAR line as returned by one of the weather sources."""

    raw_metar: str
    obs_zulu_stamp: str
    source: str


class Observation(BaseModel):
    """A single ingested station report."""

    dedup_key: str
    day_key: str
    station: str
    source: str
    raw_report: str
    obs_time: datetime
    derived_temp_whole_f: int | None = None
    is_new_high: bool = False
    created_at: datetime | None = None


class DailyStats(BaseModel):
    """Per-day truth state for the station."""

    day_key: str
    current_temp_whole_f: int | None = None
    high_so_far_whole_f: int | None = None
    time_of_high: datetime | None = None
    last_observation_time: datetime | None = None
    last_successful_poll_at: datetime | None = None
    poll_stale_seconds: int | None = None
    is_stale: bool = False
    updated_at: datetime | None = None


class HourlyPeriod(BaseModel):
    start_time: datetime
    temp_f: float | None = None
    short_forecast: str | None = None


class ForecastSnapshot(BaseModel):
    """One fetch of the hourly forecast for a station day."""

    day_key: str
    fetched_at: datetime
    source: str = "NWS_HOURLY"
    forecast_generated_at: datetime | None = None
    hourly: list[HourlyPeriod] = Field(default_factory=list)
    predicted_max_temp_f: float | None = None
    predicted_max_at: datetime | None = None


class AutoCallDecision(BaseModel):
    """Audit row for one decision bucket."""

    day_key: str
    decision_key: str
    evaluated_at: datetime
    decision: Decision = Decision.SKIP
    reason_code: ReasonCode = ReasonCode.PENDING_EVALUATION
    reason_detail: dict[str, Any] | None = None
    window: Window = Window.OUTSIDE
    predicted_max_at: datetime | None = None
    call_reference: str | None = None
    shadow_mode: bool = False
    updated_at: datetime | None = None


class AutoCallState(BaseModel):
    """Per-day auto-call counters."""

    day_key: str
    enabled: bool = False
    shadow_mode: bool = True
    auto_calls_made: int = Field(default=0, ge=0)
    last_auto_call_at: datetime | None = None
    last_decision_at: datetime | None = None
    last_reason_code: ReasonCode | None = None


class Mismatch(BaseModel):
    day_key: str
    expected: int
    predicted: int | None
    reports_used: int


class CalibrationRun(BaseModel):
    """Persisted outcome of one backtest invocation."""

    run_id: int | None = None
    date_range_start: str
    date_range_end: str
    methods_tested: list[str]
    chosen_method: str | None
    match_rate: float | None
    mismatches: list[Mismatch] = Field(default_factory=list)
    notes: str | None = None
    created_at: datetime = Field(default_factory=datetime.now)


class PhoneCallRecord(BaseModel):
    """Verification call lifecycle entity."""

    call_id: int | None = None
    day_key: str
    status: CallStatus = CallStatus.REQUESTED
    requested_by: str | None = None
    requested_at: datetime
    source_number: str | None = None
    target_number: str | None = None
    warning: str | None = None
    call_sid: str | None = None
    call_started_at: datetime | None = None
    call_completed_at: datetime | None = None
    recording_sid: str | None = None
    recording_url: str | None = None
    recording_duration_sec: float | None = None
    transcript: str | None = None
    transcription_model: str | None = None
    temp_c: float | None = None
    temp_f: float | None = None
    assumed_unit: str | None = None
    parsed_ok: bool | None = None
    failure_stage: str | None = None
    error: str | None = None

    @property
    def in_flight(self) -> bool:
        return self.status in IN_FLIGHT_STATUSES


class Alert(BaseModel):
    day_key: str
    type: str
    payload: dict[str, Any] | None = None
    created_at: datetime | None = None


class QualityCheckResult(BaseModel):
    """Result of a station health check."""

    check_name: str
    status: QualityStatus
    metric_value: float | None = None
    threshold: float | None = None
    message: str
    checked_at: datetime = Field(default_factory=datetime.now)
