"""Operational settings and provider configuration."""

import os
from collections.abc import Mapping
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from heatline.errors import ConfigError
from heatline.models import RoundingRule, TempExtraction, WindowPolicyName

STATION_CODE = "KORD"
STATION_TIMEZONE = "America/Chicago"

# Fields an operator may override in a what-if simulation
SIMULATION_FIELDS = frozenset(
    {
        "auto_call_enabled",
        "auto_call_shadow_mode",
        "window_policy",
        "auto_call_max_per_day",
        "auto_call_min_spacing_minutes",
        "auto_call_eval_every_minutes",
        "auto_call_pre_peak_lead_minutes",
        "auto_call_pre_peak_lag_minutes",
        "auto_call_peak_lead_minutes",
        "auto_call_peak_lag_minutes",
        "auto_call_post_peak_lead_minutes",
        "auto_call_post_peak_lag_minutes",
        "auto_call_near_max_threshold_f",
        "auto_call_in_flight_timeout_minutes",
    }
)


class Settings(BaseModel):
    """Global settings, read fresh at the start of every run."""

    model_config = ConfigDict(frozen=True, extra="ignore", use_enum_values=False)

    station: str = STATION_CODE
    timezone: str = STATION_TIMEZONE
    poll_interval_seconds: int = Field(default=60, gt=0)
    stale_poll_seconds: int = Field(default=180, gt=0)
    weather_primary_url: str = (
        "https://tgftp.nws.noaa.gov/data/observations/metar/stations/KORD.TXT"
    )
    weather_backup_url: str = "https://aviationweather.gov/api/data/metar?ids=KORD&format=json"
    forecast_points_url: str = "https://api.weather.gov/points/41.9786,-87.9048"
    temp_extraction: TempExtraction = TempExtraction.TGROUP_PREFERRED
    rounding: RoundingRule = RoundingRule.NEAREST

    auto_call_enabled: bool = False
    auto_call_shadow_mode: bool = True
    window_policy: WindowPolicyName = WindowPolicyName.MULTI_WINDOW
    auto_call_max_per_day: int = Field(default=8, ge=0)
    auto_call_min_spacing_minutes: int = Field(default=20, gt=0)
    auto_call_eval_every_minutes: int = Field(default=20, gt=0)
    auto_call_pre_peak_lead_minutes: int = Field(default=90, gt=0)
    auto_call_pre_peak_lag_minutes: int = Field(default=30, gt=0)
    auto_call_peak_lead_minutes: int = Field(default=15, gt=0)
    auto_call_peak_lag_minutes: int = Field(default=45, gt=0)
    auto_call_post_peak_lead_minutes: int = Field(default=90, gt=0)
    auto_call_post_peak_lag_minutes: int = Field(default=180, gt=0)
    auto_call_near_max_threshold_f: float = Field(default=1.0, ge=0)
    # Calls still in flight after this long are treated as abandoned
    auto_call_in_flight_timeout_minutes: int = Field(default=30, gt=0)

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any] | None) -> "Settings":
        """Merge stored values over the defaults, rejecting invalid values."""
        try:
            return cls.model_validate(dict(raw or {}))
        except ValidationError as e:
            raise ConfigError(f"Invalid settings: {e}") from e

    def with_overrides(self, overrides: Mapping[str, Any] | None) -> "Settings":
        """Return a new Settings with non-None overrides applied."""
        patch = {k: v for k, v in (overrides or {}).items() if v is not None}
        return Settings.from_mapping({**self.model_dump(), **patch})

    def simulation_view(self) -> dict[str, Any]:
        return {k: v for k, v in self.model_dump(mode="json").items() if k in SIMULATION_FIELDS}


DEFAULT_TARGET_NUMBER = "+17738000035"
DEFAULT_NWS_USER_AGENT = "heatline/0.1 (ops@example.com)"


class ProviderConfig(BaseModel):
    """Credentials and endpoints for the telephony and speech-to-text providers."""

    model_config = ConfigDict(frozen=True)

    twilio_account_sid: str
    twilio_auth_token: str
    twilio_from_number: str
    twilio_to_number: str = DEFAULT_TARGET_NUMBER
    webhook_secret: str
    public_base_url: str
    openai_api_key: str
    openai_transcribe_model: str | None = None

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> "ProviderConfig":
        env = os.environ if env is None else env
        required = {
            "twilio_account_sid": "TWILIO_ACCOUNT_SID",
            "twilio_auth_token": "TWILIO_AUTH_TOKEN",
            "twilio_from_number": "TWILIO_FROM_NUMBER",
            "webhook_secret": "TWILIO_WEBHOOK_SECRET",
            "public_base_url": "HEATLINE_PUBLIC_URL",
            "openai_api_key": "OPENAI_API_KEY",
        }
        missing = [name for name in required.values() if not env.get(name)]
        if missing:
            raise ConfigError(f"Missing required env var(s): {', '.join(missing)}")

        values: dict[str, Any] = {field: env[name] for field, name in required.items()}
        values["twilio_to_number"] = env.get("TWILIO_TO_NUMBER") or DEFAULT_TARGET_NUMBER
        values["openai_transcribe_model"] = (env.get("OPENAI_TRANSCRIBE_MODEL") or "").strip() or None
        return cls(**values)


def nws_user_agent(env: Mapping[str, str] | None = None) -> str:
    env = os.environ if env is None else env
    return (env.get("NWS_USER_AGENT") or DEFAULT_NWS_USER_AGENT).strip()
