"""Shared fixtures and fakes."""

from collections.abc import Iterator
from datetime import UTC, datetime, timedelta
from pathlib import Path

import httpx
import pytest

from heatline.calls.providers import Recording
from heatline.models import ForecastSnapshot, HourlyPeriod, Observation
from heatline.settings import ProviderConfig
from heatline.storage import Storage

# 15:00 America/Chicago (CDT)
NOW = datetime(2026, 7, 15, 20, 0, 0, tzinfo=UTC)
DAY_KEY = "2026-07-15"


@pytest.fixture
def storage(tmp_path: Path) -> Iterator[Storage]:
    with Storage(tmp_path / "heatline.duckdb") as s:
        yield s


@pytest.fixture
def provider_config() -> ProviderConfig:
    return ProviderConfig(
        twilio_account_sid="AC123",
        twilio_auth_token="token",
        twilio_from_number="+15550001111",
        webhook_secret="s3cret",
        public_base_url="https://heatline.example.test/",
        openai_api_key="sk-test",
    )


def status_error(status: int) -> httpx.HTTPStatusError:
    request = httpx.Request("POST", "https://api.example.test")
    response = httpx.Response(status, request=request)
    return httpx.HTTPStatusError(f"HTTP {status}", request=request, response=response)


class FakeTelephony:
    def __init__(self, call_sid: str = "CA1", fail_with: Exception | None = None) -> None:
        self.call_sid = call_sid
        self.fail_with = fail_with
        self.download_error: Exception | None = None
        self.placed: list[tuple[str, str, str]] = []

    def place_call(self, to_number: str, from_number: str, recording_callback_url: str) -> str:
        self.placed.append((to_number, from_number, recording_callback_url))
        if self.fail_with is not None:
            raise self.fail_with
        return self.call_sid

    def download_recording(self, recording_url: str) -> Recording:
        if self.download_error is not None:
            raise self.download_error
        return Recording(".mp3", b"ID3fake-audio")


class FakeTranscriber:
    """Returns scripted outcomes per model; exceptions are raised."""

    def __init__(self, script: dict[str, list[object]] | None = None, default: str = "") -> None:
        self.script = {k: list(v) for k, v in (script or {}).items()}
        self.default = default
        self.calls: list[str] = []

    def transcribe(self, recording: Recording, model: str) -> str:
        self.calls.append(model)
        outcomes = self.script.get(model)
        outcome = outcomes.pop(0) if outcomes else self.default
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


@pytest.fixture
def telephony() -> FakeTelephony:
    return FakeTelephony()


def make_forecast(
    peak_at: datetime, peak_temp: float = 91.0, hourly: list[HourlyPeriod] | None = None
) -> ForecastSnapshot:
    return ForecastSnapshot(
        day_key=DAY_KEY,
        fetched_at=NOW - timedelta(minutes=30),
        hourly=hourly or [],
        predicted_max_temp_f=peak_temp,
        predicted_max_at=peak_at,
    )


def make_observation(minutes_ago: int, temp: int, is_new_high: bool = False, now: datetime = NOW) -> Observation:
    obs_time = now - timedelta(minutes=minutes_ago)
    return Observation(
        dedup_key=f"KORD|{obs_time:%d%H%M}Z|{temp}",
        day_key=DAY_KEY,
        station="KORD",
        source="NWS",
        raw_report=f"KORD {obs_time:%d%H%M}Z 22010KT 10SM CLR",
        obs_time=obs_time,
        derived_temp_whole_f=temp,
        is_new_high=is_new_high,
        created_at=obs_time,
    )
