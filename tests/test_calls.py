"""Tests for the verification call pipeline."""

from datetime import UTC, datetime, timedelta
from urllib.parse import parse_qs

import httpx
import pytest

from heatline.calls import CallPipeline, call_with_fallback, extract_temperature_from_transcript, is_retryable_error
from heatline.calls.pipeline import DAYTIME_WARNING, transcription_candidates
from heatline.calls.providers import OpenAITranscriber, Recording, TwilioClient
from heatline.calls.transcript import to_celsius_and_fahrenheit
from heatline.errors import (
    CallPlacementError,
    CooldownActiveError,
    FallbackExhaustedError,
    RecordingDownloadError,
)
from heatline.models import CallStatus
from heatline.settings import DEFAULT_TARGET_NUMBER, ProviderConfig
from heatline.storage import Storage

from conftest import DAY_KEY, NOW, FakeTelephony, FakeTranscriber, status_error

RECORDING_URL = "https://api.twilio.com/2010-04-01/Accounts/AC123/Recordings/RE1"
CELSIUS_TRANSCRIPT = "Chicago O'Hare automated weather observation. Temperature 31 degrees Celsius."


@pytest.fixture
def sleeps() -> list[float]:
    return []


@pytest.fixture
def transcriber() -> FakeTranscriber:
    return FakeTranscriber(default=CELSIUS_TRANSCRIPT)


@pytest.fixture
def pipeline(
    storage: Storage,
    provider_config: ProviderConfig,
    telephony: FakeTelephony,
    transcriber: FakeTranscriber,
    sleeps: list[float],
) -> CallPipeline:
    return CallPipeline(storage, provider_config, telephony, transcriber, sleep=sleeps.append)


def alert_types(storage: Storage) -> list[str]:
    return [a.type for a in storage.get_recent_alerts(DAY_KEY)]


class TestRequestCall:
    def test_places_call(self, pipeline: CallPipeline, storage: Storage, telephony: FakeTelephony) -> None:
        record = pipeline.request_call("operator", now=NOW)

        assert record.status is CallStatus.CALL_INITIATED
        assert record.call_sid == "CA1"
        assert record.requested_by == "operator"
        assert record.target_number == DEFAULT_TARGET_NUMBER
        assert record.warning is None
        assert telephony.placed == [
            (DEFAULT_TARGET_NUMBER, "+15550001111", "https://heatline.example.test/twilio/recording?secret=s3cret")
        ]
        assert "PHONE_CALL_REQUESTED" in alert_types(storage)

    def test_daytime_warning(self, pipeline: CallPipeline) -> None:
        # 09:00 in Chicago
        record = pipeline.request_call(now=datetime(2026, 7, 15, 14, 0, tzinfo=UTC))
        assert record.warning == DAYTIME_WARNING

    def test_cooldown(self, pipeline: CallPipeline) -> None:
        pipeline.request_call(now=NOW)

        with pytest.raises(CooldownActiveError) as exc_info:
            pipeline.request_call(now=NOW + timedelta(minutes=5))
        assert exc_info.value.remaining_seconds == 600

        assert pipeline.request_call(now=NOW + timedelta(minutes=15)).status is CallStatus.CALL_INITIATED

    def test_placement_failure(self, storage: Storage, provider_config: ProviderConfig) -> None:
        telephony = FakeTelephony(fail_with=httpx.ConnectError("connection refused"))
        pipeline = CallPipeline(storage, provider_config, telephony, FakeTranscriber())

        with pytest.raises(CallPlacementError, match="connection refused"):
            pipeline.request_call(now=NOW)

        latest = storage.get_latest_phone_call()
        assert latest.status is CallStatus.FAILED
        assert latest.error == "connection refused"
        assert "PHONE_CALL_FAILED" in alert_types(storage)

    def test_unexpected_provider_error_marks_call_failed(
        self, storage: Storage, provider_config: ProviderConfig
    ) -> None:
        telephony = FakeTelephony(fail_with=ValueError("Expecting value: line 1 column 1"))
        pipeline = CallPipeline(storage, provider_config, telephony, FakeTranscriber())

        with pytest.raises(CallPlacementError, match="Expecting value") as exc_info:
            pipeline.request_call(now=NOW)

        assert isinstance(exc_info.value.__cause__, ValueError)
        latest = storage.get_latest_phone_call()
        assert latest.status is CallStatus.FAILED
        assert not latest.in_flight

    def test_failed_call_still_starts_cooldown(self, storage: Storage, provider_config: ProviderConfig) -> None:
        telephony = FakeTelephony(fail_with=httpx.ConnectError("connection refused"))
        pipeline = CallPipeline(storage, provider_config, telephony, FakeTranscriber())
        with pytest.raises(CallPlacementError):
            pipeline.request_call(now=NOW)
        assert pipeline.cooldown_remaining_seconds(NOW + timedelta(minutes=1)) == 840


class TestProcessRecording:
    def test_processed(
        self, pipeline: CallPipeline, storage: Storage, transcriber: FakeTranscriber, sleeps: list[float]
    ) -> None:
        requested = pipeline.request_call(now=NOW)

        record = pipeline.process_recording("RE1", RECORDING_URL, "CA1", 14.0, now=NOW + timedelta(minutes=1))

        assert record.call_id == requested.call_id
        assert record.status is CallStatus.PROCESSED
        assert record.parsed_ok is True
        assert record.temp_c == 31
        assert record.temp_f == pytest.approx(87.8)
        assert record.assumed_unit == "C"
        assert record.transcript == CELSIUS_TRANSCRIPT
        assert record.transcription_model == "gpt-4o-mini-transcribe"
        assert record.recording_sid == "RE1"
        assert record.recording_duration_sec == 14.0
        assert transcriber.calls == ["gpt-4o-mini-transcribe"]
        assert sleeps == []
        assert "PHONE_CALL_SUCCESS" in alert_types(storage)

    def test_retries_then_falls_back_to_next_model(
        self, storage: Storage, provider_config: ProviderConfig, telephony: FakeTelephony, sleeps: list[float]
    ) -> None:
        transcriber = FakeTranscriber(
            {"gpt-4o-mini-transcribe": [status_error(503)] * 3}, default="the temperature is 29"
        )
        pipeline = CallPipeline(storage, provider_config, telephony, transcriber, sleep=sleeps.append)
        pipeline.request_call(now=NOW)

        record = pipeline.process_recording("RE1", RECORDING_URL, "CA1", now=NOW)

        assert transcriber.calls == ["gpt-4o-mini-transcribe"] * 3 + ["whisper-1"]
        assert sleeps == pytest.approx([0.8, 1.6])
        assert record.transcription_model == "whisper-1"
        assert record.assumed_unit == "UNKNOWN"
        assert record.temp_c == 29
        assert record.temp_f == pytest.approx(84.2)

    def test_client_error_skips_straight_to_next_model(
        self, storage: Storage, provider_config: ProviderConfig, telephony: FakeTelephony, sleeps: list[float]
    ) -> None:
        transcriber = FakeTranscriber({"gpt-4o-mini-transcribe": [status_error(400)]}, default="85 degrees F")
        pipeline = CallPipeline(storage, provider_config, telephony, transcriber, sleep=sleeps.append)
        pipeline.request_call(now=NOW)

        record = pipeline.process_recording("RE1", RECORDING_URL, "CA1", now=NOW)

        assert transcriber.calls == ["gpt-4o-mini-transcribe", "whisper-1"]
        assert sleeps == []
        assert record.temp_f == 85
        assert record.assumed_unit == "F"

    def test_configured_model_tried_first(
        self, storage: Storage, provider_config: ProviderConfig, telephony: FakeTelephony
    ) -> None:
        config = provider_config.model_copy(update={"openai_transcribe_model": "custom-stt"})
        transcriber = FakeTranscriber(default=CELSIUS_TRANSCRIPT)
        pipeline = CallPipeline(storage, config, telephony, transcriber)
        pipeline.request_call(now=NOW)

        assert pipeline.process_recording("RE1", RECORDING_URL, "CA1", now=NOW).transcription_model == "custom-stt"

    def test_transcription_exhausted(
        self, storage: Storage, provider_config: ProviderConfig, telephony: FakeTelephony
    ) -> None:
        transcriber = FakeTranscriber(
            {"gpt-4o-mini-transcribe": [status_error(401)], "whisper-1": [status_error(401)]}
        )
        pipeline = CallPipeline(storage, provider_config, telephony, transcriber)
        pipeline.request_call(now=NOW)

        record = pipeline.process_recording("RE1", RECORDING_URL, "CA1", now=NOW)

        assert record.status is CallStatus.FAILED
        assert record.failure_stage == "transcription_request"
        assert record.parsed_ok is False
        assert "PHONE_CALL_FAILED" in alert_types(storage)

    def test_download_failure(
        self, pipeline: CallPipeline, telephony: FakeTelephony, transcriber: FakeTranscriber
    ) -> None:
        telephony.download_error = RecordingDownloadError("Download failed for .wav: HTTP 404")
        pipeline.request_call(now=NOW)

        record = pipeline.process_recording("RE1", RECORDING_URL, "CA1", now=NOW)

        assert record.status is CallStatus.FAILED
        assert record.failure_stage == "recording_download"
        assert "HTTP 404" in record.error
        assert transcriber.calls == []

    def test_parse_failure(self, storage: Storage, provider_config: ProviderConfig, telephony: FakeTelephony) -> None:
        pipeline = CallPipeline(storage, provider_config, telephony, FakeTranscriber(default="no reading available"))
        pipeline.request_call(now=NOW)

        record = pipeline.process_recording("RE1", RECORDING_URL, "CA1", now=NOW)

        assert record.status is CallStatus.PARSE_FAILED
        assert record.failure_stage == "temperature_parse"
        assert record.transcript == "no reading available"
        assert record.temp_f is None
        assert "PHONE_PARSE_FAILED" in alert_types(storage)

    def test_recording_without_known_call(self, pipeline: CallPipeline, storage: Storage) -> None:
        record = pipeline.process_recording("RE7", RECORDING_URL, "CA999", now=NOW)

        assert record.call_id is not None
        assert record.call_sid == "CA999"
        assert record.status is CallStatus.PROCESSED
        assert len(storage.get_recent_phone_calls()) == 1


class TestRecordingCallback:
    PARAMS = {
        "RecordingStatus": "completed",
        "RecordingSid": "RE1",
        "RecordingUrl": RECORDING_URL,
        "CallSid": "CA1",
        "RecordingDuration": "14",
    }

    def test_rejects_bad_secret(self, pipeline: CallPipeline) -> None:
        assert pipeline.handle_recording_callback(self.PARAMS, "wrong", now=NOW).status_code == 401
        assert pipeline.handle_recording_callback(self.PARAMS, None, now=NOW).status_code == 401

    def test_ignores_incomplete_recording(self, pipeline: CallPipeline, transcriber: FakeTranscriber) -> None:
        result = pipeline.handle_recording_callback(
            {**self.PARAMS, "RecordingStatus": "in-progress"}, "s3cret", now=NOW
        )
        assert (result.status_code, result.message) == (200, "ignored")
        assert transcriber.calls == []

    def test_missing_recording_details(self, pipeline: CallPipeline) -> None:
        params = {k: v for k, v in self.PARAMS.items() if k != "RecordingUrl"}
        assert pipeline.handle_recording_callback(params, "s3cret", now=NOW).status_code == 400

    def test_processes_completed_recording(self, pipeline: CallPipeline) -> None:
        pipeline.request_call(now=NOW)

        result = pipeline.handle_recording_callback(self.PARAMS, "s3cret", now=NOW + timedelta(minutes=1))

        assert result.status_code == 200
        assert result.record.status is CallStatus.PROCESSED
        assert result.record.recording_duration_sec == 14.0


class TestTranscript:
    @pytest.mark.parametrize(
        ("transcript", "expected"),
        [
            ("The temperature is 85 degrees Fahrenheit.", (85, "F")),
            ("Temperature 31 degrees Celsius.", (31, "C")),
            ("temperature -5 c, dewpoint -9 c", (-5, "C")),
            ("dewpoint 12 celsius, temperature 88 f", (88, "F")),
            ("O'Hare weather. Temperature is 29.", (29, "UNKNOWN")),
            ("wind calm, reading 27 now", (27, "UNKNOWN")),
            ("no reading available", (None, "UNKNOWN")),
            ("", (None, "UNKNOWN")),
            (None, (None, "UNKNOWN")),
        ],
    )
    def test_extraction_cascade(self, transcript: str | None, expected: tuple[int | None, str]) -> None:
        assert tuple(extract_temperature_from_transcript(transcript)) == expected

    def test_conversion(self) -> None:
        fahrenheit = to_celsius_and_fahrenheit(85, "F")
        assert fahrenheit.temp_f == 85
        assert fahrenheit.temp_c == pytest.approx(29.444, abs=1e-3)

        celsius = to_celsius_and_fahrenheit(31, "C")
        assert celsius.temp_c == 31
        assert celsius.temp_f == pytest.approx(87.8)

    def test_unknown_unit_read_as_celsius(self) -> None:
        assert to_celsius_and_fahrenheit(29, "UNKNOWN").temp_f == pytest.approx(84.2)

    def test_candidates(self) -> None:
        assert transcription_candidates(None) == ["gpt-4o-mini-transcribe", "whisper-1"]
        assert transcription_candidates("  ") == ["gpt-4o-mini-transcribe", "whisper-1"]
        assert transcription_candidates("whisper-1") == ["whisper-1", "gpt-4o-mini-transcribe"]
        assert transcription_candidates("custom") == ["custom", "gpt-4o-mini-transcribe", "whisper-1"]


class TestCallWithFallback:
    def test_first_success(self) -> None:
        result = call_with_fallback(["a", "b"], lambda c: c.upper(), sleep=lambda s: None)
        assert (result.value, result.candidate, result.attempt) == ("A", "a", 1)

    def test_retries_retryable_errors(self) -> None:
        sleeps: list[float] = []
        failures = [httpx.ReadTimeout("timed out"), httpx.ConnectError("reset")]

        def flaky(candidate: str) -> str:
            if failures:
                raise failures.pop(0)
            return candidate

        result = call_with_fallback(["a"], flaky, sleep=sleeps.append)

        assert result.attempt == 3
        assert sleeps == pytest.approx([0.8, 1.6])
        assert len(result.attempts) == 3

    def test_non_retryable_moves_to_next_candidate(self) -> None:
        sleeps: list[float] = []

        def fn(candidate: str) -> str:
            if candidate == "a":
                raise ValueError("bad input")
            return candidate

        result = call_with_fallback(["a", "b"], fn, sleep=sleeps.append)

        assert result.candidate == "b"
        assert sleeps == []

    def test_exhausted(self) -> None:
        def always_fails(candidate: str) -> str:
            raise status_error(503)

        with pytest.raises(FallbackExhaustedError) as exc_info:
            call_with_fallback(["a", "b"], always_fails, sleep=lambda s: None)
        assert len(exc_info.value.attempts) == 6

    def test_retryable_classification(self) -> None:
        assert is_retryable_error(status_error(503))
        assert is_retryable_error(status_error(500))
        assert not is_retryable_error(status_error(400))
        assert not is_retryable_error(status_error(429))
        assert is_retryable_error(httpx.ConnectError("refused"))
        assert is_retryable_error(httpx.ReadTimeout("slow"))
        assert not is_retryable_error(ValueError("nope"))


class TestProviderClients:
    def test_twilio_place_call(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(201, json={"sid": "CA9"})

        client = TwilioClient("AC123", "token", client=httpx.Client(transport=httpx.MockTransport(handler)))
        call_sid = client.place_call("+17738000035", "+15550001111", "https://example.test/cb")

        assert call_sid == "CA9"
        assert seen[0].url.path == "/2010-04-01/Accounts/AC123/Calls.json"
        form = parse_qs(seen[0].read().decode())
        assert form["Record"] == ["true"]
        assert form["RecordingStatusCallback"] == ["https://example.test/cb"]

    def test_twilio_rejection_raises(self) -> None:
        transport = httpx.MockTransport(lambda request: httpx.Response(400, json={"message": "bad number"}))
        client = TwilioClient("AC123", "token", client=httpx.Client(transport=transport))
        with pytest.raises(httpx.HTTPStatusError):
            client.place_call("+1", "+2", "https://example.test/cb")

    def test_recording_download_falls_back_to_wav(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path.endswith(".wav"):
                return httpx.Response(200, content=b"RIFF")
            return httpx.Response(404)

        client = TwilioClient("AC123", "token", client=httpx.Client(transport=httpx.MockTransport(handler)))
        assert client.download_recording(RECORDING_URL) == Recording(".wav", b"RIFF")

    def test_recording_download_exhausted(self) -> None:
        transport = httpx.MockTransport(lambda request: httpx.Response(404))
        client = TwilioClient("AC123", "token", client=httpx.Client(transport=transport))
        with pytest.raises(RecordingDownloadError, match="wav"):
            client.download_recording(RECORDING_URL)

    def test_openai_transcribe(self) -> None:
        bodies: list[bytes] = []

        def handler(request: httpx.Request) -> httpx.Response:
            bodies.append(request.read())
            return httpx.Response(200, json={"text": " Temperature 30 degrees. "})

        transcriber = OpenAITranscriber("sk-test", client=httpx.Client(transport=httpx.MockTransport(handler)))
        text = transcriber.transcribe(Recording(".mp3", b"ID3"), "whisper-1")

        assert text == "Temperature 30 degrees."
        assert b"whisper-1" in bodies[0]
        assert b"recording.mp3" in bodies[0]
