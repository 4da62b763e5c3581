"""Verification call pipeline: place the call, then transcribe the recording.

Lifecycle of a ``PhoneCallRecord``::

    REQUESTED -> CALL_INITIATED -> RECORDING_READY -> PROCESSED
                                                   -> PARSE_FAILED
                                                   -> FAILED

A single global cooldown limits how often any caller (operator or automation)
can place a call.
"""

import hmac
import math
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import datetime, timedelta
from urllib.parse import quote

import structlog

from heatline.calls.providers import OpenAITranscriber, Recording, Telephony, Transcriber, TwilioClient
from heatline.calls.resilience import call_with_fallback
from heatline.calls.transcript import extract_temperature_from_transcript, to_celsius_and_fahrenheit
from heatline.errors import (
    CallPlacementError,
    CooldownActiveError,
    FallbackExhaustedError,
    RecordingDownloadError,
    TranscriptionError,
)
from heatline.models import Alert, CallStatus, PhoneCallRecord
from heatline.settings import ProviderConfig
from heatline.storage import Storage
from heatline.timeutil import day_key as to_day_key
from heatline.timeutil import ensure_utc, format_local, local_hour, utcnow

log = structlog.get_logger()

CALL_COOLDOWN = timedelta(minutes=15)
FALLBACK_TRANSCRIPTION_MODELS = ("gpt-4o-mini-transcribe", "whisper-1")
DAYTIME_WARNING_HOURS = range(7, 13)
DAYTIME_WARNING = "Call requested during 07:00-13:00 local time (sun-heating window)."
RECORDING_WEBHOOK_PATH = "/twilio/recording"


def transcription_candidates(override: str | None) -> list[str]:
    """Configured model first, then the fixed fallbacks, without repeats."""
    models = [override.strip()] if override and override.strip() else []
    models.extend(m for m in FALLBACK_TRANSCRIPTION_MODELS if m not in models)
    return models


@dataclass
class CallbackResult:
    status_code: int
    message: str
    record: PhoneCallRecord | None = None


class CallPipeline:
    """Places verification calls and processes their recordings."""

    def __init__(
        self,
        storage: Storage,
        config: ProviderConfig,
        telephony: Telephony,
        transcriber: Transcriber,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.storage = storage
        self.config = config
        self.telephony = telephony
        self.transcriber = transcriber
        self.sleep = sleep

    @classmethod
    def from_env(cls, storage: Storage, env: Mapping[str, str] | None = None) -> "CallPipeline":
        """Build the pipeline with real provider clients.

        Raises:
            ConfigError: when a required env var is missing
        """
        config = ProviderConfig.from_env(env)
        return cls(
            storage,
            config,
            TwilioClient(config.twilio_account_sid, config.twilio_auth_token),
            OpenAITranscriber(config.openai_api_key),
        )

    def _timezone(self) -> str:
        return self.storage.load_settings().timezone

    def cooldown_remaining_seconds(self, now: datetime) -> int:
        latest = self.storage.get_latest_phone_call()
        if latest is None:
            return 0
        elapsed = ensure_utc(now) - ensure_utc(latest.requested_at)
        if elapsed >= CALL_COOLDOWN:
            return 0
        return math.ceil((CALL_COOLDOWN - elapsed).total_seconds())

    def recording_callback_url(self) -> str:
        base = self.config.public_base_url.rstrip("/")
        return f"{base}{RECORDING_WEBHOOK_PATH}?secret={quote(self.config.webhook_secret, safe='')}"

    def request_call(self, requested_by: str | None = None, now: datetime | None = None) -> PhoneCallRecord:
        """Place a verification call.

        Raises:
            CooldownActiveError: when the previous call is less than 15 minutes old
            CallPlacementError: when the telephony provider rejects the call
        """
        now = now or utcnow()
        timezone = self._timezone()
        remaining = self.cooldown_remaining_seconds(now)
        if remaining > 0:
            available_at = format_local(now + timedelta(seconds=remaining), timezone)
            raise CooldownActiveError(
                remaining, f"Call cooldown active for {remaining}s (next allowed: {available_at})"
            )

        day_key = to_day_key(now, timezone)
        warning = DAYTIME_WARNING if local_hour(now, timezone) in DAYTIME_WARNING_HOURS else None
        record = self.storage.create_phone_call(
            PhoneCallRecord(
                day_key=day_key,
                status=CallStatus.REQUESTED,
                requested_by=requested_by,
                requested_at=now,
                source_number=self.config.twilio_from_number,
                target_number=self.config.twilio_to_number,
                warning=warning,
            )
        )

        try:
            call_sid = self.telephony.place_call(
                self.config.twilio_to_number, self.config.twilio_from_number, self.recording_callback_url()
            )
        except Exception as e:
            reason = str(e) or type(e).__name__
            self.storage.update_phone_call(
                where="call_id", value=record.call_id, patch={"status": CallStatus.FAILED, "error": reason}
            )
            self.storage.insert_alert(
                Alert(
                    day_key=day_key,
                    type="PHONE_CALL_FAILED",
                    payload={"stage": "call_create", "reason": reason},
                    created_at=now,
                )
            )
            log.error("call_placement_failed", call_id=record.call_id, error=reason)
            raise CallPlacementError(f"Verification call failed: {reason}") from e

        updated = self.storage.update_phone_call(
            where="call_id",
            value=record.call_id,
            patch={"status": CallStatus.CALL_INITIATED, "call_sid": call_sid, "call_started_at": utcnow()},
        )
        self.storage.insert_alert(
            Alert(
                day_key=day_key,
                type="PHONE_CALL_REQUESTED",
                payload={"call_sid": call_sid, "requested_by": requested_by, "warning": warning},
                created_at=now,
            )
        )
        log.info("call_requested", call_id=record.call_id, call_sid=call_sid, requested_by=requested_by)
        return updated or record

    def handle_recording_callback(
        self, params: Mapping[str, str], secret: str | None, now: datetime | None = None
    ) -> CallbackResult:
        """Entry point for the provider's recording-status webhook."""
        if not secret or not hmac.compare_digest(secret, self.config.webhook_secret):
            return CallbackResult(401, "unauthorized")
        if params.get("RecordingStatus") != "completed":
            return CallbackResult(200, "ignored")

        recording_sid = params.get("RecordingSid")
        recording_url = params.get("RecordingUrl")
        if not recording_sid or not recording_url:
            return CallbackResult(400, "missing recording details")

        try:
            duration = float(params["RecordingDuration"]) if params.get("RecordingDuration") else None
        except ValueError:
            duration = None

        record = self.process_recording(
            recording_sid=recording_sid,
            recording_url=recording_url,
            call_sid=params.get("CallSid") or None,
            recording_duration_sec=duration,
            now=now,
        )
        return CallbackResult(200, "ok", record)

    def _patch(self, call_sid: str | None, recording_sid: str, patch: dict) -> PhoneCallRecord | None:
        if call_sid:
            record = self.storage.update_phone_call(where="call_sid", value=call_sid, patch=patch)
            if record is not None:
                return record
        return self.storage.update_phone_call(where="recording_sid", value=recording_sid, patch=patch)

    def _download(self, recording_url: str) -> Recording:
        try:
            return self.telephony.download_recording(recording_url)
        except RecordingDownloadError as e:
            raise TranscriptionError("recording_download", str(e)) from e

    def _transcribe(self, recording: Recording) -> tuple[str, str]:
        try:
            result = call_with_fallback(
                transcription_candidates(self.config.openai_transcribe_model),
                lambda model: self.transcriber.transcribe(recording, model),
                sleep=self.sleep,
                label="transcription",
            )
        except FallbackExhaustedError as e:
            raise TranscriptionError("transcription_request", str(e)) from e
        return result.value, result.candidate

    def process_recording(
        self,
        recording_sid: str,
        recording_url: str,
        call_sid: str | None = None,
        recording_duration_sec: float | None = None,
        now: datetime | None = None,
    ) -> PhoneCallRecord:
        """Download, transcribe and parse a finished recording.

        Failures are recorded on the call and alerted, never raised.
        """
        now = now or utcnow()
        day_key = to_day_key(now, self._timezone())

        ready_patch = {
            "status": CallStatus.RECORDING_READY,
            "call_completed_at": now,
            "recording_sid": recording_sid,
            "recording_url": recording_url,
            "recording_duration_sec": recording_duration_sec,
        }
        record = self._patch(call_sid, recording_sid, ready_patch)
        if record is None:
            log.warning("recording_without_call", call_sid=call_sid, recording_sid=recording_sid)
            record = self.storage.create_phone_call(
                PhoneCallRecord(
                    day_key=day_key,
                    requested_at=now,
                    call_sid=call_sid,
                    **{k: v for k, v in ready_patch.items() if k != "status"},
                    status=CallStatus.RECORDING_READY,
                )
            )

        try:
            recording = self._download(recording_url)
            transcript, model = self._transcribe(recording)
        except TranscriptionError as e:
            failed = self._patch(
                call_sid,
                recording_sid,
                {"status": CallStatus.FAILED, "parsed_ok": False, "failure_stage": e.stage, "error": e.detail},
            )
            self.storage.insert_alert(
                Alert(
                    day_key=day_key,
                    type="PHONE_CALL_FAILED",
                    payload={
                        "stage": e.stage,
                        "reason": e.detail,
                        "call_sid": call_sid,
                        "recording_sid": recording_sid,
                    },
                    created_at=now,
                )
            )
            log.error("recording_processing_failed", stage=e.stage, recording_sid=recording_sid, error=e.detail)
            return failed or record

        extracted = extract_temperature_from_transcript(transcript)
        if extracted.value is None:
            reason = "Could not extract a temperature from transcript"
            updated = self._patch(
                call_sid,
                recording_sid,
                {
                    "status": CallStatus.PARSE_FAILED,
                    "transcript": transcript,
                    "transcription_model": model,
                    "parsed_ok": False,
                    "failure_stage": "temperature_parse",
                    "error": reason,
                },
            )
            self.storage.insert_alert(
                Alert(
                    day_key=day_key,
                    type="PHONE_PARSE_FAILED",
                    payload={"call_sid": call_sid, "recording_sid": recording_sid, "transcript": transcript},
                    created_at=now,
                )
            )
            log.warning("transcript_parse_failed", recording_sid=recording_sid)
            return updated or record

        converted = to_celsius_and_fahrenheit(extracted.value, extracted.unit)
        updated = self._patch(
            call_sid,
            recording_sid,
            {
                "status": CallStatus.PROCESSED,
                "transcript": transcript,
                "transcription_model": model,
                "temp_c": converted.temp_c,
                "temp_f": converted.temp_f,
                "assumed_unit": extracted.unit,
                "parsed_ok": True,
            },
        )
        self.storage.insert_alert(
            Alert(
                day_key=day_key,
                type="PHONE_CALL_SUCCESS",
                payload={
                    "call_sid": call_sid,
                    "recording_sid": recording_sid,
                    "transcription_model": model,
                    "temp_c": converted.temp_c,
                    "temp_f": converted.temp_f,
                    "assumed_unit": extracted.unit,
                },
                created_at=now,
            )
        )
        log.info("recording_processed", recording_sid=recording_sid, temp_f=converted.temp_f, unit=extracted.unit)
        return updated or record
