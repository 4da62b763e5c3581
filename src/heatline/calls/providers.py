"""HTTP clients for the telephony and speech-to-text providers."""

from typing import NamedTuple, Protocol

import httpx
import structlog

from heatline.errors import RecordingDownloadError

log = structlog.get_logger()

TWILIO_API_BASE = "https://api.twilio.com/2010-04-01"
OPENAI_TRANSCRIPTIONS_URL = "https://api.openai.com/v1/audio/transcriptions"

# Dial, stay silent while the line reads the observation, then hang up
CALL_TWIML = '<Response><Pause length="15"/><Hangup/></Response>'
RECORDING_FORMATS = (".mp3", ".wav")
TRANSCRIPTION_PROMPT = "Automated airport weather phone line. Focus on extracting the spoken temperature value."
AUDIO_CONTENT_TYPES = {".mp3": "audio/mpeg", ".wav": "audio/wav"}


class Recording(NamedTuple):
    extension: str
    content: bytes


class Telephony(Protocol):
    def place_call(self, to_number: str, from_number: str, recording_callback_url: str) -> str: ...

    def download_recording(self, recording_url: str) -> Recording: ...


class Transcriber(Protocol):
    def transcribe(self, recording: Recording, model: str) -> str: ...


class TwilioClient:
    """Minimal Twilio REST client: place a recorded call, fetch its recording."""

    def __init__(
        self, account_sid: str, auth_token: str, timeout: float = 30.0, client: httpx.Client | None = None
    ) -> None:
        self.account_sid = account_sid
        self._client = client or httpx.Client(timeout=timeout, auth=(account_sid, auth_token))

    def place_call(self, to_number: str, from_number: str, recording_callback_url: str) -> str:
        """Start the call and return its sid.

        Raises:
            httpx.HTTPError: on transport failure or a non-2xx response
        """
        response = self._client.post(
            f"{TWILIO_API_BASE}/Accounts/{self.account_sid}/Calls.json",
            data={
                "To": to_number,
                "From": from_number,
                "Twiml": CALL_TWIML,
                "Timeout": "20",
                "Record": "true",
                "RecordingTrack": "inbound",
                "RecordingStatusCallback": recording_callback_url,
                "RecordingStatusCallbackMethod": "POST",
                "RecordingStatusCallbackEvent": "completed",
            },
        )
        response.raise_for_status()
        call_sid = response.json().get("sid")
        if not call_sid:
            raise httpx.HTTPError("Twilio response did not include a call sid")
        log.info("call_placed", call_sid=call_sid, to_number=to_number)
        return call_sid

    def download_recording(self, recording_url: str) -> Recording:
        """Try each container format in order; the first 2xx wins."""
        last_error = "Unknown recording download error"
        for extension in RECORDING_FORMATS:
            try:
                response = self._client.get(f"{recording_url}{extension}")
            except httpx.HTTPError as e:
                last_error = f"Download failed for {extension}: {e}"
                continue
            if response.is_success:
                return Recording(extension, response.content)
            last_error = f"Download failed for {extension}: HTTP {response.status_code}"
            log.warning("recording_format_unavailable", extension=extension, status=response.status_code)
        raise RecordingDownloadError(last_error)

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> "TwilioClient":
        return self

    def __exit__(self, *args: object) -> None:
        self.close()


class OpenAITranscriber:
    """Speech-to-text over the OpenAI audio transcription endpoint."""

    def __init__(self, api_key: str, timeout: float = 60.0, client: httpx.Client | None = None) -> None:
        self._client = client or httpx.Client(
            timeout=timeout, headers={"Authorization": f"Bearer {api_key}"}
        )

    def transcribe(self, recording: Recording, model: str) -> str:
        response = self._client.post(
            OPENAI_TRANSCRIPTIONS_URL,
            data={"model": model, "language": "en", "temperature": "0", "prompt": TRANSCRIPTION_PROMPT},
            files={
                "file": (
                    f"recording{recording.extension}",
                    recording.content,
                    AUDIO_CONTENT_TYPES.get(recording.extension, "application/octet-stream"),
                )
            },
        )
        response.raise_for_status()
        return str(response.json().get("text") or "").strip()

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> "OpenAITranscriber":
        return self

    def __exit__(self, *args: object) -> None:
        self.close()
