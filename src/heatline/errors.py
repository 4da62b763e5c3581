"""Exception types raised across the Heatline pipeline."""


class HeatlineError(Exception):
    """Base class for all Heatline errors."""


class ParseError(HeatlineError, ValueError):
    """A weather report or numeric input could not be parsed."""


class CalibrationInputError(HeatlineError, ValueError):
    """Calibration input was rejected before any backtest ran."""


class ConfigError(HeatlineError):
    """Required configuration (usually an env var) is missing or invalid."""


class WeatherFetchError(HeatlineError):
    """Both the primary and backup weather sources failed."""


class ForecastFetchError(HeatlineError):
    """The forecast source could not be fetched or parsed."""


class CallPlacementError(HeatlineError):
    """The verification call could not be placed."""


class CooldownActiveError(CallPlacementError):
    """A call was requested before the global cooldown elapsed."""

    def __init__(self, remaining_seconds: int, message: str | None = None) -> None:
        self.remaining_seconds = remaining_seconds
        super().__init__(message or f"Call cooldown active for {remaining_seconds}s")


class RecordingDownloadError(HeatlineError):
    """No recording format could be downloaded."""


class FallbackExhaustedError(HeatlineError):
    """Every candidate in a retry/fallback chain failed."""

    def __init__(self, message: str, attempts: list[dict[str, object]]) -> None:
        self.attempts = attempts
        super().__init__(message)


class TranscriptionError(HeatlineError):
    """The recording pipeline failed at a specific stage."""

    def __init__(self, stage: str, detail: str) -> None:
        self.stage = stage
        self.detail = detail
        super().__init__(f"{stage}: {detail}")
