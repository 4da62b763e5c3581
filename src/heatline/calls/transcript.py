"""Temperature extraction from a weather-line transcript."""

import re
from typing import NamedTuple

FAHRENHEIT_RE = re.compile(r"(?:temperature(?:\s+is)?\s*)?(-?\d{1,3})(?:\s*degrees?)?\s*(?:fahrenheit|\bf\b)")
CELSIUS_RE = re.compile(r"(?:temperature(?:\s+is)?\s*)?(-?\d{1,3})(?:\s*degrees?)?\s*(?:celsius|centigrade|\bc\b)")
TEMPERATURE_IS_RE = re.compile(r"temperature(?:\s+is)?\s+(-?\d{1,3})")
BARE_NUMBER_RE = re.compile(r"(?<![\w-])(-?\d{1,3})\b")


class TranscriptTemperature(NamedTuple):
    value: int | None
    unit: str  # F, C or UNKNOWN


class ConvertedTemperature(NamedTuple):
    temp_c: float
    temp_f: float


def extract_temperature_from_transcript(transcript: str | None) -> TranscriptTemperature:
    """Explicit Fahrenheit, then explicit Celsius, then "temperature is N", then any number."""
    text = (transcript or "").lower()

    for pattern, unit in (
        (FAHRENHEIT_RE, "F"),
        (CELSIUS_RE, "C"),
        (TEMPERATURE_IS_RE, "UNKNOWN"),
        (BARE_NUMBER_RE, "UNKNOWN"),
    ):
        match = pattern.search(text)
        if match:
            return TranscriptTemperature(int(match.group(1)), unit)

    return TranscriptTemperature(None, "UNKNOWN")


def to_celsius_and_fahrenheit(value: float, unit: str) -> ConvertedTemperature:
    """Convert a spoken value; an unstated unit is read as Celsius."""
    if unit == "F":
        return ConvertedTemperature((value - 32) * 5 / 9, float(value))
    # Aviation lines report Celsius when no unit is spoken
    return ConvertedTemperature(float(value), value * 9 / 5 + 32)
