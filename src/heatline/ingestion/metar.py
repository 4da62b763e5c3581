"""METAR report parsing and whole-degree Fahrenheit derivation.

The "truth" temperature is a whole-degree Fahrenheit value chosen to match the
reference daily high. It is derived in three steps:

1. pull a Celsius value out of the report (tenths-precision ``T`` remark
   group when present, otherwise the whole-degree ``TT/DD`` body group),
2. convert to Fahrenheit,
3. round under a configurable rule.

All functions here are pure and raise ParseError on malformed input.
"""

import math
import re
from collections.abc import Iterable
from datetime import UTC, datetime, timedelta
from typing import Any, NamedTuple

from heatline.errors import ParseError
from heatline.models import ExtractionSource, RawReport, RoundingRule, TempExtraction

ZULU_STAMP_RE = re.compile(r"\b(\d{6}Z)\b")
T_GROUP_RE = re.compile(r"\bT([01])(\d{3})([01])(\d{3})\b")
INTEGER_GROUP_RE = re.compile(r"(?:^|\s)(M?\d{2})/(?:M?\d{2}|//)(?=\s|$)")
STATION_LINE_RE = re.compile(r"^[A-Z]{4}\s+\d{6}Z\b")


class ExtractedTemp(NamedTuple):
    temp_c: float
    source: ExtractionSource


class DerivedTemp(NamedTuple):
    temp_c: float
    temp_f: float
    temp_whole_f: int
    source: ExtractionSource


def normalize(raw: str) -> str:
    """Trim, drop the trailing ``=`` sentinel and collapse whitespace."""
    if not isinstance(raw, str) or not raw.strip():
        raise ParseError("Report text must be a non-empty string")
    text = re.sub(r"\s*=\s*$", "", raw.strip())
    return re.sub(r"\s+", " ", text)


def parse_tgroup_temp_c(text: str) -> float | None:
    """Celsius tenths from the ``TsnnnSnnn`` remark group, or None when absent."""
    match = T_GROUP_RE.search(normalize(text))
    if not match:
        return None
    sign = -1 if match.group(1) == "1" else 1
    return sign * int(match.group(2)) / 10


def parse_integer_temp_c(text: str) -> float | None:
    match = INTEGER_GROUP_RE.search(normalize(text))
    if not match:
        return None
    token = match.group(1)
    if token.startswith("M"):
        return -float(int(token[1:]))
    return float(int(token))


def extract_temp_c(text: str, method: TempExtraction | str = TempExtraction.TGROUP_PREFERRED) -> ExtractedTemp:
    """Extract a signed Celsius temperature using the selected method."""
    try:
        method = TempExtraction(method)
    except ValueError as e:
        raise ParseError(f"Unsupported extraction method: {method}") from e

    if method is TempExtraction.TGROUP_PREFERRED:
        tgroup = parse_tgroup_temp_c(text)
        if tgroup is not None:
            return ExtractedTemp(tgroup, ExtractionSource.TGROUP)

    integer = parse_integer_temp_c(text)
    if integer is not None:
        return ExtractedTemp(integer, ExtractionSource.INTEGER_GROUP)

    raise ParseError(f"Could not extract temperature from report ({method.value})")


def to_fahrenheit(temp_c: float) -> float:
    """Convert Celsius to Fahrenheit without rounding."""
    if not isinstance(temp_c, int | float) or not math.isfinite(temp_c):
        raise ParseError("temp_c must be a finite number")
    return temp_c * 9 / 5 + 32


def _round_half_up(value: float) -> int:
    return math.floor(value + 0.5)


def round_to_whole_degree(
    temp_f: float,
    rule: RoundingRule | str = RoundingRule.NEAREST,
    window_temps_f: Iterable[float] | None = None,
) -> int:
    """Round a Fahrenheit value to a whole degree.

    MAX_OF_ROUNDED rounds ``temp_f`` and every finite value in
    ``window_temps_f`` to the nearest degree and returns the largest, which
    reproduces a daily high taken across several close-together readings.
    """
    if not isinstance(temp_f, int | float) or not math.isfinite(temp_f):
        raise ParseError("temp_f must be a finite number")

    try:
        rule = RoundingRule(rule)
    except ValueError as e:
        raise ParseError(f"Unsupported rounding rule: {rule}") from e

    if rule is RoundingRule.NEAREST:
        return _round_half_up(temp_f)
    if rule is RoundingRule.FLOOR:
        return math.floor(temp_f)
    if rule is RoundingRule.CEIL:
        return math.ceil(temp_f)

    window = [t for t in (window_temps_f or []) if isinstance(t, int | float) and math.isfinite(t)]
    return max(_round_half_up(t) for t in [*window, temp_f])


def derive_truth_temp(
    raw: str,
    extraction: TempExtraction | str = TempExtraction.TGROUP_PREFERRED,
    rounding: RoundingRule | str = RoundingRule.NEAREST,
    window_temps_f: Iterable[float] | None = None,
) -> DerivedTemp:
    extracted = extract_temp_c(raw, extraction)
    temp_f = to_fahrenheit(extracted.temp_c)
    whole = round_to_whole_degree(temp_f, rounding, window_temps_f)
    return DerivedTemp(extracted.temp_c, temp_f, whole, extracted.source)


def is_corrected(raw: str) -> bool:
    return re.search(r"\bCOR\b", raw or "") is not None


def extract_obs_zulu_stamp(raw: str) -> str | None:
    match = ZULU_STAMP_RE.search(normalize(raw))
    return match.group(1) if match else None


def to_zulu_stamp(moment: datetime) -> str:
    moment = moment.astimezone(UTC) if moment.tzinfo else moment
    return moment.strftime("%d%H%MZ")


def _shift_month(year: int, month: int, delta: int) -> tuple[int, int]:
    index = year * 12 + (month - 1) + delta
    return index // 12, index % 12 + 1


def zulu_stamp_to_utc(stamp: str, reference: datetime) -> datetime:
    """Resolve a ``ddhhmmZ`` stamp to an absolute instant near ``reference``.

    The stamp carries no month, so it is placed in the reference month and
    moved back (more than 36h in the future) or forward (more than 29 days in
    the past) across the month boundary.
    """
    reference = reference.astimezone(UTC) if reference.tzinfo else reference.replace(tzinfo=UTC)
    match = re.fullmatch(r"(\d{2})(\d{2})(\d{2})Z", stamp or "")
    if not match:
        return reference

    day, hour, minute = (int(part) for part in match.groups())

    def build(year: int, month: int) -> datetime | None:
        try:
            return datetime(year, month, day, hour, minute, tzinfo=UTC)
        except ValueError:
            return None

    candidate = build(reference.year, reference.month)
    if candidate is None or candidate - reference > timedelta(hours=36):
        candidate = build(*_shift_month(reference.year, reference.month, -1)) or candidate
    if candidate is not None and reference - candidate > timedelta(days=29):
        candidate = build(*_shift_month(reference.year, reference.month, 1)) or candidate
    return candidate or reference


def parse_nws_metar_text(raw_text: str, station: str = "KORD") -> RawReport:
    """Find the station's METAR line in the NWS plain-text feed."""
    if not isinstance(raw_text, str) or not raw_text.strip():
        raise ParseError("NWS payload must be a non-empty string")

    station = station.upper()
    lines = [line.strip() for line in raw_text.splitlines() if line.strip()]
    station_re = re.compile(rf"^{re.escape(station)}\s+\d{{6}}Z\b")

    metar_line = next((line for line in lines if station_re.match(line)), None)
    if metar_line is None:
        metar_line = next((line for line in lines if STATION_LINE_RE.match(line)), None)
    if metar_line is None:
        raise ParseError("Could not find a METAR line in NWS payload")

    raw_metar = normalize(metar_line)
    stamp = extract_obs_zulu_stamp(raw_metar)
    if not stamp:
        raise ParseError("Could not extract observation Zulu stamp from METAR")
    return RawReport(raw_metar=raw_metar, obs_zulu_stamp=stamp, source="NWS")


def _first_record(payload: Any) -> Any:
    if isinstance(payload, list):
        return payload[0] if payload else None
    if not isinstance(payload, dict):
        return None
    for key in ("data", "observations"):
        if isinstance(payload.get(key), list):
            return payload[key][0] if payload[key] else None
    return payload


def _parse_time_like(value: Any) -> datetime | None:
    if value is None or value == "" or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        return value
    if isinstance(value, int | float):
        seconds = value / 1000 if value >= 1_000_000_000_000 else value
        return datetime.fromtimestamp(seconds, tz=UTC)
    if isinstance(value, str):
        text = value.strip()
        if text.isdigit():
            return _parse_time_like(int(text))
        try:
            return datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError:
            return None
    return None


def parse_awc_metar_json(payload: Any) -> RawReport:
    """Normalize an aviationweather.gov METAR JSON payload."""
    record = _first_record(payload)
    if not isinstance(record, dict):
        raise ParseError("AWC payload does not include a METAR record")

    raw_candidate = next(
        (record.get(k) for k in ("rawOb", "raw_text", "rawText", "metar", "metarText") if record.get(k)),
        None,
    )
    if not isinstance(raw_candidate, str) or not raw_candidate.strip():
        raise ParseError("AWC payload is missing raw METAR text")
    raw_metar = normalize(raw_candidate)

    obs_time = next(
        (
            parsed
            for k in ("obsTime", "reportTime", "observationTime", "receiptTime")
            if (parsed := _parse_time_like(record.get(k))) is not None
        ),
        None,
    )
    stamp = to_zulu_stamp(obs_time) if obs_time else extract_obs_zulu_stamp(raw_metar)
    if not stamp:
        raise ParseError("Could not derive observation Zulu stamp from AWC payload")
    return RawReport(raw_metar=raw_metar, obs_zulu_stamp=stamp, source="AWC")
