"""Backtest of the temperature derivation methods against reference daily highs.

Every candidate method (extraction x rounding) recomputes the daily high for
each day in the range from archived reports; the method whose highs agree
with the reference values most often is chosen.
"""

import re
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime

import structlog

from heatline.errors import CalibrationInputError, ParseError
from heatline.ingestion.metar import extract_temp_c, is_corrected, round_to_whole_degree, to_fahrenheit
from heatline.ingestion.weather import ArchiveRow, IemArchiveClient
from heatline.models import CalibrationRun, Mismatch, RoundingRule, TempExtraction
from heatline.storage import Storage
from heatline.timeutil import add_days, day_key, parse_day_key

log = structlog.get_logger()

MAX_RANGE_DAYS = 180
DAY_KEY_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")


@dataclass(frozen=True)
class CalibrationMethod:
    method_id: str
    extraction: TempExtraction
    rounding: RoundingRule
    rank: int

    @property
    def label(self) -> str:
        return f"{self.extraction.value} + {self.rounding.value}"


CALIBRATION_METHODS: tuple[CalibrationMethod, ...] = tuple(
    CalibrationMethod(
        method_id=f"{extraction.value}__{rounding.value}",
        extraction=extraction,
        rounding=rounding,
        rank=rank,
    )
    for rank, (extraction, rounding) in enumerate(
        ((e, r) for e in TempExtraction for r in RoundingRule), start=1
    )
)


@dataclass
class CalibrationDay:
    day_key: str
    expected_high: int
    reports: list[ArchiveRow] = field(default_factory=list)


@dataclass
class MethodResult:
    method: CalibrationMethod
    matched_days: int
    total_days: int
    mismatches: list[Mismatch]

    @property
    def match_rate(self) -> float:
        return self.matched_days / self.total_days if self.total_days else 0.0


@dataclass
class CalibrationEvaluation:
    results: list[MethodResult]

    @property
    def chosen(self) -> MethodResult | None:
        return self.results[0] if self.results else None


def _dedupe_reports(reports: Iterable[ArchiveRow]) -> list[ArchiveRow]:
    """One report per timestamp: a correction beats the original, else the later one wins."""
    by_timestamp: dict[object, ArchiveRow] = {}
    untimed = []
    for report in reports:
        if not report.raw_metar:
            continue
        key = report.valid_at or report.valid
        if not key:
            untimed.append(report)
            continue
        existing = by_timestamp.get(key)
        if existing is None or is_corrected(report.raw_metar) or not is_corrected(existing.raw_metar):
            by_timestamp[key] = report
    return [*by_timestamp.values(), *untimed]


def compute_predicted_high(reports: Sequence[ArchiveRow], method: CalibrationMethod) -> int | None:
    """Highest whole-degree value the method derives from a day's reports."""
    rounded = []
    for report in _dedupe_reports(reports):
        try:
            temp_c = extract_temp_c(report.raw_metar, method.extraction).temp_c
        except ParseError:
            continue
        rounded.append(round_to_whole_degree(to_fahrenheit(temp_c), method.rounding))
    return max(rounded) if rounded else None


def evaluate_calibration_days(days: Sequence[CalibrationDay]) -> CalibrationEvaluation:
    """Score every method over the given days and rank the results."""
    if not days:
        raise CalibrationInputError("Calibration run requires at least one day")

    results = []
    for method in CALIBRATION_METHODS:
        matched = 0
        mismatches = []
        for day in days:
            predicted = compute_predicted_high(day.reports, method)
            if predicted == day.expected_high:
                matched += 1
            else:
                mismatches.append(
                    Mismatch(
                        day_key=day.day_key,
                        expected=day.expected_high,
                        predicted=predicted,
                        reports_used=len(day.reports),
                    )
                )
        results.append(MethodResult(method, matched, len(days), mismatches))

    results.sort(key=lambda r: (-r.match_rate, -r.matched_days, r.method.rank))
    return CalibrationEvaluation(results)


def _assert_day_key(value: str, label: str) -> str:
    normalized = str(value or "").strip()
    if not DAY_KEY_RE.match(normalized):
        raise CalibrationInputError(f"{label} must be YYYY-MM-DD")
    try:
        parse_day_key(normalized)
    except ValueError as e:
        raise CalibrationInputError(f"{label} is not a valid date: {normalized}") from e
    return normalized


def list_day_keys_inclusive(start: str, end: str) -> list[str]:
    start = _assert_day_key(start, "start")
    end = _assert_day_key(end, "end")
    if start > end:
        raise CalibrationInputError("start must be on or before end")

    days = []
    cursor = start
    while cursor <= end:
        days.append(cursor)
        if len(days) > MAX_RANGE_DAYS:
            raise CalibrationInputError(f"Calibration range is too large. Use {MAX_RANGE_DAYS} days or fewer.")
        cursor = add_days(cursor, 1)
    return days


def normalize_reference_highs(reference_highs: Mapping[str, object], day_keys: Sequence[str]) -> dict[str, int]:
    """Validate one integer high per day in range; out-of-range entries are ignored."""
    in_range = set(day_keys)
    highs: dict[str, int] = {}
    for raw_key, raw_value in reference_highs.items():
        key = _assert_day_key(raw_key, "reference day")
        if key not in in_range:
            continue
        if isinstance(raw_value, bool):
            raise CalibrationInputError(f"Reference high for {key} must be an integer")
        if isinstance(raw_value, float) and raw_value.is_integer():
            raw_value = int(raw_value)
        if not isinstance(raw_value, int):
            raise CalibrationInputError(f"Reference high for {key} must be an integer")
        highs[key] = raw_value

    missing = [d for d in day_keys if d not in highs]
    if missing:
        raise CalibrationInputError(f"Missing reference highs for day(s): {', '.join(missing)}")
    return highs


def bucket_reports_by_day(
    rows: Iterable[ArchiveRow], day_keys: Sequence[str], timezone: str
) -> dict[str, list[ArchiveRow]]:
    """Assign archive rows to local station days; rows outside the range are dropped."""
    buckets: dict[str, list[ArchiveRow]] = {d: [] for d in day_keys}
    for row in rows:
        if row.valid_at is None:
            continue
        local_day = day_key(row.valid_at, timezone)
        if local_day in buckets:
            buckets[local_day].append(row)
    return buckets


class CalibrationRunner:
    """Runs a backtest and persists one CalibrationRun per invocation."""

    def __init__(self, storage: Storage, archive: IemArchiveClient | None = None) -> None:
        self.storage = storage
        self.archive = archive

    def run_calibration(
        self,
        start: str,
        end: str,
        reference_highs: Mapping[str, object],
        station: str | None = None,
        reports_by_day: Mapping[str, Sequence[ArchiveRow]] | None = None,
    ) -> tuple[CalibrationRun, CalibrationEvaluation]:
        """Validate input, backtest every method and store the run.

        Reports are fetched from the archive unless ``reports_by_day`` is given.

        Raises:
            CalibrationInputError: on a bad range or missing/non-integer highs
            WeatherFetchError: when the archive request fails
        """
        day_keys = list_day_keys_inclusive(start, end)
        highs = normalize_reference_highs(reference_highs, day_keys)

        settings = self.storage.load_settings()
        station = (station or settings.station).strip().upper()

        if reports_by_day is None:
            archive = self.archive or IemArchiveClient()
            # Extra UTC days cover the local evening of the last day
            rows = archive.fetch_rows(station, day_keys[0], add_days(day_keys[-1], 2))
            buckets = bucket_reports_by_day(rows, day_keys, settings.timezone)
            source_note = "source=IEM asos.py report_type=3,4 data=metar,tmpf"
        else:
            buckets = {d: list(reports_by_day.get(d, [])) for d in day_keys}
            source_note = "source=supplied"

        days = [CalibrationDay(day_key=d, expected_high=highs[d], reports=buckets[d]) for d in day_keys]
        evaluation = evaluate_calibration_days(days)
        chosen = evaluation.chosen

        run = CalibrationRun(
            date_range_start=day_keys[0],
            date_range_end=day_keys[-1],
            methods_tested=[r.method.method_id for r in evaluation.results],
            chosen_method=chosen.method.method_id if chosen else None,
            match_rate=chosen.match_rate if chosen else None,
            mismatches=chosen.mismatches if chosen else [],
            notes=f"station={station}; days={len(days)}; {source_note}",
            created_at=datetime.now(),
        )
        run_id = self.storage.save_calibration_run(run)
        log.info(
            "calibration_complete",
            run_id=run_id,
            chosen_method=run.chosen_method,
            match_rate=run.match_rate,
            days=len(days),
        )
        return run.model_copy(update={"run_id": run_id}), evaluation
