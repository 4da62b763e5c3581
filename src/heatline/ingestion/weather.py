"""Station report ingestion from NWS/AWC feeds and the IEM ASOS archive."""

import csv
import io
import re
from datetime import UTC, datetime
from typing import NamedTuple

import httpx
import structlog

from heatline.errors import ParseError, WeatherFetchError
from heatline.ingestion.metar import DerivedTemp, derive_truth_temp, parse_awc_metar_json, parse_nws_metar_text
from heatline.models import RawReport, RoundingRule, TempExtraction

log = structlog.get_logger()

# IEM ASOS archive - free, no key, returns CSV with raw METAR per row
IEM_ASOS_URL = "https://mesonet.agron.iastate.edu/cgi-bin/request/asos.py"

NO_CACHE_HEADERS = {"Cache-Control": "no-cache", "Pragma": "no-cache"}


class FetchResult(NamedTuple):
    report: RawReport
    derived: DerivedTemp
    # Set when the backup source had to be used
    failover_reason: str | None = None


class ArchiveRow(NamedTuple):
    valid: str | None
    valid_at: datetime | None
    raw_metar: str
    tmpf: float | None


class WeatherClient:
    """Client for the live station report feeds."""

    def __init__(self, timeout: float = 15.0, client: httpx.Client | None = None) -> None:
        self._client = client or httpx.Client(timeout=timeout, headers=NO_CACHE_HEADERS)

    def fetch_primary(self, url: str, station: str) -> RawReport:
        """Fetch the NWS plain-text METAR file."""
        response = self._client.get(url)
        response.raise_for_status()
        return parse_nws_metar_text(response.text, station=station)

    def fetch_backup(self, url: str) -> RawReport:
        """Fetch the AWC JSON METAR feed."""
        response = self._client.get(url)
        response.raise_for_status()
        return parse_awc_metar_json(response.json())

    def fetch_with_failover(
        self,
        primary_url: str,
        backup_url: str,
        station: str,
        extraction: TempExtraction | str = TempExtraction.TGROUP_PREFERRED,
        rounding: RoundingRule | str = RoundingRule.NEAREST,
    ) -> FetchResult:
        """Try the primary feed, then the backup.

        A report without a usable temperature counts as a failed source.

        Raises:
            WeatherFetchError: when both sources fail
        """
        try:
            report = self.fetch_primary(primary_url, station)
            return FetchResult(report, derive_truth_temp(report.raw_metar, extraction, rounding))
        except (httpx.HTTPError, ParseError) as primary_error:
            primary_reason = str(primary_error) or type(primary_error).__name__
            log.warning("primary_source_failed", station=station, reason=primary_reason)
            try:
                report = self.fetch_backup(backup_url)
                derived = derive_truth_temp(report.raw_metar, extraction, rounding)
            except (httpx.HTTPError, ParseError, ValueError) as backup_error:
                raise WeatherFetchError(
                    f"Weather fetch failed (primary and backup). "
                    f"Primary: {primary_reason}; Backup: {backup_error}"
                ) from backup_error
            return FetchResult(report, derived, failover_reason=primary_reason)

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> "WeatherClient":
        return self

    def __exit__(self, *args: object) -> None:
        self.close()


def _parse_valid(valid: str) -> datetime | None:
    match = re.match(r"^(\d{4})-(\d{2})-(\d{2})[ T](\d{2}):(\d{2})(?::(\d{2}))?", valid.strip())
    if not match:
        return None
    year, month, day, hour, minute = (int(g) for g in match.groups()[:5])
    second = int(match.group(6) or 0)
    try:
        return datetime(year, month, day, hour, minute, second, tzinfo=UTC)
    except ValueError:
        return None


def _safe_float(value: str | None) -> float | None:
    if value is None or not value.strip():
        return None
    try:
        return float(value)
    except ValueError:
        return None


def parse_iem_asos_csv(csv_text: str) -> list[ArchiveRow]:
    """Parse an IEM asos.py ``onlycomma`` CSV into archive rows.

    Comment lines are skipped; rows with neither METAR text nor a tmpf value
    are dropped.
    """
    if not isinstance(csv_text, str) or not csv_text.strip():
        return []

    lines = [line.strip() for line in csv_text.splitlines()]
    lines = [line for line in lines if line and not line.startswith("#")]
    if len(lines) < 2:
        return []

    reader = csv.DictReader(io.StringIO("\n".join(lines)))
    reader.fieldnames = [name.strip().lower() for name in reader.fieldnames or []]

    rows = []
    for row in reader:
        raw_metar = (row.get("metar") or "").strip()
        valid = (row.get("valid") or "").strip()
        tmpf = _safe_float(row.get("tmpf"))
        if not raw_metar and tmpf is None:
            continue
        rows.append(
            ArchiveRow(
                valid=valid or None,
                valid_at=_parse_valid(valid) if valid else None,
                raw_metar=raw_metar,
                tmpf=tmpf,
            )
        )
    return rows


class IemArchiveClient:
    """Client for historical METARs from the Iowa Environmental Mesonet."""

    def __init__(self, timeout: float = 60.0, client: httpx.Client | None = None) -> None:
        self._client = client or httpx.Client(timeout=timeout, headers=NO_CACHE_HEADERS)

    def fetch_rows(self, station: str, start_day: str, end_day_exclusive: str) -> list[ArchiveRow]:
        """Fetch routine and special reports for [start_day, end_day_exclusive) UTC."""
        base: list[tuple[str, str]] = [
            ("station", station),
            ("data", "metar"),
            ("data", "tmpf"),
            ("report_type", "3"),
            ("report_type", "4"),
            ("tz", "UTC"),
            ("format", "onlycomma"),
            ("missing", "empty"),
        ]
        params = [*base, ("sts", f"{start_day}T00:00Z"), ("ets", f"{end_day_exclusive}T00:00Z")]
        log.info("fetching_archive", station=station, start=start_day, end=end_day_exclusive)

        response = self._client.get(IEM_ASOS_URL, params=params)
        if response.status_code == 422:
            # Some deployments only accept year/month/day style windows
            y1, m1, d1 = start_day.split("-")
            y2, m2, d2 = end_day_exclusive.split("-")
            fallback = [
                *base,
                ("year1", str(int(y1))),
                ("month1", str(int(m1))),
                ("day1", str(int(d1))),
                ("year2", str(int(y2))),
                ("month2", str(int(m2))),
                ("day2", str(int(d2))),
            ]
            response = self._client.get(IEM_ASOS_URL, params=fallback)

        if response.is_error:
            details = response.text.strip()[:400]
            raise WeatherFetchError(
                f"IEM asos.py returned HTTP {response.status_code}" + (f": {details}" if details else "")
            )

        rows = parse_iem_asos_csv(response.text)
        log.info("archive_fetched", station=station, row_count=len(rows))
        return rows

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> "IemArchiveClient":
        return self

    def __exit__(self, *args: object) -> None:
        self.close()
