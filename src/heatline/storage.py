"""DuckDB storage layer for station state, decisions and calls.

Unique keys are enforced by primary keys so that overlapping invocations can
race safely: the loser of an insert gets ``duckdb.ConstraintException``.
"""

import json
from collections.abc import Mapping, Sequence
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Any

import duckdb
import structlog

from heatline.models import (
    Alert,
    AutoCallDecision,
    AutoCallState,
    CalibrationRun,
    DailyStats,
    Decision,
    ForecastSnapshot,
    HourlyPeriod,
    Mismatch,
    Observation,
    PhoneCallRecord,
    ReasonCode,
    Window,
)
from heatline.settings import Settings
from heatline.timeutil import utcnow

log = structlog.get_logger()

DEFAULT_DB_PATH = Path("data/heatline.duckdb")
SETTINGS_KEY = "global"

PHONE_CALL_COLUMNS = (
    "day_key",
    "status",
    "requested_by",
    "requested_at",
    "source_number",
    "target_number",
    "warning",
    "call_sid",
    "call_started_at",
    "call_completed_at",
    "recording_sid",
    "recording_url",
    "recording_duration_sec",
    "transcript",
    "transcription_model",
    "temp_c",
    "temp_f",
    "assumed_unit",
    "parsed_ok",
    "failure_stage",
    "error",
)


def _ts_in(value: datetime | None) -> datetime | None:
    """Store instants as naive UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value
    return value.astimezone(UTC).replace(tzinfo=None)


def _ts_out(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    return value.replace(tzinfo=UTC)


def _json_in(value: Any) -> str | None:
    return None if value is None else json.dumps(value, default=str)


def _json_out(value: str | None) -> Any:
    return None if value is None else json.loads(value)


def _plain(value: Any) -> Any:
    """Unwrap enums and convert datetimes for parameter binding."""
    if isinstance(value, datetime):
        return _ts_in(value)
    if isinstance(value, Enum):
        return value.value
    return value


class Storage:
    """DuckDB-based storage for all Heatline entities."""

    def __init__(self, db_path: Path | str = DEFAULT_DB_PATH) -> None:
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._con = duckdb.connect(str(self._db_path))
        self._init_schema()

    def _init_schema(self) -> None:
        """Create tables if they don't exist."""
        self._con.execute("""
            CREATE TABLE IF NOT EXISTS settings (
                key VARCHAR PRIMARY KEY,
                value VARCHAR,
                updated_at TIMESTAMP
            )
        """)

        self._con.execute("""
            CREATE TABLE IF NOT EXISTS observations (
                dedup_key VARCHAR PRIMARY KEY,
                day_key VARCHAR,
                station VARCHAR,
                source VARCHAR,
                raw_report VARCHAR,
                obs_time TIMESTAMP,
                derived_temp_whole_f INTEGER,
                is_new_high BOOLEAN,
                created_at TIMESTAMP
            )
        """)

        self._con.execute("""
            CREATE TABLE IF NOT EXISTS daily_stats (
                day_key VARCHAR PRIMARY KEY,
                current_temp_whole_f INTEGER,
                high_so_far_whole_f INTEGER,
                time_of_high TIMESTAMP,
                last_observation_time TIMESTAMP,
                last_successful_poll_at TIMESTAMP,
                poll_stale_seconds INTEGER,
                is_stale BOOLEAN,
                updated_at TIMESTAMP
            )
        """)

        self._con.execute("CREATE SEQUENCE IF NOT EXISTS forecast_seq START 1")
        self._con.execute("""
            CREATE TABLE IF NOT EXISTS forecast_snapshots (
                snapshot_id INTEGER PRIMARY KEY,
                day_key VARCHAR,
                fetched_at TIMESTAMP,
                source VARCHAR,
                forecast_generated_at TIMESTAMP,
                hourly VARCHAR,
                predicted_max_temp_f DOUBLE,
                predicted_max_at TIMESTAMP
            )
        """)

        self._con.execute("""
            CREATE TABLE IF NOT EXISTS auto_call_decisions (
                decision_key VARCHAR PRIMARY KEY,
                day_key VARCHAR,
                evaluated_at TIMESTAMP,
                decision VARCHAR,
                reason_code VARCHAR,
                reason_detail VARCHAR,
                call_window VARCHAR,
                predicted_max_at TIMESTAMP,
                call_reference VARCHAR,
                shadow_mode BOOLEAN,
                created_at TIMESTAMP,
                updated_at TIMESTAMP
            )
        """)

        self._con.execute("""
            CREATE TABLE IF NOT EXISTS auto_call_state (
                day_key VARCHAR PRIMARY KEY,
                enabled BOOLEAN,
                shadow_mode BOOLEAN,
                auto_calls_made INTEGER,
                last_auto_call_at TIMESTAMP,
                last_decision_at TIMESTAMP,
                last_reason_code VARCHAR,
                updated_at TIMESTAMP
            )
        """)

        self._con.execute("CREATE SEQUENCE IF NOT EXISTS calibration_seq START 1")
        self._con.execute("""
            CREATE TABLE IF NOT EXISTS calibration_runs (
                run_id INTEGER PRIMARY KEY,
                date_range_start VARCHAR,
                date_range_end VARCHAR,
                methods_tested VARCHAR,
                chosen_method VARCHAR,
                match_rate DOUBLE,
                mismatches VARCHAR,
                notes VARCHAR,
                created_at TIMESTAMP
            )
        """)

        self._con.execute("CREATE SEQUENCE IF NOT EXISTS phone_call_seq START 1")
        self._con.execute("""
            CREATE TABLE IF NOT EXISTS phone_calls (
                call_id INTEGER PRIMARY KEY,
                day_key VARCHAR,
                status VARCHAR,
                requested_by VARCHAR,
                requested_at TIMESTAMP,
                source_number VARCHAR,
                target_number VARCHAR,
                warning VARCHAR,
                call_sid VARCHAR,
                call_started_at TIMESTAMP,
                call_completed_at TIMESTAMP,
                recording_sid VARCHAR,
                recording_url VARCHAR,
                recording_duration_sec DOUBLE,
                transcript VARCHAR,
                transcription_model VARCHAR,
                temp_c DOUBLE,
                temp_f DOUBLE,
                assumed_unit VARCHAR,
                parsed_ok BOOLEAN,
                failure_stage VARCHAR,
                error VARCHAR,
                updated_at TIMESTAMP
            )
        """)

        self._con.execute("CREATE SEQUENCE IF NOT EXISTS alert_seq START 1")
        self._con.execute("""
            CREATE TABLE IF NOT EXISTS alerts (
                alert_id INTEGER PRIMARY KEY,
                day_key VARCHAR,
                type VARCHAR,
                payload VARCHAR,
                created_at TIMESTAMP
            )
        """)

        log.info("schema_initialized", db_path=str(self._db_path))

    def _fetch_dicts(self, query: str, params: Sequence[object] = ()) -> list[dict[str, Any]]:
        cursor = self._con.execute(query, list(params))
        columns = [d[0] for d in cursor.description]
        return [dict(zip(columns, row, strict=True)) for row in cursor.fetchall()]

    # Settings

    def load_settings(self) -> Settings:
        """Load settings merged over defaults. Never cached."""
        row = self._con.execute("SELECT value FROM settings WHERE key = ?", [SETTINGS_KEY]).fetchone()
        return Settings.from_mapping(_json_out(row[0]) if row else None)

    def save_settings(self, patch: Mapping[str, Any]) -> Settings:
        current = self.load_settings()
        merged = current.with_overrides(patch)
        self._con.execute(
            "INSERT OR REPLACE INTO settings (key, value, updated_at) VALUES (?, ?, ?)",
            [SETTINGS_KEY, json.dumps(merged.model_dump(mode="json")), _ts_in(utcnow())],
        )
        log.info("settings_saved", fields=sorted(patch))
        return merged

    # Observations and daily stats

    def insert_observation_if_new(self, obs: Observation) -> bool:
        """Insert an observation unless its dedup key already exists."""
        try:
            self._con.execute(
                """
                INSERT INTO observations
                (dedup_key, day_key, station, source, raw_report, obs_time,
                 derived_temp_whole_f, is_new_high, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                [
                    obs.dedup_key,
                    obs.day_key,
                    obs.station,
                    obs.source,
                    obs.raw_report,
                    _ts_in(obs.obs_time),
                    obs.derived_temp_whole_f,
                    obs.is_new_high,
                    _ts_in(obs.created_at or utcnow()),
                ],
            )
        except duckdb.ConstraintException:
            log.debug("observation_duplicate", dedup_key=obs.dedup_key)
            return False
        return True

    def get_latest_observations(self, day_key: str, limit: int = 10) -> list[Observation]:
        """Observations for a day, newest first."""
        rows = self._fetch_dicts(
            f"""
            SELECT * FROM observations WHERE day_key = ?
            ORDER BY obs_time DESC, created_at DESC
            LIMIT {int(limit)}
            """,
            [day_key],
        )
        for row in rows:
            row["obs_time"] = _ts_out(row["obs_time"])
            row["created_at"] = _ts_out(row["created_at"])
        return [Observation(**row) for row in rows]

    def get_daily_stats(self, day_key: str) -> DailyStats | None:
        rows = self._fetch_dicts("SELECT * FROM daily_stats WHERE day_key = ?", [day_key])
        if not rows:
            return None
        row = rows[0]
        for col in ("time_of_high", "last_observation_time", "last_successful_poll_at", "updated_at"):
            row[col] = _ts_out(row[col])
        row["is_stale"] = bool(row["is_stale"])
        return DailyStats(**row)

    def upsert_daily_stats(self, day_key: str, patch: Mapping[str, Any]) -> DailyStats:
        """Merge a partial update into the day's stats.

        None values leave the stored value untouched, and the daily high never
        decreases.
        """
        existing = self.get_daily_stats(day_key) or DailyStats(day_key=day_key)
        values = existing.model_dump()
        values.update({k: v for k, v in patch.items() if v is not None})

        highs = [h for h in (existing.high_so_far_whole_f, patch.get("high_so_far_whole_f")) if h is not None]
        values["high_so_far_whole_f"] = max(highs) if highs else None
        values["updated_at"] = utcnow()
        stats = DailyStats(**values)

        self._con.execute(
            """
            INSERT OR REPLACE INTO daily_stats
            (day_key, current_temp_whole_f, high_so_far_whole_f, time_of_high,
             last_observation_time, last_successful_poll_at, poll_stale_seconds,
             is_stale, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            [
                stats.day_key,
                stats.current_temp_whole_f,
                stats.high_so_far_whole_f,
                _ts_in(stats.time_of_high),
                _ts_in(stats.last_observation_time),
                _ts_in(stats.last_successful_poll_at),
                stats.poll_stale_seconds,
                stats.is_stale,
                _ts_in(stats.updated_at),
            ],
        )
        return stats

    # Forecasts

    def save_forecast_snapshot(self, snapshot: ForecastSnapshot) -> int:
        row = self._con.execute(
            """
            INSERT INTO forecast_snapshots
            (snapshot_id, day_key, fetched_at, source, forecast_generated_at,
             hourly, predicted_max_temp_f, predicted_max_at)
            VALUES (nextval('forecast_seq'), ?, ?, ?, ?, ?, ?, ?)
            RETURNING snapshot_id
            """,
            [
                snapshot.day_key,
                _ts_in(snapshot.fetched_at),
                snapshot.source,
                _ts_in(snapshot.forecast_generated_at),
                json.dumps([p.model_dump(mode="json") for p in snapshot.hourly]),
                snapshot.predicted_max_temp_f,
                _ts_in(snapshot.predicted_max_at),
            ],
        ).fetchone()
        log.info("forecast_saved", day_key=snapshot.day_key, periods=len(snapshot.hourly))
        return int(row[0]) if row else 0

    def get_latest_forecast(self, day_key: str) -> ForecastSnapshot | None:
        """Latest snapshot (greatest fetched_at) for a day."""
        rows = self._fetch_dicts(
            """
            SELECT * FROM forecast_snapshots WHERE day_key = ?
            ORDER BY fetched_at DESC, snapshot_id DESC
            LIMIT 1
            """,
            [day_key],
        )
        if not rows:
            return None
        row = rows[0]
        return ForecastSnapshot(
            day_key=row["day_key"],
            fetched_at=_ts_out(row["fetched_at"]),
            source=row["source"],
            forecast_generated_at=_ts_out(row["forecast_generated_at"]),
            hourly=[HourlyPeriod(**p) for p in _json_out(row["hourly"]) or []],
            predicted_max_temp_f=row["predicted_max_temp_f"],
            predicted_max_at=_ts_out(row["predicted_max_at"]),
        )

    # Auto-call decisions and state

    def claim_decision(self, placeholder: AutoCallDecision) -> bool:
        """Insert the placeholder row for a decision bucket.

        Returns False when another invocation already owns the bucket.
        """
        now = _ts_in(utcnow())
        try:
            self._con.execute(
                """
                INSERT INTO auto_call_decisions
                (decision_key, day_key, evaluated_at, decision, reason_code,
                 call_window, shadow_mode, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                [
                    placeholder.decision_key,
                    placeholder.day_key,
                    _ts_in(placeholder.evaluated_at),
                    Decision.SKIP.value,
                    ReasonCode.PENDING_EVALUATION.value,
                    Window.OUTSIDE.value,
                    placeholder.shadow_mode,
                    now,
                    now,
                ],
            )
        except duckdb.ConstraintException:
            return False
        return True

    def finalize_decision(self, decision: AutoCallDecision) -> bool:
        """Patch a claimed placeholder with its terminal outcome, once."""
        row = self._con.execute(
            """
            UPDATE auto_call_decisions
            SET decision = ?, reason_code = ?, reason_detail = ?, call_window = ?,
                predicted_max_at = ?, call_reference = ?, shadow_mode = ?, updated_at = ?
            WHERE decision_key = ? AND reason_code = ?
            RETURNING decision_key
            """,
            [
                decision.decision.value,
                decision.reason_code.value,
                _json_in(decision.reason_detail),
                decision.window.value,
                _ts_in(decision.predicted_max_at),
                decision.call_reference,
                decision.shadow_mode,
                _ts_in(utcnow()),
                decision.decision_key,
                ReasonCode.PENDING_EVALUATION.value,
            ],
        ).fetchone()
        return row is not None

    def _decision_from_row(self, row: dict[str, Any]) -> AutoCallDecision:
        return AutoCallDecision(
            day_key=row["day_key"],
            decision_key=row["decision_key"],
            evaluated_at=_ts_out(row["evaluated_at"]),
            decision=Decision(row["decision"]),
            reason_code=ReasonCode(row["reason_code"]),
            reason_detail=_json_out(row["reason_detail"]),
            window=Window(row["call_window"]),
            predicted_max_at=_ts_out(row["predicted_max_at"]),
            call_reference=row["call_reference"],
            shadow_mode=bool(row["shadow_mode"]),
            updated_at=_ts_out(row["updated_at"]),
        )

    def get_decision(self, decision_key: str) -> AutoCallDecision | None:
        rows = self._fetch_dicts("SELECT * FROM auto_call_decisions WHERE decision_key = ?", [decision_key])
        return self._decision_from_row(rows[0]) if rows else None

    def get_recent_decisions(self, day_key: str, limit: int = 20) -> list[AutoCallDecision]:
        limit = min(max(int(limit), 1), 100)
        rows = self._fetch_dicts(
            f"""
            SELECT * FROM auto_call_decisions WHERE day_key = ?
            ORDER BY created_at DESC, evaluated_at DESC
            LIMIT {limit}
            """,
            [day_key],
        )
        return [self._decision_from_row(row) for row in rows]

    def get_auto_call_state(self, day_key: str) -> AutoCallState | None:
        rows = self._fetch_dicts("SELECT * FROM auto_call_state WHERE day_key = ?", [day_key])
        if not rows:
            return None
        row = rows[0]
        return AutoCallState(
            day_key=row["day_key"],
            enabled=bool(row["enabled"]),
            shadow_mode=bool(row["shadow_mode"]),
            auto_calls_made=row["auto_calls_made"] or 0,
            last_auto_call_at=_ts_out(row["last_auto_call_at"]),
            last_decision_at=_ts_out(row["last_decision_at"]),
            last_reason_code=ReasonCode(row["last_reason_code"]) if row["last_reason_code"] else None,
        )

    def apply_decision_to_state(
        self,
        day_key: str,
        *,
        enabled: bool,
        shadow_mode: bool,
        evaluated_at: datetime,
        reason_code: ReasonCode,
        increment_call_count: bool,
    ) -> AutoCallState:
        existing = self.get_auto_call_state(day_key)
        base_count = existing.auto_calls_made if existing else 0
        state = AutoCallState(
            day_key=day_key,
            enabled=enabled,
            shadow_mode=shadow_mode,
            auto_calls_made=base_count + 1 if increment_call_count else base_count,
            last_auto_call_at=(
                evaluated_at if increment_call_count else (existing.last_auto_call_at if existing else None)
            ),
            last_decision_at=evaluated_at,
            last_reason_code=reason_code,
        )
        self._con.execute(
            """
            INSERT OR REPLACE INTO auto_call_state
            (day_key, enabled, shadow_mode, auto_calls_made, last_auto_call_at,
             last_decision_at, last_reason_code, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            [
                state.day_key,
                state.enabled,
                state.shadow_mode,
                state.auto_calls_made,
                _ts_in(state.last_auto_call_at),
                _ts_in(state.last_decision_at),
                reason_code.value,
                _ts_in(utcnow()),
            ],
        )
        return state

    # Calibration

    def save_calibration_run(self, run: CalibrationRun) -> int:
        row = self._con.execute(
            """
            INSERT INTO calibration_runs
            (run_id, date_range_start, date_range_end, methods_tested, chosen_method,
             match_rate, mismatches, notes, created_at)
            VALUES (nextval('calibration_seq'), ?, ?, ?, ?, ?, ?, ?, ?)
            RETURNING run_id
            """,
            [
                run.date_range_start,
                run.date_range_end,
                json.dumps(run.methods_tested),
                run.chosen_method,
                run.match_rate,
                json.dumps([m.model_dump() for m in run.mismatches]),
                run.notes,
                _ts_in(run.created_at),
            ],
        ).fetchone()
        log.info("calibration_run_saved", chosen_method=run.chosen_method, match_rate=run.match_rate)
        return int(row[0]) if row else 0

    def get_recent_calibration_runs(self, limit: int = 10) -> list[CalibrationRun]:
        limit = min(max(int(limit), 1), 50)
        rows = self._fetch_dicts(f"SELECT * FROM calibration_runs ORDER BY created_at DESC, run_id DESC LIMIT {limit}")
        return [
            CalibrationRun(
                run_id=row["run_id"],
                date_range_start=row["date_range_start"],
                date_range_end=row["date_range_end"],
                methods_tested=_json_out(row["methods_tested"]) or [],
                chosen_method=row["chosen_method"],
                match_rate=row["match_rate"],
                mismatches=[Mismatch(**m) for m in _json_out(row["mismatches"]) or []],
                notes=row["notes"],
                created_at=row["created_at"],
            )
            for row in rows
        ]

    # Phone calls

    def create_phone_call(self, record: PhoneCallRecord) -> PhoneCallRecord:
        values = record.model_dump(include=set(PHONE_CALL_COLUMNS))
        columns = ", ".join(PHONE_CALL_COLUMNS)
        placeholders = ", ".join("?" for _ in PHONE_CALL_COLUMNS)
        row = self._con.execute(
            f"""
            INSERT INTO phone_calls (call_id, {columns}, updated_at)
            VALUES (nextval('phone_call_seq'), {placeholders}, ?)
            RETURNING call_id
            """,
            [_plain(values[c]) for c in PHONE_CALL_COLUMNS] + [_ts_in(utcnow())],
        ).fetchone()
        return record.model_copy(update={"call_id": int(row[0]) if row else None})

    def _phone_call_from_row(self, row: dict[str, Any]) -> PhoneCallRecord:
        for col in ("requested_at", "call_started_at", "call_completed_at"):
            row[col] = _ts_out(row[col])
        row.pop("updated_at", None)
        return PhoneCallRecord(**row)

    def update_phone_call(self, *, where: str, value: object, patch: Mapping[str, Any]) -> PhoneCallRecord | None:
        """Patch the call identified by ``call_id``, ``call_sid`` or ``recording_sid``."""
        if where not in ("call_id", "call_sid", "recording_sid"):
            raise ValueError(f"Unsupported phone call lookup column: {where}")
        fields = {k: v for k, v in patch.items() if k in PHONE_CALL_COLUMNS and v is not None}
        if fields:
            assignments = ", ".join(f"{k} = ?" for k in fields)
            self._con.execute(
                f"UPDATE phone_calls SET {assignments}, updated_at = ? WHERE {where} = ?",
                [_plain(v) for v in fields.values()] + [_ts_in(utcnow()), value],
            )
        rows = self._fetch_dicts(f"SELECT * FROM phone_calls WHERE {where} = ? ORDER BY call_id DESC LIMIT 1", [value])
        return self._phone_call_from_row(rows[0]) if rows else None

    def get_latest_phone_call(self, day_key: str | None = None) -> PhoneCallRecord | None:
        """Most recently requested call, across all days unless ``day_key`` is given."""
        if day_key is None:
            rows = self._fetch_dicts("SELECT * FROM phone_calls ORDER BY requested_at DESC, call_id DESC LIMIT 1")
        else:
            rows = self._fetch_dicts(
                "SELECT * FROM phone_calls WHERE day_key = ? ORDER BY requested_at DESC, call_id DESC LIMIT 1",
                [day_key],
            )
        return self._phone_call_from_row(rows[0]) if rows else None

    def get_recent_phone_calls(self, limit: int = 20) -> list[PhoneCallRecord]:
        limit = min(max(int(limit), 1), 100)
        rows = self._fetch_dicts(f"SELECT * FROM phone_calls ORDER BY requested_at DESC, call_id DESC LIMIT {limit}")
        return [self._phone_call_from_row(row) for row in rows]

    # Alerts

    def insert_alert(self, alert: Alert) -> None:
        self._con.execute(
            """
            INSERT INTO alerts (alert_id, day_key, type, payload, created_at)
            VALUES (nextval('alert_seq'), ?, ?, ?, ?)
            """,
            [alert.day_key, alert.type, _json_in(alert.payload), _ts_in(alert.created_at or utcnow())],
        )
        log.info("alert_recorded", day_key=alert.day_key, type=alert.type)

    def get_recent_alerts(self, day_key: str, limit: int = 20) -> list[Alert]:
        limit = min(max(int(limit), 1), 200)
        rows = self._fetch_dicts(
            f"SELECT * FROM alerts WHERE day_key = ? ORDER BY created_at DESC, alert_id DESC LIMIT {limit}",
            [day_key],
        )
        return [
            Alert(
                day_key=row["day_key"],
                type=row["type"],
                payload=_json_out(row["payload"]),
                created_at=_ts_out(row["created_at"]),
            )
            for row in rows
        ]

    def close(self) -> None:
        """Close database connection."""
        self._con.close()

    def __enter__(self) -> "Storage":
        return self

    def __exit__(self, *args: object) -> None:
        self.close()
