"""Auto-call decision engine.

One tick claims the current decision bucket, runs the guard chain, places a
call when every guard passes, then finalizes the claimed row and updates the
day's counters. Ticks are safe to run redundantly: the claim is a unique
insert, so only one invocation per bucket proceeds past step one.
"""

import math
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol

import structlog

from heatline.autocall.guards import GuardContext, diagnose_guards, run_guards
from heatline.autocall.windows import compute_signals, get_policy
from heatline.errors import ConfigError, ForecastFetchError
from heatline.ingestion.forecast import refresh_forecast
from heatline.models import (
    Alert,
    AutoCallDecision,
    AutoCallState,
    Decision,
    ForecastSnapshot,
    PhoneCallRecord,
    ReasonCode,
    Window,
)
from heatline.settings import SIMULATION_FIELDS, Settings
from heatline.storage import Storage
from heatline.timeutil import day_key as to_day_key
from heatline.timeutil import ensure_utc, utcnow

log = structlog.get_logger()

AUTOMATION_REQUESTER = "forecast_automation"
RECENT_OBSERVATIONS = 10


class CallRequester(Protocol):
    def request_call(self, requested_by: str | None = None, now: datetime | None = None) -> PhoneCallRecord: ...


ForecastRefresher = Callable[[str, datetime], Any]


def build_decision_key(day_key: str, now: datetime, cadence_minutes: int) -> str:
    """Key shared by every timestamp in the same cadence bucket."""
    cadence = max(1, int(round(cadence_minutes)))
    bucket = math.floor(ensure_utc(now).timestamp() / (cadence * 60))
    return f"{day_key}|{cadence}|{bucket}"


@dataclass
class TickResult:
    day_key: str
    decision_key: str
    duplicate: bool
    decision: Decision | None = None
    reason_code: ReasonCode | None = None
    reason_detail: dict[str, Any] | None = None
    window: Window | None = None
    call_reference: str | None = None
    auto_calls_made: int | None = None


@dataclass
class SimulationResult:
    day_key: str
    evaluated_at: datetime
    decision: Decision
    reason_code: ReasonCode
    reason_detail: dict[str, Any]
    window: Window
    blocking_guard: str | None
    guards: list[dict[str, Any]] = field(default_factory=list)
    signals: dict[str, Any] = field(default_factory=dict)
    settings: dict[str, Any] = field(default_factory=dict)


class AutoCallEngine:
    """Decides CALL vs SKIP on a fixed cadence."""

    def __init__(
        self,
        storage: Storage,
        caller: CallRequester | None = None,
        forecast_refresher: ForecastRefresher | None = None,
    ) -> None:
        self.storage = storage
        self.caller = caller
        self.forecast_refresher = forecast_refresher or (
            lambda day_key, now: refresh_forecast(storage, day_key=day_key, now=now)
        )

    def _context(
        self, now: datetime, settings: Settings, day_key: str, forecast: ForecastSnapshot | None
    ) -> GuardContext:
        stats = self.storage.get_daily_stats(day_key)
        observations = self.storage.get_latest_observations(day_key, limit=RECENT_OBSERVATIONS)
        policy = get_policy(settings.window_policy)
        signals = compute_signals(stats, observations, forecast, settings, now)
        return GuardContext(
            now=now,
            settings=settings,
            policy=policy,
            forecast=forecast,
            stats=stats,
            state=self.storage.get_auto_call_state(day_key),
            latest_call=self.storage.get_latest_phone_call(),
            classification=policy.classify(now, forecast, settings, signals),
            signals=signals,
        )

    def _load_forecast(self, day_key: str, now: datetime) -> ForecastSnapshot | None:
        forecast = self.storage.get_latest_forecast(day_key)
        if forecast is not None:
            return forecast
        try:
            self.forecast_refresher(day_key, now)
        except ForecastFetchError as e:
            log.warning("tick_forecast_refresh_failed", day_key=day_key, error=str(e))
        except Exception as e:
            reason = str(e) or type(e).__name__
            log.error("tick_forecast_refresh_failed", day_key=day_key, error=reason)
            self.storage.insert_alert(
                Alert(day_key=day_key, type="FORECAST_REFRESH_FAILED", payload={"reason": reason}, created_at=now)
            )
        return self.storage.get_latest_forecast(day_key)

    def _place_call(self, now: datetime, intended: ReasonCode) -> tuple[ReasonCode, dict[str, Any], str | None]:
        if self.caller is None:
            detail = {"error": "call pipeline is not configured", "intended_reason": intended.value}
            return ReasonCode.CALL_FAILED, detail, None
        try:
            record = self.caller.request_call(AUTOMATION_REQUESTER, now=now)
        except Exception as e:
            log.error("auto_call_failed", intended_reason=intended.value, error=str(e))
            return ReasonCode.CALL_FAILED, {"error": str(e), "intended_reason": intended.value}, None
        return intended, {"call_id": record.call_id, "warning": record.warning}, record.call_sid

    def evaluate_now(self, now: datetime | None = None) -> TickResult:
        """Run one decision tick."""
        now = now or utcnow()
        settings = self.storage.load_settings()
        day_key = to_day_key(now, settings.timezone)
        decision_key = build_decision_key(day_key, now, settings.auto_call_eval_every_minutes)

        claimed = self.storage.claim_decision(
            AutoCallDecision(
                day_key=day_key,
                decision_key=decision_key,
                evaluated_at=now,
                shadow_mode=settings.auto_call_shadow_mode,
            )
        )
        if not claimed:
            log.info("decision_duplicate", decision_key=decision_key)
            return TickResult(day_key=day_key, decision_key=decision_key, duplicate=True)

        forecast = self._load_forecast(day_key, now)
        ctx = self._context(now, settings, day_key, forecast)

        call_reference = None
        blocked = run_guards(ctx)
        if blocked is not None:
            guard_name, outcome = blocked
            decision = Decision.SKIP
            reason_code = outcome.reason_code
            reason_detail = {"guard": guard_name, **outcome.detail}
        else:
            decision = Decision.CALL
            reason_code, reason_detail, call_reference = self._place_call(now, ctx.classification.reason_code)

        finalized = AutoCallDecision(
            day_key=day_key,
            decision_key=decision_key,
            evaluated_at=now,
            decision=decision,
            reason_code=reason_code,
            reason_detail=reason_detail,
            window=ctx.classification.window,
            predicted_max_at=forecast.predicted_max_at if forecast else None,
            call_reference=call_reference,
            shadow_mode=settings.auto_call_shadow_mode,
        )
        self.storage.finalize_decision(finalized)

        called = decision is Decision.CALL and reason_code is not ReasonCode.CALL_FAILED
        state = self.storage.apply_decision_to_state(
            day_key,
            enabled=settings.auto_call_enabled,
            shadow_mode=settings.auto_call_shadow_mode,
            evaluated_at=now,
            reason_code=reason_code,
            increment_call_count=called,
        )

        if called:
            self.storage.insert_alert(
                Alert(
                    day_key=day_key,
                    type="AUTO_CALL_TRIGGERED",
                    payload={
                        "reason_code": reason_code.value,
                        "decision_key": decision_key,
                        "call_sid": call_reference,
                        "predicted_max_at": finalized.predicted_max_at,
                    },
                    created_at=now,
                )
            )
        elif reason_code is ReasonCode.CALL_FAILED:
            self.storage.insert_alert(
                Alert(
                    day_key=day_key,
                    type="AUTO_CALL_FAILED",
                    payload={"decision_key": decision_key, "reason_detail": reason_detail},
                    created_at=now,
                )
            )

        log.info(
            "decision_finalized",
            decision_key=decision_key,
            decision=decision.value,
            reason_code=reason_code.value,
            window=ctx.classification.window.value,
        )
        return TickResult(
            day_key=day_key,
            decision_key=decision_key,
            duplicate=False,
            decision=decision,
            reason_code=reason_code,
            reason_detail=reason_detail,
            window=ctx.classification.window,
            call_reference=call_reference,
            auto_calls_made=state.auto_calls_made,
        )

    def simulate_decision(
        self, overrides: Mapping[str, Any] | None = None, now: datetime | None = None
    ) -> SimulationResult:
        """What-if evaluation against current state. Writes nothing and places no call.

        Raises:
            ConfigError: for an unknown or invalid override
        """
        overrides = dict(overrides or {})
        unknown = sorted(set(overrides) - SIMULATION_FIELDS)
        if unknown:
            raise ConfigError(f"Unsupported simulation override(s): {', '.join(unknown)}")

        now = now or utcnow()
        settings = self.storage.load_settings().with_overrides(overrides)
        day_key = to_day_key(now, settings.timezone)
        forecast = self.storage.get_latest_forecast(day_key)
        ctx = self._context(now, settings, day_key, forecast)

        blocked = run_guards(ctx)
        if blocked is not None:
            guard_name, outcome = blocked
            decision, reason_code, detail = Decision.SKIP, outcome.reason_code, dict(outcome.detail)
        else:
            guard_name = None
            decision, reason_code, detail = Decision.CALL, ctx.classification.reason_code, {}

        return SimulationResult(
            day_key=day_key,
            evaluated_at=now,
            decision=decision,
            reason_code=reason_code,
            reason_detail={**detail, **ctx.classification.as_detail()},
            window=ctx.classification.window,
            blocking_guard=guard_name,
            guards=diagnose_guards(ctx),
            signals=ctx.signals.as_detail(),
            settings=settings.simulation_view(),
        )

    def get_auto_call_state(self, day_key: str | None = None) -> AutoCallState | None:
        day_key = day_key or to_day_key(utcnow(), self.storage.load_settings().timezone)
        return self.storage.get_auto_call_state(day_key)

    def get_recent_decisions(self, day_key: str | None = None, limit: int = 20) -> list[AutoCallDecision]:
        day_key = day_key or to_day_key(utcnow(), self.storage.load_settings().timezone)
        return self.storage.get_recent_decisions(day_key, limit)
