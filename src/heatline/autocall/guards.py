"""Ordered guard chain for auto-call decisions.

Each guard inspects a ``GuardContext`` and returns a ``GuardOutcome`` when it
blocks the call, or None to let evaluation continue. The first blocking guard
decides the recorded SKIP reason, so the order of ``GUARD_CHAIN`` is part of
the audit contract.
"""

import math
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from heatline.autocall.windows import Signals, WindowClassification, WindowPolicy
from heatline.models import AutoCallState, DailyStats, ForecastSnapshot, PhoneCallRecord, ReasonCode
from heatline.quality.freshness import compute_poll_freshness, is_data_stale
from heatline.settings import Settings
from heatline.timeutil import ensure_utc


@dataclass(frozen=True)
class GuardOutcome:
    reason_code: ReasonCode
    detail: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class GuardContext:
    now: datetime
    settings: Settings
    policy: WindowPolicy
    forecast: ForecastSnapshot | None
    stats: DailyStats | None
    state: AutoCallState | None
    latest_call: PhoneCallRecord | None
    classification: WindowClassification
    signals: Signals


Guard = Callable[[GuardContext], GuardOutcome | None]


def guard_enabled(ctx: GuardContext) -> GuardOutcome | None:
    if not ctx.settings.auto_call_enabled:
        return GuardOutcome(ReasonCode.SKIP_DISABLED)
    return None


def guard_forecast_available(ctx: GuardContext) -> GuardOutcome | None:
    if not ctx.policy.has_usable_forecast(ctx.forecast):
        return GuardOutcome(
            ReasonCode.SKIP_NO_FORECAST,
            {"has_snapshot": ctx.forecast is not None, "policy": ctx.policy.name.value},
        )
    return None


def guard_data_fresh(ctx: GuardContext) -> GuardOutcome | None:
    if not is_data_stale(ctx.stats, ctx.now, ctx.settings.stale_poll_seconds):
        return None
    last_poll = ctx.stats.last_successful_poll_at if ctx.stats else None
    freshness = compute_poll_freshness(ctx.now, last_poll, ctx.settings.stale_poll_seconds)
    return GuardOutcome(
        ReasonCode.SKIP_DATA_STALE,
        {
            "has_stats": ctx.stats is not None,
            "poll_stale_seconds": freshness.poll_stale_seconds,
            "stale_threshold_seconds": ctx.settings.stale_poll_seconds,
        },
    )


def guard_window(ctx: GuardContext) -> GuardOutcome | None:
    if ctx.classification.eligible:
        return None
    detail = ctx.classification.as_detail()
    if ctx.classification.reason_code is not ReasonCode.SKIP_OUTSIDE_WINDOW:
        detail.update(ctx.signals.as_detail())
    return GuardOutcome(ctx.classification.reason_code, detail)


def guard_no_call_in_flight(ctx: GuardContext) -> GuardOutcome | None:
    call = ctx.latest_call
    if call is None or not call.in_flight:
        return None
    in_flight_seconds = math.floor((ensure_utc(ctx.now) - ensure_utc(call.requested_at)).total_seconds())
    if in_flight_seconds >= ctx.settings.auto_call_in_flight_timeout_minutes * 60:
        return None
    return GuardOutcome(
        ReasonCode.SKIP_CALL_IN_FLIGHT,
        {
            "latest_call_status": call.status.value,
            "latest_call_id": call.call_id,
            "in_flight_seconds": in_flight_seconds,
        },
    )


def guard_daily_cap(ctx: GuardContext) -> GuardOutcome | None:
    if not ctx.policy.enforces_call_budget:
        return None
    made = ctx.state.auto_calls_made if ctx.state else 0
    if made >= ctx.settings.auto_call_max_per_day:
        return GuardOutcome(
            ReasonCode.SKIP_DAILY_CAP,
            {"auto_calls_made": made, "max_per_day": ctx.settings.auto_call_max_per_day},
        )
    return None


def guard_min_spacing(ctx: GuardContext) -> GuardOutcome | None:
    if not ctx.policy.enforces_call_budget or ctx.state is None or ctx.state.last_auto_call_at is None:
        return None
    spacing = timedelta(minutes=ctx.settings.auto_call_min_spacing_minutes)
    elapsed = ensure_utc(ctx.now) - ensure_utc(ctx.state.last_auto_call_at)
    if elapsed < spacing:
        return GuardOutcome(
            ReasonCode.SKIP_MIN_SPACING,
            {
                "spacing_minutes": ctx.settings.auto_call_min_spacing_minutes,
                "remaining_seconds": math.ceil((spacing - elapsed).total_seconds()),
            },
        )
    return None


def guard_shadow_mode(ctx: GuardContext) -> GuardOutcome | None:
    if ctx.settings.auto_call_shadow_mode:
        return GuardOutcome(
            ReasonCode.SKIP_SHADOW_MODE,
            {"would_call_reason": ctx.classification.reason_code.value, **ctx.signals.as_detail()},
        )
    return None


GUARD_CHAIN: tuple[tuple[str, Guard], ...] = (
    ("enabled", guard_enabled),
    ("forecast_available", guard_forecast_available),
    ("data_fresh", guard_data_fresh),
    ("window_eligible", guard_window),
    ("no_call_in_flight", guard_no_call_in_flight),
    ("daily_cap", guard_daily_cap),
    ("min_spacing", guard_min_spacing),
    ("shadow_mode", guard_shadow_mode),
)


def run_guards(
    ctx: GuardContext, chain: tuple[tuple[str, Guard], ...] = GUARD_CHAIN
) -> tuple[str, GuardOutcome] | None:
    """Return the first blocking guard and its outcome, or None if all pass."""
    for name, guard in chain:
        outcome = guard(ctx)
        if outcome is not None:
            return name, outcome
    return None


def diagnose_guards(
    ctx: GuardContext, chain: tuple[tuple[str, Guard], ...] = GUARD_CHAIN
) -> list[dict[str, Any]]:
    """Evaluate every guard independently, for what-if diagnostics."""
    diagnostics = []
    for name, guard in chain:
        outcome = guard(ctx)
        diagnostics.append(
            {
                "guard": name,
                "passed": outcome is None,
                "reason_code": outcome.reason_code.value if outcome else None,
                "detail": outcome.detail if outcome else None,
            }
        )
    return diagnostics
