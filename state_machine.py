"""
state_machine.py

Stabilization gating state machine.

Design goals:
- Pure transitions: (state, inputs) -> (next_state, notices)
- Two orthogonal axes: Active/Halted and Ready/Cooling
- Rolling 24h daily budget window with idempotent reset
- Cooldown length follows the size of the last action (damping)
- Callers stage the returned state and commit it only when every external
  effect succeeded
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Any

from deviation_detector import ResponseLevel
from errors import EmergencyHaltedError, InCooldownError, checked_uint
from parameters import ParameterSet

DAY_SECONDS = 86_400


@dataclass(frozen=True)
class RuntimeState:
    last_action_time: int | None = None
    last_price_checked: int = 0
    current_cooldown: int = 0
    daily_used_bp: int = 0
    daily_reset_at: int = 0
    halted: bool = False
    halt_reason: str = ""


@dataclass(frozen=True)
class Notice:
    event_type: str
    details: dict[str, Any]


def initial_state(params: ParameterSet, now: int) -> RuntimeState:
    return RuntimeState(current_cooldown=params.min_cooldown, daily_reset_at=int(now))


# --------------------------- Queries ---------------------------


def next_eligible_time(state: RuntimeState) -> int:
    if state.last_action_time is None:
        return 0
    return state.last_action_time + state.current_cooldown


def is_ready(state: RuntimeState, now: int) -> bool:
    return now >= next_eligible_time(state)


def is_active(state: RuntimeState) -> bool:
    return not state.halted


def daily_reset_due(state: RuntimeState, now: int) -> bool:
    return now >= state.daily_reset_at + DAY_SECONDS


def effective_daily_used(state: RuntimeState, now: int) -> int:
    """Usage as the next attempt would see it (a due reset counts as applied)."""
    return 0 if daily_reset_due(state, now) else state.daily_used_bp


def cooldown_for_level(level: ResponseLevel, params: ParameterSet) -> int:
    if level >= ResponseLevel.LARGE:
        return params.max_cooldown
    if level == ResponseLevel.MEDIUM:
        return params.medium_cooldown
    return params.min_cooldown


def check_invariants(state: RuntimeState, params: ParameterSet) -> list[str]:
    violations: list[str] = []
    if not (params.min_cooldown <= state.current_cooldown <= params.max_cooldown):
        violations.append(
            f"current_cooldown {state.current_cooldown} outside "
            f"[{params.min_cooldown}, {params.max_cooldown}]"
        )
    if state.daily_used_bp < 0:
        violations.append(f"daily_used_bp negative: {state.daily_used_bp}")
    if state.daily_used_bp > params.daily_cap_bp:
        violations.append(f"daily_used_bp {state.daily_used_bp} exceeds cap {params.daily_cap_bp}")
    if state.halted and not state.halt_reason:
        violations.append("halted without a reason")
    return violations


# --------------------------- Transitions ---------------------------


def try_begin(state: RuntimeState, now: int) -> None:
    """Single gate evaluated before any measurement or mutation."""
    if state.halted:
        raise EmergencyHaltedError(
            f"stabilization halted: {state.halt_reason or 'no reason given'}",
            reason=state.halt_reason,
        )
    if not is_ready(state, now):
        eligible = next_eligible_time(state)
        raise InCooldownError(
            f"in cooldown for another {eligible - now}s",
            next_eligible_time=eligible,
            remaining=eligible - now,
        )


def maybe_reset_daily(state: RuntimeState, now: int) -> tuple[RuntimeState, list[Notice]]:
    if not daily_reset_due(state, now):
        return state, []
    notice = Notice(
        "daily_reset",
        {"previous_used_bp": state.daily_used_bp, "previous_reset_at": state.daily_reset_at, "reset_at": now},
    )
    return replace(state, daily_used_bp=0, daily_reset_at=now), [notice]


def commit(
    state: RuntimeState,
    params: ParameterSet,
    now: int,
    level: ResponseLevel,
    current_price: int,
    amount_bp: int,
) -> tuple[RuntimeState, list[Notice]]:
    notices: list[Notice] = []
    cooldown = cooldown_for_level(level, params)
    if cooldown != state.current_cooldown:
        notices.append(
            Notice(
                "cooldown_adjusted",
                {"previous": state.current_cooldown, "cooldown": cooldown, "level": level.name},
            )
        )
    st = replace(
        state,
        last_action_time=now,
        last_price_checked=current_price,
        daily_used_bp=checked_uint(state.daily_used_bp + amount_bp, "daily usage"),
        current_cooldown=cooldown,
    )
    return st, notices


def record_price(state: RuntimeState, current_price: int) -> RuntimeState:
    return replace(state, last_price_checked=current_price)


def halt(state: RuntimeState, reason: str) -> tuple[RuntimeState, list[Notice]]:
    reason = (reason or "").strip() or "emergency halt"
    if state.halted and state.halt_reason == reason:
        return state, []
    return replace(state, halted=True, halt_reason=reason), [Notice("halt", {"reason": reason})]


def resume(state: RuntimeState) -> tuple[RuntimeState, list[Notice]]:
    if not state.halted:
        return state, []
    notice = Notice("resume", {"previous_reason": state.halt_reason})
    return replace(state, halted=False, halt_reason=""), [notice]


def rebound_cooldown(state: RuntimeState, params: ParameterSet) -> tuple[RuntimeState, list[Notice]]:
    """Pull the current cooldown back inside new [min, max] bounds."""
    bounded = min(max(state.current_cooldown, params.min_cooldown), params.max_cooldown)
    if bounded == state.current_cooldown:
        return state, []
    notice = Notice(
        "cooldown_adjusted",
        {"previous": state.current_cooldown, "cooldown": bounded, "level": "bounds_changed"},
    )
    return replace(state, current_cooldown=bounded), [notice]


# --------------------------- Serialization ---------------------------


def to_dict(state: RuntimeState) -> dict:
    return {
        "last_action_time": state.last_action_time,
        "last_price_checked": state.last_price_checked,
        "current_cooldown": state.current_cooldown,
        "daily_used_bp": state.daily_used_bp,
        "daily_reset_at": state.daily_reset_at,
        "halted": state.halted,
        "halt_reason": state.halt_reason,
    }


def from_dict(data: dict) -> RuntimeState:
    return RuntimeState(
        last_action_time=None if data.get("last_action_time") is None else int(data["last_action_time"]),
        last_price_checked=int(data.get("last_price_checked", 0)),
        current_cooldown=int(data.get("current_cooldown", 0)),
        daily_used_bp=int(data.get("daily_used_bp", 0)),
        daily_reset_at=int(data.get("daily_reset_at", 0)),
        halted=bool(data.get("halted", False)),
        halt_reason=str(data.get("halt_reason", "") or ""),
    )
