"""
controller.py -- Peg stabilization controller.

Owns the live ParameterSet, RuntimeState and LedgerStats and is the only
thing allowed to change them.  One invocation at a time:

  stabilize(now)
    guard -> halt/cooldown gate -> daily reset -> measure -> size
    -> execute (token ledger / treasury) -> commit -> notify

Every invocation stages its changes into local drafts.  The owned snapshot
is replaced by a single assignment only after all external calls succeeded,
so a failure anywhere leaves nothing observably changed, and read-only views
never see a half-applied commit.
"""

from __future__ import annotations

import logging
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, replace
from typing import Any, Callable, Iterator

import adjustment_sizer as sizer
import deviation_detector as dd
import notifier
import parameters as pm
import state_machine as sm
import stats_ledger as sl
from collaborators import MarketOracle, ReferenceOracle, TokenLedger, Treasury
from deviation_detector import DeviationReading, ResponseLevel
from errors import (
    CollateralUnavailableError,
    ControllerError,
    DailyLimitExceededError,
    ReentrancyError,
)
from parameters import ParameterSet
from state_machine import Notice, RuntimeState
from stats_ledger import LedgerStats

logger = logging.getLogger(__name__)

Sink = Callable[[str, dict], None]

SNAPSHOT_VERSION = "peg-v1"


def _now() -> int:
    return int(time.time())


@dataclass(frozen=True)
class ControllerCore:
    params: ParameterSet
    state: RuntimeState
    stats: LedgerStats


@dataclass(frozen=True)
class ActionOutcome:
    action: str  # "mint" | "burn" | "none"
    amount: int
    amount_bp: int
    reading: DeviationReading
    cooldown: int
    next_eligible_time: int
    daily_used_bp: int
    clamped: bool = False
    reason: str = ""

    @property
    def executed(self) -> bool:
        return self.action in ("mint", "burn")

    def to_dict(self) -> dict[str, Any]:
        return {
            "action": self.action,
            "amount": self.amount,
            "amount_bp": self.amount_bp,
            "reading": self.reading.to_dict(),
            "cooldown": self.cooldown,
            "next_eligible_time": self.next_eligible_time,
            "daily_used_bp": self.daily_used_bp,
            "clamped": self.clamped,
            "reason": self.reason,
        }


class PegController:
    def __init__(
        self,
        market_oracle: MarketOracle,
        reference_oracle: ReferenceOracle,
        token_ledger: TokenLedger,
        *,
        params: ParameterSet | None = None,
        treasury: Treasury | None = None,
        reserve_address: str = "peg-reserve",
        sink: Sink | None = None,
        now: int | None = None,
    ) -> None:
        params = pm.validate(params or ParameterSet())
        started = _now() if now is None else int(now)

        self.market_oracle = market_oracle
        self.reference_oracle = reference_oracle
        self.token_ledger = token_ledger
        self.treasury = treasury
        self.reserve_address = reserve_address
        self.sink: Sink = sink or notifier.notify_event

        self._guard = threading.Lock()
        self._core = ControllerCore(params, sm.initial_state(params, started), LedgerStats())

    # ------------------ Read-only views ------------------

    @property
    def parameters(self) -> ParameterSet:
        return self._core.params

    @property
    def state(self) -> RuntimeState:
        return self._core.state

    @property
    def stats(self) -> LedgerStats:
        return self._core.stats

    def statistics(self) -> dict[str, int]:
        return self._core.stats.to_dict()

    def preview_deviation(self) -> DeviationReading:
        """Current reading, EXTREME included.  Never notifies, never mutates."""
        return self._read_oracles(self._core.params, strict=False)

    def preview_adjustment(self, reading: DeviationReading, now: int | None = None) -> int:
        """
        Estimate the amount a stabilize call would move for *reading*.

        EXTREME readings are sized like the LARGE band at its 200% ceiling.
        That number is informational only: a real stabilize attempt aborts
        on EXTREME instead of acting.
        """
        now = _now() if now is None else int(now)
        core = self._core
        used = sm.effective_daily_used(core.state, now)
        return sizer.size_adjustment(reading, core.params, used, int(self.token_ledger.total_supply()))

    def status(self, now: int | None = None) -> dict[str, Any]:
        now = _now() if now is None else int(now)
        core = self._core
        params, state = core.params, core.state

        deviation_bp = 0
        level = ResponseLevel.NONE
        try:
            reading = self._read_oracles(params, strict=False)
            deviation_bp, level = reading.deviation_bp, reading.level
        except Exception as e:
            logger.warning("Status deviation read failed, reporting 0: %s", e)

        eligible = sm.next_eligible_time(state)
        used = sm.effective_daily_used(state, now)
        return {
            "active": sm.is_active(state),
            "halted": state.halted,
            "halt_reason": state.halt_reason,
            "ready": sm.is_ready(state, now),
            "next_eligible_time": eligible,
            "cooldown_remaining": max(0, eligible - now),
            "current_cooldown": state.current_cooldown,
            "current_deviation_bp": deviation_bp,
            "current_level": level.name,
            "last_price_checked": state.last_price_checked,
            "daily_used_bp": used,
            "daily_cap_bp": params.daily_cap_bp,
            "daily_remaining_bp": sizer.remaining_daily_bp(params, used),
            "daily_reset_at": state.daily_reset_at,
        }

    # ------------------ Stabilize ------------------

    def stabilize(self, now: int | None = None) -> ActionOutcome:
        now = _now() if now is None else int(now)
        with self._exclusive("stabilize"):
            outcome, notices = self._stabilize_locked(now)
        self._emit(notices)
        return outcome

    def _stabilize_locked(self, now: int) -> tuple[ActionOutcome, list[Notice]]:
        core = self._core
        params = core.params
        sm.try_begin(core.state, now)

        draft, notices = sm.maybe_reset_daily(core.state, now)
        reading = self._read_oracles(params, strict=True)

        if reading.level == ResponseLevel.NONE:
            draft = sm.record_price(draft, reading.current_price)
            self._core = replace(core, state=draft)
            logger.debug("No action: deviation %d bp below small threshold", reading.deviation_bp)
            return self._idle_outcome(reading, draft, "no_deviation"), notices

        notices.append(Notice("deviation_detected", {"reading": reading.to_dict()}))
        supply = int(self.token_ledger.total_supply())
        plan = sizer.plan_adjustment(reading, params, draft.daily_used_bp, supply)

        if plan.amount <= 0:
            if plan.reason == "daily_cap_exhausted":
                raise DailyLimitExceededError(
                    f"daily cap of {params.daily_cap_bp} bp exhausted",
                    daily_used_bp=draft.daily_used_bp,
                    daily_cap_bp=params.daily_cap_bp,
                    reading=reading,
                )
            draft = sm.record_price(draft, reading.current_price)
            self._core = replace(core, state=draft)
            logger.info("No action: %s (level %s)", plan.reason, reading.level.name)
            return self._idle_outcome(reading, draft, plan.reason), notices

        # Both gates again, right before the external effect.
        sm.try_begin(draft, now)
        action = self._execute(reading, plan.amount)

        draft, commit_notices = sm.commit(
            draft, params, now, reading.level, reading.current_price, plan.amount_bp
        )
        stats = sl.record_mint(core.stats, plan.amount) if action == "mint" else sl.record_burn(core.stats, plan.amount)
        stats = sl.record_action(stats)

        self._core = ControllerCore(params, draft, stats)

        outcome = ActionOutcome(
            action=action,
            amount=plan.amount,
            amount_bp=plan.amount_bp,
            reading=reading,
            cooldown=draft.current_cooldown,
            next_eligible_time=sm.next_eligible_time(draft),
            daily_used_bp=draft.daily_used_bp,
            clamped=plan.clamped,
            reason=plan.reason,
        )
        logger.info(
            "Stabilized: %s %d (%d bp, level %s, dev %d bp, scale %d bp%s)",
            action,
            plan.amount,
            plan.amount_bp,
            reading.level.name,
            reading.deviation_bp,
            plan.scale_bp,
            ", clamped" if plan.clamped else "",
        )
        notices.extend(commit_notices)
        notices.append(Notice("action_executed", outcome.to_dict()))
        return outcome, notices

    def _idle_outcome(self, reading: DeviationReading, state: RuntimeState, reason: str) -> ActionOutcome:
        return ActionOutcome(
            action="none",
            amount=0,
            amount_bp=0,
            reading=reading,
            cooldown=state.current_cooldown,
            next_eligible_time=sm.next_eligible_time(state),
            daily_used_bp=state.daily_used_bp,
            reason=reason,
        )

    def _read_oracles(self, params: ParameterSet, *, strict: bool) -> DeviationReading:
        price, valid = self.market_oracle.get_price()
        reference = self.reference_oracle.latest_answer()
        if strict:
            return dd.measure(int(price), bool(valid), int(reference), params)
        return dd.read_deviation(int(price), bool(valid), int(reference), params)

    def _execute(self, reading: DeviationReading, amount: int) -> str:
        if reading.above_target:
            recipient = self.reserve_address
            if self.treasury is not None:
                if not self.treasury.has_available_collateral(amount):
                    raise CollateralUnavailableError("treasury lacks collateral for mint", amount=amount)
                if not self.treasury.request_collateral_backing(amount):
                    raise CollateralUnavailableError("treasury refused collateral backing", amount=amount)
                recipient = self.treasury.address
            self.token_ledger.mint(recipient, amount)
            return "mint"

        source = self.treasury.address if self.treasury is not None else self.reserve_address
        self.token_ledger.burn(source, amount)
        return "burn"

    # ------------------ Administrative ------------------

    def update_parameters(self, new_params: ParameterSet) -> ParameterSet:
        with self._exclusive("update_parameters"):
            validated = pm.validate(new_params)
            core = self._core
            old = core.params.to_dict()
            changed = {k: (old[k], v) for k, v in validated.to_dict().items() if old[k] != v}
            state, notices = sm.rebound_cooldown(core.state, validated)
            self._core = replace(core, params=validated, state=state)
        logger.info("Parameters updated: %s", changed or "no changes")
        self._emit([Notice("parameters_updated", {"changed": changed})] + notices)
        return validated

    def halt(self, reason: str) -> None:
        with self._exclusive("halt"):
            state, notices = sm.halt(self._core.state, reason)
            self._core = replace(self._core, state=state)
        if notices:
            logger.warning("Emergency halt: %s", state.halt_reason)
        self._emit(notices)

    def resume(self) -> None:
        with self._exclusive("resume"):
            state, notices = sm.resume(self._core.state)
            self._core = replace(self._core, state=state)
        if notices:
            logger.info("Resumed stabilization")
        self._emit(notices)

    def set_treasury(self, treasury: Treasury | None) -> None:
        with self._exclusive("set_treasury"):
            self.treasury = treasury
        logger.info("Treasury %s", "set to " + treasury.address if treasury is not None else "removed")

    def set_oracles(self, market_oracle: MarketOracle, reference_oracle: ReferenceOracle) -> None:
        with self._exclusive("set_oracles"):
            self.market_oracle = market_oracle
            self.reference_oracle = reference_oracle

    # ------------------ Snapshot ------------------

    def snapshot(self) -> dict[str, Any]:
        core = self._core
        return {
            "version": SNAPSHOT_VERSION,
            "saved_at": _now(),
            "params": core.params.to_dict(),
            "state": sm.to_dict(core.state),
            "stats": core.stats.to_dict(),
        }

    def restore(self, snap: dict[str, Any]) -> None:
        with self._exclusive("restore"):
            params = pm.from_dict(snap.get("params") or {}, base=self._core.params)
            state = sm.from_dict(snap.get("state") or {})
            stats = sl.from_dict(snap.get("stats") or {})
            state, _ = sm.rebound_cooldown(state, params)
            for violation in sm.check_invariants(state, params):
                logger.warning("Restored snapshot invariant: %s", violation)
            self._core = ControllerCore(params, state, stats)
        logger.info("Restored controller snapshot (%d actions)", stats.action_count)

    # ------------------ Internals ------------------

    @contextmanager
    def _exclusive(self, operation: str) -> Iterator[None]:
        if not self._guard.acquire(blocking=False):
            raise ReentrancyError(f"{operation} rejected: another invocation is in progress", operation=operation)
        try:
            yield
        finally:
            self._guard.release()

    def _emit(self, notices: list[Notice]) -> None:
        for notice in notices:
            try:
                self.sink(notice.event_type, notice.details)
            except ControllerError as e:
                logger.warning("Sink rejected %s: %s", notice.event_type, e)
            except Exception:
                logger.exception("Sink failed for %s", notice.event_type)
