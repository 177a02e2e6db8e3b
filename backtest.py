#!/usr/bin/env python3
"""
backtest.py

Replay backtester for the peg controller (`controller.py`).

Features:
- Replays a price path from CSV or a synthetic mean-reverting path (numpy)
- Runs the same controller used in production against in-memory collaborators
- Optional linear price impact so mints/burns feed back into the market
- Reports actions, rejections by error class, deviation stats, and invariant health

Examples:
  python3 backtest.py --steps 10080 --step-sec 60 --volatility-bp 25
  python3 backtest.py --csv data/peg_1m.csv --json
  python3 backtest.py --csv data/peg_fixed8.csv --fixed8
  python3 backtest.py --steps 2000 --shock-step 500 --shock-bp -800
"""

from __future__ import annotations

import argparse
import csv
import json
import logging
from collections import Counter
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone

import numpy as np

import config
import parameters as pm
import state_machine as sm
from collaborators import InMemoryTokenLedger, InMemoryTreasury, StaticReferenceOracle
from controller import ActionOutcome, PegController
from errors import ControllerError
from parameters import BPS, PRICE_SCALE, ParameterSet

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PricePoint:
    ts: int
    price: int
    reference: int = PRICE_SCALE


@dataclass
class BacktestStats:
    steps: int
    start_ts: int
    end_ts: int
    actions: int
    mints: int
    burns: int
    idle: int
    rejections: dict[str, int]
    total_minted: int
    total_burned: int
    start_supply: int
    final_supply: int
    mean_abs_deviation_bp: float
    p95_abs_deviation_bp: float
    max_abs_deviation_bp: float
    final_deviation_bp: float
    invariant_violations: list[str] = field(default_factory=list)


# --------------------------- Price paths ---------------------------


def _to_fixed8(value: float) -> int:
    return max(1, int(round(value * PRICE_SCALE)))


def ou_step(deviation: float, reversion: float, volatility: float, shock: float) -> float:
    """One Ornstein-Uhlenbeck step on a fractional deviation from peg."""
    return deviation - reversion * deviation + volatility * shock


def generate_ou_path(
    steps: int,
    *,
    start_ts: int = 0,
    step_sec: int = 60,
    peg: float = 1.0,
    reversion: float = 0.05,
    volatility_bp: float = 30.0,
    start_deviation_bp: float = 0.0,
    shock_step: int | None = None,
    shock_bp: float = 0.0,
    reference: int = PRICE_SCALE,
    seed: int | None = None,
) -> list[PricePoint]:
    if steps <= 0:
        return []
    rng = np.random.default_rng(seed)
    shocks = rng.standard_normal(steps)
    vol = float(volatility_bp) / BPS
    deviations = np.empty(steps, dtype=float)
    x = float(start_deviation_bp) / BPS
    for i in range(steps):
        x = ou_step(x, float(reversion), vol, float(shocks[i]))
        if shock_step is not None and i == shock_step:
            x += float(shock_bp) / BPS
        deviations[i] = x
    # Keep prices strictly positive even for violent synthetic shocks.
    prices = peg * np.clip(1.0 + deviations, 1e-6, None)
    return [
        PricePoint(ts=int(start_ts + i * step_sec), price=_to_fixed8(float(p)), reference=int(reference))
        for i, p in enumerate(prices)
    ]


def _parse_ts(raw: str) -> int:
    text = str(raw).strip()
    if text.isdigit():
        return int(text)
    dt = datetime.fromisoformat(text.replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return int(dt.timestamp())


def _parse_price(raw: str, fixed8: bool) -> int:
    text = str(raw).strip()
    if fixed8:
        if not text.isdigit():
            raise ValueError(f"fixed8 price must be a non-negative integer, got {text!r}")
        return int(text)
    value = float(text)
    return _to_fixed8(value) if value > 0 else 0


def load_path_csv(path: str, *, fixed8: bool = False) -> list[PricePoint]:
    """
    Load a price path.  Prices are decimal (1.03) unless *fixed8* is set, in
    which case every price and reference cell must be a fixed8 integer.
    """
    with open(path, "r", encoding="utf-8") as f:
        reader = csv.DictReader(f)
        if reader.fieldnames is None:
            raise ValueError(f"CSV has no header: {path}")

        key_map = {k.lower().strip(): k for k in reader.fieldnames}
        ts_key = next((key_map[k] for k in ("time", "timestamp", "ts", "date") if k in key_map), None)
        price_key = next((key_map[k] for k in ("price", "close", "c") if k in key_map), None)
        ref_key = next((key_map[k] for k in ("reference", "ref", "reference_price") if k in key_map), None)
        if not ts_key or not price_key:
            raise ValueError("CSV must contain a timestamp column and a price column")

        points: list[PricePoint] = []
        for row in reader:
            price = _parse_price(row[price_key], fixed8)
            reference = _parse_price(row[ref_key], fixed8) if ref_key and row.get(ref_key) else PRICE_SCALE
            if price <= 0 or reference <= 0:
                continue
            points.append(PricePoint(ts=_parse_ts(row[ts_key]), price=price, reference=reference))

    points.sort(key=lambda p: p.ts)
    return points


# --------------------------- Simulated market ---------------------------


class SimulatedMarketOracle:
    """
    Market feed that walks an OU path around the peg and reacts to
    controller actions through a decaying linear impact.
    """

    def __init__(
        self,
        *,
        peg: int = PRICE_SCALE,
        reversion: float = 0.05,
        volatility_bp: float = 30.0,
        impact_per_bp: float = 1.0,
        impact_decay: float = 0.95,
        seed: int | None = None,
    ) -> None:
        self.peg = int(peg)
        self.reversion = float(reversion)
        self.volatility = float(volatility_bp) / BPS
        self.impact_per_bp = float(impact_per_bp)
        self.impact_decay = float(impact_decay)
        self.valid = True
        self._rng = np.random.default_rng(seed)
        self._deviation = 0.0
        self._impact = 0.0

    def advance(self) -> int:
        self._deviation = ou_step(self._deviation, self.reversion, self.volatility, float(self._rng.standard_normal()))
        self._impact *= self.impact_decay
        return self.current_price()

    def apply_outcome(self, outcome: ActionOutcome) -> None:
        if not outcome.executed:
            return
        # Minting pushes price down, burning pushes it up.
        sign = -1.0 if outcome.action == "mint" else 1.0
        self._impact += sign * self.impact_per_bp * outcome.amount_bp / BPS

    def current_price(self) -> int:
        return _to_fixed8(max(1e-6, 1.0 + self._deviation + self._impact) * self.peg / PRICE_SCALE)

    def get_price(self) -> tuple[int, bool]:
        return self.current_price(), self.valid


class ReplayMarketOracle:
    """Market feed that serves an exogenous path plus accumulated impact."""

    def __init__(self, impact_per_bp: float = 0.0, impact_decay: float = 0.95) -> None:
        self.impact_per_bp = float(impact_per_bp)
        self.impact_decay = float(impact_decay)
        self.base_price = PRICE_SCALE
        self.valid = True
        self._impact = 0.0

    def set_point(self, point: PricePoint) -> None:
        self.base_price = int(point.price)
        self._impact *= self.impact_decay

    def apply_outcome(self, outcome: ActionOutcome) -> None:
        if not outcome.executed or self.impact_per_bp == 0.0:
            return
        sign = -1.0 if outcome.action == "mint" else 1.0
        self._impact += sign * self.impact_per_bp * outcome.amount_bp / BPS

    def get_price(self) -> tuple[int, bool]:
        return max(1, int(round(self.base_price * (1.0 + self._impact)))), self.valid


# --------------------------- Replay ---------------------------


def run_backtest(
    points: list[PricePoint],
    params: ParameterSet | None = None,
    *,
    initial_supply: int = 1_000_000 * 10**18,
    impact_per_bp: float = 0.0,
    impact_decay: float = 0.95,
    treasury_collateral: int | None = None,
) -> BacktestStats:
    if not points:
        raise ValueError("backtest needs at least one price point")

    params = params or ParameterSet()
    reserve = "peg-reserve"
    market = ReplayMarketOracle(impact_per_bp=impact_per_bp, impact_decay=impact_decay)
    reference = StaticReferenceOracle(points[0].reference)

    treasury = None
    if treasury_collateral is not None:
        treasury = InMemoryTreasury(address="treasury", collateral=int(treasury_collateral))
        ledger = InMemoryTokenLedger({treasury.address: initial_supply})
    else:
        ledger = InMemoryTokenLedger({reserve: initial_supply})

    controller = PegController(
        market,
        reference,
        ledger,
        params=params,
        treasury=treasury,
        reserve_address=reserve,
        sink=lambda _event, _details: None,
        now=points[0].ts,
    )

    outcomes: Counter[str] = Counter()
    rejections: Counter[str] = Counter()
    deviations: list[float] = []
    violations: list[str] = []

    for point in points:
        market.set_point(point)
        reference.set(point.reference)
        price, _ = market.get_price()
        target = params.target_price * point.reference // PRICE_SCALE
        deviations.append((price - target) * BPS / target)
        try:
            outcome = controller.stabilize(point.ts)
        except ControllerError as e:
            rejections[e.__class__.__name__] += 1
            continue
        outcomes[outcome.action] += 1
        market.apply_outcome(outcome)
        for v in sm.check_invariants(controller.state, params):
            violations.append(f"ts={point.ts}: {v}")

    dev = np.abs(np.asarray(deviations, dtype=float))
    stats = controller.stats
    return BacktestStats(
        steps=len(points),
        start_ts=points[0].ts,
        end_ts=points[-1].ts,
        actions=stats.action_count,
        mints=outcomes["mint"],
        burns=outcomes["burn"],
        idle=outcomes["none"],
        rejections=dict(sorted(rejections.items())),
        total_minted=stats.total_minted,
        total_burned=stats.total_burned,
        start_supply=initial_supply,
        final_supply=ledger.total_supply(),
        mean_abs_deviation_bp=round(float(dev.mean()), 4),
        p95_abs_deviation_bp=round(float(np.percentile(dev, 95)), 4),
        max_abs_deviation_bp=round(float(dev.max()), 4),
        final_deviation_bp=round(float(deviations[-1]), 4),
        invariant_violations=violations[:100],
    )


def _print_report(stats: BacktestStats) -> None:
    lines = [
        "",
        "=" * 60,
        "  PEG CONTROLLER BACKTEST",
        "=" * 60,
        f"  Window:          {stats.start_ts} .. {stats.end_ts} ({stats.steps} steps)",
        f"  Actions:         {stats.actions} (mint {stats.mints}, burn {stats.burns}, idle {stats.idle})",
        f"  Minted/burned:   {stats.total_minted} / {stats.total_burned}",
        f"  Supply:          {stats.start_supply} -> {stats.final_supply}",
        f"  |dev| mean/p95:  {stats.mean_abs_deviation_bp:.2f} / {stats.p95_abs_deviation_bp:.2f} bp",
        f"  |dev| max:       {stats.max_abs_deviation_bp:.2f} bp",
        f"  Final dev:       {stats.final_deviation_bp:.2f} bp",
    ]
    for name, count in stats.rejections.items():
        lines.append(f"  Rejected:        {name} x{count}")
    lines.append(f"  Invariants:      {'ok' if not stats.invariant_violations else len(stats.invariant_violations)}")
    lines += ["=" * 60, ""]
    print("\n".join(lines))


def build_arg_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(description="Replay a price path through the peg controller")
    p.add_argument("--csv", help="CSV with timestamp and price (and optional reference) columns")
    p.add_argument("--fixed8", action="store_true", help="CSV prices are fixed8 integers instead of decimals")
    p.add_argument("--steps", type=int, default=1440, help="synthetic path length")
    p.add_argument("--step-sec", type=int, default=60, help="seconds between synthetic points")
    p.add_argument("--reversion", type=float, default=config.SIM_REVERSION)
    p.add_argument("--volatility-bp", type=float, default=config.SIM_VOLATILITY_BP)
    p.add_argument("--shock-step", type=int, default=None)
    p.add_argument("--shock-bp", type=float, default=0.0)
    p.add_argument("--seed", type=int, default=config.SIM_SEED)
    p.add_argument("--supply", type=int, default=config.SIM_INITIAL_SUPPLY)
    p.add_argument("--impact-per-bp", type=float, default=1.0, help="price bp moved per bp of supply adjusted")
    p.add_argument("--impact-decay", type=float, default=0.95)
    p.add_argument("--treasury-collateral", type=int, default=None)
    p.add_argument("--json", action="store_true", help="print stats as JSON")
    return p


def main(argv: list[str] | None = None) -> int:
    args = build_arg_parser().parse_args(argv)
    logging.basicConfig(level=logging.WARNING, format="%(asctime)s [%(levelname)s] %(name)s - %(message)s")

    if args.csv:
        points = load_path_csv(args.csv, fixed8=args.fixed8)
    else:
        points = generate_ou_path(
            args.steps,
            step_sec=args.step_sec,
            reversion=args.reversion,
            volatility_bp=args.volatility_bp,
            shock_step=args.shock_step,
            shock_bp=args.shock_bp,
            seed=args.seed,
        )

    stats = run_backtest(
        points,
        pm.from_config(),
        initial_supply=args.supply,
        impact_per_bp=args.impact_per_bp,
        impact_decay=args.impact_decay,
        treasury_collateral=args.treasury_collateral,
    )
    if args.json:
        print(json.dumps(asdict(stats), indent=2))
    else:
        _print_report(stats)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
