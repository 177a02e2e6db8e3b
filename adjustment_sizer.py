"""
adjustment_sizer.py -- Response-level adjustment sizing.

Maps a classified deviation into a concrete mint/burn amount:
  - base amount = supply * level rate
  - dynamic scale ramps across the level's band (non-linear core)
  - daily budget clamp to the remaining headroom

Design:
  - Pure computation functions (no state, safe for previews)
  - Integer math throughout, floor division so scaling rounds down
  - Usage is charged with ceiling division so repeated small actions can't
    slip under the daily cap through rounding
"""

from __future__ import annotations

from dataclasses import dataclass

from deviation_detector import DeviationReading, ResponseLevel
from errors import checked_uint
from parameters import BPS, ParameterSet

# Scale ranges per band, in bp of the base amount.
SMALL_SCALE_BP = 10_000
MEDIUM_SCALE_RANGE = (8_000, 12_000)
LARGE_SCALE_RANGE = (10_000, 20_000)


@dataclass(frozen=True)
class AdjustmentPlan:
    amount: int          # token base units to mint/burn
    amount_bp: int       # share of supply charged against the daily budget
    base_amount: int     # supply * rate, before scaling
    scale_bp: int        # applied dynamic scale
    remaining_bp: int    # headroom before this action
    clamped: bool        # amount was cut down to the remaining headroom
    reason: str = "ok"


def base_rate_bp(level: ResponseLevel, params: ParameterSet) -> int:
    if level == ResponseLevel.SMALL:
        return params.small_rate_bp
    if level == ResponseLevel.MEDIUM:
        return params.medium_rate_bp
    if level in (ResponseLevel.LARGE, ResponseLevel.EXTREME):
        return params.large_rate_bp
    return 0


def band_scale_bp(dev_bp: int, t_lo: int, t_hi: int, s_lo: int, s_hi: int) -> int:
    """Linear ramp from s_lo at t_lo to s_hi at t_hi, floor division."""
    if t_hi <= t_lo:
        return s_lo
    progress = min(max(dev_bp - t_lo, 0), t_hi - t_lo)
    return s_lo + progress * (s_hi - s_lo) // (t_hi - t_lo)


def scale_factor_bp(reading: DeviationReading, params: ParameterSet) -> int:
    level = reading.level
    if level == ResponseLevel.LARGE:
        return band_scale_bp(
            reading.deviation_bp,
            params.large_threshold_bp,
            params.extreme_threshold_bp,
            *LARGE_SCALE_RANGE,
        )
    if level == ResponseLevel.EXTREME:
        # Estimation only; the committing path aborts before sizing.
        return LARGE_SCALE_RANGE[1]
    if level == ResponseLevel.MEDIUM:
        return band_scale_bp(
            reading.deviation_bp,
            params.medium_threshold_bp,
            params.large_threshold_bp,
            *MEDIUM_SCALE_RANGE,
        )
    if level == ResponseLevel.SMALL:
        return SMALL_SCALE_BP
    return 0


def remaining_daily_bp(params: ParameterSet, daily_used_bp: int) -> int:
    return max(0, params.daily_cap_bp - max(0, daily_used_bp))


def _ceil_div(a: int, b: int) -> int:
    return -(-a // b)


def plan_adjustment(
    reading: DeviationReading,
    params: ParameterSet,
    daily_used_bp: int,
    total_supply: int,
) -> AdjustmentPlan:
    remaining = remaining_daily_bp(params, daily_used_bp)
    if reading.level == ResponseLevel.NONE:
        return AdjustmentPlan(0, 0, 0, 0, remaining, False, reason="no_deviation")
    if total_supply <= 0:
        return AdjustmentPlan(0, 0, 0, 0, remaining, False, reason="no_supply")

    checked_uint(total_supply, "total supply")
    rate = base_rate_bp(reading.level, params)
    base_amount = checked_uint(total_supply * rate, "base amount") // BPS
    scale = scale_factor_bp(reading, params)
    scaled = checked_uint(base_amount * scale, "scaled amount") // BPS

    if remaining <= 0:
        return AdjustmentPlan(0, 0, base_amount, scale, 0, scaled > 0, reason="daily_cap_exhausted")

    amount_bp = _ceil_div(checked_uint(scaled * BPS, "amount share"), total_supply)
    if amount_bp > remaining:
        amount = total_supply * remaining // BPS
        return AdjustmentPlan(amount, remaining, base_amount, scale, remaining, True, reason="clamped_to_daily_cap")

    if scaled == 0:
        return AdjustmentPlan(0, 0, base_amount, scale, remaining, False, reason="rounds_to_zero")
    return AdjustmentPlan(scaled, amount_bp, base_amount, scale, remaining, False)


def size_adjustment(
    reading: DeviationReading,
    params: ParameterSet,
    daily_used_bp: int,
    total_supply: int,
) -> int:
    """Token amount for *reading*, never negative, never past the daily headroom."""
    return plan_adjustment(reading, params, daily_used_bp, total_supply).amount
