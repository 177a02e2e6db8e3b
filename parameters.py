"""
parameters.py -- Admin-tunable parameter set for the peg stabilizer.

A ParameterSet is pure data.  `validate()` either returns the set unchanged
or raises a ParameterValidationError subclass; callers swap the live set only
after validation succeeds, so a rejected update never leaves a partial change.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, replace
from typing import Any

import config
from errors import (
    CooldownOrderError,
    DailyCapTooHighError,
    ParameterValidationError,
    ThresholdOrderError,
)

BPS = 10_000
PRICE_SCALE = 100_000_000

# Hard ceiling on the daily budget, independent of admin input (10%).
MAX_DAILY_CAP_BP = 1_000

_FIELDS = (
    "small_threshold_bp",
    "medium_threshold_bp",
    "large_threshold_bp",
    "extreme_threshold_bp",
    "small_rate_bp",
    "medium_rate_bp",
    "large_rate_bp",
    "min_cooldown",
    "max_cooldown",
    "daily_cap_bp",
    "target_price",
)


@dataclass(frozen=True)
class ParameterSet:
    small_threshold_bp: int = 50
    medium_threshold_bp: int = 200
    large_threshold_bp: int = 500
    extreme_threshold_bp: int = 1000
    small_rate_bp: int = 10
    medium_rate_bp: int = 25
    large_rate_bp: int = 50
    min_cooldown: int = 3600
    max_cooldown: int = 21600
    daily_cap_bp: int = 200
    target_price: int = PRICE_SCALE

    @property
    def thresholds(self) -> tuple[int, int, int, int]:
        return (
            self.small_threshold_bp,
            self.medium_threshold_bp,
            self.large_threshold_bp,
            self.extreme_threshold_bp,
        )

    @property
    def medium_cooldown(self) -> int:
        return (self.min_cooldown + self.max_cooldown) // 2

    def to_dict(self) -> dict[str, int]:
        return asdict(self)


def validate(params: ParameterSet) -> ParameterSet:
    """Check every rule; raise on the first violation."""
    for name in _FIELDS:
        value = getattr(params, name)
        if isinstance(value, bool) or not isinstance(value, int):
            raise ParameterValidationError(f"{name} must be an integer", field=name, value=value)

    small, medium, large, extreme = params.thresholds
    if small <= 0 or extreme > BPS:
        raise ThresholdOrderError(
            "thresholds must lie in (0, 10000]",
            thresholds=list(params.thresholds),
        )
    if not (small < medium < large < extreme):
        raise ThresholdOrderError(
            "thresholds must be strictly increasing: small < medium < large < extreme",
            thresholds=list(params.thresholds),
        )

    for name in ("small_rate_bp", "medium_rate_bp", "large_rate_bp"):
        value = getattr(params, name)
        if value < 0 or value > BPS:
            raise ParameterValidationError(f"{name} must be within [0, 10000]", field=name, value=value)

    if params.min_cooldown < 0:
        raise CooldownOrderError("min_cooldown must be >= 0", min_cooldown=params.min_cooldown)
    if params.min_cooldown > params.max_cooldown:
        raise CooldownOrderError(
            "min_cooldown must not exceed max_cooldown",
            min_cooldown=params.min_cooldown,
            max_cooldown=params.max_cooldown,
        )

    if params.daily_cap_bp < 0:
        raise ParameterValidationError("daily_cap_bp must be >= 0", daily_cap_bp=params.daily_cap_bp)
    if params.daily_cap_bp > MAX_DAILY_CAP_BP:
        raise DailyCapTooHighError(
            f"daily_cap_bp must not exceed {MAX_DAILY_CAP_BP}",
            daily_cap_bp=params.daily_cap_bp,
        )

    if params.target_price <= 0:
        raise ParameterValidationError("target_price must be > 0", target_price=params.target_price)
    return params


def from_config() -> ParameterSet:
    """Build the default parameter set from environment-backed config."""
    return validate(
        ParameterSet(
            small_threshold_bp=config.SMALL_THRESHOLD_BP,
            medium_threshold_bp=config.MEDIUM_THRESHOLD_BP,
            large_threshold_bp=config.LARGE_THRESHOLD_BP,
            extreme_threshold_bp=config.EXTREME_THRESHOLD_BP,
            small_rate_bp=config.SMALL_RATE_BP,
            medium_rate_bp=config.MEDIUM_RATE_BP,
            large_rate_bp=config.LARGE_RATE_BP,
            min_cooldown=config.MIN_COOLDOWN_SEC,
            max_cooldown=config.MAX_COOLDOWN_SEC,
            daily_cap_bp=config.DAILY_CAP_BP,
            target_price=config.PEG_TARGET_PRICE,
        )
    )


def from_dict(data: dict[str, Any], base: ParameterSet | None = None) -> ParameterSet:
    """
    Build a validated set from a (possibly partial) dict.

    Missing keys fall back to *base* (or the defaults); unknown keys are
    rejected so a typo never silently keeps the old value.
    """
    unknown = sorted(set(data) - set(_FIELDS))
    if unknown:
        raise ParameterValidationError(f"unknown parameter(s): {', '.join(unknown)}", unknown=unknown)
    updates: dict[str, int] = {}
    for name, raw in data.items():
        if isinstance(raw, bool) or (isinstance(raw, float) and not raw.is_integer()):
            raise ParameterValidationError(f"{name} must be an integer", field=name, value=raw)
        try:
            updates[name] = int(raw)
        except (TypeError, ValueError) as e:
            raise ParameterValidationError(f"{name} must be an integer", field=name, value=raw) from e
    return validate(replace(base or ParameterSet(), **updates))
