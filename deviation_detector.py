"""
deviation_detector.py -- Peg deviation measurement and response-level ladder.

Pure computation, no side effects:
  - adjusted target = nominal target scaled by the reference asset's price
  - deviation in basis points against the adjusted target
  - strict threshold ladder, evaluated from the top, inclusive bounds

`measure()` is the committing-path entry: it refuses stale feeds and hard
stops on EXTREME.  `read_deviation()` only classifies and is what previews
and status views use.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import IntEnum
from typing import Any

from errors import ExtremeDeviationError, InvalidPriceError, StalePriceError
from parameters import BPS, PRICE_SCALE, ParameterSet


class ResponseLevel(IntEnum):
    NONE = 0
    SMALL = 1
    MEDIUM = 2
    LARGE = 3
    EXTREME = 4


@dataclass(frozen=True)
class DeviationReading:
    current_price: int
    reference_price: int
    adjusted_target: int
    direction: int  # +1 above target (mint), -1 below (burn), 0 on target
    deviation_bp: int
    level: ResponseLevel

    @property
    def above_target(self) -> bool:
        return self.direction > 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "current_price": self.current_price,
            "reference_price": self.reference_price,
            "adjusted_target": self.adjusted_target,
            "direction": self.direction,
            "deviation_bp": self.deviation_bp,
            "level": self.level.name,
        }


def adjusted_target(target_price: int, reference_price: int) -> int:
    return target_price * reference_price // PRICE_SCALE


def deviation_bp(market_price: int, target: int) -> tuple[int, int]:
    """Return (magnitude in bp, direction)."""
    diff = market_price - target
    direction = (diff > 0) - (diff < 0)
    return abs(diff) * BPS // target, direction


def classify(dev_bp: int, params: ParameterSet) -> ResponseLevel:
    if dev_bp >= params.extreme_threshold_bp:
        return ResponseLevel.EXTREME
    if dev_bp >= params.large_threshold_bp:
        return ResponseLevel.LARGE
    if dev_bp >= params.medium_threshold_bp:
        return ResponseLevel.MEDIUM
    if dev_bp >= params.small_threshold_bp:
        return ResponseLevel.SMALL
    return ResponseLevel.NONE


def read_deviation(
    market_price: int,
    market_valid: bool,
    reference_price: int,
    params: ParameterSet,
) -> DeviationReading:
    """Classify without the extreme hard stop.  Stale feeds still raise."""
    if not market_valid:
        raise StalePriceError("market price feed reported invalid/stale data", price=market_price)
    if market_price <= 0:
        raise InvalidPriceError("market price must be positive", price=market_price)
    if reference_price <= 0:
        raise InvalidPriceError("reference price must be positive", price=reference_price)

    target = adjusted_target(params.target_price, reference_price)
    if target <= 0:
        raise InvalidPriceError(
            "adjusted target rounds to zero",
            target_price=params.target_price,
            reference_price=reference_price,
        )
    dev, direction = deviation_bp(market_price, target)
    return DeviationReading(
        current_price=market_price,
        reference_price=reference_price,
        adjusted_target=target,
        direction=direction,
        deviation_bp=dev,
        level=classify(dev, params),
    )


def measure(
    market_price: int,
    market_valid: bool,
    reference_price: int,
    params: ParameterSet,
) -> DeviationReading:
    reading = read_deviation(market_price, market_valid, reference_price, params)
    if reading.level == ResponseLevel.EXTREME:
        raise ExtremeDeviationError(
            f"deviation {reading.deviation_bp} bp at or beyond extreme threshold "
            f"{params.extreme_threshold_bp} bp",
            reading=reading,
        )
    return reading
