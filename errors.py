"""
errors.py -- Error taxonomy for the peg stabilizer.

Every error carries a `kind` so callers can tell apart:
  - "retry_later"         cooldown, reentrancy, stale feed: try again later
  - "needs_intervention"  halted, extreme deviation, daily limit: do not retry blindly
  - "fix_input"           malformed administrative input
  - "fatal"               arithmetic overflow, abort the invocation
"""

from __future__ import annotations

from typing import Any

RETRY_LATER = "retry_later"
NEEDS_INTERVENTION = "needs_intervention"
FIX_INPUT = "fix_input"
FATAL = "fatal"

UINT256_MAX = 2**256 - 1


class ControllerError(Exception):
    """Base class for every error raised by the controller core."""

    kind: str = NEEDS_INTERVENTION

    def __init__(self, message: str = "", **details: Any) -> None:
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__
        self.details: dict[str, Any] = dict(details)

    @property
    def retryable(self) -> bool:
        return self.kind == RETRY_LATER

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": self.__class__.__name__,
            "kind": self.kind,
            "message": self.message,
            "details": {k: _jsonable(v) for k, v in self.details.items()},
        }


def _jsonable(value: Any) -> Any:
    if isinstance(value, (str, int, float, bool)) or value is None:
        return value
    to_dict = getattr(value, "to_dict", None)
    if callable(to_dict):
        return to_dict()
    return str(value)


# ------------------ Rejections: try again later ------------------


class InCooldownError(ControllerError):
    kind = RETRY_LATER


class ReentrancyError(ControllerError):
    kind = RETRY_LATER


class StalePriceError(ControllerError):
    kind = RETRY_LATER


# ------------------ Rejections: needs intervention ------------------


class EmergencyHaltedError(ControllerError):
    kind = NEEDS_INTERVENTION


class ExtremeDeviationError(ControllerError):
    kind = NEEDS_INTERVENTION


class DailyLimitExceededError(ControllerError):
    kind = NEEDS_INTERVENTION


class UnauthorizedError(ControllerError):
    kind = NEEDS_INTERVENTION


class InvalidPriceError(ControllerError):
    kind = NEEDS_INTERVENTION


class CollateralUnavailableError(ControllerError):
    kind = NEEDS_INTERVENTION


class InsufficientBalanceError(ControllerError):
    kind = NEEDS_INTERVENTION


# ------------------ Validation: fix your input ------------------


class ParameterValidationError(ControllerError):
    kind = FIX_INPUT


class ThresholdOrderError(ParameterValidationError):
    pass


class CooldownOrderError(ParameterValidationError):
    pass


class DailyCapTooHighError(ParameterValidationError):
    pass


# ------------------ Fatal ------------------


class ArithmeticOverflowError(ControllerError):
    kind = FATAL


def checked_uint(value: int, what: str = "value") -> int:
    """Return *value* unchanged if it fits an unsigned 256-bit word, else raise."""
    if value < 0:
        raise ArithmeticOverflowError(f"{what} underflow", value=str(value))
    if value > UINT256_MAX:
        raise ArithmeticOverflowError(f"{what} overflow", value=str(value))
    return value
