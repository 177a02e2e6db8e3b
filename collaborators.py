"""
collaborators.py -- External collaborator interfaces and in-memory stand-ins.

The controller never talks to a chain, an exchange, or a custody system
directly.  It consumes these protocols:

  MarketOracle     get_price() -> (fixed8 price, valid flag)
  ReferenceOracle  latest_answer() -> fixed8 price
  TokenLedger      mint / burn / total_supply
  Treasury         optional collateral gate for mints and burn source

The in-memory implementations back dry runs, backtests, and tests.
"""

from __future__ import annotations

import logging
from typing import Protocol

from errors import InsufficientBalanceError, checked_uint

logger = logging.getLogger(__name__)


class MarketOracle(Protocol):
    def get_price(self) -> tuple[int, bool]: ...


class ReferenceOracle(Protocol):
    def latest_answer(self) -> int: ...


class TokenLedger(Protocol):
    def mint(self, recipient: str, amount: int) -> None: ...

    def burn(self, source: str, amount: int) -> None: ...

    def total_supply(self) -> int: ...


class Treasury(Protocol):
    address: str

    def has_available_collateral(self, amount: int) -> bool: ...

    def request_collateral_backing(self, amount: int) -> bool: ...


# ------------------ In-memory implementations ------------------


class StaticMarketOracle:
    def __init__(self, price: int, valid: bool = True) -> None:
        self.price = int(price)
        self.valid = bool(valid)

    def set(self, price: int, valid: bool = True) -> None:
        self.price = int(price)
        self.valid = bool(valid)

    def get_price(self) -> tuple[int, bool]:
        return self.price, self.valid


class StaticReferenceOracle:
    def __init__(self, price: int = 100_000_000) -> None:
        self.price = int(price)

    def set(self, price: int) -> None:
        self.price = int(price)

    def latest_answer(self) -> int:
        return self.price


class InMemoryTokenLedger:
    def __init__(self, balances: dict[str, int] | None = None) -> None:
        self.balances: dict[str, int] = {k: int(v) for k, v in (balances or {}).items()}
        self._supply = sum(self.balances.values())

    def mint(self, recipient: str, amount: int) -> None:
        amount = checked_uint(int(amount), "mint amount")
        self._supply = checked_uint(self._supply + amount, "total supply")
        self.balances[recipient] = self.balances.get(recipient, 0) + amount
        logger.debug("Ledger mint %d -> %s", amount, recipient)

    def burn(self, source: str, amount: int) -> None:
        amount = checked_uint(int(amount), "burn amount")
        held = self.balances.get(source, 0)
        if held < amount:
            raise InsufficientBalanceError(
                f"{source} holds {held}, cannot burn {amount}",
                source=source,
                balance=held,
                amount=amount,
            )
        self.balances[source] = held - amount
        self._supply -= amount
        logger.debug("Ledger burn %d <- %s", amount, source)

    def total_supply(self) -> int:
        return self._supply

    def balance_of(self, holder: str) -> int:
        return self.balances.get(holder, 0)


class InMemoryTreasury:
    """Collateral pool that backs mints one-for-one in token units."""

    def __init__(self, address: str = "treasury", collateral: int = 0) -> None:
        self.address = address
        self.collateral = int(collateral)
        self.backed_total = 0

    def has_available_collateral(self, amount: int) -> bool:
        return self.collateral >= amount

    def request_collateral_backing(self, amount: int) -> bool:
        if self.collateral < amount:
            return False
        self.collateral -= amount
        self.backed_total += amount
        return True
