"""
stats_ledger.py -- Cumulative stabilization statistics.

Write-only from the controller's side, read-only for everybody else.
Totals only ever grow; the controller stages a new LedgerStats per
invocation and swaps it in together with the runtime state.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, replace
from typing import Any

from errors import checked_uint


@dataclass(frozen=True)
class LedgerStats:
    total_minted: int = 0
    total_burned: int = 0
    action_count: int = 0
    last_adjustment_amount: int = 0

    def to_dict(self) -> dict[str, int]:
        return asdict(self)


def record_mint(stats: LedgerStats, amount: int) -> LedgerStats:
    return replace(
        stats,
        total_minted=checked_uint(stats.total_minted + checked_uint(amount, "mint amount"), "total minted"),
        last_adjustment_amount=amount,
    )


def record_burn(stats: LedgerStats, amount: int) -> LedgerStats:
    return replace(
        stats,
        total_burned=checked_uint(stats.total_burned + checked_uint(amount, "burn amount"), "total burned"),
        last_adjustment_amount=amount,
    )


def record_action(stats: LedgerStats) -> LedgerStats:
    return replace(stats, action_count=checked_uint(stats.action_count + 1, "action count"))


def net_supply_change(stats: LedgerStats) -> int:
    return stats.total_minted - stats.total_burned


def from_dict(data: dict[str, Any]) -> LedgerStats:
    return LedgerStats(
        total_minted=int(data.get("total_minted", 0)),
        total_burned=int(data.get("total_burned", 0)),
        action_count=int(data.get("action_count", 0)),
        last_adjustment_amount=int(data.get("last_adjustment_amount", 0)),
    )
