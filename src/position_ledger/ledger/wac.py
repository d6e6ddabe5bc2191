"""Weighted-average-cost arithmetic shared by every ledger component.

The incremental aggregator, the full-history recalculator and the display-time
portfolio roll-up all go through :func:`apply_fill`. Every unit held shares one
blended entry price; buys re-blend it and sells leave it untouched.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Tuple

from .models import TransactionType

# Quantities closer to zero than this are treated as exactly zero.
DUST_EPSILON = 1e-8
# Display-time threshold below which a holding is hidden as dust.
DISPLAY_DUST_EPSILON = 1e-6


def is_approximately_zero(value: float, epsilon: float = DUST_EPSILON) -> bool:
    return abs(value) < epsilon


@dataclass(frozen=True)
class CostBasis:
    size: float = 0.0
    total_cost: float = 0.0
    avg_entry_price: float = 0.0

    @property
    def is_flat(self) -> bool:
        return self.size == 0.0


def apply_fill(basis: CostBasis, side: TransactionType, amount: float, price: float) -> Tuple[CostBasis, float]:
    """Apply one fill and return the new basis with the PnL it realized.

    ``price`` must already have a missing value replaced by zero. A size that
    lands within :data:`DUST_EPSILON` of zero snaps the whole basis to zero.
    """

    if side is TransactionType.BUY:
        total_cost = basis.total_cost + amount * price
        size = basis.size + amount
        avg_entry_price = total_cost / size if size > 0 else 0.0
        realized = 0.0
    else:
        avg_entry_price = basis.avg_entry_price
        total_cost = basis.total_cost - amount * avg_entry_price
        size = basis.size - amount
        realized = amount * (price - avg_entry_price)

    if is_approximately_zero(size):
        return CostBasis(), realized
    return CostBasis(size=size, total_cost=total_cost, avg_entry_price=avg_entry_price), realized
