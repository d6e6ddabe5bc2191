"""Incremental position updates.

:func:`apply_transaction` folds exactly one transaction into a position using
the weighted-average-cost rule from :mod:`position_ledger.ledger.wac`. It is a
pure function: the input position is never mutated, and the caller decides how
to persist the returned copy.
"""

from __future__ import annotations

import logging
import math
from dataclasses import replace
from typing import Optional

from position_ledger.logging_config import structured_log_extra

from .exceptions import ConsistencyError, ValidationError
from .models import NegativeHoldingsPolicy, Position, PositionStatus, Transaction, TransactionType
from .wac import DUST_EPSILON, CostBasis, apply_fill

logger = logging.getLogger(__name__)


def _seed_position(tx: Transaction) -> Position:
    return Position(
        user_id=tx.user_id,
        asset=tx.asset,
        chain=tx.chain,
        status=PositionStatus.OPEN,
        created_at=tx.created_at or tx.timestamp,
        main_thesis=tx.memo or None,
    )


def apply_transaction(
    position: Optional[Position],
    tx: Transaction,
    negative_holdings: NegativeHoldingsPolicy = NegativeHoldingsPolicy.LIABILITY,
) -> Position:
    """Return ``position`` updated with ``tx``.

    A ``None`` position is initialized from the transaction. Raises
    :class:`ValidationError` before touching anything when the transaction is
    malformed, and :class:`ConsistencyError` when the result breaks an
    invariant under the given ``negative_holdings`` policy.
    """

    tx.validate()
    if position is None:
        position = _seed_position(tx)
    elif position.key != tx.key:
        raise ValidationError(
            f"Transaction for {tx.user_id}/{tx.asset} cannot be applied to position "
            f"{position.user_id}/{position.asset}",
            field="asset",
        )

    basis = CostBasis(
        size=position.current_size,
        total_cost=position.total_cost,
        avg_entry_price=position.avg_entry_price,
    )
    new_basis, realized = apply_fill(basis, tx.type, tx.amount, tx.cost_price)

    transaction_ids = list(position.transaction_ids)
    if tx.id is not None and tx.id not in transaction_ids:
        transaction_ids.append(tx.id)

    if new_basis.is_flat:
        status = PositionStatus.CLOSED
        closed_at = tx.event_time
    else:
        status = PositionStatus.OPEN
        closed_at = None

    updated = replace(
        position,
        current_size=new_basis.size,
        total_cost=new_basis.total_cost,
        avg_entry_price=new_basis.avg_entry_price,
        total_buy_amount=position.total_buy_amount + (tx.amount if tx.type is TransactionType.BUY else 0.0),
        realized_pnl_abs=position.realized_pnl_abs + realized,
        status=status,
        closed_at=closed_at,
        transaction_ids=transaction_ids,
    )
    check_invariants(updated, negative_holdings)
    return updated


def check_invariants(
    position: Position,
    negative_holdings: NegativeHoldingsPolicy = NegativeHoldingsPolicy.LIABILITY,
) -> None:
    """Raise :class:`ConsistencyError` if ``position`` is numerically impossible."""

    numbers = {
        "current_size": position.current_size,
        "total_cost": position.total_cost,
        "avg_entry_price": position.avg_entry_price,
        "total_buy_amount": position.total_buy_amount,
        "realized_pnl_abs": position.realized_pnl_abs,
    }

    problem = None
    if not all(math.isfinite(value) for value in numbers.values()):
        problem = "Position contains a non-finite value"
    elif position.current_size < -DUST_EPSILON and negative_holdings is NegativeHoldingsPolicy.REJECT:
        problem = "Sell exceeds recorded holdings"
    elif position.current_size > 0 and position.total_cost < -DUST_EPSILON:
        problem = "Open position has a negative cost basis"
    elif position.avg_entry_price < 0:
        problem = "Average entry price is negative"
    elif position.total_buy_amount < 0:
        problem = "Lifetime buy amount is negative"
    elif position.status is PositionStatus.CLOSED and (position.current_size != 0 or position.total_cost != 0):
        problem = "Closed position still carries size or cost"

    if problem is None:
        return

    logger.warning(
        problem,
        extra=structured_log_extra(
            event="position_invariant_violation",
            user_id=position.user_id,
            asset=position.asset,
            position_id=position.id,
            **numbers,
        ),
    )
    raise ConsistencyError(problem, details=dict(numbers, user_id=position.user_id, asset=position.asset))
