"""Full-history replay of a (user, asset) ledger.

The recalculator is the authoritative path: it ignores whatever a stored
position says and rebuilds it by folding every transaction in chronological
order through :func:`apply_transaction`. Running it twice over the same input
yields identical positions.
"""

from __future__ import annotations

from datetime import date, datetime, timezone
from typing import Iterable, List, Optional, Tuple

from .aggregator import apply_transaction
from .exceptions import ValidationError
from .models import (
    NegativeHoldingsPolicy,
    Position,
    Transaction,
    TransactionType,
    parse_timestamp,
    parse_trade_date,
)

_MIN_TIMESTAMP = datetime.min.replace(tzinfo=timezone.utc)


def chronological_key(tx: Transaction) -> Tuple[date, datetime, int, str]:
    """Sort key: trade day, then creation time, then buys before sells, then id."""
    return (
        parse_trade_date(tx.date) or date.min,
        parse_timestamp(tx.created_at) or _MIN_TIMESTAMP,
        0 if tx.type is TransactionType.BUY else 1,
        tx.id or "",
    )


def sort_chronologically(transactions: Iterable[Transaction]) -> List[Transaction]:
    return sorted(transactions, key=chronological_key)


def _ordered_for(user_id: str, asset: str, transactions: Iterable[Transaction]) -> List[Transaction]:
    ordered = sort_chronologically(transactions)
    for tx in ordered:
        if tx.key != (user_id, asset):
            raise ValidationError(
                f"Transaction {tx.id} belongs to {tx.user_id}/{tx.asset}, not {user_id}/{asset}",
                field="asset",
            )
    return ordered


def recalculate(
    user_id: str,
    asset: str,
    transactions: Iterable[Transaction],
    negative_holdings: NegativeHoldingsPolicy = NegativeHoldingsPolicy.LIABILITY,
) -> Position:
    """Rebuild one continuous position from the complete ledger of ``(user_id, asset)``.

    With no transactions the canonical closed, zeroed position is returned.
    The resulting ``transaction_ids`` list is replaced by the ids of the
    ledger in replay order, which heals any drift in a stored position.
    """

    asset = asset.upper()
    ordered = _ordered_for(user_id, asset, transactions)
    if not ordered:
        return Position.empty(user_id, asset)

    position: Optional[Position] = None
    for tx in ordered:
        position = apply_transaction(position, tx, negative_holdings)

    position.transaction_ids = [tx.id for tx in ordered if tx.id is not None]
    return position


def replay_cycles(
    user_id: str,
    asset: str,
    transactions: Iterable[Transaction],
    negative_holdings: NegativeHoldingsPolicy = NegativeHoldingsPolicy.LIABILITY,
) -> List[Position]:
    """Rebuild the ledger as one position per open/close cycle.

    A new cycle starts with the first transaction that arrives after the
    previous cycle closed. An empty ledger yields an empty list.
    """

    asset = asset.upper()
    cycles: List[Position] = []
    position: Optional[Position] = None
    for tx in _ordered_for(user_id, asset, transactions):
        if position is not None and not position.is_open:
            cycles.append(position)
            position = None
        position = apply_transaction(position, tx, negative_holdings)

    if position is not None:
        cycles.append(position)
    return cycles
