"""Display-time portfolio roll-up.

Positions are keyed by asset symbol, but the portfolio view groups
transactions by their ``group`` label so that wrapped or bridged variants of
one asset (``WETH`` next to ``ETH``) show up as a single row. The roll-up uses
the same weighted-average-cost rule as stored positions and never writes
anything back.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Union

from position_ledger.logging_config import structured_log_extra

from .models import AssetSummary, PortfolioTotals, PriceQuote, Transaction
from .recalculator import sort_chronologically
from .wac import DISPLAY_DUST_EPSILON, CostBasis, apply_fill, is_approximately_zero

logger = logging.getLogger(__name__)

QuoteLike = Union[PriceQuote, Mapping[str, Any], float, int, None]
PriceLookup = Callable[[str], QuoteLike]


def coerce_quote(value: QuoteLike) -> Optional[PriceQuote]:
    """Accept a :class:`PriceQuote`, a ``{price, change24h}`` mapping or a bare number."""

    if value is None:
        return None
    if isinstance(value, PriceQuote):
        return value
    if isinstance(value, Mapping):
        price = value.get("price")
        change = value.get("change24h", value.get("change_24h"))
        return PriceQuote(price=float(price or 0.0), change_24h=float(change or 0.0))
    return PriceQuote(price=float(value))


class StaticPriceLookup:
    """Price lookup backed by a fixed symbol -> quote mapping."""

    def __init__(self, quotes: Optional[Mapping[str, QuoteLike]] = None):
        self._quotes: Dict[str, PriceQuote] = {}
        for symbol, quote in (quotes or {}).items():
            coerced = coerce_quote(quote)
            if coerced is not None:
                self._quotes[symbol.upper()] = coerced

    def __call__(self, symbol: str) -> Optional[PriceQuote]:
        return self._quotes.get(symbol.upper())


def _resolve_quote(price_lookup: PriceLookup, symbol: str, assets: List[str]) -> Optional[PriceQuote]:
    # Group label first, then the underlying assets in the order they were traded.
    candidates = [symbol] + [asset for asset in assets if asset != symbol]
    for candidate in candidates:
        try:
            quote = coerce_quote(price_lookup(candidate))
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "Price lookup failed for %s: %s",
                candidate,
                exc,
                extra=structured_log_extra(event="price_lookup_failed", asset=candidate),
            )
            continue
        if quote is not None and quote.price > 0:
            return quote
    return None


def aggregate_portfolio(
    transactions: Iterable[Transaction],
    price_lookup: PriceLookup,
    include_dust: bool = False,
    dust_epsilon: float = DISPLAY_DUST_EPSILON,
) -> List[AssetSummary]:
    """Roll a user's transactions up into one :class:`AssetSummary` per group.

    Holdings within ``dust_epsilon`` of zero are dropped unless
    ``include_dust`` is set. Negative holdings are kept and reported as
    liabilities. Rows are ordered by current value, largest first.
    """

    groups: Dict[str, List[Transaction]] = {}
    for tx in transactions:
        tx.validate()
        groups.setdefault(tx.group_key, []).append(tx)

    summaries: List[AssetSummary] = []
    for symbol, group_txs in groups.items():
        ordered = sort_chronologically(group_txs)
        basis = CostBasis()
        realized_pnl = 0.0
        for tx in ordered:
            basis, realized = apply_fill(basis, tx.type, tx.amount, tx.cost_price)
            realized_pnl += realized

        if not include_dust and is_approximately_zero(basis.size, dust_epsilon):
            continue

        assets: List[str] = []
        for tx in ordered:
            if tx.asset not in assets:
                assets.append(tx.asset)

        quote = _resolve_quote(price_lookup, symbol, assets)
        price = quote.price if quote else 0.0
        current_value = basis.size * price
        unrealized = current_value - basis.total_cost
        pnl_percent = unrealized / basis.total_cost * 100 if basis.total_cost > 0 else 0.0

        summaries.append(
            AssetSummary(
                symbol=symbol,
                assets=assets,
                holdings=basis.size,
                total_cost=basis.total_cost,
                avg_buy_price=basis.avg_entry_price,
                price=price,
                change_24h=quote.change_24h if quote else 0.0,
                current_value=current_value,
                unrealized_pnl=unrealized,
                pnl_percent=pnl_percent,
                transaction_count=len(ordered),
                realized_pnl=realized_pnl,
            )
        )

    summaries.sort(key=lambda summary: (-summary.current_value, summary.symbol))
    return summaries


def portfolio_totals(transactions: Iterable[Transaction], price_lookup: PriceLookup) -> PortfolioTotals:
    """Sum realized and unrealized PnL over every group.

    Fully closed groups are included so that their realized PnL still counts.
    """

    totals = PortfolioTotals()
    for summary in aggregate_portfolio(transactions, price_lookup, include_dust=True):
        totals.realized_pnl += summary.realized_pnl
        totals.unrealized_pnl += summary.unrealized_pnl
        totals.total_cost += summary.total_cost
        totals.current_value += summary.current_value
    return totals
