"""Portfolio roll-up endpoints."""

from __future__ import annotations

from typing import List

from fastapi import APIRouter, Request

from position_ledger.api.models import (
    ApiEnvelope,
    AssetSummaryPayload,
    PortfolioSummaryRequest,
    PortfolioTotalsPayload,
)
from position_ledger.ledger.models import PriceQuote
from position_ledger.ledger.portfolio import StaticPriceLookup

router = APIRouter()


def _context(request: Request):
    return request.app.state.context


def _price_lookup(payload: PortfolioSummaryRequest) -> StaticPriceLookup:
    return StaticPriceLookup(
        {
            symbol: PriceQuote(price=quote.price, change_24h=quote.change24h)
            for symbol, quote in payload.prices.items()
        }
    )


@router.post("/{user_id}/summary", response_model=ApiEnvelope[List[AssetSummaryPayload]])
def portfolio_summary(
    user_id: str, payload: PortfolioSummaryRequest, request: Request
) -> ApiEnvelope[List[AssetSummaryPayload]]:
    summaries = _context(request).ledger.portfolio_summary(user_id, _price_lookup(payload), payload.include_dust)
    return ApiEnvelope(data=[AssetSummaryPayload.from_summary(summary) for summary in summaries], error=None)


@router.post("/{user_id}/totals", response_model=ApiEnvelope[PortfolioTotalsPayload])
def portfolio_totals(
    user_id: str, payload: PortfolioSummaryRequest, request: Request
) -> ApiEnvelope[PortfolioTotalsPayload]:
    totals = _context(request).ledger.portfolio_totals(user_id, _price_lookup(payload))
    return ApiEnvelope(data=PortfolioTotalsPayload.from_totals(totals), error=None)
