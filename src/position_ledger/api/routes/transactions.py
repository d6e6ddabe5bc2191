"""Ledger write and read endpoints."""

from __future__ import annotations

from typing import List, Optional

from fastapi import APIRouter, Query, Request

from position_ledger.api.models import (
    ApiEnvelope,
    PositionPayload,
    TransactionCreatePayload,
    TransactionPayload,
    TransactionUpdatePayload,
)

router = APIRouter()


def _context(request: Request):
    return request.app.state.context


@router.post("", response_model=ApiEnvelope[PositionPayload])
def append_transaction(payload: TransactionCreatePayload, request: Request) -> ApiEnvelope[PositionPayload]:
    position = _context(request).ledger.append_transaction(payload.model_dump(exclude_none=True))
    return ApiEnvelope(data=PositionPayload.from_position(position), error=None)


@router.get("", response_model=ApiEnvelope[List[TransactionPayload]])
def list_transactions(
    request: Request,
    user_id: str = Query(...),
    asset: Optional[str] = Query(None),
) -> ApiEnvelope[List[TransactionPayload]]:
    transactions = _context(request).ledger.list_transactions(user_id, asset)
    return ApiEnvelope(data=[TransactionPayload.from_transaction(tx) for tx in transactions], error=None)


@router.patch("/{tx_id}", response_model=ApiEnvelope[PositionPayload])
def edit_transaction(
    tx_id: str, payload: TransactionUpdatePayload, request: Request
) -> ApiEnvelope[PositionPayload]:
    position = _context(request).ledger.edit_transaction(tx_id, payload.model_dump(exclude_unset=True))
    return ApiEnvelope(data=PositionPayload.from_position(position), error=None)


@router.delete("/{tx_id}", response_model=ApiEnvelope[PositionPayload])
def delete_transaction(tx_id: str, request: Request) -> ApiEnvelope[PositionPayload]:
    position = _context(request).ledger.delete_transaction(tx_id)
    return ApiEnvelope(data=PositionPayload.from_position(position), error=None)
