"""Position lookup and repair endpoints."""

from __future__ import annotations

from typing import List, Optional

from fastapi import APIRouter, Request

from position_ledger.api.models import ApiEnvelope, PositionPayload

router = APIRouter()


def _context(request: Request):
    return request.app.state.context


@router.get("/{user_id}/{asset}", response_model=ApiEnvelope[Optional[PositionPayload]])
def get_open_position(user_id: str, asset: str, request: Request) -> ApiEnvelope[Optional[PositionPayload]]:
    position = _context(request).ledger.get_open_position(user_id, asset)
    data = PositionPayload.from_position(position) if position is not None else None
    return ApiEnvelope(data=data, error=None)


@router.post("/{user_id}/{asset}/recalculate", response_model=ApiEnvelope[PositionPayload])
def recalculate_position(user_id: str, asset: str, request: Request) -> ApiEnvelope[PositionPayload]:
    position = _context(request).ledger.recalculate_position(user_id, asset)
    return ApiEnvelope(data=PositionPayload.from_position(position), error=None)


@router.post("/{user_id}/rebuild", response_model=ApiEnvelope[List[PositionPayload]])
def rebuild_positions(user_id: str, request: Request) -> ApiEnvelope[List[PositionPayload]]:
    positions = _context(request).ledger.rebuild_positions(user_id)
    return ApiEnvelope(data=[PositionPayload.from_position(position) for position in positions], error=None)
