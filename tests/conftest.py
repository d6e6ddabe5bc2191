"""Shared fixtures for ledger tests."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from itertools import count

import pytest

from position_ledger.config_models import LedgerConfig
from position_ledger.ledger.models import Transaction
from position_ledger.ledger.service import LedgerService
from position_ledger.ledger.store import InMemoryDocumentStore

START = datetime(2024, 1, 1, tzinfo=timezone.utc)


class StepClock:
    """Clock that moves forward one second on every call."""

    def __init__(self, start: datetime = START):
        self._start = start
        self._ticks = count()

    def __call__(self) -> datetime:
        return self._start + timedelta(seconds=next(self._ticks))


@pytest.fixture
def clock() -> StepClock:
    return StepClock()


@pytest.fixture
def store() -> InMemoryDocumentStore:
    return InMemoryDocumentStore()


@pytest.fixture
def ledger_config() -> LedgerConfig:
    return LedgerConfig()


@pytest.fixture
def service(store, ledger_config, clock) -> LedgerService:
    return LedgerService(store, ledger_config, clock=clock)


@pytest.fixture
def make_tx():
    """Factory for transactions with unique ids and increasing creation times."""

    sequence = count(1)

    def _make(
        type: str = "buy",
        amount: float = 1.0,
        price: float | None = 10000.0,
        date: str = "2024-01-01",
        user_id: str = "alice",
        asset: str = "BTC",
        **kwargs,
    ) -> Transaction:
        n = next(sequence)
        kwargs.setdefault("id", f"tx{n:03d}")
        kwargs.setdefault("created_at", (START + timedelta(minutes=n)).isoformat())
        return Transaction(
            user_id=user_id,
            asset=asset,
            type=type,
            amount=amount,
            price=price,
            date=date,
            **kwargs,
        )

    return _make
