"""Shared fixtures for FastAPI route tests."""

from __future__ import annotations

import pytest
from starlette.testclient import TestClient

from position_ledger.api.api import create_api
from position_ledger.api.context import AppContext
from position_ledger.config import ApiConfig, AppConfig, LedgerConfig
from position_ledger.ledger.service import LedgerService


@pytest.fixture
def app_config() -> AppConfig:
    return AppConfig(ledger=LedgerConfig(), api=ApiConfig(base_path="/"), env="test")


@pytest.fixture
def ledger(store, app_config, clock) -> LedgerService:
    return LedgerService(store, app_config.ledger, clock=clock)


@pytest.fixture
def client(app_config, ledger) -> TestClient:
    context = AppContext(config=app_config, ledger=ledger)
    return TestClient(create_api(context))


@pytest.fixture
def tx_body():
    def _body(**overrides):
        body = {
            "userId": "alice",
            "asset": "BTC",
            "type": "buy",
            "amount": 1.0,
            "price": 10000.0,
            "date": "2024-01-01",
        }
        body.update(overrides)
        return body

    return _body
