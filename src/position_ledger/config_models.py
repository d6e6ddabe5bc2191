from __future__ import annotations

from dataclasses import dataclass, field

from position_ledger.ledger.models import NegativeHoldingsPolicy, ReentryPolicy


@dataclass
class LedgerConfig:
    db_path: str = "ledger.db"
    auto_migrate_schema: bool = True
    # A sell larger than the holdings either leaves a liability or is rejected
    negative_holdings: NegativeHoldingsPolicy = NegativeHoldingsPolicy.LIABILITY
    # A closed position either reopens or a new position cycle starts
    reentry: ReentryPolicy = ReentryPolicy.REOPEN
    include_dust: bool = False


@dataclass
class ApiConfig:
    enabled: bool = True
    host: str = "127.0.0.1"
    port: int = 8080
    base_path: str = "/"


@dataclass
class AppConfig:
    ledger: LedgerConfig = field(default_factory=LedgerConfig)
    api: ApiConfig = field(default_factory=ApiConfig)
    env: str = "dev"
