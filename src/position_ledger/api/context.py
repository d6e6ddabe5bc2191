"""API application context helpers."""

from dataclasses import dataclass
from typing import Optional

from position_ledger.config import AppConfig, load_config
from position_ledger.ledger.service import LedgerService
from position_ledger.ledger.store import SQLiteDocumentStore


@dataclass
class AppContext:
    """Configuration and the ledger service shared by every request."""

    config: AppConfig
    ledger: LedgerService


def build_app_context(config: Optional[AppConfig] = None) -> AppContext:
    """Open the configured SQLite ledger and wrap it in a :class:`LedgerService`."""

    config = config or load_config()
    store = SQLiteDocumentStore(
        db_path=config.ledger.db_path,
        auto_migrate=config.ledger.auto_migrate_schema,
    )
    return AppContext(config=config, ledger=LedgerService(store, config.ledger))


__all__ = ["AppContext", "build_app_context"]
