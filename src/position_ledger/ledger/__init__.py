"""Transaction ledger and derived positions.

Transactions are the source of truth; :class:`Position` documents are derived
from them with weighted-average-cost accounting, either incrementally via
:func:`~position_ledger.ledger.aggregator.apply_transaction` or by replaying
the whole ledger via :func:`~position_ledger.ledger.recalculator.recalculate`.
:class:`LedgerService` wires both to a
:class:`~position_ledger.ledger.store.DocumentStore`.
"""

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .service import LedgerService

__all__ = ["LedgerService"]


def __getattr__(name):  # pragma: no cover - lightweight lazy import helper
    if name == "LedgerService":
        from .service import LedgerService

        return LedgerService
    raise AttributeError(name)
