# src/position_ledger/ledger/service.py

import logging
import uuid
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Tuple, Union

from position_ledger.config_models import LedgerConfig
from position_ledger.logging_config import structured_log_extra

from .aggregator import apply_transaction
from .exceptions import NotFoundError, ValidationError
from .locks import KeyedLockRegistry
from .models import (
    POSITIONS_COLLECTION,
    TRANSACTIONS_COLLECTION,
    AssetSummary,
    PortfolioTotals,
    Position,
    ReentryPolicy,
    Transaction,
    normalize_transaction_document,
)
from .portfolio import PriceLookup, aggregate_portfolio, portfolio_totals
from .recalculator import chronological_key, recalculate, replay_cycles, sort_chronologically
from .store import DocumentStore

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]

# Fields a caller may not rewrite through edit_transaction.
_IMMUTABLE_FIELDS = ("id", "userId", "createdAt", "positionId", "entryIndex", "schemaVersion")


def position_id_for(user_id: str, asset: str, cycle: int = 1) -> str:
    return f"{user_id}:{asset}:{cycle}"


def _cycle_number(position: Position) -> int:
    try:
        return int(str(position.id).rsplit(":", 1)[1])
    except (IndexError, ValueError):
        return 0


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class LedgerService:
    """
    Owns the (user, asset) critical sections and the read-modify-write cycle
    between the transaction ledger and the derived position documents.
    """

    def __init__(
        self,
        store: DocumentStore,
        config: Optional[LedgerConfig] = None,
        clock: Optional[Clock] = None,
    ):
        self.store = store
        self.config = config or LedgerConfig()
        self._clock = clock or _utc_now
        self._locks = KeyedLockRegistry()

    @property
    def negative_holdings(self):
        return self.config.negative_holdings

    @property
    def reentry(self):
        return self.config.reentry

    def _now(self) -> str:
        return self._clock().isoformat()

    # ------------------------------------------------------------------ reads

    def _load_transactions(self, user_id: str, asset: Optional[str] = None) -> List[Transaction]:
        filters: Dict[str, Any] = {"userId": user_id}
        if asset is not None:
            filters["asset"] = asset
        docs = self.store.query(TRANSACTIONS_COLLECTION, filters)
        return [Transaction.from_document(doc, doc.get("id")) for doc in docs]

    def _load_positions(self, user_id: str, asset: Optional[str] = None) -> List[Position]:
        filters: Dict[str, Any] = {"userId": user_id}
        if asset is not None:
            filters["asset"] = asset
        docs = self.store.query(POSITIONS_COLLECTION, filters)
        positions = [Position.from_document(doc, doc.get("id")) for doc in docs]
        positions.sort(key=lambda position: (position.asset, _cycle_number(position)))
        return positions

    def list_transactions(self, user_id: str, asset: Optional[str] = None) -> List[Transaction]:
        """Return the ledger of a user, optionally for one asset, in replay order."""
        return sort_chronologically(self._load_transactions(user_id, asset.upper() if asset else None))

    def get_transaction(self, tx_id: str) -> Transaction:
        doc = self.store.get(TRANSACTIONS_COLLECTION, tx_id)
        if doc is None:
            raise NotFoundError(TRANSACTIONS_COLLECTION, tx_id)
        return Transaction.from_document(doc, tx_id)

    def get_position(self, position_id: str) -> Position:
        doc = self.store.get(POSITIONS_COLLECTION, position_id)
        if doc is None:
            raise NotFoundError(POSITIONS_COLLECTION, position_id)
        return Position.from_document(doc, position_id)

    def get_positions(self, user_id: str, asset: Optional[str] = None) -> List[Position]:
        return self._load_positions(user_id, asset.upper() if asset else None)

    def get_open_position(self, user_id: str, asset: str) -> Optional[Position]:
        """The open position for (user, asset), or ``None`` when it is flat."""
        open_positions = [
            position for position in self._load_positions(user_id, asset.upper()) if position.is_open
        ]
        return open_positions[-1] if open_positions else None

    # ----------------------------------------------------------------- append

    def _current_cycle(self, user_id: str, asset: str) -> Tuple[str, Optional[Position], Optional[Position]]:
        """Pick the position document the next transaction lands in.

        Returns the target id, the position to fold into (``None`` when the
        target has no history yet) and the latest position that has history,
        which is what a new transaction must not sort before.
        """
        if self.reentry is ReentryPolicy.REOPEN:
            target_id = position_id_for(user_id, asset)
            doc = self.store.get(POSITIONS_COLLECTION, target_id)
            seed = Position.from_document(doc, target_id) if doc is not None else None
            if seed is None or not seed.transaction_ids:
                return target_id, None, None
            return target_id, seed, seed

        # Zeroed cycles left behind by a recalculation do not count.
        active = [position for position in self._load_positions(user_id, asset) if position.transaction_ids]
        if not active:
            return position_id_for(user_id, asset), None, None

        latest = active[-1]
        cycle = max(_cycle_number(latest), 1)
        if latest.is_open:
            return position_id_for(user_id, asset, cycle), latest, latest
        return position_id_for(user_id, asset, cycle + 1), None, latest

    def _stamp(self, tx: Transaction) -> Transaction:
        now = self._now()
        return replace(
            tx,
            id=tx.id or uuid.uuid4().hex,
            created_at=tx.created_at or now,
            timestamp=tx.timestamp or now,
        )

    def append_transaction(self, tx: Union[Transaction, Mapping[str, Any]]) -> Position:
        """Record a new transaction and fold it into its position.

        Validation happens before anything is written. The transaction document
        is written first and the position second; if the second write fails,
        ``recalculate_position`` restores the position from the ledger.
        """
        if isinstance(tx, Mapping):
            tx = Transaction.from_document(tx)
        tx.validate()
        tx = self._stamp(tx)

        with self._locks.hold(tx.key):
            if self.store.get(TRANSACTIONS_COLLECTION, tx.id) is not None:
                raise ValidationError(f"Transaction {tx.id} already exists", field="id")

            target_id, seed, latest = self._current_cycle(tx.user_id, tx.asset)
            entry_index = len(seed.transaction_ids) + 1 if seed is not None else 1
            tx = replace(tx, position_id=target_id, entry_index=entry_index)

            if latest is not None and self._is_backdated(tx, latest):
                return self._append_backdated(tx)

            position = apply_transaction(seed, tx, self.negative_holdings)
            position.id = target_id
            position.updated_at = self._now()

            if seed is not None and self.store.get(POSITIONS_COLLECTION, target_id) is None:
                # Someone removed the position between the read and this write.
                raise NotFoundError(POSITIONS_COLLECTION, target_id)

            self.store.set(TRANSACTIONS_COLLECTION, tx.id, tx.to_document())
            self.store.set(POSITIONS_COLLECTION, target_id, position.to_document())

        logger.info(
            "Transaction appended",
            extra=structured_log_extra(
                event="transaction_appended",
                user_id=tx.user_id,
                asset=tx.asset,
                position_id=target_id,
                transaction_id=tx.id,
                side=tx.type.value,
                amount=tx.amount,
                current_size=position.current_size,
                status=position.status.value,
            ),
        )
        return position

    def _is_backdated(self, tx: Transaction, latest: Position) -> bool:
        last_id = latest.transaction_ids[-1]
        last_doc = self.store.get(TRANSACTIONS_COLLECTION, last_id)
        if last_doc is None:
            return False
        last_tx = Transaction.from_document(last_doc, last_id)
        return chronological_key(tx) < chronological_key(last_tx)

    def _append_backdated(self, tx: Transaction) -> Position:
        # History that sorts after this transaction is refolded from scratch.
        prospective = self._load_transactions(tx.user_id, tx.asset) + [tx]
        for position in self._replay(tx.user_id, tx.asset, prospective):
            if tx.id in position.transaction_ids:
                tx = replace(tx, position_id=position.id, entry_index=position.transaction_ids.index(tx.id) + 1)
                break
        self.store.set(TRANSACTIONS_COLLECTION, tx.id, tx.to_document())
        logger.info(
            "Back-dated transaction triggered a full recalculation",
            extra=structured_log_extra(
                event="transaction_backdated",
                user_id=tx.user_id,
                asset=tx.asset,
                transaction_id=tx.id,
            ),
        )
        return self._recalculate_locked(tx.user_id, tx.asset)

    # ---------------------------------------------------------- recalculation

    def _replay(self, user_id: str, asset: str, transactions: Iterable[Transaction]) -> List[Position]:
        """Fold a ledger into its position cycles without writing anything."""
        if self.reentry is ReentryPolicy.NEW_POSITION:
            cycles = replay_cycles(user_id, asset, transactions, self.negative_holdings)
        else:
            transactions = list(transactions)
            cycles = [recalculate(user_id, asset, transactions, self.negative_holdings)] if transactions else []
        for cycle, position in enumerate(cycles, start=1):
            position.id = position_id_for(user_id, asset, cycle)
        return cycles

    def recalculate_position(self, user_id: str, asset: str) -> Position:
        """Rebuild the positions of (user, asset) from the full ledger.

        An asset with no transactions is not an error: the canonical closed,
        zeroed position is returned.
        """
        asset = asset.upper()
        with self._locks.hold((user_id, asset)):
            return self._recalculate_locked(user_id, asset)

    def _recalculate_locked(self, user_id: str, asset: str) -> Position:
        transactions = self._load_transactions(user_id, asset)
        cycles = self._replay(user_id, asset, transactions)
        existing = {position.id: position for position in self._load_positions(user_id, asset)}
        now = self._now()

        for position in cycles:
            previous = existing.pop(position.id, None)
            if previous is not None and previous.transaction_ids != position.transaction_ids:
                logger.warning(
                    "Position transaction ids were out of sync with the ledger",
                    extra=structured_log_extra(
                        event="position_transaction_ids_resynced",
                        user_id=user_id,
                        asset=asset,
                        position_id=position.id,
                        stored_count=len(previous.transaction_ids),
                        ledger_count=len(position.transaction_ids),
                    ),
                )
            position.updated_at = now
            self.store.set(POSITIONS_COLLECTION, position.id, position.to_document())

        # Cycles the ledger no longer produces are zeroed, never deleted.
        resets: Dict[str, Position] = {}
        for stale in existing.values():
            reset = Position.empty(user_id, asset)
            reset.id = stale.id
            reset.chain = stale.chain
            reset.created_at = stale.created_at
            reset.updated_at = now
            self.store.set(POSITIONS_COLLECTION, reset.id, reset.to_document())
            resets[reset.id] = reset

        logger.info(
            "Position recalculated",
            extra=structured_log_extra(
                event="position_recalculated",
                user_id=user_id,
                asset=asset,
                position_id=cycles[-1].id if cycles else None,
                transaction_count=len(transactions),
                cycle_count=len(cycles),
                reset_count=len(resets),
            ),
        )

        if cycles:
            return cycles[-1]
        first_id = position_id_for(user_id, asset)
        if first_id in resets:
            return resets[first_id]
        empty = Position.empty(user_id, asset)
        empty.id = first_id
        return empty

    def rebuild_positions(self, user_id: str) -> List[Position]:
        """Recalculate every asset the user has transactions or positions for."""
        assets = {tx.asset for tx in self._load_transactions(user_id)}
        assets.update(position.asset for position in self._load_positions(user_id))
        return [self.recalculate_position(user_id, asset) for asset in sorted(assets)]

    # ---------------------------------------------------------------- editing

    @staticmethod
    def _apply_changes(current: Transaction, updates: Mapping[str, Any]) -> Transaction:
        edited = Transaction.from_document({**current.to_document(), **updates}, current.id)
        edited.validate()
        if edited.key != current.key:
            edited = replace(edited, position_id=None, entry_index=None)
        return edited

    def edit_transaction(self, tx_id: str, changes: Mapping[str, Any]) -> Position:
        """Rewrite one ledger entry and recalculate every (user, asset) it touches.

        ``changes`` uses document field names. When the asset changes, both the
        old and the new asset are recalculated and the new one is returned.
        The changes are merged into the entry as stored once the locks are held.
        """
        updates = {key: value for key, value in changes.items() if key not in _IMMUTABLE_FIELDS}

        while True:
            snapshot = self.get_transaction(tx_id)
            keys = {snapshot.key, self._apply_changes(snapshot, updates).key}
            with self._locks.hold_many(keys):
                current = self.get_transaction(tx_id)
                edited = self._apply_changes(current, updates)
                if {current.key, edited.key} != keys:
                    # Another edit moved the entry before the locks were taken.
                    continue

                for user_id, asset in keys:
                    ledger = [tx for tx in self._load_transactions(user_id, asset) if tx.id != tx_id]
                    if edited.key == (user_id, asset):
                        ledger.append(edited)
                    self._replay(user_id, asset, ledger)

                self.store.set(TRANSACTIONS_COLLECTION, tx_id, edited.to_document())
                positions = {key: self._recalculate_locked(*key) for key in sorted(keys)}
                break

        logger.info(
            "Transaction edited",
            extra=structured_log_extra(
                event="transaction_edited",
                user_id=edited.user_id,
                asset=edited.asset,
                transaction_id=tx_id,
                changed_fields=sorted(updates),
            ),
        )
        return positions[edited.key]

    def delete_transaction(self, tx_id: str) -> Position:
        """Remove a ledger entry and return the recalculated position of its asset."""
        while True:
            key = self.get_transaction(tx_id).key
            with self._locks.hold(key):
                current = self.get_transaction(tx_id)
                if current.key != key:
                    continue

                ledger = [tx for tx in self._load_transactions(*key) if tx.id != tx_id]
                self._replay(current.user_id, current.asset, ledger)

                self.store.delete(TRANSACTIONS_COLLECTION, tx_id)
                position = self._recalculate_locked(current.user_id, current.asset)
                break

        logger.info(
            "Transaction deleted",
            extra=structured_log_extra(
                event="transaction_deleted",
                user_id=current.user_id,
                asset=current.asset,
                transaction_id=tx_id,
            ),
        )
        return position

    # -------------------------------------------------------------- migration

    def migrate_transactions(self, user_id: str) -> int:
        """Upgrade legacy transaction documents of a user in place."""
        migrated = 0
        for doc in self.store.query(TRANSACTIONS_COLLECTION, {"userId": user_id}):
            updated, changed = normalize_transaction_document(doc)
            if changed:
                self.store.set(TRANSACTIONS_COLLECTION, doc["id"], updated)
                migrated += 1

        logger.info(
            "Migrated %d transaction documents",
            migrated,
            extra=structured_log_extra(event="transactions_migrated", user_id=user_id, migrated=migrated),
        )
        return migrated

    # -------------------------------------------------------------- portfolio

    def aggregate_portfolio(
        self,
        transactions: Iterable[Transaction],
        price_lookup: PriceLookup,
        include_dust: Optional[bool] = None,
    ) -> List[AssetSummary]:
        if include_dust is None:
            include_dust = self.config.include_dust
        return aggregate_portfolio(transactions, price_lookup, include_dust=include_dust)

    def portfolio_summary(
        self,
        user_id: str,
        price_lookup: PriceLookup,
        include_dust: Optional[bool] = None,
    ) -> List[AssetSummary]:
        """Roll up everything the user has recorded, valued with ``price_lookup``."""
        return self.aggregate_portfolio(self._load_transactions(user_id), price_lookup, include_dust)

    def portfolio_totals(self, user_id: str, price_lookup: PriceLookup) -> PortfolioTotals:
        """Realized, unrealized and total PnL across everything the user has recorded."""
        return portfolio_totals(self._load_transactions(user_id), price_lookup)
