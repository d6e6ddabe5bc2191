import logging
import threading

import pytest

from position_ledger.config_models import LedgerConfig
from position_ledger.ledger.exceptions import ConsistencyError, NotFoundError, StorageError, ValidationError
from position_ledger.ledger.models import (
    POSITIONS_COLLECTION,
    TRANSACTIONS_COLLECTION,
    NegativeHoldingsPolicy,
    PositionStatus,
    ReentryPolicy,
)
from position_ledger.ledger.portfolio import StaticPriceLookup
from position_ledger.ledger.service import LedgerService
from position_ledger.ledger.store import InMemoryDocumentStore


def _append_round_trip(service, make_tx):
    positions = [
        service.append_transaction(make_tx("buy", 1, 10000, date="2024-01-01")),
        service.append_transaction(make_tx("buy", 1, 20000, date="2024-01-02")),
        service.append_transaction(make_tx("sell", 1, 25000, date="2024-01-03")),
        service.append_transaction(make_tx("sell", 1, 5000, date="2024-01-04")),
    ]
    return positions


def test_append_persists_transactions_and_position(service, store, make_tx):
    positions = _append_round_trip(service, make_tx)

    assert [p.current_size for p in positions] == [1, 2, 1, 0]
    assert positions[2].realized_pnl_abs == pytest.approx(10000)

    stored = store.get(POSITIONS_COLLECTION, "alice:BTC:1")
    assert stored["status"] == "closed"
    assert stored["current_size"] == 0
    assert stored["transactionIds"] == ["tx001", "tx002", "tx003", "tx004"]
    assert stored["closedAt"] is not None

    tx_doc = store.get(TRANSACTIONS_COLLECTION, "tx003")
    assert tx_doc["positionId"] == "alice:BTC:1"
    assert tx_doc["entryIndex"] == 3
    assert tx_doc["schemaVersion"] == 2


def test_append_accepts_documents_and_assigns_ids(service, store):
    position = service.append_transaction(
        {"userId": "alice", "asset": "eth", "type": "buy", "amount": "2", "price": "1500", "date": "2024-05-01"}
    )

    [tx_id] = position.transaction_ids
    tx_doc = store.get(TRANSACTIONS_COLLECTION, tx_id)
    assert tx_doc["asset"] == "ETH"
    assert tx_doc["createdAt"] is not None
    assert tx_doc["timestamp"] is not None
    assert position.total_cost == 3000


def test_recalculate_returns_the_same_position_as_appends(service, make_tx):
    appended = _append_round_trip(service, make_tx)[-1]

    recalculated = service.recalculate_position("alice", "BTC")

    expected = appended.to_document()
    actual = recalculated.to_document()
    expected.pop("updatedAt")
    actual.pop("updatedAt")
    assert actual == expected


def test_get_open_position(service, make_tx):
    assert service.get_open_position("alice", "BTC") is None

    service.append_transaction(make_tx("buy", 1, 100, date="2024-01-01"))
    assert service.get_open_position("alice", "btc").current_size == 1

    service.append_transaction(make_tx("sell", 1, 100, date="2024-01-02"))
    assert service.get_open_position("alice", "BTC") is None


def test_recalculate_heals_a_drifted_position(service, store, make_tx, caplog):
    service.append_transaction(make_tx("buy", 2, 100, date="2024-01-01"))
    service.append_transaction(make_tx("buy", 2, 300, date="2024-01-02"))
    store.set(POSITIONS_COLLECTION, "alice:BTC:1", {"current_size": 99.0, "transactionIds": []}, merge=True)

    with caplog.at_level(logging.WARNING, logger="position_ledger.ledger.service"):
        position = service.recalculate_position("alice", "BTC")

    assert position.current_size == 4
    assert position.avg_entry_price == 200
    assert position.transaction_ids == ["tx001", "tx002"]
    assert store.get(POSITIONS_COLLECTION, "alice:BTC:1")["current_size"] == 4
    assert any(getattr(r, "event", None) == "position_transaction_ids_resynced" for r in caplog.records)


def test_recalculate_without_transactions_is_not_an_error(service, store):
    position = service.recalculate_position("bob", "ETH")

    assert position.status is PositionStatus.CLOSED
    assert position.current_size == 0
    assert position.id == "bob:ETH:1"
    assert store.get(POSITIONS_COLLECTION, "bob:ETH:1") is None


def test_invalid_transaction_writes_nothing(service, store, make_tx):
    with pytest.raises(ValidationError):
        service.append_transaction(make_tx("buy", -1, 100))

    assert store.query(TRANSACTIONS_COLLECTION) == []
    assert store.query(POSITIONS_COLLECTION) == []


def test_duplicate_transaction_id_is_rejected(service, make_tx):
    service.append_transaction(make_tx("buy", 1, 100, id="dup"))

    with pytest.raises(ValidationError):
        service.append_transaction(make_tx("buy", 1, 100, id="dup"))


def test_oversell_is_a_liability_by_default(service, make_tx):
    service.append_transaction(make_tx("buy", 1, 10000, date="2024-01-01"))

    position = service.append_transaction(make_tx("sell", 2, 10000, date="2024-01-02"))

    assert position.current_size == -1
    assert position.is_liability
    assert service.get_open_position("alice", "BTC").is_liability


def test_oversell_is_rejected_under_reject_policy(store, clock, make_tx):
    service = LedgerService(store, LedgerConfig(negative_holdings=NegativeHoldingsPolicy.REJECT), clock=clock)
    service.append_transaction(make_tx("buy", 1, 10000, date="2024-01-01"))

    with pytest.raises(ConsistencyError):
        service.append_transaction(make_tx("sell", 2, 10000, date="2024-01-02"))

    assert len(store.query(TRANSACTIONS_COLLECTION)) == 1
    assert store.get(POSITIONS_COLLECTION, "alice:BTC:1")["current_size"] == 1


def test_reopen_policy_keeps_one_position(service, make_tx):
    service.append_transaction(make_tx("buy", 1, 100, date="2024-01-01"))
    service.append_transaction(make_tx("sell", 1, 120, date="2024-01-02"))

    position = service.append_transaction(make_tx("buy", 3, 90, date="2024-01-03"))

    assert position.id == "alice:BTC:1"
    assert position.status is PositionStatus.OPEN
    assert position.transaction_ids == ["tx001", "tx002", "tx003"]
    assert [p.id for p in service.get_positions("alice", "BTC")] == ["alice:BTC:1"]


def test_new_position_policy_starts_a_new_cycle(store, clock, make_tx):
    service = LedgerService(store, LedgerConfig(reentry=ReentryPolicy.NEW_POSITION), clock=clock)
    service.append_transaction(make_tx("buy", 1, 100, date="2024-01-01"))
    service.append_transaction(make_tx("sell", 1, 120, date="2024-01-02"))

    position = service.append_transaction(make_tx("buy", 3, 90, date="2024-01-03"))

    assert position.id == "alice:BTC:2"
    assert position.transaction_ids == ["tx003"]
    assert position.realized_pnl_abs == 0
    assert store.get(TRANSACTIONS_COLLECTION, "tx003")["entryIndex"] == 1

    first = service.get_position("alice:BTC:1")
    assert first.status is PositionStatus.CLOSED
    assert first.realized_pnl_abs == pytest.approx(20)
    assert service.get_open_position("alice", "BTC").id == "alice:BTC:2"

    recalculated = service.recalculate_position("alice", "BTC")
    assert recalculated.id == "alice:BTC:2"
    assert recalculated.current_size == 3


def test_new_position_policy_resets_stale_cycles(store, clock, make_tx):
    service = LedgerService(store, LedgerConfig(reentry=ReentryPolicy.NEW_POSITION), clock=clock)
    service.append_transaction(make_tx("buy", 1, 100, date="2024-01-01"))
    service.append_transaction(make_tx("sell", 1, 120, date="2024-01-02", id="closing"))
    service.append_transaction(make_tx("buy", 3, 90, date="2024-01-03"))

    position = service.delete_transaction("closing")

    assert position.id == "alice:BTC:1"
    assert position.current_size == 4
    stale = store.get(POSITIONS_COLLECTION, "alice:BTC:2")
    assert stale["status"] == "closed"
    assert stale["current_size"] == 0
    assert stale["transactionIds"] == []

    # The zeroed cycle does not capture the next transaction.
    follow_up = service.append_transaction(make_tx("buy", 1, 100, date="2024-01-04"))
    assert follow_up.id == "alice:BTC:1"


def test_backdated_append_matches_full_replay(service, make_tx):
    service.append_transaction(make_tx("buy", 1, 100, date="2024-01-10"))
    service.append_transaction(make_tx("sell", 1, 200, date="2024-01-20"))

    position = service.append_transaction(make_tx("buy", 1, 50, date="2024-01-15"))

    assert position.transaction_ids == ["tx001", "tx003", "tx002"]
    assert position.current_size == 1
    assert position.avg_entry_price == 75
    assert position.realized_pnl_abs == pytest.approx(125)


def test_backdated_append_after_closed_cycle_matches_full_replay(store, clock, make_tx):
    service = LedgerService(store, LedgerConfig(reentry=ReentryPolicy.NEW_POSITION), clock=clock)
    service.append_transaction(make_tx("buy", 1, 100, date="2024-01-02"))
    service.append_transaction(make_tx("sell", 1, 150, date="2024-01-03"))

    appended = service.append_transaction(make_tx("buy", 1, 80, date="2024-01-01"))
    replayed = service.recalculate_position("alice", "BTC")

    assert appended.id == replayed.id == "alice:BTC:1"
    assert appended.transaction_ids == replayed.transaction_ids
    assert appended.transaction_ids == ["tx003", "tx001", "tx002"]
    assert appended.status is PositionStatus.OPEN
    assert appended.current_size == replayed.current_size == 1
    assert appended.avg_entry_price == replayed.avg_entry_price == 90
    assert store.get(POSITIONS_COLLECTION, "alice:BTC:2") is None
    assert store.get(TRANSACTIONS_COLLECTION, "tx003")["positionId"] == "alice:BTC:1"
    assert store.get(TRANSACTIONS_COLLECTION, "tx003")["entryIndex"] == 1


def test_edit_transaction_recalculates(service, make_tx):
    service.append_transaction(make_tx("buy", 1, 100, date="2024-01-01", id="first"))
    service.append_transaction(make_tx("buy", 1, 300, date="2024-01-02"))

    position = service.edit_transaction("first", {"price": 200, "amount": 3})

    assert position.current_size == 4
    assert position.total_cost == 900
    assert service.get_transaction("first").price == 200


def test_edit_transaction_moving_asset_recalculates_both(service, store, make_tx):
    service.append_transaction(make_tx("buy", 1, 100, date="2024-01-01", id="moved"))

    position = service.edit_transaction("moved", {"asset": "eth"})

    assert position.asset == "ETH"
    assert position.current_size == 1
    btc = store.get(POSITIONS_COLLECTION, "alice:BTC:1")
    assert btc["status"] == "closed"
    assert btc["transactionIds"] == []


def test_edit_rejected_by_policy_leaves_ledger_untouched(store, clock, make_tx):
    service = LedgerService(store, LedgerConfig(negative_holdings=NegativeHoldingsPolicy.REJECT), clock=clock)
    service.append_transaction(make_tx("buy", 2, 100, date="2024-01-01", id="buy"))
    service.append_transaction(make_tx("sell", 1, 100, date="2024-01-02"))

    with pytest.raises(ConsistencyError):
        service.edit_transaction("buy", {"amount": 0.5})

    assert service.get_transaction("buy").amount == 2


def test_edit_and_delete_unknown_transactions(service):
    with pytest.raises(NotFoundError):
        service.edit_transaction("missing", {"amount": 1})
    with pytest.raises(NotFoundError):
        service.delete_transaction("missing")


def test_delete_last_transaction_resets_position(service, store, make_tx):
    service.append_transaction(make_tx("buy", 1, 100, id="only"))

    position = service.delete_transaction("only")

    assert position.status is PositionStatus.CLOSED
    assert position.current_size == 0
    assert store.get(TRANSACTIONS_COLLECTION, "only") is None
    assert store.get(POSITIONS_COLLECTION, "alice:BTC:1")["transactionIds"] == []


def test_rebuild_positions_covers_every_asset(service, make_tx):
    service.append_transaction(make_tx("buy", 1, 100, asset="BTC"))
    service.append_transaction(make_tx("buy", 2, 10, asset="ETH"))
    service.append_transaction(make_tx("buy", 2, 10, asset="ETH", user_id="bob"))

    positions = service.rebuild_positions("alice")

    assert [(p.asset, p.current_size) for p in positions] == [("BTC", 1), ("ETH", 2)]


def test_migrate_transactions_upgrades_legacy_documents(service, store):
    store.set(
        TRANSACTIONS_COLLECTION,
        "legacy-1",
        {"userId": "alice", "asset": "BTC", "type": "buy", "amount": 1, "price": 10, "timestamp": "2023-06-01T10:00:00Z"},
    )
    store.set(
        TRANSACTIONS_COLLECTION,
        "legacy-2",
        {"userId": "alice", "asset": "BTC", "type": "buy", "amount": 1, "price": 10, "date": "2023-06-02"},
    )
    store.set(
        TRANSACTIONS_COLLECTION,
        "current",
        {"userId": "alice", "asset": "BTC", "type": "buy", "amount": 1, "date": "2023-06-03", "schemaVersion": 2},
    )

    assert service.migrate_transactions("alice") == 2
    assert service.migrate_transactions("alice") == 0

    legacy = store.get(TRANSACTIONS_COLLECTION, "legacy-1")
    assert legacy["schemaVersion"] == 2
    assert legacy["date"] == "2023-06-01"


def test_migrated_lower_case_assets_join_their_position(service, store, make_tx):
    service.append_transaction(make_tx("buy", 1, 100, date="2024-01-02"))
    store.set(
        TRANSACTIONS_COLLECTION,
        "legacy-btc",
        {"userId": "alice", "asset": "btc", "type": "buy", "amount": 2, "price": 40, "date": "2024-01-01"},
    )

    assert service.migrate_transactions("alice") == 1
    assert store.get(TRANSACTIONS_COLLECTION, "legacy-btc")["asset"] == "BTC"

    position = service.recalculate_position("alice", "BTC")

    assert position.current_size == 3
    assert position.total_cost == 180
    assert position.transaction_ids == ["legacy-btc", "tx001"]


def test_portfolio_summary_uses_stored_ledger(service, make_tx):
    service.append_transaction(make_tx("buy", 2, 100, asset="BTC"))
    service.append_transaction(make_tx("buy", 10, 1, asset="DOGE"))

    summaries = service.portfolio_summary("alice", StaticPriceLookup({"BTC": 150, "DOGE": 2}))

    assert [(s.symbol, s.current_value) for s in summaries] == [("BTC", 300), ("DOGE", 20)]


def test_portfolio_totals_include_closed_groups(service, make_tx):
    service.append_transaction(make_tx("buy", 2, 100, asset="BTC", date="2024-01-01"))
    service.append_transaction(make_tx("sell", 1, 150, asset="BTC", date="2024-01-02"))
    service.append_transaction(make_tx("buy", 1, 10, asset="SOL", date="2024-01-01"))
    service.append_transaction(make_tx("sell", 1, 30, asset="SOL", date="2024-01-02"))

    totals = service.portfolio_totals("alice", StaticPriceLookup({"BTC": 120, "SOL": 25}))

    assert totals.realized_pnl == pytest.approx(70)
    assert totals.unrealized_pnl == pytest.approx(20)
    assert totals.total_pnl == pytest.approx(90)
    assert totals.current_value == pytest.approx(120)
    assert totals.total_cost == pytest.approx(100)


def test_concurrent_appends_for_one_asset_are_serialized(service, make_tx):
    transactions = [make_tx("buy", 1, 100 + i) for i in range(120)]
    chunks = [transactions[i::6] for i in range(6)]

    def worker(chunk):
        for tx in chunk:
            service.append_transaction(tx)

    threads = [threading.Thread(target=worker, args=(chunk,)) for chunk in chunks]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    position = service.get_open_position("alice", "BTC")
    assert position.current_size == 120
    assert len(position.transaction_ids) == 120
    assert position.total_cost == pytest.approx(sum(100 + i for i in range(120)))
    assert position.transaction_ids == [tx.id for tx in service.list_transactions("alice", "BTC")]


class VanishingPositionStore(InMemoryDocumentStore):
    """Deletes a position right after it is first read, as a concurrent writer would."""

    armed = False

    def get(self, collection, key):
        doc = super().get(collection, key)
        if self.armed and collection == POSITIONS_COLLECTION and doc is not None:
            self.armed = False
            self.delete(collection, key)
        return doc


def test_append_against_concurrently_deleted_position(clock, make_tx):
    store = VanishingPositionStore()
    service = LedgerService(store, clock=clock)
    service.append_transaction(make_tx("buy", 1, 100, date="2024-01-01"))

    store.armed = True
    with pytest.raises(NotFoundError):
        service.append_transaction(make_tx("buy", 1, 100, date="2024-01-02"))

    assert len(store.query(TRANSACTIONS_COLLECTION)) == 1


class FailingWriteStore(InMemoryDocumentStore):
    def set(self, collection, key, doc, merge=False):
        raise StorageError("disk full")


def test_storage_errors_propagate(clock, make_tx):
    service = LedgerService(FailingWriteStore(), clock=clock)

    with pytest.raises(StorageError, match="disk full"):
        service.append_transaction(make_tx("buy", 1, 100))


class InterleavingStore(InMemoryDocumentStore):
    """Runs a competing write right after the next transaction read returns its snapshot."""

    competing_write = None

    def get(self, collection, key):
        doc = super().get(collection, key)
        if collection == TRANSACTIONS_COLLECTION and self.competing_write is not None:
            write, self.competing_write = self.competing_write, None
            write()
        return doc


def test_edit_merges_into_latest_stored_transaction(clock, make_tx):
    store = InterleavingStore()
    service = LedgerService(store, clock=clock)
    service.append_transaction(make_tx("buy", 1, 100, id="t1", memo="first thesis"))

    store.competing_write = lambda: service.edit_transaction("t1", {"memo": "revised thesis"})
    position = service.edit_transaction("t1", {"price": 150})

    edited = service.get_transaction("t1")
    assert edited.memo == "revised thesis"
    assert edited.price == 150
    assert position.total_cost == 150


def test_edit_follows_transaction_moved_by_another_edit(clock, make_tx):
    store = InterleavingStore()
    service = LedgerService(store, clock=clock)
    service.append_transaction(make_tx("buy", 1, 100, id="t1"))

    store.competing_write = lambda: service.edit_transaction("t1", {"asset": "ETH"})
    position = service.edit_transaction("t1", {"price": 150})

    assert position.asset == "ETH"
    assert position.total_cost == 150
    assert service.get_transaction("t1").asset == "ETH"
    assert store.get(POSITIONS_COLLECTION, "alice:BTC:1")["current_size"] == 0
    assert store.get(POSITIONS_COLLECTION, "alice:ETH:1")["total_cost"] == 150
