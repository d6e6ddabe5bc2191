# src/position_ledger/ledger/models.py

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple

from .exceptions import ValidationError

TRANSACTION_SCHEMA_VERSION = 2
POSITION_SCHEMA_VERSION = 1

TRANSACTIONS_COLLECTION = "transactions"
POSITIONS_COLLECTION = "positions"


class TransactionType(str, Enum):
    BUY = "buy"
    SELL = "sell"


class PositionStatus(str, Enum):
    OPEN = "open"
    CLOSED = "closed"


class NegativeHoldingsPolicy(str, Enum):
    """What a sell larger than the recorded holdings does to a position."""

    LIABILITY = "liability"  # keep the negative size, flag it as a liability
    REJECT = "reject"  # raise ConsistencyError, nothing is persisted


class ReentryPolicy(str, Enum):
    """What happens when a closed position receives a new transaction."""

    REOPEN = "reopen"  # same document, continuous history
    NEW_POSITION = "new_position"  # one document per open/close cycle


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse ISO strings, epoch numbers, dates and datetimes into aware UTC datetimes."""

    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime(value.year, value.month, value.day)
    elif isinstance(value, (int, float)) and not isinstance(value, bool):
        # Epoch values above 1e11 are milliseconds.
        seconds = value / 1000.0 if value > 1e11 else float(value)
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    elif isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
    else:
        return None

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def parse_trade_date(value: Any) -> Optional[date]:
    """Return the logical transaction day for ``YYYY-MM-DD`` or full ISO values."""

    if isinstance(value, str) and len(value) >= 10:
        try:
            return date.fromisoformat(value[:10])
        except ValueError:
            pass
    parsed = parse_timestamp(value)
    return parsed.date() if parsed is not None else None


def _optional_float(value: Any) -> Optional[float]:
    if value is None or value == "":
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return None if math.isnan(number) else number


def _optional_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value)
    return text or None


def _string_tuple(value: Any) -> Tuple[str, ...]:
    if isinstance(value, (list, tuple)):
        return tuple(str(item) for item in value)
    return ()


@dataclass(frozen=True)
class Transaction:
    user_id: str
    asset: str
    type: TransactionType
    amount: float
    date: str  # YYYY-MM-DD
    price: Optional[float] = None
    id: Optional[str] = None
    group: Optional[str] = None
    chain: Optional[str] = None
    status: str = "open"
    timestamp: Optional[str] = None
    created_at: Optional[str] = None
    position_id: Optional[str] = None
    entry_index: Optional[int] = None
    memo: str = ""
    exit_memo: str = ""
    tags: Tuple[str, ...] = ()
    exit_tags: Tuple[str, ...] = ()
    close_date: Optional[str] = None
    close_price: Optional[float] = None
    pnl: float = 0.0
    pnl_abs: Optional[float] = None
    pnl_pct: Optional[float] = None
    schema_version: int = TRANSACTION_SCHEMA_VERSION

    def __post_init__(self) -> None:
        if not isinstance(self.type, TransactionType):
            try:
                object.__setattr__(self, "type", TransactionType(str(self.type).lower()))
            except ValueError:
                pass  # rejected by validate()
        if self.asset:
            object.__setattr__(self, "asset", self.asset.strip().upper())

    @property
    def key(self) -> Tuple[str, str]:
        return self.user_id, self.asset

    @property
    def group_key(self) -> str:
        return self.group or self.asset

    @property
    def cost_price(self) -> float:
        """Unit price used for cost accounting; a missing price counts as zero."""
        return self.price if self.price is not None else 0.0

    @property
    def event_time(self) -> str:
        """Timestamp recorded on a position when this transaction closes it."""
        return self.timestamp or self.created_at or self.date

    def validate(self) -> None:
        if not self.user_id:
            raise ValidationError("Transaction is missing a user id", field="userId")
        if not self.asset:
            raise ValidationError("Transaction is missing an asset symbol", field="asset")
        if not isinstance(self.type, TransactionType):
            raise ValidationError(f"Unknown transaction type: {self.type!r}", field="type")
        if not isinstance(self.amount, (int, float)) or not math.isfinite(self.amount):
            raise ValidationError(f"Transaction amount must be a finite number, got {self.amount!r}", field="amount")
        if self.amount <= 0:
            raise ValidationError(f"Transaction amount must be positive, got {self.amount}", field="amount")
        if self.price is not None:
            if not math.isfinite(self.price):
                raise ValidationError(f"Transaction price must be finite, got {self.price!r}", field="price")
            if self.price < 0:
                raise ValidationError(f"Transaction price cannot be negative, got {self.price}", field="price")
        if parse_trade_date(self.date) is None:
            raise ValidationError(f"Transaction date is not a valid day: {self.date!r}", field="date")

    @classmethod
    def from_document(cls, doc: Mapping[str, Any], doc_id: Optional[str] = None) -> "Transaction":
        """Build a transaction from a stored or user-supplied document.

        Legacy documents are normalized on the way in: the asset symbol is
        upper-cased and a missing ``date`` is derived from ``timestamp``.
        """

        raw_type = str(doc.get("type") or "").lower()
        try:
            tx_type = TransactionType(raw_type)
        except ValueError as exc:
            raise ValidationError(f"Unknown transaction type: {doc.get('type')!r}", field="type") from exc

        try:
            amount = float(doc.get("amount"))
        except (TypeError, ValueError) as exc:
            raise ValidationError(f"Transaction amount is not a number: {doc.get('amount')!r}", field="amount") from exc

        trade_day = parse_trade_date(doc.get("date")) or parse_trade_date(doc.get("timestamp"))
        entry_index = doc.get("entryIndex")

        return cls(
            id=doc_id or _optional_str(doc.get("id")),
            user_id=str(doc.get("userId") or ""),
            asset=str(doc.get("asset") or "").strip().upper(),
            group=_optional_str(doc.get("group")),
            type=tx_type,
            amount=amount,
            price=_optional_float(doc.get("price")),
            date=trade_day.isoformat() if trade_day else "",
            chain=_optional_str(doc.get("chain")),
            status=str(doc.get("status") or "open"),
            timestamp=_optional_str(doc.get("timestamp")),
            created_at=_optional_str(doc.get("createdAt")),
            position_id=_optional_str(doc.get("positionId")),
            entry_index=int(entry_index) if entry_index is not None else None,
            memo=str(doc.get("memo") or ""),
            exit_memo=str(doc.get("exitMemo") or ""),
            tags=_string_tuple(doc.get("tags")),
            exit_tags=_string_tuple(doc.get("exitTags")),
            close_date=_optional_str(doc.get("closeDate")),
            close_price=_optional_float(doc.get("closePrice")),
            pnl=_optional_float(doc.get("pnl")) or 0.0,
            pnl_abs=_optional_float(doc.get("pnl_abs")),
            pnl_pct=_optional_float(doc.get("pnl_pct")),
            schema_version=TRANSACTION_SCHEMA_VERSION,
        )

    def to_document(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "schemaVersion": self.schema_version,
            "userId": self.user_id,
            "asset": self.asset,
            "group": self.group,
            "chain": self.chain,
            "type": self.type.value,
            "amount": self.amount,
            "price": self.price,
            "status": self.status,
            "date": self.date,
            "timestamp": self.timestamp,
            "createdAt": self.created_at,
            "positionId": self.position_id,
            "entryIndex": self.entry_index,
            "memo": self.memo,
            "exitMemo": self.exit_memo,
            "tags": list(self.tags),
            "exitTags": list(self.exit_tags),
            "closeDate": self.close_date,
            "closePrice": self.close_price,
            "pnl": self.pnl,
            "pnl_abs": self.pnl_abs,
            "pnl_pct": self.pnl_pct,
        }


def normalize_transaction_document(doc: Mapping[str, Any]) -> Tuple[Dict[str, Any], bool]:
    """Return an upgraded copy of a legacy transaction document.

    The second element of the result tells whether anything changed.
    Only ``schemaVersion``, the ``asset`` spelling and a missing ``date`` are
    touched. Stored assets must be upper-case for the ledger queries to find them.
    """

    updated = dict(doc)
    changed = False

    asset = updated.get("asset")
    if isinstance(asset, str) and asset != asset.strip().upper():
        updated["asset"] = asset.strip().upper()
        changed = True

    if not updated.get("schemaVersion"):
        updated["schemaVersion"] = TRANSACTION_SCHEMA_VERSION
        changed = True

    if not updated.get("date") and updated.get("timestamp") is not None:
        trade_day = parse_trade_date(updated["timestamp"])
        if trade_day is not None:
            updated["date"] = trade_day.isoformat()
            changed = True

    return updated, changed


@dataclass
class Position:
    user_id: str
    asset: str
    id: Optional[str] = None
    chain: Optional[str] = None
    status: PositionStatus = PositionStatus.OPEN
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    closed_at: Optional[str] = None
    current_size: float = 0.0
    total_buy_amount: float = 0.0
    total_cost: float = 0.0
    avg_entry_price: float = 0.0
    realized_pnl_abs: float = 0.0
    realized_pnl_pct: float = 0.0
    transaction_ids: List[str] = field(default_factory=list)
    main_thesis: Optional[str] = None
    main_exit_reason: Optional[str] = None
    schema_version: int = POSITION_SCHEMA_VERSION

    @classmethod
    def empty(cls, user_id: str, asset: str) -> "Position":
        """Canonical position for an (user, asset) pair with no transactions."""
        return cls(user_id=user_id, asset=asset, status=PositionStatus.CLOSED)

    @property
    def key(self) -> Tuple[str, str]:
        return self.user_id, self.asset

    @property
    def is_open(self) -> bool:
        return self.status is PositionStatus.OPEN

    @property
    def is_liability(self) -> bool:
        """True when sells exceeded recorded buys and the size went negative."""
        return self.current_size < 0

    @classmethod
    def from_document(cls, doc: Mapping[str, Any], doc_id: Optional[str] = None) -> "Position":
        try:
            status = PositionStatus(str(doc.get("status") or "open").lower())
        except ValueError:
            status = PositionStatus.OPEN

        return cls(
            id=doc_id or _optional_str(doc.get("id")),
            user_id=str(doc.get("userId") or ""),
            asset=str(doc.get("asset") or "").upper(),
            chain=_optional_str(doc.get("chain")),
            status=status,
            created_at=_optional_str(doc.get("createdAt")),
            updated_at=_optional_str(doc.get("updatedAt")),
            closed_at=_optional_str(doc.get("closedAt")),
            current_size=_optional_float(doc.get("current_size")) or 0.0,
            total_buy_amount=_optional_float(doc.get("total_buy_amount")) or 0.0,
            total_cost=_optional_float(doc.get("total_cost")) or 0.0,
            avg_entry_price=_optional_float(doc.get("avg_entry_price")) or 0.0,
            realized_pnl_abs=_optional_float(doc.get("realized_pnl_abs")) or 0.0,
            realized_pnl_pct=_optional_float(doc.get("realized_pnl_pct")) or 0.0,
            transaction_ids=[str(tx_id) for tx_id in doc.get("transactionIds") or []],
            main_thesis=_optional_str(doc.get("main_thesis")),
            main_exit_reason=_optional_str(doc.get("main_exit_reason")),
            schema_version=POSITION_SCHEMA_VERSION,
        )

    def to_document(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "schemaVersion": self.schema_version,
            "userId": self.user_id,
            "asset": self.asset,
            "chain": self.chain,
            "status": self.status.value,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
            "closedAt": self.closed_at,
            "current_size": self.current_size,
            "total_buy_amount": self.total_buy_amount,
            "total_cost": self.total_cost,
            "avg_entry_price": self.avg_entry_price,
            "realized_pnl_abs": self.realized_pnl_abs,
            "realized_pnl_pct": self.realized_pnl_pct,
            "transactionIds": list(self.transaction_ids),
            "main_thesis": self.main_thesis,
            "main_exit_reason": self.main_exit_reason,
        }


@dataclass(frozen=True)
class PriceQuote:
    price: float
    change_24h: float = 0.0


@dataclass
class AssetSummary:
    symbol: str
    assets: List[str]
    holdings: float
    total_cost: float
    avg_buy_price: float
    price: float
    change_24h: float
    current_value: float
    unrealized_pnl: float
    pnl_percent: float
    transaction_count: int
    realized_pnl: float = 0.0

    @property
    def total_pnl(self) -> float:
        return self.realized_pnl + self.unrealized_pnl

    @property
    def is_liability(self) -> bool:
        return self.holdings < 0


@dataclass
class PortfolioTotals:
    """Portfolio-wide PnL summed over every group, closed ones included."""

    realized_pnl: float = 0.0
    unrealized_pnl: float = 0.0
    total_cost: float = 0.0
    current_value: float = 0.0

    @property
    def total_pnl(self) -> float:
        return self.realized_pnl + self.unrealized_pnl
