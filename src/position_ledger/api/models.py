from __future__ import annotations

from typing import Dict, Generic, List, Optional, TypeVar

from pydantic import BaseModel, ConfigDict, Field

from position_ledger.ledger.models import AssetSummary, PortfolioTotals, Position, Transaction

T = TypeVar("T")


class ApiEnvelope(BaseModel, Generic[T]):
    """Standard API envelope for ledger responses."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    data: Optional[T]
    error: Optional[str] = None


class TransactionCreatePayload(BaseModel):
    """Body accepted when recording a new transaction."""

    id: Optional[str] = None
    userId: str
    asset: str
    type: str
    amount: float
    price: Optional[float] = None
    date: Optional[str] = None
    timestamp: Optional[str] = None
    createdAt: Optional[str] = None
    group: Optional[str] = None
    chain: Optional[str] = None
    status: str = "open"
    memo: str = ""
    tags: List[str] = Field(default_factory=list)


class TransactionUpdatePayload(BaseModel):
    """Partial update of a recorded transaction; unset fields are left alone."""

    asset: Optional[str] = None
    type: Optional[str] = None
    amount: Optional[float] = None
    price: Optional[float] = None
    date: Optional[str] = None
    timestamp: Optional[str] = None
    group: Optional[str] = None
    chain: Optional[str] = None
    status: Optional[str] = None
    memo: Optional[str] = None
    exitMemo: Optional[str] = None
    tags: Optional[List[str]] = None
    exitTags: Optional[List[str]] = None
    closeDate: Optional[str] = None
    closePrice: Optional[float] = None


class TransactionPayload(BaseModel):
    id: Optional[str]
    schemaVersion: int
    userId: str
    asset: str
    group: Optional[str]
    chain: Optional[str]
    type: str
    amount: float
    price: Optional[float]
    status: str
    date: str
    timestamp: Optional[str]
    createdAt: Optional[str]
    positionId: Optional[str]
    entryIndex: Optional[int]
    memo: str
    exitMemo: str
    tags: List[str]
    exitTags: List[str]
    closeDate: Optional[str]
    closePrice: Optional[float]
    pnl: float
    pnl_abs: Optional[float]
    pnl_pct: Optional[float]

    @classmethod
    def from_transaction(cls, tx: Transaction) -> "TransactionPayload":
        return cls(**tx.to_document())


class PositionPayload(BaseModel):
    id: Optional[str]
    schemaVersion: int
    userId: str
    asset: str
    chain: Optional[str]
    status: str
    createdAt: Optional[str]
    updatedAt: Optional[str]
    closedAt: Optional[str]
    current_size: float
    total_buy_amount: float
    total_cost: float
    avg_entry_price: float
    realized_pnl_abs: float
    realized_pnl_pct: float
    transactionIds: List[str]
    main_thesis: Optional[str]
    main_exit_reason: Optional[str]
    is_liability: bool

    @classmethod
    def from_position(cls, position: Position) -> "PositionPayload":
        return cls(is_liability=position.is_liability, **position.to_document())


class PriceQuotePayload(BaseModel):
    price: float
    change24h: float = 0.0


class PortfolioSummaryRequest(BaseModel):
    prices: Dict[str, PriceQuotePayload] = Field(default_factory=dict)
    include_dust: Optional[bool] = None


class AssetSummaryPayload(BaseModel):
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
    realized_pnl: float
    total_pnl: float
    is_liability: bool

    @classmethod
    def from_summary(cls, summary: AssetSummary) -> "AssetSummaryPayload":
        return cls(
            symbol=summary.symbol,
            assets=list(summary.assets),
            holdings=summary.holdings,
            total_cost=summary.total_cost,
            avg_buy_price=summary.avg_buy_price,
            price=summary.price,
            change_24h=summary.change_24h,
            current_value=summary.current_value,
            unrealized_pnl=summary.unrealized_pnl,
            pnl_percent=summary.pnl_percent,
            transaction_count=summary.transaction_count,
            realized_pnl=summary.realized_pnl,
            total_pnl=summary.total_pnl,
            is_liability=summary.is_liability,
        )


class PortfolioTotalsPayload(BaseModel):
    realized_pnl: float
    unrealized_pnl: float
    total_pnl: float
    total_cost: float
    current_value: float

    @classmethod
    def from_totals(cls, totals: PortfolioTotals) -> "PortfolioTotalsPayload":
        return cls(
            realized_pnl=totals.realized_pnl,
            unrealized_pnl=totals.unrealized_pnl,
            total_pnl=totals.total_pnl,
            total_cost=totals.total_cost,
            current_value=totals.current_value,
        )


class HealthPayload(BaseModel):
    status: str
    version: str
