"""API route registrations."""

from .portfolio import router as portfolio_router
from .positions import router as positions_router
from .transactions import router as transactions_router

__all__ = [
    "transactions_router",
    "positions_router",
    "portfolio_router",
]
