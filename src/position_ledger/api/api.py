"""FastAPI application factory for the ledger API."""

from __future__ import annotations

import logging
from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from position_ledger import APP_VERSION
from position_ledger.api.context import AppContext
from position_ledger.api.logging import build_request_log_extra
from position_ledger.api.models import ApiEnvelope, HealthPayload
from position_ledger.api.routes import portfolio_router, positions_router, transactions_router
from position_ledger.ledger.exceptions import (
    ConsistencyError,
    LedgerError,
    NotFoundError,
    StorageError,
    ValidationError,
)

logger = logging.getLogger(__name__)

_STATUS_BY_ERROR = (
    (ValidationError, 400),
    (NotFoundError, 404),
    (ConsistencyError, 409),
    (StorageError, 503),
)


def status_for_error(exc: LedgerError) -> int:
    for error_type, status_code in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return status_code
    return 500


def create_api(context: AppContext) -> FastAPI:
    """Build a FastAPI app wired with the ledger routers."""

    app = FastAPI(title="Position Ledger", version=APP_VERSION)
    app.state.context = context

    base_path = context.config.api.base_path.rstrip("/") or ""

    app.include_router(transactions_router, prefix=f"{base_path}/api/transactions")
    app.include_router(positions_router, prefix=f"{base_path}/api/positions")
    app.include_router(portfolio_router, prefix=f"{base_path}/api/portfolio")

    @app.middleware("http")
    async def inject_request_id(request: Request, call_next):
        request.state.request_id = request.headers.get("X-Request-ID") or str(uuid4())
        response = await call_next(request)
        response.headers["X-Request-ID"] = request.state.request_id
        return response

    @app.exception_handler(LedgerError)
    async def handle_ledger_error(request: Request, exc: LedgerError):
        status_code = status_for_error(exc)
        log = logger.error if status_code >= 500 else logger.warning
        log(
            "Ledger request failed: %s",
            exc,
            extra=build_request_log_extra(
                request,
                event="ledger_request_failed",
                error_type=type(exc).__name__,
                status_code=status_code,
            ),
        )
        return JSONResponse({"data": None, "error": str(exc)}, status_code=status_code)

    @app.get(f"{base_path}/api/health", response_model=ApiEnvelope[HealthPayload])
    async def healthcheck():
        return ApiEnvelope(data=HealthPayload(status="ok", version=APP_VERSION), error=None)

    logger.info(
        "Ledger API initialized",
        extra=build_request_log_extra(None, event="api_initialized", base_path=base_path or "/"),
    )
    return app


__all__ = ["create_api", "status_for_error"]
