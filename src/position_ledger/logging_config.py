"""Structured logging configuration helpers for the position ledger."""

from __future__ import annotations

import json
import logging
import os
from datetime import datetime, timezone
from typing import Any, Dict

ENV_VAR = "POSITION_LEDGER_ENV"
ALLOWED_ENVS = frozenset({"dev", "test", "prod"})


def resolve_environment(value: str | None) -> str:
    """Return ``value`` if it names a known environment, else ``"dev"``."""

    return value if value in ALLOWED_ENVS else "dev"


DEFAULT_ENV = resolve_environment(os.getenv(ENV_VAR))

# Attributes every LogRecord carries; anything else on the record came from ``extra``.
_RECORD_ATTRIBUTES = frozenset(
    {
        "name",
        "msg",
        "args",
        "levelname",
        "levelno",
        "pathname",
        "filename",
        "module",
        "exc_info",
        "exc_text",
        "stack_info",
        "lineno",
        "funcName",
        "created",
        "msecs",
        "relativeCreated",
        "thread",
        "threadName",
        "processName",
        "process",
        "taskName",
    }
)


class JsonFormatter(logging.Formatter):
    """JSON formatter that emits a stable set of fields.

    Values passed through ``extra`` are preserved, so call sites can attach
    ledger identifiers (``user_id``, ``asset``, ``position_id``,
    ``transaction_id``) next to the machine-readable ``event`` label.
    """

    def __init__(self, env: str | None = None) -> None:
        super().__init__()
        self.env = env or DEFAULT_ENV

    def format(self, record: logging.LogRecord) -> str:  # type: ignore[override]
        log_time = datetime.fromtimestamp(record.created, tz=timezone.utc)
        payload: Dict[str, Any] = {
            "timestamp": log_time.isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "event": getattr(record, "event", None),
            "env": getattr(record, "env", self.env),
            "request_id": getattr(record, "request_id", None),
        }
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)

        for key, value in record.__dict__.items():
            if key in _RECORD_ATTRIBUTES:
                continue
            payload.setdefault(key, value)

        return json.dumps(payload, default=str)


def configure_logging(level: int = logging.INFO, env: str | None = None) -> None:
    """Configure root logging with a JSON formatter and stdout handler."""

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler()
    handler.setFormatter(JsonFormatter(env=env))
    root_logger.addHandler(handler)


def structured_log_extra(
    *,
    env: str | None = None,
    request_id: str | None = None,
    event: str | None = None,
    user_id: str | None = None,
    asset: str | None = None,
    position_id: str | None = None,
    transaction_id: str | None = None,
    **kwargs: Any,
) -> Dict[str, Any]:
    """Build a consistent set of logging extras with common fields.

    ``event`` should be a short, stable identifier for the log line. The
    ledger identifiers are optional and left out of the result when omitted.
    Additional custom fields are preserved via ``**kwargs``.
    """

    extra: Dict[str, Any] = {
        "event": event,
        "env": env or DEFAULT_ENV,
        "request_id": request_id,
    }

    identifier_fields = {
        "user_id": user_id,
        "asset": asset,
        "position_id": position_id,
        "transaction_id": transaction_id,
    }
    for key, value in identifier_fields.items():
        if value is not None:
            extra[key] = value

    extra.update(kwargs)
    return extra


def get_log_environment() -> str:
    """Expose the configured environment for downstream helpers."""

    return DEFAULT_ENV


__all__: list[str] = [
    "JsonFormatter",
    "configure_logging",
    "structured_log_extra",
    "get_log_environment",
    "resolve_environment",
]
