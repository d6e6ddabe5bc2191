import io
import json
import logging

import pytest

import appdirs  # type: ignore[import-untyped]
from position_ledger.config import load_config
from position_ledger.logging_config import (
    DEFAULT_ENV,
    JsonFormatter,
    configure_logging,
    resolve_environment,
    structured_log_extra,
)


@pytest.fixture
def config_dirs(monkeypatch, tmp_path):
    monkeypatch.setattr(appdirs, "user_config_dir", lambda appname: tmp_path / "config")
    monkeypatch.setattr(appdirs, "user_data_dir", lambda appname: tmp_path / "data")
    monkeypatch.delenv("POSITION_LEDGER_ENV", raising=False)


def _build_logger(stream: io.StringIO) -> logging.Logger:
    logger = logging.getLogger("position_ledger.test.logging")
    logger.setLevel(logging.INFO)
    logger.propagate = False

    handler = logging.StreamHandler(stream)
    handler.setFormatter(JsonFormatter())
    logger.handlers = [handler]
    return logger


def test_structured_log_extra_adds_ledger_identifiers():
    extra = structured_log_extra(
        event="transaction_appended",
        user_id="alice",
        asset="BTC",
        position_id="alice:BTC:1",
        transaction_id="tx001",
        side="buy",
    )

    assert extra["event"] == "transaction_appended"
    assert extra["env"] == DEFAULT_ENV
    assert extra["request_id"] is None
    assert extra["user_id"] == "alice"
    assert extra["asset"] == "BTC"
    assert extra["position_id"] == "alice:BTC:1"
    assert extra["transaction_id"] == "tx001"
    assert extra["side"] == "buy"

    minimal_extra = structured_log_extra()
    assert "user_id" not in minimal_extra
    assert "asset" not in minimal_extra
    assert "position_id" not in minimal_extra
    assert "transaction_id" not in minimal_extra


def test_json_formatter_preserves_extra_fields():
    stream = io.StringIO()
    logger = _build_logger(stream)

    logger.info(
        "log message",
        extra=structured_log_extra(
            event="position_recalculated",
            request_id="req-1",
            user_id="alice",
            asset="ETH",
            cycles=2,
        ),
    )

    payload = json.loads(stream.getvalue())
    assert payload["message"] == "log message"
    assert payload["level"] == "INFO"
    assert payload["logger"] == "position_ledger.test.logging"
    assert payload["event"] == "position_recalculated"
    assert payload["request_id"] == "req-1"
    assert payload["user_id"] == "alice"
    assert payload["asset"] == "ETH"
    assert payload["cycles"] == 2
    assert "msg" not in payload


def test_json_formatter_includes_exception_text():
    stream = io.StringIO()
    logger = _build_logger(stream)

    try:
        raise ValueError("boom")
    except ValueError:
        logger.exception("failed", extra={"event": "ledger_storage_error"})

    payload = json.loads(stream.getvalue())
    assert payload["event"] == "ledger_storage_error"
    assert "ValueError: boom" in payload["exc_info"]


def test_configure_logging_installs_single_json_handler():
    root_logger = logging.getLogger()
    saved_handlers = list(root_logger.handlers)
    saved_level = root_logger.level
    try:
        configure_logging(level=logging.DEBUG, env="test")
        configure_logging(level=logging.DEBUG, env="test")

        assert root_logger.level == logging.DEBUG
        assert len(root_logger.handlers) == 1
        formatter = root_logger.handlers[0].formatter
        assert isinstance(formatter, JsonFormatter)
        assert formatter.env == "test"
    finally:
        root_logger.handlers = saved_handlers
        root_logger.setLevel(saved_level)


@pytest.mark.parametrize(
    "value, expected",
    [(None, "dev"), ("", "dev"), ("staging", "dev"), ("local", "dev"), ("test", "test"), ("prod", "prod")],
)
def test_log_environment_matches_config_environment(config_dirs, value, expected):
    assert resolve_environment(value) == expected
    assert load_config(env=value).env == expected


def test_default_log_environment_is_a_config_environment():
    assert DEFAULT_ENV in {"dev", "test", "prod"}
