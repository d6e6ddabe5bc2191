from __future__ import annotations

import logging
import os
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional, Type, TypeVar

import appdirs  # type: ignore[import-untyped]
import yaml  # type: ignore[import-untyped]

from position_ledger.config_models import ApiConfig, AppConfig, LedgerConfig
from position_ledger.ledger.models import NegativeHoldingsPolicy, ReentryPolicy
from position_ledger.logging_config import ALLOWED_ENVS, ENV_VAR, resolve_environment

_EnumT = TypeVar("_EnumT", bound=Enum)


def get_config_dir() -> Path:
    """
    Returns the OS-specific configuration directory for the ledger using appdirs.
    """
    return Path(appdirs.user_config_dir("position_ledger"))


def get_default_db_path() -> str:
    """
    Default SQLite location, inside the user-specific data directory.
    """
    return str(Path(appdirs.user_data_dir("position_ledger")) / "ledger.db")


def _deep_merge_dicts(base: Dict[str, Any], overlay: Dict[str, Any]) -> Dict[str, Any]:
    merged = base.copy()
    for key, value in overlay.items():
        if key in merged and isinstance(merged[key], dict) and isinstance(value, dict):
            merged[key] = _deep_merge_dicts(merged[key], value)
        else:
            merged[key] = value
    return merged


def _read_yaml(path: Path) -> Any:
    with open(path, "r") as f:
        return yaml.safe_load(f) or {}


def load_config(config_path: Optional[Path] = None, env: Optional[str] = None) -> AppConfig:
    """
    Loads the ledger configuration from the default location or a specified path.

    ``config.<env>.yaml`` next to the main file is deep-merged on top of it.
    Invalid values are logged and replaced by their defaults.
    """
    logger = logging.getLogger(__name__)

    if config_path is None:
        config_path = get_config_dir() / "config.yaml"
    config_path = config_path.expanduser()

    def _warn(message: str, event: str, *args: Any) -> None:
        logger.warning(message, *args, extra={"event": event, "config_path": str(config_path)})

    def _section(raw: Dict[str, Any], name: str) -> Dict[str, Any]:
        data = raw.get(name) or {}
        if not isinstance(data, dict):
            _warn("%s config is not a mapping; using defaults", f"config_invalid_{name}", name.capitalize())
            return {}
        return data

    def _validated_bool(value: Any, default: bool, field_name: str) -> bool:
        if value is None:
            return default
        if isinstance(value, bool):
            return value
        _warn("%s is invalid; using default", f"config_invalid_{field_name}", field_name)
        return default

    def _validated_enum(value: Any, enum_cls: Type[_EnumT], default: _EnumT, field_name: str) -> _EnumT:
        if value is None:
            return default
        try:
            return enum_cls(str(value).lower())
        except ValueError:
            _warn("%s value %r is not recognised; using %s", f"config_invalid_{field_name}", field_name, value, default.value)
            return default

    initial_env = env if env is not None else os.environ.get(ENV_VAR)
    if initial_env not in ALLOWED_ENVS:
        _warn("Invalid or missing environment '%s'; defaulting to 'dev'", "config_invalid_env", initial_env)
    effective_env = resolve_environment(initial_env)

    if not config_path.exists():
        _warn("Configuration file not found; using defaults", "config_missing_file")
        raw_config: Any = {}
    else:
        raw_config = _read_yaml(config_path)

    if not isinstance(raw_config, dict):
        _warn("Configuration file is not a mapping; falling back to defaults", "config_invalid_format")
        raw_config = {}

    env_config_path = config_path.parent / f"config.{effective_env}.yaml"
    if env_config_path.exists():
        env_config = _read_yaml(env_config_path)
        if not isinstance(env_config, dict):
            logger.warning(
                "Environment config is not a mapping; skipping env overlay",
                extra={"event": "config_invalid_env_file", "config_path": str(env_config_path)},
            )
            env_config = {}
        raw_config = _deep_merge_dicts(raw_config, env_config)

    # Parsing Ledger Config
    ledger_data = _section(raw_config, "ledger")
    default_ledger = LedgerConfig()

    db_path = ledger_data.get("db_path")
    if db_path is None:
        db_path = get_default_db_path()
    elif not isinstance(db_path, str) or not db_path:
        _warn("ledger db_path should be a non-empty string; using default", "config_invalid_db_path")
        db_path = get_default_db_path()

    ledger_config = LedgerConfig(
        db_path=db_path,
        auto_migrate_schema=_validated_bool(
            ledger_data.get("auto_migrate_schema"), default_ledger.auto_migrate_schema, "auto_migrate_schema"
        ),
        negative_holdings=_validated_enum(
            ledger_data.get("negative_holdings"),
            NegativeHoldingsPolicy,
            default_ledger.negative_holdings,
            "negative_holdings",
        ),
        reentry=_validated_enum(ledger_data.get("reentry"), ReentryPolicy, default_ledger.reentry, "reentry"),
        include_dust=_validated_bool(ledger_data.get("include_dust"), default_ledger.include_dust, "include_dust"),
    )

    # Parsing API Config
    api_data = _section(raw_config, "api")
    default_api = ApiConfig()

    base_path = api_data.get("base_path", default_api.base_path)
    if not isinstance(base_path, str):
        _warn("API base_path is not a string; using default", "config_invalid_api_base_path")
        base_path = default_api.base_path
    if not base_path.startswith("/"):
        base_path = f"/{base_path}"

    port = api_data.get("port", default_api.port)
    if not isinstance(port, int) or isinstance(port, bool) or not 1 <= port <= 65535:
        _warn("API port is out of valid range; using default", "config_invalid_api_port")
        port = default_api.port

    host = api_data.get("host", default_api.host)
    if not isinstance(host, str):
        _warn("API host is not a string; using default", "config_invalid_api_host")
        host = default_api.host

    api_config = ApiConfig(
        enabled=_validated_bool(api_data.get("enabled"), default_api.enabled, "api_enabled"),
        host=host,
        port=port,
        base_path=base_path,
    )

    return AppConfig(ledger=ledger_config, api=api_config, env=effective_env)
