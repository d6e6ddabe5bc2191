from __future__ import annotations

# Re-export loader helpers
from .config_loader import get_config_dir, get_default_db_path, load_config

# Re-export config models
from .config_models import ApiConfig, AppConfig, LedgerConfig

__all__ = [
    # models
    "LedgerConfig",
    "ApiConfig",
    "AppConfig",
    # loader
    "get_config_dir",
    "get_default_db_path",
    "load_config",
]
