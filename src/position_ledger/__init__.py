"""Position ledger: weighted-average-cost positions derived from a transaction log.

:data:`APP_VERSION` is resolved from installed package metadata (project name
``position-ledger``) and falls back to ``"0.0.0-dev"`` in a source checkout.
"""

from importlib import metadata


def _determine_version() -> str:
    """Return the application version string without raising during import."""

    try:
        return metadata.version("position-ledger")
    except metadata.PackageNotFoundError:
        return "0.0.0-dev"


APP_VERSION: str = _determine_version()
__version__: str = APP_VERSION

__all__ = ["APP_VERSION", "__version__"]
