# src/position_ledger/ledger/exceptions.py


class LedgerError(Exception):
    """Base exception for ledger related errors."""

    pass


class ValidationError(LedgerError):
    """Raised when a transaction is rejected before any state is touched."""

    def __init__(self, message: str, field: str | None = None):
        super().__init__(message)
        self.field = field


class ConsistencyError(LedgerError):
    """Raised when a position breaks a numeric invariant after an update.

    Callers should repair the position with ``recalculate_position`` rather
    than patching the numbers by hand.
    """

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.details = details or {}


class NotFoundError(LedgerError):
    """Raised when a referenced transaction or position no longer exists."""

    def __init__(self, collection: str, key: str):
        super().__init__(f"{collection} document not found: {key}")
        self.collection = collection
        self.key = key


class StorageError(LedgerError):
    """Raised when the underlying document store fails a read or write."""

    pass


class LedgerSchemaError(StorageError):
    """Raised when the stored ledger schema version is unsupported."""

    def __init__(self, found, expected: int):
        super().__init__(
            f"Unsupported ledger schema version {found}; expected {expected}"
        )
        self.found = found
        self.expected = expected
