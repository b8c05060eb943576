"""Failure types raised by ledger operations.

Every failure carries a ``kind`` so callers (the HTTP layer, scripts) can
branch on it without matching class names. ``NotFoundError`` and
``InsufficientStockError`` are ordinary outcomes of a request and are
reported to the caller as such; ``StorageFailureError`` always means the
enclosing transaction was rolled back.
"""

from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    """Categories of ledger failure."""

    NOT_FOUND = "not_found"
    INVALID_INPUT = "invalid_input"
    INSUFFICIENT_STOCK = "insufficient_stock"
    CONFLICT = "conflict"
    STORAGE_FAILURE = "storage_failure"


class LedgerError(Exception):
    """Base class for all ledger failures."""

    kind: ErrorKind = ErrorKind.STORAGE_FAILURE

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class NotFoundError(LedgerError):
    """A referenced record does not exist."""

    kind = ErrorKind.NOT_FOUND
    entity = "record"

    def __init__(self, entity_id: int, message: Optional[str] = None) -> None:
        self.entity_id = entity_id
        super().__init__(message or f"{self.entity.capitalize()} {entity_id} not found")


class ItemNotFound(NotFoundError):
    entity = "item"


class LoanNotFound(NotFoundError):
    entity = "loan"


class LenderNotFound(NotFoundError):
    entity = "lender"


class UserNotFound(NotFoundError):
    entity = "user"


class InvalidInputError(LedgerError):
    """Input rejected before any storage access."""

    kind = ErrorKind.INVALID_INPUT


class InsufficientStockError(LedgerError):
    """The admission check refused a borrow."""

    kind = ErrorKind.INSUFFICIENT_STOCK

    def __init__(self, item_id: int, requested: int, available: int) -> None:
        self.item_id = item_id
        self.requested = requested
        self.available = available
        super().__init__(
            f"Insufficient stock for item {item_id}: requested {requested}, available {available}"
        )


class ConflictError(LedgerError):
    """Concurrent modification retries were exhausted."""

    kind = ErrorKind.CONFLICT


class StorageFailureError(LedgerError):
    """The underlying transaction was aborted and rolled back."""

    kind = ErrorKind.STORAGE_FAILURE
