"""Database package initialization."""

from .crud import (
    adjust_item_quantity,
    create_item,
    create_items,
    create_lender,
    create_loan,
    create_user,
    get_item,
    get_item_availability,
    get_loan,
    get_user,
    import_lenders,
    list_item_availability,
    list_lenders,
    list_open_loans,
    return_loan,
    return_loans,
    search_loan_history,
    update_item_note,
    update_items,
)
from .engine import AsyncSessionLocal, close_db, init_db
from .errors import (
    ConflictError,
    ErrorKind,
    InsufficientStockError,
    InvalidInputError,
    ItemNotFound,
    LedgerError,
    LenderNotFound,
    LoanNotFound,
    NotFoundError,
    StorageFailureError,
    UserNotFound,
)
from .models import Base, Item, Lender, Loan, User

__all__ = [
    # Models
    "Base",
    "Item",
    "Lender",
    "Loan",
    "User",
    # Engine
    "AsyncSessionLocal",
    "init_db",
    "close_db",
    # Errors
    "ErrorKind",
    "LedgerError",
    "NotFoundError",
    "ItemNotFound",
    "LoanNotFound",
    "LenderNotFound",
    "UserNotFound",
    "InvalidInputError",
    "InsufficientStockError",
    "ConflictError",
    "StorageFailureError",
    # CRUD - Availability
    "get_item_availability",
    "list_item_availability",
    # CRUD - Items
    "create_item",
    "get_item",
    "create_items",
    "update_items",
    "adjust_item_quantity",
    "update_item_note",
    # CRUD - Loans
    "create_loan",
    "get_loan",
    "return_loan",
    "return_loans",
    "list_open_loans",
    "search_loan_history",
    # CRUD - Lenders
    "create_lender",
    "list_lenders",
    "import_lenders",
    # CRUD - Users
    "create_user",
    "get_user",
]
