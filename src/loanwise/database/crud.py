"""Ledger operations: item catalog, availability, loans, bulk mutations, lenders.

Every mutating operation takes the acting ``Identity`` explicitly and runs as
one transaction on the given session: it either commits all of its writes or
rolls back and raises. Input is validated before the session is touched.
"""

import logging
import re
from collections.abc import Iterable, Mapping, Sequence
from typing import Any, Optional

from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import DBAPIError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ..config import settings
from ..identity import Identity
from .errors import (
    ConflictError,
    InsufficientStockError,
    InvalidInputError,
    ItemNotFound,
    LenderNotFound,
    LoanNotFound,
    StorageFailureError,
    UserNotFound,
)
from .models import Item, Lender, Loan, User

logger = logging.getLogger(__name__)

# Deadlock detected / serialization failure
RETRYABLE_SQLSTATES = frozenset({"40P01", "40001"})

# Bounds of the 32-bit INTEGER columns holding ids and quantities
INT_MIN = -(2**31)
INT_MAX = 2**31 - 1


# ===== Input Validation =====


def _require_int(value: Any, field: str, minimum: Optional[int] = None) -> int:
    """Coerce an integer (or integer string) and keep it within column bounds."""
    if isinstance(value, bool):
        raise InvalidInputError(f"{field} must be an integer")
    if isinstance(value, int):
        number = value
    elif isinstance(value, str) and re.fullmatch(r"-?\d+", value.strip()):
        number = int(value.strip())
    else:
        raise InvalidInputError(f"{field} must be an integer, got {value!r}")
    if minimum is not None and number < minimum:
        raise InvalidInputError(f"{field} must be at least {minimum}, got {number}")
    if not INT_MIN <= number <= INT_MAX:
        raise InvalidInputError(f"{field} is out of range, got {number}")
    return number


def _require_id(value: Any, field: str) -> int:
    return _require_int(value, field, minimum=1)


def _require_text(value: Any, field: str, allow_empty: bool = False) -> str:
    if not isinstance(value, str):
        raise InvalidInputError(f"{field} must be a string")
    text = value.strip()
    if not text and not allow_empty:
        raise InvalidInputError(f"{field} must not be empty")
    return text


def _require_note(value: Any) -> Optional[str]:
    if value is not None and not isinstance(value, str):
        raise InvalidInputError("note must be a string or null")
    return value


def _require_rows(rows: Any, what: str) -> list[Mapping[str, Any]]:
    if isinstance(rows, (str, bytes)) or not isinstance(rows, Sequence):
        raise InvalidInputError(f"{what} must be a list")
    if not rows:
        raise InvalidInputError(f"{what} must not be empty")
    for index, row in enumerate(rows):
        if not isinstance(row, Mapping):
            raise InvalidInputError(f"{what}[{index}] must be an object")
    return list(rows)


def _sqlstate(exc: DBAPIError) -> Optional[str]:
    """Extract the PostgreSQL SQLSTATE from a wrapped driver error."""
    orig = exc.orig
    return getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)


async def _abort(session: AsyncSession, operation: str, exc: SQLAlchemyError) -> StorageFailureError:
    """Roll back after a storage error and build the failure to raise."""
    await session.rollback()
    logger.error(f"{operation} rolled back: {exc}")
    return StorageFailureError(f"{operation} failed: {exc.__class__.__name__}")


# ===== Availability =====


def _open_qty_subquery() -> Any:
    """Correlated sum of open loan quantities for the enclosing Item row."""
    return (
        select(func.coalesce(func.sum(Loan.qty), 0))
        .where(Loan.item_id == Item.id, Loan.returned_at.is_(None))
        .scalar_subquery()
    )


def _available_expr() -> Any:
    return Item.total_qty - _open_qty_subquery()


async def _open_loan_qty(session: AsyncSession, item_id: int) -> int:
    result = await session.execute(
        select(func.coalesce(func.sum(Loan.qty), 0)).where(
            Loan.item_id == item_id,
            Loan.returned_at.is_(None),
        )
    )
    return int(result.scalar_one())


async def get_item_availability(session: AsyncSession, item_id: int) -> int:
    """Compute remaining stock for one item.

    Args:
        session: Database session
        item_id: ID of the item

    Returns:
        total_qty minus the quantity held by open loans

    Raises:
        ItemNotFound: If the item does not exist
    """
    item_id = _require_id(item_id, "item_id")
    result = await session.execute(select(_available_expr().label("available")).where(Item.id == item_id))
    available = result.scalar_one_or_none()
    if available is None:
        raise ItemNotFound(item_id)
    return int(available)


async def list_item_availability(
    session: AsyncSession,
    item_ids: Optional[Iterable[int]] = None,
) -> list[tuple[Item, int]]:
    """List items with their current availability, ordered by id.

    Args:
        session: Database session
        item_ids: Optional ids to restrict to; unknown ids are omitted

    Returns:
        List of (item, available) tuples
    """
    stmt = select(Item, _available_expr().label("available")).order_by(Item.id)
    if item_ids is not None:
        ids = list(item_ids)
        if not ids:
            return []
        stmt = stmt.where(Item.id.in_([_require_id(item_id, "item_ids[]") for item_id in ids]))

    result = await session.execute(stmt.execution_options(populate_existing=True))
    return [(row[0], int(row[1])) for row in result.all()]


# ===== Item Catalog =====


async def _lock_item(session: AsyncSession, item_id: int) -> Optional[Item]:
    """Fetch an item with a row lock held until the transaction ends."""
    result = await session.execute(
        select(Item)
        .where(Item.id == item_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def get_item(session: AsyncSession, item_id: int) -> Optional[Item]:
    """Get an item by ID.

    Args:
        session: Database session
        item_id: ID of the item to retrieve

    Returns:
        The item if found, None otherwise
    """
    item_id = _require_id(item_id, "item_id")
    result = await session.execute(
        select(Item).where(Item.id == item_id).execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def create_item(
    session: AsyncSession,
    actor: Identity,
    category: str,
    name: str,
    total_qty: int,
    note: Optional[str] = None,
) -> Item:
    """Create a single item.

    Args:
        session: Database session
        actor: Acting staff member
        category: Category label
        name: Item name
        total_qty: Initial stock (non-negative)
        note: Optional free-text note

    Returns:
        The created item
    """
    item = Item(
        category=_require_text(category, "category"),
        name=_require_text(name, "name"),
        total_qty=_require_int(total_qty, "total_qty", minimum=0),
        note=_require_note(note),
    )
    try:
        session.add(item)
        await session.commit()
        await session.refresh(item)
    except SQLAlchemyError as exc:
        raise await _abort(session, "create_item", exc) from exc
    logger.info(f"Created item: {item.name} (id={item.id}, qty={item.total_qty}) by user_id={actor.user_id}")
    return item


async def adjust_item_quantity(
    session: AsyncSession,
    actor: Identity,
    item_id: int,
    delta: int,
) -> Item:
    """Add a signed delta to an item's total quantity, clamped at zero.

    The item row is locked for the read-modify-write, so concurrent
    adjustments on the same item are applied one after another.

    Raises:
        ItemNotFound: If the item does not exist
        InvalidInputError: If the new quantity would not fit the column
    """
    item_id = _require_id(item_id, "item_id")
    delta = _require_int(delta, "delta")
    try:
        item = await _lock_item(session, item_id)
        if item is None:
            await session.rollback()
            raise ItemNotFound(item_id)
        previous = item.total_qty
        if previous + delta > INT_MAX:
            await session.rollback()
            raise InvalidInputError(f"total_qty would exceed {INT_MAX}")
        item.total_qty = max(0, previous + delta)
        await session.commit()
    except SQLAlchemyError as exc:
        raise await _abort(session, "adjust_item_quantity", exc) from exc
    logger.info(
        f"Adjusted item id={item_id} qty {previous} -> {item.total_qty} (delta={delta}) by user_id={actor.user_id}"
    )
    return item


async def update_item_note(
    session: AsyncSession,
    actor: Identity,
    item_id: int,
    note: Optional[str],
) -> Item:
    """Replace an item's note.

    Raises:
        ItemNotFound: If the item does not exist
    """
    item_id = _require_id(item_id, "item_id")
    note = _require_note(note)
    try:
        item = await _lock_item(session, item_id)
        if item is None:
            await session.rollback()
            raise ItemNotFound(item_id)
        item.note = note
        await session.commit()
    except SQLAlchemyError as exc:
        raise await _abort(session, "update_item_note", exc) from exc
    logger.info(f"Updated note for item id={item_id} by user_id={actor.user_id}")
    return item


# ===== Bulk Item Mutations =====


async def create_items(
    session: AsyncSession,
    actor: Identity,
    rows: Sequence[Mapping[str, Any]],
) -> list[Item]:
    """Insert a batch of items as one all-or-nothing unit.

    Args:
        session: Database session
        actor: Acting staff member
        rows: Ordered rows of {"category", "name", "qty"}

    Returns:
        The created items, in input order

    Raises:
        InvalidInputError: If any row is malformed (nothing is written)
        StorageFailureError: If the insert fails (nothing is written)
    """
    batch = _require_rows(rows, "items")
    items = []
    for index, row in enumerate(batch):
        items.append(
            Item(
                category=_require_text(row.get("category"), f"items[{index}].category"),
                name=_require_text(row.get("name"), f"items[{index}].name"),
                total_qty=_require_int(row.get("qty"), f"items[{index}].qty", minimum=0),
            )
        )

    try:
        session.add_all(items)
        await session.commit()
    except SQLAlchemyError as exc:
        raise await _abort(session, "create_items", exc) from exc
    logger.info(f"Bulk-created {len(items)} items by user_id={actor.user_id}")
    return items


async def update_items(
    session: AsyncSession,
    actor: Identity,
    rows: Sequence[Mapping[str, Any]],
) -> list[Item]:
    """Set total_qty and note on a batch of items as one all-or-nothing unit.

    A missing ``note`` key clears the note. Lowering total_qty below the
    quantity currently out on open loans is allowed; the resulting negative
    availability is logged as a warning.

    Args:
        session: Database session
        actor: Acting staff member
        rows: Ordered rows of {"id", "total_qty", "note"}

    Returns:
        The updated items, in input order

    Raises:
        InvalidInputError: If any row is malformed (nothing is written)
        ItemNotFound: If any row references a missing item (nothing is written)
        StorageFailureError: If the update fails (nothing is written)
    """
    batch = _require_rows(rows, "updates")
    changes = []
    for index, row in enumerate(batch):
        changes.append(
            (
                _require_id(row.get("id"), f"updates[{index}].id"),
                _require_int(row.get("total_qty"), f"updates[{index}].total_qty", minimum=0),
                _require_note(row.get("note")),
            )
        )
    ids = sorted({item_id for item_id, _, _ in changes})

    try:
        # Lock in id order so overlapping batches cannot deadlock each other
        result = await session.execute(
            select(Item)
            .where(Item.id.in_(ids))
            .order_by(Item.id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        by_id = {item.id: item for item in result.scalars().all()}

        for item_id, total_qty, note in changes:
            item = by_id.get(item_id)
            if item is None:
                await session.rollback()
                raise ItemNotFound(item_id)
            item.total_qty = total_qty
            item.note = note

        await session.flush()
        available = _available_expr()
        overdrawn = await session.execute(
            select(Item.id, available).where(Item.id.in_(ids), available < 0)
        )
        for item_id, remaining in overdrawn.all():
            logger.warning(f"Item id={item_id} now has negative availability ({remaining}) after bulk update")

        await session.commit()
    except SQLAlchemyError as exc:
        raise await _abort(session, "update_items", exc) from exc

    logger.info(f"Bulk-updated {len(ids)} items by user_id={actor.user_id}")
    return [by_id[item_id] for item_id, _, _ in changes]


# ===== Loan Ledger =====


async def _admit_loan(
    session: AsyncSession,
    actor: Identity,
    item_id: int,
    lender_id: int,
    qty: int,
    room: str,
) -> Loan:
    """Run the admission check and insert under the item's row lock."""
    item = await _lock_item(session, item_id)
    if item is None:
        await session.rollback()
        raise ItemNotFound(item_id)

    lender = await session.get(Lender, lender_id)
    if lender is None:
        await session.rollback()
        raise LenderNotFound(lender_id)

    # staff_id references users
    staff = await session.get(User, actor.user_id)
    if staff is None:
        await session.rollback()
        raise UserNotFound(actor.user_id)

    available = item.total_qty - await _open_loan_qty(session, item_id)
    if qty > available:
        await session.rollback()
        logger.info(f"Refused loan of {qty} x item id={item_id}: only {available} available")
        raise InsufficientStockError(item_id, qty, available)

    loan = Loan(
        item_id=item_id,
        lender_id=lender_id,
        qty=qty,
        room=room,
        staff_id=actor.user_id,
    )
    session.add(loan)
    await session.commit()
    await session.refresh(loan)
    return loan


async def create_loan(
    session: AsyncSession,
    actor: Identity,
    item_id: int,
    lender_id: int,
    qty: int,
    room: str = "",
) -> Loan:
    """Lend out ``qty`` units of an item if enough stock is available.

    The availability read and the insert run in one transaction holding a
    row lock on the item, so concurrent borrows of the same item are
    admitted one at a time and can never jointly overcommit its stock.
    Borrows of different items do not contend.

    Args:
        session: Database session
        actor: Acting staff member, recorded as the loan's staff_id
        item_id: ID of the item to lend
        lender_id: ID of the borrowing lender
        qty: Positive quantity
        room: Free-text room the item goes to

    Returns:
        The created open loan

    Raises:
        InvalidInputError: If qty/ids/room are malformed
        ItemNotFound: If the item does not exist
        LenderNotFound: If the lender does not exist
        UserNotFound: If the acting user is not registered
        InsufficientStockError: If qty exceeds current availability
        ConflictError: If deadlock/serialization retries are exhausted
        StorageFailureError: On any other storage error
    """
    item_id = _require_id(item_id, "item_id")
    lender_id = _require_id(lender_id, "lender_id")
    _require_id(actor.user_id, "actor.user_id")
    qty = _require_int(qty, "qty", minimum=1)
    room = _require_text(room, "room", allow_empty=True)

    attempts = max(1, settings.loan_max_attempts)
    last_error: Optional[DBAPIError] = None
    for attempt in range(1, attempts + 1):
        try:
            loan = await _admit_loan(session, actor, item_id, lender_id, qty, room)
        except DBAPIError as exc:
            state = _sqlstate(exc)
            if state not in RETRYABLE_SQLSTATES:
                raise await _abort(session, "create_loan", exc) from exc
            await session.rollback()
            last_error = exc
            logger.warning(f"Loan admission for item id={item_id} hit SQLSTATE {state} (attempt {attempt}/{attempts})")
            continue
        except SQLAlchemyError as exc:
            raise await _abort(session, "create_loan", exc) from exc

        logger.info(
            f"Created loan id={loan.id}: {qty} x item id={item_id} to lender id={lender_id} "
            f"(room={room!r}) by user_id={actor.user_id}"
        )
        return loan

    raise ConflictError(
        f"Loan admission for item {item_id} conflicted {attempts} times; try again"
    ) from last_error


async def get_loan(session: AsyncSession, loan_id: int) -> Optional[Loan]:
    """Get a loan by ID, or None if it does not exist."""
    loan_id = _require_id(loan_id, "loan_id")
    result = await session.execute(
        select(Loan).where(Loan.id == loan_id).execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def return_loan(session: AsyncSession, actor: Identity, loan_id: int) -> Loan:
    """Close a single loan.

    Returning an already-closed loan is a no-op; its original return
    timestamp is kept.

    Raises:
        LoanNotFound: If the loan does not exist
    """
    loan_id = _require_id(loan_id, "loan_id")
    try:
        result = await session.execute(
            update(Loan)
            .where(Loan.id == loan_id, Loan.returned_at.is_(None))
            .values(returned_at=func.now())
            .returning(Loan.id)
            .execution_options(synchronize_session=False)
        )
        closed = result.scalar_one_or_none() is not None
        loan = await get_loan(session, loan_id)
        if loan is None:
            await session.rollback()
            raise LoanNotFound(loan_id)
        await session.commit()
    except SQLAlchemyError as exc:
        raise await _abort(session, "return_loan", exc) from exc

    if closed:
        logger.info(f"Returned loan id={loan_id} by user_id={actor.user_id}")
    else:
        logger.info(f"Loan id={loan_id} was already returned")
    return loan


async def return_loans(
    session: AsyncSession,
    actor: Identity,
    loan_ids: Sequence[int],
) -> list[int]:
    """Close a batch of loans as one all-or-nothing unit.

    Only loans that are currently open are touched; ids of closed or
    unknown loans are skipped without error, so repeating a call is a no-op.

    Args:
        session: Database session
        actor: Acting user
        loan_ids: Ordered loan ids

    Returns:
        IDs of the loans this call closed, in input order

    Raises:
        InvalidInputError: If the id list is empty or malformed
        StorageFailureError: If the update fails (nothing is written)
    """
    if isinstance(loan_ids, (str, bytes)) or not isinstance(loan_ids, Sequence) or not loan_ids:
        raise InvalidInputError("ids must be a non-empty list")
    ids = list(dict.fromkeys(_require_id(value, "ids[]") for value in loan_ids))

    try:
        result = await session.execute(
            update(Loan)
            .where(Loan.id.in_(ids), Loan.returned_at.is_(None))
            .values(returned_at=func.now())
            .returning(Loan.id)
            .execution_options(synchronize_session=False)
        )
        closed = set(result.scalars().all())
        await session.commit()
    except SQLAlchemyError as exc:
        raise await _abort(session, "return_loans", exc) from exc

    logger.info(f"Bulk return closed {len(closed)} of {len(ids)} loans by user_id={actor.user_id}")
    return [loan_id for loan_id in ids if loan_id in closed]


# ===== Loan Reports =====


async def list_open_loans(session: AsyncSession) -> list[dict]:
    """List every open loan, oldest first.

    Returns:
        List of dicts with id, room, qty, borrowed_at (ISO string),
        item_name, lender_name and staff_name
    """
    stmt = (
        select(
            Loan.id,
            Loan.room,
            Loan.qty,
            Loan.borrowed_at,
            Item.name.label("item_name"),
            Lender.name.label("lender_name"),
            User.name.label("staff_name"),
        )
        .join(Item, Loan.item_id == Item.id)
        .join(Lender, Loan.lender_id == Lender.id)
        .outerjoin(User, Loan.staff_id == User.id)
        .where(Loan.returned_at.is_(None))
        .order_by(Loan.borrowed_at.asc(), Loan.id.asc())
    )
    result = await session.execute(stmt)

    return [
        {
            "id": row.id,
            "room": row.room,
            "qty": row.qty,
            "borrowed_at": row.borrowed_at.isoformat() if row.borrowed_at else None,
            "item_name": row.item_name,
            "lender_name": row.lender_name,
            "staff_name": row.staff_name,
        }
        for row in result.all()
    ]


async def search_loan_history(
    session: AsyncSession,
    query: Optional[str] = None,
    only_open: bool = False,
) -> list[dict]:
    """Search all loans by room, item name or lender name.

    Args:
        session: Database session
        query: Optional case-insensitive substring
        only_open: Restrict to loans not yet returned

    Returns:
        List of dicts ordered by room, then most recent borrow first
    """
    stmt = (
        select(
            Loan.id,
            Item.name.label("item_name"),
            Item.category,
            Lender.name.label("lender_name"),
            User.name.label("staff_name"),
            Loan.qty,
            Loan.room,
            Loan.borrowed_at,
            Loan.returned_at,
        )
        .join(Item, Loan.item_id == Item.id)
        .join(Lender, Loan.lender_id == Lender.id)
        .outerjoin(User, Loan.staff_id == User.id)
    )

    if query:
        pattern = f"%{query}%"
        stmt = stmt.where(
            or_(Loan.room.ilike(pattern), Item.name.ilike(pattern), Lender.name.ilike(pattern))
        )
    if only_open:
        stmt = stmt.where(Loan.returned_at.is_(None))

    stmt = stmt.order_by(Loan.room.asc(), Loan.borrowed_at.desc(), Loan.id.desc())
    result = await session.execute(stmt)

    return [
        {
            "id": row.id,
            "item_name": row.item_name,
            "category": row.category,
            "lender_name": row.lender_name,
            "staff_name": row.staff_name,
            "qty": row.qty,
            "room": row.room,
            "borrowed_at": row.borrowed_at.isoformat() if row.borrowed_at else None,
            "returned_at": row.returned_at.isoformat() if row.returned_at else None,
        }
        for row in result.all()
    ]


# ===== Lender Registry =====


async def create_lender(session: AsyncSession, actor: Identity, name: str) -> Lender:
    """Create a single lender."""
    lender = Lender(name=_require_text(name, "name"))
    try:
        session.add(lender)
        await session.commit()
        await session.refresh(lender)
    except SQLAlchemyError as exc:
        raise await _abort(session, "create_lender", exc) from exc
    logger.info(f"Created lender: {lender.name} (id={lender.id}) by user_id={actor.user_id}")
    return lender


async def list_lenders(session: AsyncSession) -> list[Lender]:
    """List all lenders, newest first."""
    result = await session.execute(select(Lender).order_by(Lender.id.desc()))
    return list(result.scalars().all())


async def import_lenders(
    session: AsyncSession,
    actor: Identity,
    names: Iterable[Optional[str]],
) -> int:
    """Append a list of lender names as one all-or-nothing unit.

    Names are trimmed and blank entries dropped. Existing lenders are not
    consulted, so importing the same list twice creates duplicates.

    Args:
        session: Database session
        actor: Acting staff member
        names: Already-decoded candidate names

    Returns:
        Number of lenders inserted

    Raises:
        InvalidInputError: If names is a bare string or an entry is not a string
        StorageFailureError: If the insert fails (nothing is written)
    """
    if isinstance(names, (str, bytes)):
        raise InvalidInputError("names must be a list of strings")
    cleaned = []
    for index, name in enumerate(names):
        if name is None:
            continue
        if not isinstance(name, str):
            raise InvalidInputError(f"names[{index}] must be a string")
        name = name.strip()
        if name:
            cleaned.append(name)

    if not cleaned:
        logger.info("Lender import had no usable names")
        return 0

    try:
        session.add_all([Lender(name=name) for name in cleaned])
        await session.commit()
    except SQLAlchemyError as exc:
        raise await _abort(session, "import_lenders", exc) from exc
    logger.info(f"Imported {len(cleaned)} lenders by user_id={actor.user_id}")
    return len(cleaned)


# ===== User Operations =====


async def create_user(
    session: AsyncSession,
    name: str,
    is_staff: bool = False,
    email: Optional[str] = None,
) -> User:
    """Create a new user.

    Args:
        session: Database session
        name: Display name
        is_staff: Whether the user may perform staff-only operations
        email: Optional email address

    Returns:
        The created user
    """
    user = User(name=_require_text(name, "name"), is_staff=is_staff, email=email)
    session.add(user)
    await session.commit()
    await session.refresh(user)
    logger.info(f"Created user: {user.name} (id={user.id}, staff={user.is_staff})")
    return user


async def get_user(session: AsyncSession, user_id: int) -> Optional[User]:
    """Get a user by ID, or None if not found."""
    result = await session.execute(select(User).where(User.id == user_id))
    return result.scalar_one_or_none()
