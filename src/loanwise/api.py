"""FastAPI REST API for the loan ledger."""

import logging
import os
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Annotated, Any, Optional

from dotenv import load_dotenv
from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel, Field
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from slowapi.util import get_remote_address
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

# Load environment variables from .env file (find it relative to this file)
_env_path = Path(__file__).parent.parent.parent / ".env"
load_dotenv(_env_path)

from .auth import decode_access_token
from .config import settings
from .database.crud import (
    adjust_item_quantity,
    create_item,
    create_items,
    create_lender,
    create_loan,
    get_item_availability,
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
from .database.engine import AsyncSessionLocal, close_db, init_db
from .database.errors import ErrorKind, LedgerError
from .database.models import Item, Loan
from .identity import Identity

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

ERROR_STATUS = {
    ErrorKind.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorKind.INVALID_INPUT: status.HTTP_400_BAD_REQUEST,
    ErrorKind.INSUFFICIENT_STOCK: status.HTTP_409_CONFLICT,
    ErrorKind.CONFLICT: status.HTTP_409_CONFLICT,
    ErrorKind.STORAGE_FAILURE: status.HTTP_503_SERVICE_UNAVAILABLE,
}


# Pydantic models for API
class ItemCreate(BaseModel):
    category: str = Field(..., description="Category label")
    name: str = Field(..., description="Name of the item")
    total_qty: int = Field(..., description="Total stock owned")
    note: Optional[str] = Field(None, description="Optional note")


class ItemRow(BaseModel):
    category: str
    name: str
    qty: int


class ItemsBulkCreate(BaseModel):
    items: list[ItemRow]


class ItemUpdateRow(BaseModel):
    id: int
    total_qty: int
    note: Optional[str] = None


class ItemsBulkUpdate(BaseModel):
    updates: list[ItemUpdateRow]


class QuantityDelta(BaseModel):
    id: int
    delta: int = Field(..., description="Signed change to total quantity")


class NoteUpdate(BaseModel):
    id: int
    note: Optional[str] = None


class LoanCreate(BaseModel):
    item_id: int
    lender_id: int
    qty: int = Field(..., description="Positive quantity to lend")
    room: str = ""


class LoanReturn(BaseModel):
    id: int


class LoanBulkReturn(BaseModel):
    ids: list[int]


class LenderCreate(BaseModel):
    name: str


class LenderImport(BaseModel):
    names: list[Optional[str]] = Field(..., description="Decoded lender names, one per row")


def _item_payload(item: Item, available: Optional[int] = None) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "id": item.id,
        "category": item.category,
        "name": item.name,
        "total_qty": item.total_qty,
        "note": item.note,
    }
    if available is not None:
        payload["available"] = available
    return payload


def _loan_payload(loan: Loan) -> dict[str, Any]:
    return {
        "id": loan.id,
        "item_id": loan.item_id,
        "lender_id": loan.lender_id,
        "qty": loan.qty,
        "room": loan.room,
        "staff_id": loan.staff_id,
        "borrowed_at": loan.borrowed_at.isoformat() if loan.borrowed_at else None,
        "returned_at": loan.returned_at.isoformat() if loan.returned_at else None,
    }


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage database lifecycle."""
    logger.info("Starting Loan Ledger API...")
    await init_db()
    logger.info("Database initialized")
    yield
    logger.info("Shutting down...")
    await close_db()


# Create FastAPI app
app = FastAPI(
    title="Loan Ledger API",
    description="Shared item loans with live availability",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS configuration from environment
_cors_origins = os.getenv("CORS_ORIGINS", "http://localhost:8080,http://127.0.0.1:8080")
ALLOWED_ORIGINS = [origin.strip() for origin in _cors_origins.split(",") if origin.strip()]

# Security check: don't allow wildcard with credentials in production
_is_production = os.getenv("ENV", "development").lower() in ("production", "prod")
if _is_production and "*" in ALLOWED_ORIGINS:
    raise ValueError("CORS_ORIGINS cannot be '*' in production when credentials are enabled")

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Rate limiting
limiter = Limiter(key_func=get_remote_address, default_limits=[settings.rate_limit_default])
app.state.limiter = limiter
app.add_middleware(SlowAPIMiddleware)


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return JSON 429 with Retry-After header."""
    retry_after = exc.detail.split(" ")[-1] if exc.detail else "60"
    return JSONResponse(
        status_code=429,
        content={"detail": "Rate limit exceeded"},
        headers={"Retry-After": retry_after},
    )


@app.exception_handler(LedgerError)
async def ledger_error_handler(request: Request, exc: LedgerError) -> JSONResponse:
    """Translate ledger failures into JSON error responses."""
    status_code = ERROR_STATUS.get(exc.kind, status.HTTP_500_INTERNAL_SERVER_ERROR)
    if status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    else:
        logger.info(f"{request.method} {request.url.path} -> {exc.kind.value}: {exc.message}")
    return JSONResponse(
        status_code=status_code,
        content={"status": "error", "error": exc.kind.value, "detail": exc.message},
    )


@app.get("/health")
async def health_check():
    """Health check endpoint - verifies DB connectivity."""
    try:
        async with AsyncSessionLocal() as session:
            await session.execute(text("SELECT 1"))
        return {
            "status": "healthy",
            "dependencies": {"database": "healthy"},
        }
    except (SQLAlchemyError, OSError) as e:
        logger.error(f"Health check failed: {e}")
        return JSONResponse(
            status_code=503,
            content={
                "status": "unhealthy",
                "dependencies": {"database": "unhealthy"},
            },
        )


# ===== Identity =====

# API router for versioned endpoints, mounted at both /api and /api/v1
api_router = APIRouter()

bearer_scheme = HTTPBearer(auto_error=False)


async def get_current_user(
    credentials: Annotated[Optional[HTTPAuthorizationCredentials], Depends(bearer_scheme)]
) -> Identity:
    """Dependency to get the caller's identity from the bearer token."""
    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )

    identity = decode_access_token(credentials.credentials)
    if identity is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        )

    return identity


async def require_staff(
    current_user: Annotated[Identity, Depends(get_current_user)]
) -> Identity:
    """Dependency that only lets staff members through."""
    if not current_user.is_staff:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Staff only")
    return current_user


@api_router.get("/me")
async def get_me(current_user: Annotated[Identity, Depends(get_current_user)]):
    """Get the caller's identity."""
    return {
        "id": current_user.user_id,
        "name": current_user.name,
        "is_staff": current_user.is_staff,
    }


# ===== Item Endpoints =====


@api_router.get("/items")
async def get_items(current_user: Annotated[Identity, Depends(get_current_user)]):
    """List all items with their current availability."""
    async with AsyncSessionLocal() as session:
        rows = await list_item_availability(session)
        return {
            "count": len(rows),
            "items": [_item_payload(item, available) for item, available in rows],
        }


@api_router.get("/items/{item_id}/availability")
async def get_availability(
    current_user: Annotated[Identity, Depends(get_current_user)],
    item_id: int,
):
    """Get the current availability of one item."""
    async with AsyncSessionLocal() as session:
        available = await get_item_availability(session, item_id)
        return {"id": item_id, "available": available}


@api_router.post("/items", status_code=status.HTTP_201_CREATED)
async def create_new_item(
    staff: Annotated[Identity, Depends(require_staff)],
    body: ItemCreate,
):
    """Add a single item."""
    async with AsyncSessionLocal() as session:
        item = await create_item(session, staff, body.category, body.name, body.total_qty, body.note)
        return {"status": "success", "item": _item_payload(item)}


@api_router.post("/items/bulk", status_code=status.HTTP_201_CREATED)
async def create_items_bulk(
    staff: Annotated[Identity, Depends(require_staff)],
    body: ItemsBulkCreate,
):
    """Add many items at once; either all are added or none."""
    async with AsyncSessionLocal() as session:
        items = await create_items(session, staff, [row.model_dump() for row in body.items])
        return {
            "status": "success",
            "count": len(items),
            "items": [_item_payload(item) for item in items],
        }


@api_router.post("/items/update-bulk")
async def update_items_bulk(
    staff: Annotated[Identity, Depends(require_staff)],
    body: ItemsBulkUpdate,
):
    """Set stock and note on many items at once; either all apply or none."""
    async with AsyncSessionLocal() as session:
        items = await update_items(session, staff, [row.model_dump() for row in body.updates])
        return {
            "status": "success",
            "count": len(items),
            "items": [_item_payload(item) for item in items],
        }


@api_router.post("/items/update_qty")
async def update_item_quantity(
    staff: Annotated[Identity, Depends(require_staff)],
    body: QuantityDelta,
):
    """Increase or decrease an item's total stock (never below zero)."""
    async with AsyncSessionLocal() as session:
        item = await adjust_item_quantity(session, staff, body.id, body.delta)
        return {"status": "success", "item": _item_payload(item)}


@api_router.post("/items/update_note")
async def update_note(
    staff: Annotated[Identity, Depends(require_staff)],
    body: NoteUpdate,
):
    """Replace an item's note."""
    async with AsyncSessionLocal() as session:
        item = await update_item_note(session, staff, body.id, body.note)
        return {"status": "success", "item": _item_payload(item)}


# ===== Loan Endpoints =====


@api_router.post("/loans", status_code=status.HTTP_201_CREATED)
async def borrow(
    current_user: Annotated[Identity, Depends(get_current_user)],
    body: LoanCreate,
):
    """Lend out an item if enough stock is available."""
    async with AsyncSessionLocal() as session:
        loan = await create_loan(
            session,
            current_user,
            item_id=body.item_id,
            lender_id=body.lender_id,
            qty=body.qty,
            room=body.room,
        )
        return {"status": "success", "loan": _loan_payload(loan)}


@api_router.get("/loans/unreturned")
async def get_unreturned_loans(current_user: Annotated[Identity, Depends(get_current_user)]):
    """List loans that have not been returned yet."""
    async with AsyncSessionLocal() as session:
        loans = await list_open_loans(session)
        return {"count": len(loans), "loans": loans}


@api_router.post("/loans/return")
async def return_single_loan(
    current_user: Annotated[Identity, Depends(get_current_user)],
    body: LoanReturn,
):
    """Mark one loan as returned."""
    async with AsyncSessionLocal() as session:
        loan = await return_loan(session, current_user, body.id)
        return {"status": "success", "loan": _loan_payload(loan)}


@api_router.post("/loans/return/bulk")
async def return_loans_bulk(
    current_user: Annotated[Identity, Depends(get_current_user)],
    body: LoanBulkReturn,
):
    """Mark many loans as returned; already-returned loans are skipped."""
    async with AsyncSessionLocal() as session:
        closed = await return_loans(session, current_user, body.ids)
        return {"status": "success", "count": len(closed), "returned_ids": closed}


@api_router.get("/history")
async def get_history(
    staff: Annotated[Identity, Depends(require_staff)],
    q: Optional[str] = Query(None, description="Match room, item or lender name"),
    only_open: bool = Query(False, alias="onlyNot", description="Only unreturned loans"),
):
    """Search the loan history."""
    async with AsyncSessionLocal() as session:
        rows = await search_loan_history(session, query=q, only_open=only_open)
        return {"count": len(rows), "loans": rows}


# ===== Lender Endpoints =====


@api_router.get("/lenders")
async def get_lenders(current_user: Annotated[Identity, Depends(get_current_user)]):
    """List lenders, newest first."""
    async with AsyncSessionLocal() as session:
        lenders = await list_lenders(session)
        return {"lenders": [{"id": lender.id, "name": lender.name} for lender in lenders]}


@api_router.post("/lenders", status_code=status.HTTP_201_CREATED)
async def create_new_lender(
    staff: Annotated[Identity, Depends(require_staff)],
    body: LenderCreate,
):
    """Register a single lender."""
    async with AsyncSessionLocal() as session:
        lender = await create_lender(session, staff, body.name)
        return {"status": "success", "lender": {"id": lender.id, "name": lender.name}}


@api_router.post("/lenders/import")
async def import_lender_names(
    staff: Annotated[Identity, Depends(require_staff)],
    body: LenderImport,
):
    """Append a decoded list of lender names; either all are added or none."""
    async with AsyncSessionLocal() as session:
        count = await import_lenders(session, staff, body.names)
        return {"status": "success", "count": count}


# ===== Mount API router at both /api (backward compat) and /api/v1 =====
app.include_router(api_router, prefix="/api/v1")
app.include_router(api_router, prefix="/api")


def run_api():
    """Run the FastAPI server."""
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=int(os.getenv("PORT", "8080")))  # nosec B104


if __name__ == "__main__":
    run_api()
