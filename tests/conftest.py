"""Pytest configuration and shared fixtures."""

import os
from typing import Any, AsyncGenerator

# Set test environment variables before application modules build their settings
os.environ["POSTGRES_DB"] = "loanwise_test"
os.environ["POSTGRES_PORT"] = os.environ.get("POSTGRES_PORT", "5433")  # Use 5433 for local testing
os.environ.setdefault("JWT_SECRET_KEY", "test-secret-key-not-for-production")

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine  # noqa: E402

from loanwise.config import Settings  # noqa: E402
from loanwise.database.crud import create_item, create_lender, create_user  # noqa: E402
from loanwise.database.models import Base, Item, Lender, User  # noqa: E402
from loanwise.identity import Identity  # noqa: E402


@pytest.fixture(scope="session")
def test_settings() -> Settings:
    """Create test settings."""
    return Settings(
        postgres_db="loanwise_test",
        postgres_user="postgres",
        postgres_password="postgres",
        postgres_host="localhost",
        postgres_port=int(os.environ.get("POSTGRES_PORT", "5433")),
        debug=True,
    )


@pytest_asyncio.fixture(scope="function")
async def test_engine(test_settings: Settings) -> AsyncGenerator[Any, None]:
    """Create a test database engine."""
    engine = create_async_engine(
        test_settings.database_url,
        echo=False,
        pool_pre_ping=True,
        pool_size=10,
        max_overflow=10,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    # Clean up
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture
def session_factory(test_engine: Any) -> async_sessionmaker[AsyncSession]:
    """Session factory for tests that simulate several concurrent requests."""
    return async_sessionmaker(
        test_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


@pytest_asyncio.fixture
async def db_session(session_factory: async_sessionmaker[AsyncSession]) -> AsyncGenerator[AsyncSession, None]:
    """Create a test database session."""
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest_asyncio.fixture
async def staff_user(db_session: AsyncSession) -> User:
    return await create_user(db_session, "Front Desk", is_staff=True, email="desk@example.com")


@pytest_asyncio.fixture
async def regular_user(db_session: AsyncSession) -> User:
    return await create_user(db_session, "Volunteer", is_staff=False)


@pytest.fixture
def staff(staff_user: User) -> Identity:
    """Identity of the acting staff member."""
    return Identity(user_id=staff_user.id, name=staff_user.name, is_staff=True)


@pytest.fixture
def member(regular_user: User) -> Identity:
    """Identity of a non-staff user."""
    return Identity(user_id=regular_user.id, name=regular_user.name, is_staff=False)


@pytest_asyncio.fixture
async def lender(db_session: AsyncSession, staff: Identity) -> Lender:
    return await create_lender(db_session, staff, "Hanako Yamada")


@pytest_asyncio.fixture
async def item(db_session: AsyncSession, staff: Identity) -> Item:
    """An item with five units in stock and no loans."""
    return await create_item(db_session, staff, "AV", "Projector", 5)


@pytest.fixture
def sample_item_rows() -> list[dict[str, Any]]:
    """Rows for a bulk item insert."""
    return [
        {"category": "AV", "name": "Projector", "qty": 2},
        {"category": "AV", "name": "Extension cord", "qty": "10"},
        {"category": "Furniture", "name": "Folding chair", "qty": 40},
    ]


class AsyncContextManagerMock:
    """Mock async context manager for testing."""

    def __init__(self, return_value: Any) -> None:
        self.return_value = return_value

    async def __aenter__(self) -> Any:
        return self.return_value

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> bool:
        return False


@pytest.fixture
def mock_session_factory(db_session: AsyncSession) -> Any:
    """Create a mock session factory that returns the test session."""

    def factory() -> AsyncContextManagerMock:
        return AsyncContextManagerMock(db_session)

    return factory
