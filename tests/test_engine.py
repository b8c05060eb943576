"""Tests for database engine and session management."""

from typing import Any

import pytest
from sqlalchemy import inspect
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession

from loanwise.database.engine import (
    AsyncSessionLocal,
    close_db,
    engine,
    init_db,
)
from loanwise.database.models import Base


class TestDatabaseEngine:
    """Tests for database engine."""

    def test_engine_is_async(self) -> None:
        assert isinstance(engine, AsyncEngine)

    def test_engine_url(self) -> None:
        """Engine should be using the asyncpg driver against the test database."""
        assert engine.url.drivername == "postgresql+asyncpg"
        assert engine.url.database == "loanwise_test"

    def test_pool_pre_ping_enabled(self) -> None:
        """Verify pool_pre_ping is True to detect stale connections."""
        assert engine.pool._pre_ping is True

    def test_pool_recycle_set(self) -> None:
        assert engine.pool._recycle == 3600


class TestSessionFactory:
    """Tests for session factory."""

    @pytest.mark.asyncio
    async def test_create_session(self) -> None:
        async with AsyncSessionLocal() as session:
            assert isinstance(session, AsyncSession)

    @pytest.mark.asyncio
    async def test_sessions_are_independent(self) -> None:
        async with AsyncSessionLocal() as session1:
            async with AsyncSessionLocal() as session2:
                assert session1 is not session2

    def test_objects_survive_commit(self) -> None:
        """Ledger operations return rows after committing, so commits must not expire them."""
        assert AsyncSessionLocal.kw["expire_on_commit"] is False


class TestSchema:
    """Tests for the declared schema."""

    def test_metadata_tables(self) -> None:
        assert set(Base.metadata.tables) == {"users", "items", "lenders", "loans"}

    @pytest.mark.asyncio
    async def test_tables_created(self, test_engine: Any) -> None:
        async with test_engine.connect() as conn:
            names = await conn.run_sync(lambda sync_conn: inspect(sync_conn).get_table_names())
        assert {"users", "items", "lenders", "loans"} <= set(names)

    @pytest.mark.asyncio
    async def test_open_loan_index_exists(self, test_engine: Any) -> None:
        async with test_engine.connect() as conn:
            indexes = await conn.run_sync(lambda sync_conn: inspect(sync_conn).get_indexes("loans"))
        by_name = {index["name"]: index for index in indexes}
        assert by_name["ix_loans_open_item_id"]["column_names"] == ["item_id"]


class TestInitDb:
    """Tests for startup table creation."""

    @pytest.mark.asyncio
    async def test_init_db_is_idempotent(self, test_engine: Any) -> None:
        await init_db()
        await init_db()

        async with test_engine.connect() as conn:
            names = await conn.run_sync(lambda sync_conn: inspect(sync_conn).get_table_names())
        assert {"users", "items", "lenders", "loans"} <= set(names)
        await close_db()


class TestCloseDb:
    """Tests for database cleanup."""

    @pytest.mark.asyncio
    async def test_close_db(self) -> None:
        await close_db()
