"""Database connection and session management.

One Database instance is created at startup and handed to every service.
The caller owns its lifecycle (create_all / dispose).
"""

from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Hashable, Optional

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from custody.ledger.models import Base
from custody.utils.locks import RowLockRegistry


class Database:
    """Async engine, session factory and row-lock registry."""

    def __init__(
        self,
        url: str,
        echo: bool = False,
        lock_timeout: Optional[float] = 30.0,
        **engine_kwargs: Any,
    ):
        # Convert sqlite:/// to sqlite+aiosqlite:/// if needed
        if url.startswith("sqlite:///") and "aiosqlite" not in url:
            url = url.replace("sqlite:///", "sqlite+aiosqlite:///")

        self.url = url
        self.engine: AsyncEngine = create_async_engine(url, echo=echo, **engine_kwargs)
        self.session_factory = async_sessionmaker(
            bind=self.engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )
        self.locks = RowLockRegistry(default_timeout=lock_timeout)

    @property
    def dialect(self) -> str:
        return self.engine.dialect.name

    @asynccontextmanager
    async def session(self) -> AsyncGenerator[AsyncSession, None]:
        """Session that commits on success and rolls back on error."""
        async with self.session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    def row_lock(
        self,
        table: str,
        key: Hashable,
        timeout: Optional[float] = None,
        operation: str = "row_operation",
    ):
        """Exclusive in-process lock on one row.

        Take it before opening the session that selects the row FOR UPDATE,
        and keep it until that session has committed.
        """
        return self.locks.row_lock(table, key, timeout=timeout, operation=operation)

    async def create_all(self) -> None:
        """Create all tables."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def drop_all(self) -> None:
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.drop_all)

    async def dispose(self) -> None:
        """Close database connections."""
        await self.engine.dispose()
