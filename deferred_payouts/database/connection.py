"""Database connection and session management."""
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any, Dict

import structlog
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from deferred_payouts.config import Settings
from deferred_payouts.database.models import Base

logger = structlog.get_logger(__name__)


class Database:
    """
    Storage handle passed explicitly to every service.

    Owns the engine and session factory. Each unit of work gets its own
    session, committed on success and rolled back on error.
    """

    def __init__(self, engine: AsyncEngine):
        """
        Initialize database handle.

        Args:
            engine: SQLAlchemy async engine
        """
        self.engine = engine
        self.session_factory: async_sessionmaker[AsyncSession] = async_sessionmaker(
            engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autocommit=False,
            autoflush=False,
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> "Database":
        """
        Create a database handle from application settings.

        Args:
            settings: Application settings

        Returns:
            Database: Database handle
        """
        engine_kwargs: Dict[str, Any] = {"echo": settings.database_echo}
        if not settings.uses_sqlite:
            engine_kwargs.update(
                pool_size=settings.database_pool_size,
                max_overflow=settings.database_max_overflow,
                pool_pre_ping=True,  # Verify connections before using
                pool_recycle=3600,  # Recycle connections after 1 hour
            )
        return cls(create_async_engine(settings.database_url, **engine_kwargs))

    @asynccontextmanager
    async def unit_of_work(self) -> AsyncGenerator[AsyncSession, Any]:
        """
        Scoped session for one unit of work.

        Yields:
            AsyncSession: Database session

        Example:
            async with db.unit_of_work() as session:
                session.add(seller)
        """
        async with self.session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    async def init_models(self) -> None:
        """
        Initialize database tables.

        Creates all tables defined in models if they don't exist.
        """
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("database_tables_initialized")

    async def close(self) -> None:
        """Close database connections and dispose of the engine."""
        await self.engine.dispose()
