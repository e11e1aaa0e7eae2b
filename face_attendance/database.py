"""
Database Connection and Session Management

This module handles database connectivity using SQLAlchemy async engines
(asyncpg for PostgreSQL in production, aiosqlite in tests). The engine is
owned by a Database object created at application startup.
"""
from typing import AsyncIterator
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import declarative_base
from sqlalchemy import text
import logging

from face_attendance.config import DATABASE_URL, DB_POOL_SIZE, DB_MAX_OVERFLOW

logger = logging.getLogger(__name__)

# Base class for ORM models
Base = declarative_base()


class Database:
    """Async engine plus session factory."""

    def __init__(self, url: str = DATABASE_URL, **engine_options):
        engine_kwargs = {"echo": False, "pool_pre_ping": True}
        if not url.startswith("sqlite") and "poolclass" not in engine_options:
            engine_kwargs.update(pool_size=DB_POOL_SIZE, max_overflow=DB_MAX_OVERFLOW)
        engine_kwargs.update(engine_options)

        self.url = url
        self.engine = create_async_engine(url, **engine_kwargs)
        self.session_maker = async_sessionmaker(
            self.engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autocommit=False,
            autoflush=False,
        )

    async def session(self) -> AsyncIterator[AsyncSession]:
        """
        Dependency for getting database sessions.

        Usage:
            async for session in database.session():
                # use session
        """
        async with self.session_maker() as session:
            try:
                yield session
            except Exception:
                await session.rollback()
                raise

    async def init(self, create_tables: bool = True):
        """Verify connectivity and optionally create missing tables."""
        # Registers the ORM models on Base.metadata
        from face_attendance import models  # noqa: F401

        try:
            async with self.engine.begin() as conn:
                await conn.execute(text("SELECT 1"))
                if create_tables:
                    await conn.run_sync(Base.metadata.create_all)
            logger.info("Database connection established successfully")
        except Exception as e:
            logger.error(f"Failed to connect to database: {e}")
            raise

    async def close(self):
        """Close database connection pool."""
        await self.engine.dispose()
        logger.info("Database connection pool closed")
