"""
Database connection management and session handling.

The engine and session factory live on an explicitly constructed
``DatabaseManager``. The application creates one at startup, stores it on
``app.state.db`` and disposes it on shutdown; request handlers reach it through
the ``get_db`` dependency instead of a lazily populated module global.
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from fastapi import Request
from sqlalchemy import text
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import (
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
    AsyncEngine,
)

from .config import Settings, get_settings
from .models.base import Base

logger = logging.getLogger(__name__)


def create_database_engine(database_url: str, settings: Optional[Settings] = None) -> AsyncEngine:
    """Create and configure the database engine with connection pooling."""
    settings = settings or get_settings()
    url = make_url(database_url)

    if url.get_backend_name() == "sqlite":
        # File or memory databases used by tests and local tooling
        return create_async_engine(database_url, echo=settings.debug)

    return create_async_engine(
        database_url,
        # Connection pool configuration for concurrent access
        pool_size=settings.database_pool_size,
        max_overflow=settings.database_max_overflow,
        pool_pre_ping=True,  # Validate connections before use
        pool_recycle=3600,   # Recycle connections every hour
        echo=settings.debug,
    )


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Create session factory for database sessions."""
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=True,
    )


class DatabaseManager:
    """Database manager for handling connections and sessions."""

    def __init__(self, database_url: Optional[str] = None, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self.database_url = database_url or self.settings.database_url
        self.engine: AsyncEngine | None = None
        self.session_factory: async_sessionmaker[AsyncSession] | None = None

    async def initialize(self, create_tables: Optional[bool] = None) -> None:
        """Create the engine and session factory, optionally creating tables."""
        logger.info("Initializing database connection...")

        self.engine = create_database_engine(self.database_url, self.settings)
        self.session_factory = create_session_factory(self.engine)

        if create_tables is None:
            create_tables = self.settings.database_create_tables

        if create_tables:
            async with self.engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)

        logger.info("Database manager initialized")

    async def close(self) -> None:
        """Close database connections."""
        if self.engine:
            logger.info("Closing database connections...")
            await self.engine.dispose()
            self.engine = None
            self.session_factory = None
            logger.info("Database connections closed")

    async def ping(self) -> bool:
        """Run a trivial query to check connectivity."""
        if self.engine is None:
            return False
        async with self.engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        return True

    @asynccontextmanager
    async def get_session(self) -> AsyncGenerator[AsyncSession, None]:
        """
        Get a database session with automatic cleanup.

        Usage:
            async with db_manager.get_session() as session:
                result = await session.execute(query)
        """
        if self.session_factory is None:
            raise RuntimeError("Database manager not initialized. Call initialize() first.")

        async with self.session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise


def get_db_manager(request: Request) -> DatabaseManager:
    """Return the database manager attached to the running application."""
    manager = getattr(request.app.state, "db", None)
    if manager is None:
        raise RuntimeError("Database manager is not attached to the application")
    return manager


# FastAPI dependency function
async def get_db(request: Request) -> AsyncGenerator[AsyncSession, None]:
    """
    FastAPI dependency for getting database sessions.

    Usage in FastAPI endpoints:
        @app.get("/endpoint")
        async def endpoint(db: AsyncSession = Depends(get_db)):
            # Use db session here
    """
    async with get_db_manager(request).get_session() as session:
        yield session
