"""
Database connection management.
Handles async SQLAlchemy engine and session creation.

SQLite connections run with the driver's implicit transactions disabled and
every transaction opened with ``BEGIN IMMEDIATE``, so a transaction takes the
database write lock before its first read. Claiming relies on this: two
workers can never both see the same job as pending.
"""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from pathlib import Path

from sqlalchemy import event
from sqlalchemy.engine import make_url
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool

from queuectl.config import Settings, get_settings
from queuectl.db.models import Base
from queuectl.errors import StoreUnavailableError

logger = logging.getLogger(__name__)

# Global engine instance
_engine: AsyncEngine | None = None
AsyncSessionLocal: async_sessionmaker[AsyncSession] | None = None


def _configure_sqlite(engine: AsyncEngine, busy_timeout_ms: int) -> None:
    """Install connection pragmas and the write-locking BEGIN on a SQLite engine."""

    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute(f"PRAGMA busy_timeout = {int(busy_timeout_ms)}")
        cursor.execute("PRAGMA journal_mode = WAL")
        cursor.close()

    @event.listens_for(engine.sync_engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def create_engine_for(settings: Settings) -> AsyncEngine:
    """
    Create an async engine for the configured database.

    Args:
        settings: Settings holding the database URL and tuning knobs.

    Returns:
        AsyncEngine: The SQLAlchemy async engine instance.
    """
    url = make_url(settings.resolved_database_url)

    if url.get_backend_name() == "sqlite":
        if url.database and url.database != ":memory:":
            Path(url.database).expanduser().parent.mkdir(parents=True, exist_ok=True)
        engine = create_async_engine(
            url,
            poolclass=NullPool,
            echo=settings.log_level.upper() == "DEBUG",
        )
        _configure_sqlite(engine, settings.database_busy_timeout_ms)
        return engine

    return create_async_engine(
        url,
        pool_size=settings.database_pool_size,
        max_overflow=settings.database_max_overflow,
        echo=settings.log_level.upper() == "DEBUG",
        pool_pre_ping=True,
    )


def get_engine(settings: Settings | None = None) -> AsyncEngine:
    """
    Get or create the async database engine.

    Returns:
        AsyncEngine: The SQLAlchemy async engine instance.
    """
    global _engine
    if _engine is None:
        _engine = create_engine_for(settings or get_settings())
    return _engine


async def init_db(settings: Settings | None = None) -> None:
    """
    Initialize the database connection, session factory and schema.
    Should be called on process startup.
    """
    global AsyncSessionLocal
    engine = get_engine(settings)
    AsyncSessionLocal = async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )
    try:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
    except OperationalError as exc:
        raise StoreUnavailableError(f"Database unavailable: {exc.orig}") from exc
    logger.debug("Database connection initialized", extra={"url": str(engine.url)})


async def close_db() -> None:
    """
    Close the database connection.
    Should be called on process shutdown.
    """
    global _engine, AsyncSessionLocal
    if _engine is not None:
        await _engine.dispose()
        _engine = None
        AsyncSessionLocal = None
        logger.debug("Database connection closed")


@asynccontextmanager
async def get_session_context() -> AsyncGenerator[AsyncSession]:
    """
    Context manager for getting async database sessions.
    Commits on success, rolls back on error.

    Yields:
        AsyncSession: An async database session.

    Raises:
        RuntimeError: If the database is not initialized.
        StoreUnavailableError: If the database cannot be reached or is locked.
    """
    if AsyncSessionLocal is None:
        raise RuntimeError("Database not initialized. Call init_db() first.")

    async with AsyncSessionLocal() as session:
        try:
            yield session
            await session.commit()
        except OperationalError as exc:
            await session.rollback()
            raise StoreUnavailableError(f"Database unavailable: {exc.orig}") from exc
        except Exception:
            await session.rollback()
            raise
