"""Engine and session handling for the transaction and work session tables."""

import os
import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from sqlalchemy.ext.asyncio import (
    create_async_engine as sa_create_async_engine,
    AsyncSession,
    async_sessionmaker,
    AsyncEngine,
)
from sqlalchemy.pool import StaticPool

from ..config import get_settings
from . import models

logger = logging.getLogger(__name__)

DEFAULT_DATABASE_URL = "sqlite+aiosqlite:///./shift_recon.db"

# Plain driver prefixes and their asyncio counterparts
_ASYNC_DRIVERS = (
    ("postgres://", "postgresql+asyncpg://"),
    ("postgresql://", "postgresql+asyncpg://"),
    ("sqlite://", "sqlite+aiosqlite://"),
)

# Engine created by init_db() for the HTTP application
_engine: Optional[AsyncEngine] = None
_session_factory: Optional[async_sessionmaker[AsyncSession]] = None


def get_database_url() -> str:
    """
    Read DATABASE_URL and rewrite plain driver URLs to their asyncio drivers.

    Falls back to a local SQLite file when DATABASE_URL is unset.
    """
    url = os.getenv("DATABASE_URL")
    if not url:
        return DEFAULT_DATABASE_URL
    for plain, async_prefix in _ASYNC_DRIVERS:
        if url.startswith(plain):
            return async_prefix + url[len(plain):]
    return url


def create_async_engine(
    database_url: Optional[str] = None,
    echo: bool = False,
    pool_size: Optional[int] = None,
    max_overflow: int = 10,
) -> AsyncEngine:
    """
    Create an async engine for the reconciliation tables.

    Args:
        database_url: Connection URL. If None, uses get_database_url().
        echo: If True, log all SQL statements.
        pool_size: Connections kept open. Defaults to the number of cabinets
                   fetched concurrently (RECON_MAX_WORKERS).
        max_overflow: Extra connections allowed beyond pool_size.

    Returns:
        AsyncEngine instance.
    """
    url = database_url or get_database_url()

    if url.startswith("sqlite"):
        # One shared connection, so in-memory databases survive across sessions
        return sa_create_async_engine(
            url,
            echo=echo,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )

    return sa_create_async_engine(
        url,
        echo=echo,
        pool_size=pool_size or get_settings().max_workers,
        max_overflow=max_overflow,
        pool_pre_ping=True,
    )


def get_async_session_factory(
    engine: Optional[AsyncEngine] = None,
) -> async_sessionmaker[AsyncSession]:
    """
    Return a session factory bound to an engine.

    Args:
        engine: Engine to bind. If None, returns the factory created by init_db().

    Returns:
        async_sessionmaker instance.

    Raises:
        RuntimeError: If no engine is given and init_db() has not run.
    """
    if engine is not None:
        return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)

    if _session_factory is None:
        raise RuntimeError("Database not initialized. Call init_db() first.")
    return _session_factory


@asynccontextmanager
async def read_only_session(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    """
    Open a session for reconciliation reads.

    The transaction is always rolled back on exit; reconciliation never
    writes to the transaction or work session tables.

    Example:
        async with read_only_session(factory) as session:
            rows = await TransactionRepository(session).list_idex_in_windows(windows)
    """
    async with session_factory() as session:
        try:
            yield session
        finally:
            await session.rollback()


async def init_db(
    database_url: Optional[str] = None,
    echo: bool = False,
    create_tables: bool = True,
) -> None:
    """
    Set up the application engine and optionally create missing tables.

    Args:
        database_url: Connection URL. If None, uses get_database_url().
        echo: If True, log all SQL statements.
        create_tables: If True, create the work session and transaction tables.
    """
    global _engine, _session_factory

    _engine = create_async_engine(database_url, echo=echo)
    _session_factory = get_async_session_factory(_engine)
    logger.info(f"Connected reconciliation database ({_engine.url.get_backend_name()})")

    if create_tables:
        async with _engine.begin() as conn:
            await conn.run_sync(models.Base.metadata.create_all)
        logger.info(f"Ensured tables: {', '.join(sorted(models.Base.metadata.tables))}")


async def close_db() -> None:
    """Dispose of the application engine."""
    global _engine, _session_factory

    if _engine is None:
        return
    await _engine.dispose()
    _engine = None
    _session_factory = None
    logger.info("Reconciliation database connection closed")
