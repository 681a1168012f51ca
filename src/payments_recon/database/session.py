"""Engine and session handling for the transaction store."""

import os
import logging
from typing import AsyncGenerator, Optional

from sqlalchemy.ext.asyncio import (
    create_async_engine as sa_create_async_engine,
    AsyncSession,
    async_sessionmaker,
    AsyncEngine,
)
from sqlalchemy.pool import StaticPool

from . import models

logger = logging.getLogger(__name__)

# Application-wide engine, set by init_db()
_engine: Optional[AsyncEngine] = None
_session_factory: Optional[async_sessionmaker[AsyncSession]] = None

DEFAULT_DATABASE_URL = "sqlite+aiosqlite:///./payments_recon.db"


def get_database_url() -> str:
    """Read ``DATABASE_URL``; plain postgres URLs get the asyncpg driver."""
    db_url = os.getenv("DATABASE_URL")
    if not db_url:
        return DEFAULT_DATABASE_URL
    for prefix in ("postgresql://", "postgres://"):
        if db_url.startswith(prefix):
            return "postgresql+asyncpg://" + db_url[len(prefix):]
    return db_url


def _is_memory_sqlite(url: str) -> bool:
    if not url.startswith("sqlite"):
        return False
    path = url.partition("://")[2]
    return path in ("", "/") or ":memory:" in path


def create_async_engine(
    database_url: Optional[str] = None,
    echo: bool = False,
    pool_size: int = 5,
    max_overflow: int = 10,
) -> AsyncEngine:
    """
    Create an async SQLAlchemy engine.

    An in-memory SQLite database lives only as long as its connection, so it
    gets a StaticPool. A SQLite file uses the driver's default pool, which
    gives each session its own connection.

    Args:
        database_url: Database connection URL. If None, uses get_database_url().
        echo: If True, log all SQL statements.
        pool_size: Connections kept open (server databases only).
        max_overflow: Extra connections allowed under load (server databases only).

    Returns:
        AsyncEngine instance.
    """
    url = database_url or get_database_url()

    if _is_memory_sqlite(url):
        return sa_create_async_engine(
            url,
            echo=echo,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    if url.startswith("sqlite"):
        return sa_create_async_engine(url, echo=echo)

    return sa_create_async_engine(
        url,
        echo=echo,
        pool_size=pool_size,
        max_overflow=max_overflow,
    )


def get_async_session_factory(
    engine: Optional[AsyncEngine] = None,
) -> async_sessionmaker[AsyncSession]:
    """
    Session factory for ``engine``, or the application-wide one.

    Sessions do not expire objects on commit and do not autoflush; the
    repositories flush explicitly.

    Raises:
        RuntimeError: If no engine is given and init_db() has not run.
    """
    if engine is not None:
        return async_sessionmaker(
            engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )

    if _session_factory is None:
        raise RuntimeError("Database not initialized. Call init_db() first.")
    return _session_factory


async def create_all_tables(engine: AsyncEngine) -> None:
    """Create every table defined in models on ``engine``."""
    async with engine.begin() as conn:
        await conn.run_sync(models.Base.metadata.create_all)


async def init_db(
    database_url: Optional[str] = None,
    echo: bool = False,
    create_tables: bool = True,
) -> None:
    """
    Set up the application-wide engine used by the API.

    Args:
        database_url: Database connection URL. If None, uses get_database_url().
        echo: If True, log all SQL statements.
        create_tables: Create missing tables; production runs alembic instead.
    """
    global _engine, _session_factory

    _engine = create_async_engine(database_url, echo=echo)
    _session_factory = get_async_session_factory(_engine)

    if create_tables:
        await create_all_tables(_engine)
        logger.info("Transaction store tables created")

    logger.info(f"Transaction store ready ({_engine.url.get_backend_name()})")


async def close_db() -> None:
    """Dispose of the application-wide engine."""
    global _engine, _session_factory

    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _session_factory = None
        logger.info("Transaction store connection closed")


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """
    FastAPI dependency yielding one session per request.

    The session commits when the handler returns and rolls back if it raises.
    """
    session_factory = get_async_session_factory()
    async with session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
