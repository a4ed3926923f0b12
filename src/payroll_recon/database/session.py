"""Engine, session factory and unit-of-work helpers."""

import os
import logging
from typing import AsyncGenerator, Optional
from contextlib import asynccontextmanager

from sqlalchemy.ext.asyncio import (
    create_async_engine as sa_create_async_engine,
    AsyncSession,
    async_sessionmaker,
    AsyncEngine,
)
from sqlalchemy.pool import StaticPool

from . import models

logger = logging.getLogger(__name__)

DEFAULT_DATABASE_URL = "sqlite+aiosqlite:///./payroll_recon.db"

_ASYNC_DRIVER_PREFIXES = (
    ("postgresql://", "postgresql+asyncpg://"),
    ("postgres://", "postgresql+asyncpg://"),
)

# Process-wide engine used by the API
_engine: Optional[AsyncEngine] = None
_session_factory: Optional[async_sessionmaker[AsyncSession]] = None


def get_database_url() -> str:
    """Resolve DATABASE_URL, rewriting plain PostgreSQL URLs to the asyncpg driver."""
    db_url = os.getenv("DATABASE_URL")
    if not db_url:
        return DEFAULT_DATABASE_URL
    for prefix, replacement in _ASYNC_DRIVER_PREFIXES:
        if db_url.startswith(prefix):
            return replacement + db_url[len(prefix):]
    return db_url


def create_async_engine(
    database_url: Optional[str] = None,
    echo: bool = False,
    pool_size: int = 5,
    max_overflow: int = 10,
) -> AsyncEngine:
    """
    Create the engine that backs pay runs, imports and reconciliation runs.

    SQLite engines share one connection, so an in-memory database lives as
    long as the engine and writers never interleave. Other backends get a
    regular connection pool.

    Args:
        database_url: Connection URL; defaults to get_database_url().
        echo: Log every SQL statement.
        pool_size: Pooled connections for server databases.
        max_overflow: Connections allowed beyond pool_size.
    """
    url = database_url or get_database_url()

    if url.startswith("sqlite"):
        return sa_create_async_engine(
            url,
            echo=echo,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )

    return sa_create_async_engine(
        url,
        echo=echo,
        pool_size=pool_size,
        max_overflow=max_overflow,
    )


def make_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Sessions keep loaded rows readable after commit."""
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


def get_async_session_factory(
    engine: Optional[AsyncEngine] = None,
) -> async_sessionmaker[AsyncSession]:
    """
    Return a session factory for ``engine``, or the one set up by init_db().

    Raises:
        RuntimeError: If no engine is given and init_db() has not run.
    """
    if engine is not None:
        return make_session_factory(engine)

    if _session_factory is None:
        raise RuntimeError("Database not initialized. Call init_db() first.")
    return _session_factory


async def init_db(
    database_url: Optional[str] = None,
    echo: bool = False,
    create_tables: bool = True,
) -> None:
    """
    Set up the process-wide engine used by the API dependencies.

    Args:
        database_url: Connection URL; defaults to get_database_url().
        echo: Log every SQL statement.
        create_tables: Create missing tables. Deployments that run Alembic
            migrations pass False.
    """
    global _engine, _session_factory

    _engine = create_async_engine(database_url, echo=echo)
    _session_factory = make_session_factory(_engine)

    if create_tables:
        async with _engine.begin() as conn:
            await conn.run_sync(models.Base.metadata.create_all)

    logger.info(f"Database initialized ({_engine.url.get_backend_name()})")


async def close_db() -> None:
    """Dispose of the process-wide engine."""
    global _engine, _session_factory

    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _session_factory = None
        logger.info("Database connection closed.")


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """
    FastAPI dependency yielding a request-scoped session.

    The session commits when the endpoint returns and rolls back if it
    raises, so template and exception-review endpoints write atomically.
    """
    session_factory = get_async_session_factory()
    async with session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


def get_session_factory_dependency() -> async_sessionmaker[AsyncSession]:
    """FastAPI dependency returning the process-wide session factory.

    The reconciliation orchestrator opens its own units of work, so it takes
    the factory rather than a request-scoped session.
    """
    return get_async_session_factory()


@asynccontextmanager
async def transaction(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    """
    Unit of work: one session, one transaction, committed on exit.

    Every write the yielded session performs commits atomically, or none
    does if the block raises.

    Example:
        async with transaction(session_factory) as session:
            run = await ReconciliationRunRepository(session).create_run(...)
    """
    async with session_factory() as session:
        async with session.begin():
            yield session
