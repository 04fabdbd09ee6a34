"""Async SQLAlchemy engine, session factory, and connectivity check.

The backend follows the URL scheme:

* ``postgresql+asyncpg://`` (also plain ``postgres://`` / ``postgresql://``
  as handed out by hosted providers) -> pooled PostgreSQL engine
* ``sqlite+aiosqlite://`` -> local SQLite engine
"""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

logger = logging.getLogger(__name__)

_ASYNC_PG_SCHEME = "postgresql+asyncpg://"
_PLAIN_PG_SCHEMES: tuple[str, ...] = ("postgres://", "postgresql://")

_session_factories: dict[int, async_sessionmaker[AsyncSession]] = {}


def normalise_database_url(database_url: str) -> str:
    """Point plain PostgreSQL URLs at the asyncpg driver.

    >>> normalise_database_url("postgres://u:p@db/fuelflow")
    'postgresql+asyncpg://u:p@db/fuelflow'
    """
    for scheme in _PLAIN_PG_SCHEMES:
        if database_url.startswith(scheme):
            return _ASYNC_PG_SCHEME + database_url[len(scheme) :]
    return database_url


def get_engine(
    database_url: str,
    pool_size: int = 5,
    max_overflow: int = 10,
    statement_timeout_ms: int = 15000,
) -> AsyncEngine:
    """Create an async engine for *database_url*.

    Parameters
    ----------
    database_url:
        PostgreSQL or SQLite connection string.
    pool_size, max_overflow:
        PostgreSQL pool sizing (ignored for SQLite).
    statement_timeout_ms:
        Server-side statement timeout applied to every PostgreSQL session.
    """
    url = normalise_database_url(database_url)

    if url.startswith("sqlite"):
        from fuelflow_core.state.sqlite_adapter import get_local_engine

        db_path = url.split("///", 1)[-1] if "///" in url else ""
        return get_local_engine(db_path or ":memory:")

    engine = create_async_engine(
        url,
        pool_size=pool_size,
        max_overflow=max_overflow,
        pool_pre_ping=True,
        pool_recycle=1800,
        echo=False,
        connect_args={"server_settings": {"statement_timeout": str(statement_timeout_ms)}},
    )
    logger.info("Created PostgreSQL engine pool_size=%d max_overflow=%d", pool_size, max_overflow)
    return engine


def session_factory_for(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Return the cached session factory bound to *engine*.

    Sessions keep attributes loaded after commit so services can return
    rows they just committed.
    """
    factory = _session_factories.get(id(engine))
    if factory is None:
        factory = async_sessionmaker(engine, expire_on_commit=False)
        _session_factories[id(engine)] = factory
    return factory


def forget_engine(engine: AsyncEngine) -> None:
    """Drop the cached factory for a disposed engine."""
    _session_factories.pop(id(engine), None)


@asynccontextmanager
async def get_session(engine: AsyncEngine) -> AsyncGenerator[AsyncSession, None]:
    """Yield a session that commits on success and rolls back on error."""
    session = session_factory_for(engine)()
    try:
        yield session
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    finally:
        await session.close()


async def ping(session: AsyncSession) -> bool:
    """Return ``True`` when the store answers ``SELECT 1``."""
    try:
        await session.execute(text("SELECT 1"))
    except Exception as exc:
        logger.warning("Database ping failed: %s", exc)
        return False
    return True
