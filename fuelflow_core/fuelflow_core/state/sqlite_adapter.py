"""Local SQLite backend.

Runs the same ORM tables and repositories as PostgreSQL on a single file,
so the API can be started on a laptop with ``FUELFLOW_DATABASE_URL`` left
at its default.  Schema comes from ``create_all`` instead of Alembic, JSONB
columns are stored as JSON text, and timestamps come back naive (the
repositories re-attach UTC).

``:memory:`` databases share one connection through ``StaticPool``;
otherwise every session would see its own empty database.
"""

from __future__ import annotations

import logging
from pathlib import Path

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
from sqlalchemy.pool import StaticPool

logger = logging.getLogger(__name__)

MEMORY = ":memory:"

_PRAGMAS: tuple[str, ...] = (
    "PRAGMA journal_mode=WAL",
    "PRAGMA foreign_keys=ON",
    "PRAGMA synchronous=NORMAL",
    "PRAGMA busy_timeout=5000",
)


def get_local_engine(db_path: Path | str = ".fuelflow/state.db") -> AsyncEngine:
    """Return an aiosqlite engine for *db_path*, creating parent directories.

    Pass ``":memory:"`` for an ephemeral database.
    """
    if str(db_path) == MEMORY:
        engine = create_async_engine(
            "sqlite+aiosqlite://",
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    else:
        path = Path(db_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        engine = create_async_engine(
            f"sqlite+aiosqlite:///{path}",
            connect_args={"check_same_thread": False},
        )

    @event.listens_for(engine.sync_engine, "connect")
    def _apply_pragmas(dbapi_conn: object, _: object) -> None:
        cursor = dbapi_conn.cursor()  # type: ignore[attr-defined]
        for pragma in _PRAGMAS:
            cursor.execute(pragma)
        cursor.close()

    logger.info("Using local SQLite store at %s", db_path)
    return engine


async def create_local_tables(engine: AsyncEngine) -> None:
    """Create every table that does not exist yet."""
    from fuelflow_core.state.tables import Base

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Local SQLite schema ensured")
