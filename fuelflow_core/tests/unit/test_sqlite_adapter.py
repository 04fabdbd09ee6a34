"""Tests for the local SQLite engine and the engine/session helpers."""

from __future__ import annotations

import pytest
from fuelflow_core.state.database import get_engine, get_session, normalise_database_url, ping
from fuelflow_core.state.repository import AllowlistRepository
from fuelflow_core.state.sqlite_adapter import create_local_tables, get_local_engine
from sqlalchemy import inspect, text


@pytest.mark.asyncio
async def test_file_engine_creates_parent_and_tables(tmp_path) -> None:
    db_path = tmp_path / "nested" / "state.db"
    engine = get_local_engine(db_path)
    try:
        await create_local_tables(engine)
        await create_local_tables(engine)

        async with engine.connect() as conn:
            names = await conn.run_sync(lambda sync_conn: inspect(sync_conn).get_table_names())
            foreign_keys = (await conn.execute(text("PRAGMA foreign_keys"))).scalar_one()
    finally:
        await engine.dispose()

    assert db_path.exists()
    assert {
        "email_allowlist",
        "blocked_users",
        "admins",
        "contracts",
        "contract_acceptances",
        "session_revocations",
    } <= set(names)
    assert foreign_keys == 1


@pytest.mark.asyncio
async def test_get_engine_dispatches_sqlite_urls(tmp_path) -> None:
    engine = get_engine(f"sqlite+aiosqlite:///{tmp_path / 'state.db'}")
    try:
        assert engine.dialect.name == "sqlite"
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_get_session_commits_and_rolls_back(tmp_path) -> None:
    engine = get_local_engine(tmp_path / "state.db")
    try:
        await create_local_tables(engine)

        async with get_session(engine) as session:
            await AllowlistRepository(session).upsert("kept@example.com", approved_by="seed")

        with pytest.raises(RuntimeError):
            async with get_session(engine) as session:
                await AllowlistRepository(session).upsert("dropped@example.com", approved_by="seed")
                raise RuntimeError("boom")

        async with get_session(engine) as session:
            repo = AllowlistRepository(session)
            assert await repo.get("kept@example.com") is not None
            assert await repo.get("dropped@example.com") is None
    finally:
        await engine.dispose()


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("postgres://u:p@db:5432/fuelflow", "postgresql+asyncpg://u:p@db:5432/fuelflow"),
        ("postgresql://u:p@db/fuelflow", "postgresql+asyncpg://u:p@db/fuelflow"),
        ("postgresql+asyncpg://u:p@db/fuelflow", "postgresql+asyncpg://u:p@db/fuelflow"),
        ("sqlite+aiosqlite:///state.db", "sqlite+aiosqlite:///state.db"),
    ],
)
def test_normalise_database_url(raw: str, expected: str) -> None:
    assert normalise_database_url(raw) == expected


@pytest.mark.asyncio
async def test_ping(tmp_path) -> None:
    engine = get_local_engine(tmp_path / "state.db")
    try:
        async with get_session(engine) as session:
            assert await ping(session) is True
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_memory_engine_shares_one_database() -> None:
    engine = get_local_engine(":memory:")
    try:
        await create_local_tables(engine)
        async with get_session(engine) as session:
            await AllowlistRepository(session).upsert("jane@example.com", approved_by="seed")
        async with get_session(engine) as session:
            assert await AllowlistRepository(session).get("jane@example.com") is not None
    finally:
        await engine.dispose()
