"""Shared fixtures for FuelFlow API tests.

Provides an in-memory SQLite store, mock HTTP transports for the mail
and bot-check collaborators, a token factory, and an async client bound
to the application with dependency overrides.
"""

from __future__ import annotations

import json
import os
from collections.abc import AsyncIterator, Awaitable, Callable
from datetime import UTC
from typing import Any

import httpx
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

# Set the token secret BEFORE importing application modules so create_app()
# builds a TokenManager with a deterministic secret.
_TEST_TOKEN_SECRET = "test-secret-key-for-fuelflow-tests"
os.environ["FUELFLOW_AUTH_TOKEN_SECRET"] = _TEST_TOKEN_SECRET

from fuelflow_core.state.repository import AdminRepository, AllowlistRepository, BlocklistRepository
from fuelflow_core.state.tables import Base
from sqlalchemy import JSON, DateTime
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.types import TypeDecorator

from api.config import APISettings
from api.dependencies import get_bot_checker, get_db_session, get_mail_service, get_settings
from api.main import create_app
from api.security import TokenManager
from api.services.bot_check import BotCheckVerifier
from api.services.mail_service import MailService, ResendTransport

# ---------------------------------------------------------------------------
# SQLite column patching
# ---------------------------------------------------------------------------


def _patch_columns_for_sqlite() -> None:
    """Substitute Postgres-specific column types for SQLite compatibility.

    * ``JSONB`` -> ``JSON``.
    * ``DateTime(timezone=True)`` -> a TypeDecorator that re-attaches UTC
      to the naive datetimes SQLite returns.
    """

    class _UTCAwareDateTime(TypeDecorator):
        impl = DateTime
        cache_ok = True

        def process_result_value(self, value, dialect):  # type: ignore[override]
            if value is not None and value.tzinfo is None:
                return value.replace(tzinfo=UTC)
            return value

    for table in Base.metadata.tables.values():
        for column in table.columns:
            if isinstance(column.type, JSONB):
                column.type = JSON()
            elif isinstance(column.type, DateTime) and getattr(column.type, "timezone", False):
                column.type = _UTCAwareDateTime()


_patch_columns_for_sqlite()


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def session_factory() -> AsyncIterator[async_sessionmaker[AsyncSession]]:
    """Session factory over a fresh in-memory SQLite database."""
    engine = create_async_engine("sqlite+aiosqlite://", echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, expire_on_commit=False)

    await engine.dispose()


@pytest_asyncio.fixture
async def db_session(session_factory: async_sessionmaker[AsyncSession]) -> AsyncIterator[AsyncSession]:
    async with session_factory() as session:
        yield session


@pytest.fixture()
def seed_access(
    session_factory: async_sessionmaker[AsyncSession],
) -> Callable[..., Awaitable[None]]:
    """Return a coroutine that seeds the access lists and commits."""

    async def _seed(
        *,
        allowed: tuple[str, ...] = (),
        admins: tuple[str, ...] = (),
        blocked: tuple[str, ...] = (),
    ) -> None:
        async with session_factory() as session:
            for email in allowed:
                await AllowlistRepository(session).upsert(email, approved_by="seed")
            for email in admins:
                await AdminRepository(session).grant(email, granted_by="seed")
            for email in blocked:
                await BlocklistRepository(session).upsert(email, reason="seeded", blocked_by="seed")
            await session.commit()

    return _seed


# ---------------------------------------------------------------------------
# Collaborators
# ---------------------------------------------------------------------------


class MailRecorder:
    """Mock Resend endpoint.  Records every request body it receives."""

    def __init__(self) -> None:
        self.sent: list[dict[str, Any]] = []
        self.fail_status: int | None = None

    def handler(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        self.sent.append(body)
        if self.fail_status is not None:
            return httpx.Response(self.fail_status, json={"message": "provider unavailable"})
        return httpx.Response(200, json={"id": f"email-{len(self.sent)}"})


class BotCheckStub:
    """Mock hCaptcha siteverify endpoint."""

    def __init__(self) -> None:
        self.success = True
        self.calls: list[str] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.calls.append(request.content.decode())
        return httpx.Response(200, json={"success": self.success})


@pytest.fixture()
def mail_recorder() -> MailRecorder:
    return MailRecorder()


@pytest.fixture()
def bot_stub() -> BotCheckStub:
    return BotCheckStub()


@pytest_asyncio.fixture
async def mail_service(mail_recorder: MailRecorder) -> AsyncIterator[MailService]:
    transport = ResendTransport(
        api_key="re_test_key",
        base_url="https://resend.test",
        transport=httpx.MockTransport(mail_recorder.handler),
    )
    service = MailService(transport, sender="FuelFlow <test@fuelflow.test>", default_bcc="ops@fuelflow.test")
    yield service
    await service.close()


@pytest_asyncio.fixture
async def bot_checker(bot_stub: BotCheckStub) -> AsyncIterator[BotCheckVerifier]:
    verifier = BotCheckVerifier(
        secret="hcaptcha-test-secret",
        verify_url="https://hcaptcha.test/siteverify",
        transport=httpx.MockTransport(bot_stub.handler),
    )
    yield verifier
    await verifier.close()


# ---------------------------------------------------------------------------
# Settings and tokens
# ---------------------------------------------------------------------------


@pytest.fixture()
def test_settings() -> APISettings:
    """Return a settings object suitable for testing."""
    return APISettings(
        database_url="sqlite+aiosqlite://",
        platform_env="dev",
        cors_origins=["http://localhost:3000"],
        auth_token_secret=_TEST_TOKEN_SECRET,
        hcaptcha_secret="hcaptcha-test-secret",
        resend_api_key="re_test_key",
        invoice_secret="invoice-test-secret",
        company_name="FuelFlow",
    )


@pytest.fixture()
def token_manager() -> TokenManager:
    return TokenManager(_TEST_TOKEN_SECRET, ttl_seconds=3600)


@pytest.fixture()
def auth_headers(token_manager: TokenManager) -> Callable[..., dict[str, str]]:
    """Return a helper building ``Authorization`` headers for an email."""

    def _headers(email: str, sub: str | None = None) -> dict[str, str]:
        token = token_manager.issue(sub=sub or f"user-{email.split('@')[0]}", email=email)
        return {"Authorization": f"Bearer {token}"}

    return _headers


# ---------------------------------------------------------------------------
# Application and client
# ---------------------------------------------------------------------------


@pytest.fixture()
def app(
    test_settings: APISettings,
    session_factory: async_sessionmaker[AsyncSession],
    mail_service: MailService,
    bot_checker: BotCheckVerifier,
):
    """Create the app with the store and collaborators overridden.

    The lifespan does not run under ``ASGITransport``, so no global engine
    or revocation checker is installed.
    """
    application = create_app()

    async def _override_session():
        session = session_factory()
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()

    application.dependency_overrides[get_db_session] = _override_session
    application.dependency_overrides[get_settings] = lambda: test_settings
    application.dependency_overrides[get_mail_service] = lambda: mail_service
    application.dependency_overrides[get_bot_checker] = lambda: bot_checker
    return application


@pytest_asyncio.fixture
async def client(app) -> AsyncIterator[AsyncClient]:
    """Async HTTP client bound to the test app."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
