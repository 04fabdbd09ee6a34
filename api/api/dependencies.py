"""FastAPI dependency injection for settings, sessions, collaborators, and identity."""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from dataclasses import dataclass
from typing import Annotated

from fastapi import Depends, Request
from fuelflow_core.state.database import forget_engine, get_engine, session_factory_for
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from api.config import APISettings, load_api_settings
from api.errors import Unauthenticated
from api.services.bot_check import BotCheckVerifier
from api.services.mail_service import MailService, ResendTransport

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------

_settings_cache: APISettings | None = None


def get_settings() -> APISettings:
    """Return the cached :class:`APISettings` singleton."""
    global _settings_cache  # noqa: PLW0603
    if _settings_cache is None:
        _settings_cache = load_api_settings()
    return _settings_cache


SettingsDep = Annotated[APISettings, Depends(get_settings)]

# ---------------------------------------------------------------------------
# Database session
# ---------------------------------------------------------------------------

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def init_engine(settings: APISettings) -> AsyncEngine:
    """Create and cache the global async engine."""
    global _engine, _session_factory  # noqa: PLW0603
    _engine = get_engine(settings.database_url)
    _session_factory = session_factory_for(_engine)
    return _engine


async def dispose_engine() -> None:
    """Dispose the global engine pool (call during shutdown)."""
    global _engine, _session_factory  # noqa: PLW0603
    if _engine is not None:
        await _engine.dispose()
        forget_engine(_engine)
        _engine = None
        _session_factory = None


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Return the global async session factory.

    Used by components that operate outside FastAPI's dependency injection
    (e.g. Starlette middleware) and need direct session access.
    """
    if _session_factory is None:
        raise RuntimeError(
            "Database engine has not been initialised. Ensure init_engine() is called during application startup."
        )
    return _session_factory


async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """Yield an ``AsyncSession`` for one request.

    Services commit their own state transitions before running side
    effects; the trailing commit here covers read-only and single-step
    handlers.  The session rolls back on exception.
    """
    session = get_session_factory()()
    try:
        yield session
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    finally:
        await session.close()


SessionDep = Annotated[AsyncSession, Depends(get_db_session)]

# ---------------------------------------------------------------------------
# Bot-check verifier
# ---------------------------------------------------------------------------

_bot_checker: BotCheckVerifier | None = None


def init_bot_checker(settings: APISettings) -> BotCheckVerifier:
    """Create and cache the global :class:`BotCheckVerifier`."""
    global _bot_checker  # noqa: PLW0603
    _bot_checker = BotCheckVerifier(
        secret=settings.hcaptcha_secret.get_secret_value(),
        verify_url=settings.hcaptcha_verify_url,
        timeout=settings.bot_check_timeout,
    )
    return _bot_checker


async def dispose_bot_checker() -> None:
    global _bot_checker  # noqa: PLW0603
    if _bot_checker is not None:
        await _bot_checker.close()
        _bot_checker = None


def get_bot_checker() -> BotCheckVerifier:
    """Return the cached :class:`BotCheckVerifier` singleton."""
    if _bot_checker is None:
        raise RuntimeError(
            "Bot checker has not been initialised. Ensure init_bot_checker() is called during application startup."
        )
    return _bot_checker


BotCheckDep = Annotated[BotCheckVerifier, Depends(get_bot_checker)]

# ---------------------------------------------------------------------------
# Mail service
# ---------------------------------------------------------------------------

_mail_service: MailService | None = None


def init_mail_service(settings: APISettings) -> MailService:
    """Create and cache the global :class:`MailService`."""
    global _mail_service  # noqa: PLW0603
    transport = ResendTransport(
        api_key=settings.resend_api_key.get_secret_value(),
        base_url=settings.resend_api_url,
        timeout=settings.mail_timeout,
    )
    _mail_service = MailService(transport, sender=settings.mail_from, default_bcc=settings.mail_bcc)
    return _mail_service


async def dispose_mail_service() -> None:
    global _mail_service  # noqa: PLW0603
    if _mail_service is not None:
        await _mail_service.close()
        _mail_service = None


def get_mail_service() -> MailService:
    """Return the cached :class:`MailService` singleton."""
    if _mail_service is None:
        raise RuntimeError(
            "Mail service has not been initialised. Ensure init_mail_service() is called during application startup."
        )
    return _mail_service


MailDep = Annotated[MailService, Depends(get_mail_service)]

# ---------------------------------------------------------------------------
# Caller identity (populated by AuthenticationMiddleware)
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Identity:
    """A resolved caller: lowercased email plus the credential subject id."""

    email: str
    subject_id: str | None = None


def get_optional_identity(request: Request) -> Identity | None:
    """Return the caller's identity, or ``None`` for anonymous requests."""
    email = getattr(request.state, "email", None)
    if not email:
        return None
    return Identity(email=email, subject_id=getattr(request.state, "sub", None))


def get_identity(request: Request) -> Identity:
    """Return the caller's identity or raise :class:`Unauthenticated`."""
    identity = get_optional_identity(request)
    if identity is None:
        raise Unauthenticated("Sign-in required")
    return identity


OptionalIdentityDep = Annotated[Identity | None, Depends(get_optional_identity)]
IdentityDep = Annotated[Identity, Depends(get_identity)]


def get_client_ip(request: Request) -> str | None:
    """First ``X-Forwarded-For`` hop, else the socket peer address."""
    forwarded = request.headers.get("x-forwarded-for", "")
    first = forwarded.split(",")[0].strip()
    if first:
        return first
    return request.client.host if request.client else None


ClientIPDep = Annotated[str | None, Depends(get_client_ip)]
