"""FastAPI application entry-point for the FuelFlow API."""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from api import __version__
from api.config import APISettings, PlatformEnv, load_api_settings
from api.dependencies import (
    dispose_bot_checker,
    dispose_engine,
    dispose_mail_service,
    get_session_factory,
    init_bot_checker,
    init_engine,
    init_mail_service,
)
from api.errors import PlatformError
from api.middleware.auth import AuthenticationMiddleware, init_revocation_checker, reset_revocation_checker
from api.middleware.logging import RequestLoggingMiddleware
from api.middleware.prometheus import PrometheusMiddleware
from api.routers import access, admin, contracts, health, invoices
from api.routers import metrics as metrics_router
from api.security import build_token_manager

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application startup / shutdown lifecycle.

    On startup:
    - Refuse to start outside dev without a session-token secret.
    - Initialise the async database engine and, in dev or SQLite mode,
      create tables (production uses Alembic migrations).
    - Initialise the bot-check verifier and the mail service.
    - Wire the session revocation checker into the auth middleware.

    On shutdown the HTTP clients are closed and the engine disposed.
    """
    settings: APISettings = load_api_settings()

    if settings.structured_logging:
        from api.middleware.json_formatter import install_json_logging

        install_json_logging()
        logger.info("Structured JSON logging enabled")

    if settings.platform_env in (PlatformEnv.STAGING, PlatformEnv.PRODUCTION) and not (
        settings.auth_token_secret.get_secret_value()
    ):
        raise RuntimeError(
            f"FUELFLOW_AUTH_TOKEN_SECRET is required in {settings.platform_env.value} mode. Refusing to start."
        )

    engine = init_engine(settings)
    is_local = settings.database_url.startswith("sqlite")
    logger.info(
        "Database engine initialised (%s, %s)",
        settings.database_url[:40] + "...",
        "local" if is_local else "postgres",
    )

    # Auto-create tables in dev or local SQLite mode (idempotent).
    if settings.platform_env == PlatformEnv.DEV or is_local:
        from fuelflow_core.state.tables import Base

        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Database tables ensured (%s)", "local SQLite" if is_local else "dev auto-migration")

    init_bot_checker(settings)
    if not settings.hcaptcha_secret.get_secret_value():
        logger.warning("hCaptcha secret not configured; every bot check will be recorded as failed")

    init_mail_service(settings)
    if not settings.resend_api_key.get_secret_value():
        logger.warning("Resend API key not configured; emails will be reported as not sent")

    if settings.token_revocation_enabled:
        init_revocation_checker(get_session_factory())
        logger.info("Session revocation checker initialised")

    yield

    reset_revocation_checker()
    await dispose_mail_service()
    await dispose_bot_checker()
    await dispose_engine()
    logger.info("Application shutdown complete")


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------


def create_app() -> FastAPI:
    """Construct and configure the FastAPI application."""
    settings = load_api_settings()

    app = FastAPI(
        title="FuelFlow API",
        description="Access gating, contract lifecycle, and document delivery for fuel supply customers.",
        version=__version__,
        lifespan=lifespan,
    )

    # -- Middleware (outermost first) ----------------------------------------

    token_manager = build_token_manager(settings)
    app.state.token_manager = token_manager

    app.add_middleware(PrometheusMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=settings.cors_allow_credentials,
        allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
        allow_headers=[
            "Authorization",
            "Content-Type",
            "X-Correlation-ID",
            "X-Invoice-Secret",
            "Accept",
        ],
    )
    app.add_middleware(
        AuthenticationMiddleware,
        token_manager=token_manager,
        cookie_name=settings.session_cookie_name,
    )
    app.add_middleware(RequestLoggingMiddleware)

    # -- Routers -------------------------------------------------------------

    app.include_router(health.router, prefix="/api/v1")
    app.include_router(access.router, prefix="/api/v1")
    app.include_router(admin.router, prefix="/api/v1")
    app.include_router(contracts.router, prefix="/api/v1")
    app.include_router(invoices.router, prefix="/api/v1")

    # Metrics endpoint, outside /api/v1 versioning (Prometheus scrape).
    app.include_router(metrics_router.router)

    # Infrastructure endpoints, outside versioning.
    app.include_router(health.readiness_router)

    # -- Exception handlers --------------------------------------------------

    @app.exception_handler(PlatformError)
    async def platform_error_handler(request: Request, exc: PlatformError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error("%s on %s: %s", exc.reason, request.url.path, exc.message)
        return JSONResponse(status_code=exc.status_code, content={"error": exc.reason, "detail": exc.message})

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        details = [
            {"loc": list(err.get("loc", ())), "msg": err.get("msg", "")} for err in exc.errors()
        ]
        return JSONResponse(
            status_code=400,
            content={"error": "validation_error", "detail": jsonable_encoder(details)},
        )

    @app.exception_handler(ValueError)
    async def value_error_handler(request: Request, exc: ValueError) -> JSONResponse:
        # Log the full error for debugging; return a safe message to the client.
        logger.warning("ValueError on %s: %s", request.url.path, exc)
        return JSONResponse(status_code=400, content={"error": "validation_error", "detail": "Invalid request"})

    @app.exception_handler(SQLAlchemyError)
    async def sqlalchemy_error_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
        logger.error("Database error: %s", exc, exc_info=True)
        return JSONResponse(
            status_code=500,
            content={"error": "upstream_error", "detail": "Internal database error"},
        )

    return app


# Module-level application instance used by ``uvicorn api.main:app``.
app = create_app()


def serve() -> None:
    """Run the API under uvicorn using the configured host and port."""
    import uvicorn

    settings = load_api_settings()
    config = uvicorn.Config(
        "api.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        log_level="debug" if settings.debug else "info",
        access_log=False,
    )
    uvicorn.Server(config).run()
