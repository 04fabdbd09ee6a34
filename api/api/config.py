"""API-layer configuration loaded from environment variables."""

from __future__ import annotations

from enum import Enum
from typing import Self

from pydantic import SecretStr, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class PlatformEnv(str, Enum):
    """Valid platform environment labels."""

    DEV = "dev"
    STAGING = "staging"
    PRODUCTION = "production"


class APISettings(BaseSettings):
    """FastAPI application settings.

    All values can be overridden via environment variables prefixed with
    ``FUELFLOW_`` (e.g. ``FUELFLOW_DATABASE_URL=...``) or through a ``.env``
    file in the working directory.
    """

    model_config = SettingsConfigDict(
        env_prefix="FUELFLOW_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    host: str = "0.0.0.0"
    port: int = 8000
    debug: bool = False

    # SQLite for local runs; PostgreSQL (asyncpg driver) in deployed envs.
    database_url: str = "sqlite+aiosqlite:///.fuelflow/state.db"

    platform_env: PlatformEnv = PlatformEnv.DEV

    # Origins permitted by the CORS middleware.
    cors_origins: list[str] = ["http://localhost:3000"]
    cors_allow_credentials: bool = True

    @model_validator(mode="after")
    def _validate_cors_credentials_not_wildcard(self) -> Self:
        """Reject wildcard origins when credentials are enabled.

        Browsers silently reject ``Access-Control-Allow-Origin: *`` when
        ``Access-Control-Allow-Credentials: true`` is present.  Fail fast at
        startup instead.
        """
        if self.cors_allow_credentials and "*" in self.cors_origins:
            raise ValueError(
                "Cannot use wildcard origins with credentials. "
                "Specify explicit origins instead of '*' when "
                "cors_allow_credentials=True."
            )
        return self

    # Structured JSON logging for log aggregation.
    structured_logging: bool = False

    # Session tokens.  Empty secret is only tolerated in dev.
    auth_token_secret: SecretStr = SecretStr("")
    auth_token_ttl_seconds: int = 7 * 24 * 3600
    session_cookie_name: str = "fuelflow_session"
    token_revocation_enabled: bool = True

    # hCaptcha bot check.  An empty secret means every check fails.
    hcaptcha_secret: SecretStr = SecretStr("")
    hcaptcha_verify_url: str = "https://hcaptcha.com/siteverify"
    bot_check_timeout: float = 5.0

    # Resend transactional email.
    resend_api_key: SecretStr = SecretStr("")
    resend_api_url: str = "https://api.resend.com"
    mail_from: str = "FuelFlow <invoices@mail.fuelflow.co.uk>"
    # Comma-separated operations copy list.
    mail_bcc: str = ""
    mail_timeout: float = 10.0

    # Shared secret accepted in ``X-Invoice-Secret`` for machine callers.
    invoice_secret: SecretStr = SecretStr("")

    # Contract defaults.
    terms_version: str = "v1.1"
    buy_capex_gbp: float = 12000.0
    auto_approve_contract_types: list[str] = []

    # Identity printed on generated documents.
    company_name: str = "FuelFlow"
    company_address: str = "FuelFlow Ltd, United Kingdom"
    company_email: str = "support@fuelflow.co.uk"

    @field_validator("auto_approve_contract_types")
    @classmethod
    def _validate_contract_types(cls, value: list[str]) -> list[str]:
        normalised = [v.strip().lower() for v in value if v.strip()]
        unknown = sorted(set(normalised) - {"buy", "rent"})
        if unknown:
            raise ValueError(f"Unknown contract types for auto-approval: {unknown}")
        return normalised


def load_api_settings() -> APISettings:
    """Construct settings from the environment / ``.env`` file."""
    return APISettings()
