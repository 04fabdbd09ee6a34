"""SQLAlchemy 2.0 ORM table definitions for the FuelFlow state store.

All tables use the ``Mapped`` / ``mapped_column`` declaration style.  The
``Base`` declarative base is exported for use by Alembic migrations and the
repository layer.

Access records live in three independent tables keyed by normalised email
(``email_allowlist``, ``blocked_users``, ``admins``).  Contracts and their
immutable acceptance records live in ``contracts`` and
``contract_acceptances``.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    Float,
    ForeignKey,
    Index,
    String,
    Text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# Cross-dialect JSON type: JSONB on PostgreSQL, plain JSON on SQLite.
_JsonType = JSONB().with_variant(JSON(), "sqlite")

CONTRACT_TYPES: tuple[str, ...] = ("buy", "rent")
CONTRACT_STATUSES: tuple[str, ...] = ("draft", "signed", "active")


def _utcnow() -> datetime:
    """Return the current UTC timestamp (timezone-aware)."""
    return datetime.now(UTC)


# ---------------------------------------------------------------------------
# Declarative base
# ---------------------------------------------------------------------------


class Base(DeclarativeBase):
    """Shared declarative base for all FuelFlow tables."""


# ---------------------------------------------------------------------------
# Access records
# ---------------------------------------------------------------------------


class AllowlistTable(Base):
    """Emails explicitly permitted to use customer-facing flows."""

    __tablename__ = "email_allowlist"

    email: Mapped[str] = mapped_column(String(320), primary_key=True)
    approved_by: Mapped[str | None] = mapped_column(String(320), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False
    )


class BlockedUserTable(Base):
    """Emails explicitly denied.  Overrides allow-list and admin membership."""

    __tablename__ = "blocked_users"

    email: Mapped[str] = mapped_column(String(320), primary_key=True)
    user_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    blocked_by: Mapped[str | None] = mapped_column(String(320), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)

    __table_args__ = (Index("ix_blocked_users_user_id", "user_id"),)


class AdminTable(Base):
    """Emails holding the administrator classification."""

    __tablename__ = "admins"

    email: Mapped[str] = mapped_column(String(320), primary_key=True)
    granted_by: Mapped[str | None] = mapped_column(String(320), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)


# ---------------------------------------------------------------------------
# Contracts
# ---------------------------------------------------------------------------


class ContractTable(Base):
    """One purchase or rental agreement.

    ``status`` moves ``draft -> signed -> active`` and never backwards.
    Commercial terms are captured at draft time.  ``acceptance_id`` points
    at the most recent :class:`AcceptanceTable` row for this contract.
    """

    __tablename__ = "contracts"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    contract_type: Mapped[str] = mapped_column(String(16), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="draft")

    # Owning party.
    user_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    email: Mapped[str] = mapped_column(String(320), nullable=False)
    customer_name: Mapped[str] = mapped_column(String(256), nullable=False)
    company_name: Mapped[str | None] = mapped_column(String(256), nullable=True)
    phone: Mapped[str | None] = mapped_column(String(64), nullable=True)
    address_line1: Mapped[str | None] = mapped_column(String(256), nullable=True)
    address_line2: Mapped[str | None] = mapped_column(String(256), nullable=True)
    city: Mapped[str | None] = mapped_column(String(128), nullable=True)
    postcode: Mapped[str | None] = mapped_column(String(32), nullable=True)

    # Commercial terms.
    tank_option: Mapped[str | None] = mapped_column(String(16), nullable=True)
    fuel: Mapped[str | None] = mapped_column(String(16), nullable=True)
    tank_size_litres: Mapped[float | None] = mapped_column(Float, nullable=True)
    monthly_consumption_litres: Mapped[float | None] = mapped_column(Float, nullable=True)
    market_price_per_litre: Mapped[float | None] = mapped_column(Float, nullable=True)
    cheaper_by_per_litre: Mapped[float | None] = mapped_column(Float, nullable=True)
    platform_price_per_litre: Mapped[float | None] = mapped_column(Float, nullable=True)
    est_monthly_savings: Mapped[float | None] = mapped_column(Float, nullable=True)
    est_payback_months: Mapped[float | None] = mapped_column(Float, nullable=True)
    capex_required: Mapped[float | None] = mapped_column(Float, nullable=True)
    extra_json: Mapped[dict[str, Any] | None] = mapped_column(_JsonType, nullable=True)

    # Signature.
    terms_version: Mapped[str] = mapped_column(String(32), nullable=False)
    signature_name: Mapped[str | None] = mapped_column(String(256), nullable=True)
    signed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    acceptance_id: Mapped[str | None] = mapped_column(String(64), nullable=True)

    # Approval.
    approved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    approved_by: Mapped[str | None] = mapped_column(String(320), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('draft','signed','active')",
            name="ck_contracts_status",
        ),
        CheckConstraint(
            "contract_type IN ('buy','rent')",
            name="ck_contracts_contract_type",
        ),
        Index("ix_contracts_email_type_created", "email", "contract_type", "created_at"),
        Index("ix_contracts_user_type_created", "user_id", "contract_type", "created_at"),
        Index("ix_contracts_status", "status"),
    )


class AcceptanceTable(Base):
    """Immutable record of one e-signature event.

    Rows are inserted once per signing and never updated or deleted.
    Re-signing a contract inserts a new row and repoints
    ``contracts.acceptance_id``.
    """

    __tablename__ = "contract_acceptances"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    contract_id: Mapped[str] = mapped_column(
        String(64),
        ForeignKey("contracts.id", ondelete="RESTRICT"),
        nullable=False,
    )
    accepted_name: Mapped[str] = mapped_column(String(256), nullable=False)
    accepted_email: Mapped[str] = mapped_column(String(320), nullable=False)
    client_ip: Mapped[str | None] = mapped_column(String(64), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(Text, nullable=True)
    terms_version: Mapped[str] = mapped_column(String(32), nullable=False)
    bot_check_passed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)

    __table_args__ = (Index("ix_contract_acceptances_contract", "contract_id", "created_at"),)


# ---------------------------------------------------------------------------
# Session revocations
# ---------------------------------------------------------------------------


class SessionRevocationTable(Base):
    """Per-subject session cut-off.

    Tokens for ``subject`` issued before ``revoked_before`` are rejected
    by the authentication middleware.
    """

    __tablename__ = "session_revocations"

    subject: Mapped[str] = mapped_column(String(320), primary_key=True)
    revoked_before: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    reason: Mapped[str | None] = mapped_column(String(128), nullable=True)
