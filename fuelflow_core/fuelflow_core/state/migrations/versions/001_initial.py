"""Initial schema: access records, contracts, acceptances, session revocations.

Revision ID: 001
Revises:
Create Date: 2026-03-02 00:00:00.000000+00:00

"""

from __future__ import annotations

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def _ts(name: str, nullable: bool = False) -> sa.Column:
    return sa.Column(name, sa.DateTime(timezone=True), nullable=nullable)


def upgrade() -> None:
    op.create_table(
        "email_allowlist",
        sa.Column("email", sa.String(320), primary_key=True),
        sa.Column("approved_by", sa.String(320), nullable=True),
        _ts("created_at"),
        _ts("updated_at"),
    )

    op.create_table(
        "blocked_users",
        sa.Column("email", sa.String(320), primary_key=True),
        sa.Column("user_id", sa.String(128), nullable=True),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("blocked_by", sa.String(320), nullable=True),
        _ts("created_at"),
    )
    op.create_index("ix_blocked_users_user_id", "blocked_users", ["user_id"])

    op.create_table(
        "admins",
        sa.Column("email", sa.String(320), primary_key=True),
        sa.Column("granted_by", sa.String(320), nullable=True),
        _ts("created_at"),
    )

    op.create_table(
        "contracts",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("contract_type", sa.String(16), nullable=False),
        sa.Column("status", sa.String(16), nullable=False),
        sa.Column("user_id", sa.String(128), nullable=True),
        sa.Column("email", sa.String(320), nullable=False),
        sa.Column("customer_name", sa.String(256), nullable=False),
        sa.Column("company_name", sa.String(256), nullable=True),
        sa.Column("phone", sa.String(64), nullable=True),
        sa.Column("address_line1", sa.String(256), nullable=True),
        sa.Column("address_line2", sa.String(256), nullable=True),
        sa.Column("city", sa.String(128), nullable=True),
        sa.Column("postcode", sa.String(32), nullable=True),
        sa.Column("tank_option", sa.String(16), nullable=True),
        sa.Column("fuel", sa.String(16), nullable=True),
        sa.Column("tank_size_litres", sa.Float(), nullable=True),
        sa.Column("monthly_consumption_litres", sa.Float(), nullable=True),
        sa.Column("market_price_per_litre", sa.Float(), nullable=True),
        sa.Column("cheaper_by_per_litre", sa.Float(), nullable=True),
        sa.Column("platform_price_per_litre", sa.Float(), nullable=True),
        sa.Column("est_monthly_savings", sa.Float(), nullable=True),
        sa.Column("est_payback_months", sa.Float(), nullable=True),
        sa.Column("capex_required", sa.Float(), nullable=True),
        sa.Column("extra_json", postgresql.JSONB().with_variant(sa.JSON(), "sqlite"), nullable=True),
        sa.Column("terms_version", sa.String(32), nullable=False),
        sa.Column("signature_name", sa.String(256), nullable=True),
        _ts("signed_at", nullable=True),
        sa.Column("acceptance_id", sa.String(64), nullable=True),
        _ts("approved_at", nullable=True),
        sa.Column("approved_by", sa.String(320), nullable=True),
        _ts("created_at"),
        _ts("updated_at"),
        sa.CheckConstraint("status IN ('draft','signed','active')", name="ck_contracts_status"),
        sa.CheckConstraint("contract_type IN ('buy','rent')", name="ck_contracts_contract_type"),
    )
    op.create_index("ix_contracts_email_type_created", "contracts", ["email", "contract_type", "created_at"])
    op.create_index("ix_contracts_user_type_created", "contracts", ["user_id", "contract_type", "created_at"])
    op.create_index("ix_contracts_status", "contracts", ["status"])

    op.create_table(
        "contract_acceptances",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column(
            "contract_id",
            sa.String(64),
            sa.ForeignKey("contracts.id", ondelete="RESTRICT"),
            nullable=False,
        ),
        sa.Column("accepted_name", sa.String(256), nullable=False),
        sa.Column("accepted_email", sa.String(320), nullable=False),
        sa.Column("client_ip", sa.String(64), nullable=True),
        sa.Column("user_agent", sa.Text(), nullable=True),
        sa.Column("terms_version", sa.String(32), nullable=False),
        sa.Column("bot_check_passed", sa.Boolean(), nullable=False, server_default=sa.false()),
        _ts("created_at"),
    )
    op.create_index(
        "ix_contract_acceptances_contract",
        "contract_acceptances",
        ["contract_id", "created_at"],
    )

    op.create_table(
        "session_revocations",
        sa.Column("subject", sa.String(320), primary_key=True),
        _ts("revoked_before"),
        sa.Column("reason", sa.String(128), nullable=True),
    )


def downgrade() -> None:
    op.drop_table("session_revocations")
    op.drop_table("contract_acceptances")
    op.drop_table("contracts")
    op.drop_table("admins")
    op.drop_table("blocked_users")
    op.drop_table("email_allowlist")
