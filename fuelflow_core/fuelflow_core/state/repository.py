"""Repository classes providing CRUD access to the FuelFlow state store.

Each repository takes an ``AsyncSession`` at construction time and operates
within the caller's transaction boundary.  All writes call ``session.flush()``
so that generated defaults are populated; the caller is responsible for calling
``session.commit()`` (or relying on the ``get_session`` context manager).

Emails are normalised (stripped, lowercased) at this boundary so every
lookup and upsert keys on the same value.
"""

from __future__ import annotations

import logging
import uuid
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from fuelflow_core.state.tables import (
    AcceptanceTable,
    AdminTable,
    AllowlistTable,
    BlockedUserTable,
    ContractTable,
    SessionRevocationTable,
)

logger = logging.getLogger(__name__)


def normalise_email(email: str | None) -> str:
    """Return *email* stripped and lowercased (empty string for ``None``)."""
    return (email or "").strip().lower()


def _as_utc(value: datetime | None) -> datetime | None:
    """SQLite drops tzinfo on read; re-attach UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


async def _dialect_upsert(
    session: AsyncSession,
    table: Any,
    values: dict[str, Any],
    index_elements: list[str],
    update_columns: list[str],
) -> Any:
    """Dialect-aware upsert: PostgreSQL ``ON CONFLICT DO UPDATE`` or SQLite equivalent.

    Parameters
    ----------
    session:
        The active async session.
    table:
        The SQLAlchemy table class to upsert into.
    values:
        Column-value mapping for the row to insert.
    index_elements:
        Column names forming the unique constraint for conflict detection.
    update_columns:
        Column names to update when a conflict occurs.
    """
    bind = session.get_bind()
    dialect_name = getattr(getattr(bind, "dialect", None), "name", "")

    stmt: Any
    if "postgresql" in str(dialect_name):
        from sqlalchemy.dialects.postgresql import insert as _pg_insert

        stmt = _pg_insert(table).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=index_elements,
            set_={col: getattr(stmt.excluded, col) for col in update_columns},
        )
    else:
        from sqlalchemy.dialects.sqlite import insert as _sqlite_insert

        stmt = _sqlite_insert(table).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=index_elements,
            set_={col: values[col] for col in update_columns},
        )
    return await session.execute(stmt)


# ---------------------------------------------------------------------------
# Access records
# ---------------------------------------------------------------------------


class AllowlistRepository:
    """CRUD operations for the ``email_allowlist`` table."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get(self, email: str) -> AllowlistTable | None:
        stmt = select(AllowlistTable).where(AllowlistTable.email == normalise_email(email))
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def upsert(self, email: str, approved_by: str | None) -> None:
        """Insert or refresh the allow-list entry.  Idempotent."""
        now = datetime.now(UTC)
        await _dialect_upsert(
            self._session,
            AllowlistTable,
            values={
                "email": normalise_email(email),
                "approved_by": approved_by,
                "created_at": now,
                "updated_at": now,
            },
            index_elements=["email"],
            update_columns=["approved_by", "updated_at"],
        )
        await self._session.flush()

    async def delete(self, email: str) -> bool:
        stmt = delete(AllowlistTable).where(AllowlistTable.email == normalise_email(email))
        result = await self._session.execute(stmt)
        await self._session.flush()
        return result.rowcount > 0  # type: ignore[attr-defined]

    async def list_all(self, limit: int = 500) -> list[AllowlistTable]:
        stmt = select(AllowlistTable).order_by(AllowlistTable.created_at.desc()).limit(limit)
        result = await self._session.execute(stmt)
        return list(result.scalars().all())


class BlocklistRepository:
    """CRUD operations for the ``blocked_users`` table."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get(self, email: str) -> BlockedUserTable | None:
        stmt = select(BlockedUserTable).where(BlockedUserTable.email == normalise_email(email))
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def upsert(
        self,
        email: str,
        *,
        reason: str | None = None,
        blocked_by: str | None = None,
        user_id: str | None = None,
    ) -> None:
        """Record a block.  Re-blocking refreshes the reason and actor."""
        await _dialect_upsert(
            self._session,
            BlockedUserTable,
            values={
                "email": normalise_email(email),
                "user_id": user_id,
                "reason": reason,
                "blocked_by": blocked_by,
                "created_at": datetime.now(UTC),
            },
            index_elements=["email"],
            update_columns=["user_id", "reason", "blocked_by"],
        )
        await self._session.flush()

    async def delete(self, email: str) -> bool:
        """Remove a block.  Returns ``False`` when no entry existed."""
        stmt = delete(BlockedUserTable).where(BlockedUserTable.email == normalise_email(email))
        result = await self._session.execute(stmt)
        await self._session.flush()
        return result.rowcount > 0  # type: ignore[attr-defined]

    async def list_all(self, limit: int = 500) -> list[BlockedUserTable]:
        stmt = select(BlockedUserTable).order_by(BlockedUserTable.created_at.desc()).limit(limit)
        result = await self._session.execute(stmt)
        return list(result.scalars().all())


class AdminRepository:
    """CRUD operations for the ``admins`` table."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def is_admin(self, email: str) -> bool:
        stmt = select(func.count()).select_from(AdminTable).where(AdminTable.email == normalise_email(email))
        result = await self._session.execute(stmt)
        return result.scalar_one() > 0

    async def grant(self, email: str, granted_by: str | None) -> None:
        await _dialect_upsert(
            self._session,
            AdminTable,
            values={
                "email": normalise_email(email),
                "granted_by": granted_by,
                "created_at": datetime.now(UTC),
            },
            index_elements=["email"],
            update_columns=["granted_by"],
        )
        await self._session.flush()

    async def revoke(self, email: str) -> bool:
        stmt = delete(AdminTable).where(AdminTable.email == normalise_email(email))
        result = await self._session.execute(stmt)
        await self._session.flush()
        return result.rowcount > 0  # type: ignore[attr-defined]

    async def list_all(self) -> list[AdminTable]:
        result = await self._session.execute(select(AdminTable).order_by(AdminTable.email))
        return list(result.scalars().all())


# ---------------------------------------------------------------------------
# Contracts
# ---------------------------------------------------------------------------


class ContractRepository:
    """CRUD and conditional status transitions for the ``contracts`` table.

    Transitions are expressed as ``UPDATE ... WHERE status IN (...)`` so the
    database, not the caller, enforces the precondition.  Each transition
    returns ``True`` only when a row actually moved.
    """

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(
        self,
        *,
        contract_type: str,
        email: str,
        customer_name: str,
        terms_version: str,
        user_id: str | None = None,
        **terms: Any,
    ) -> ContractTable:
        """Insert a new ``draft`` contract and return the row."""
        row = ContractTable(
            id=uuid.uuid4().hex,
            contract_type=contract_type,
            status="draft",
            user_id=user_id,
            email=normalise_email(email),
            customer_name=customer_name,
            terms_version=terms_version,
            **terms,
        )
        self._session.add(row)
        await self._session.flush()
        return row

    async def get(self, contract_id: str) -> ContractTable | None:
        stmt = select(ContractTable).where(ContractTable.id == contract_id)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def mark_signed(
        self,
        contract_id: str,
        *,
        acceptance_id: str,
        signature_name: str,
        terms_version: str,
        signed_at: datetime | None = None,
    ) -> bool:
        """Move a ``draft`` (or re-signed ``signed``) contract to ``signed``."""
        stmt = (
            update(ContractTable)
            .where(
                ContractTable.id == contract_id,
                ContractTable.status.in_(("draft", "signed")),
            )
            .values(
                status="signed",
                acceptance_id=acceptance_id,
                signature_name=signature_name,
                terms_version=terms_version,
                signed_at=signed_at or datetime.now(UTC),
            )
            .execution_options(synchronize_session="fetch")
        )
        result = await self._session.execute(stmt)
        await self._session.flush()
        return result.rowcount > 0  # type: ignore[attr-defined]

    async def mark_active(
        self,
        contract_id: str,
        *,
        approved_by: str,
        approved_at: datetime | None = None,
    ) -> bool:
        """Move a ``signed`` contract to ``active``.

        A second concurrent approval finds ``status = 'active'`` and
        updates nothing, so double approval is a no-op.
        """
        stmt = (
            update(ContractTable)
            .where(
                ContractTable.id == contract_id,
                ContractTable.status == "signed",
            )
            .values(
                status="active",
                approved_by=approved_by,
                approved_at=approved_at or datetime.now(UTC),
            )
            .execution_options(synchronize_session="fetch")
        )
        result = await self._session.execute(stmt)
        await self._session.flush()
        return result.rowcount > 0  # type: ignore[attr-defined]

    async def latest_for_owner(
        self,
        contract_type: str,
        *,
        user_id: str | None = None,
        email: str | None = None,
        statuses: tuple[str, ...] | None = None,
    ) -> ContractTable | None:
        """Return the newest contract of *contract_type* owned by the party.

        A contract belongs to the party when either ``user_id`` or the
        normalised ``email`` matches.  ``statuses`` restricts the match;
        ``None`` means any status.
        """
        owner_clauses = []
        if user_id:
            owner_clauses.append(ContractTable.user_id == user_id)
        if email:
            owner_clauses.append(ContractTable.email == normalise_email(email))
        if not owner_clauses:
            return None

        stmt = select(ContractTable).where(
            ContractTable.contract_type == contract_type,
            or_(*owner_clauses),
        )
        if statuses is not None:
            stmt = stmt.where(ContractTable.status.in_(statuses))
        stmt = stmt.order_by(ContractTable.created_at.desc()).limit(1)
        result = await self._session.execute(stmt)
        return result.scalars().first()


class AcceptanceRepository:
    """Insert-only access to the ``contract_acceptances`` table."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(
        self,
        *,
        contract_id: str,
        accepted_name: str,
        accepted_email: str,
        terms_version: str,
        bot_check_passed: bool,
        client_ip: str | None = None,
        user_agent: str | None = None,
    ) -> AcceptanceTable:
        row = AcceptanceTable(
            id=uuid.uuid4().hex,
            contract_id=contract_id,
            accepted_name=accepted_name,
            accepted_email=normalise_email(accepted_email),
            client_ip=client_ip,
            user_agent=user_agent,
            terms_version=terms_version,
            bot_check_passed=bot_check_passed,
        )
        self._session.add(row)
        await self._session.flush()
        return row

    async def get(self, acceptance_id: str) -> AcceptanceTable | None:
        stmt = select(AcceptanceTable).where(AcceptanceTable.id == acceptance_id)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_for_contract(self, contract_id: str) -> list[AcceptanceTable]:
        """All acceptances for *contract_id*, oldest first."""
        stmt = (
            select(AcceptanceTable)
            .where(AcceptanceTable.contract_id == contract_id)
            .order_by(AcceptanceTable.created_at.asc())
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())


# ---------------------------------------------------------------------------
# Session revocations
# ---------------------------------------------------------------------------


class SessionRevocationRepository:
    """CRUD operations for the ``session_revocations`` table."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def revoke(self, subject: str, reason: str | None = None) -> datetime:
        """Invalidate every session issued to *subject* before now.  Idempotent."""
        now = datetime.now(UTC)
        await _dialect_upsert(
            self._session,
            SessionRevocationTable,
            values={"subject": subject, "revoked_before": now, "reason": reason},
            index_elements=["subject"],
            update_columns=["revoked_before", "reason"],
        )
        await self._session.flush()
        return now

    async def revoked_before(self, subjects: list[str]) -> datetime | None:
        """Return the latest cut-off recorded for any of *subjects*."""
        wanted = [s for s in subjects if s]
        if not wanted:
            return None
        stmt = select(func.max(SessionRevocationTable.revoked_before)).where(
            SessionRevocationTable.subject.in_(wanted),
        )
        result = await self._session.execute(stmt)
        return _as_utc(result.scalar_one_or_none())
