"""Access gate: classify callers and manage the allow, block, and admin lists.

Classification order is fixed and block takes precedence over everything::

    empty email  -> Unauthenticated
    blocked      -> BLOCKED
    admin        -> ADMIN
    allow-listed -> ALLOWED
    otherwise    -> NOT_ALLOWED

Mutations are reserved for admins.  Every mutation re-checks the actor's
classification before touching the store so that a non-admin caller is
rejected with :class:`~api.errors.Forbidden` before any write happens.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol

from fuelflow_core.state.repository import (
    AdminRepository,
    AllowlistRepository,
    BlocklistRepository,
    SessionRevocationRepository,
    normalise_email,
)
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from api.errors import Conflict, Forbidden, Unauthenticated, UpstreamError, ValidationError
from api.middleware.auth import forget_cached_revocation

logger = logging.getLogger(__name__)


class AccessClassification(str, Enum):
    """The four mutually exclusive outcomes of :meth:`AccessService.classify`."""

    BLOCKED = "blocked"
    NOT_ALLOWED = "not_allowed"
    ALLOWED = "allowed"
    ADMIN = "admin"

    @property
    def permits_customer_flows(self) -> bool:
        return self in (AccessClassification.ALLOWED, AccessClassification.ADMIN)


class SessionInvalidator(Protocol):
    """Hook into the credential system to end a subject's live sessions."""

    async def invalidate(self, subject: str, *, reason: str) -> None: ...


class RevocationInvalidator:
    """Record a revocation cut-off so existing tokens for *subject* stop working."""

    def __init__(self, session: AsyncSession) -> None:
        self._repo = SessionRevocationRepository(session)

    async def invalidate(self, subject: str, *, reason: str) -> None:
        await self._repo.revoke(subject, reason=reason)
        forget_cached_revocation(subject)


@dataclass
class AccessSnapshot:
    """Current contents of the three access lists."""

    allowed: list[dict[str, Any]] = field(default_factory=list)
    blocked: list[dict[str, Any]] = field(default_factory=list)
    admins: list[dict[str, Any]] = field(default_factory=list)


class AccessService:
    """Classification and admin-only mutations over the access lists.

    Parameters
    ----------
    session:
        An async database session.  Mutations flush; committing is left to
        the request's session dependency.
    session_invalidator:
        Optional post-mutation hook.  Called best-effort after approvals
        and blocks; its failure never fails the mutation.
    """

    def __init__(
        self,
        session: AsyncSession,
        session_invalidator: SessionInvalidator | None = None,
    ) -> None:
        self._session = session
        self._allowlist = AllowlistRepository(session)
        self._blocklist = BlocklistRepository(session)
        self._admins = AdminRepository(session)
        self._invalidator = session_invalidator

    # -- Classification -----------------------------------------------------

    async def classify(self, email: str | None) -> AccessClassification:
        """Classify *email*.  Pure read over the access lists."""
        key = normalise_email(email)
        if not key:
            raise Unauthenticated("No email to classify")

        try:
            if await self._blocklist.get(key) is not None:
                return AccessClassification.BLOCKED
            if await self._admins.is_admin(key):
                return AccessClassification.ADMIN
            if await self._allowlist.get(key) is not None:
                return AccessClassification.ALLOWED
        except SQLAlchemyError as exc:
            logger.error("Access lookup failed for %s", key, exc_info=True)
            raise UpstreamError("Access store unavailable") from exc
        return AccessClassification.NOT_ALLOWED

    async def block_reason(self, email: str) -> str | None:
        row = await self._blocklist.get(email)
        return row.reason if row is not None else None

    async def _require_admin(self, actor: str) -> str:
        actor_key = normalise_email(actor)
        if await self.classify(actor_key) != AccessClassification.ADMIN:
            logger.info("Admin mutation rejected for non-admin actor %s", actor_key)
            raise Forbidden("Admin classification required")
        return actor_key

    @staticmethod
    def _target(email: str) -> str:
        key = normalise_email(email)
        if not key or "@" not in key:
            raise ValidationError("A valid email is required")
        return key

    # -- Mutations ----------------------------------------------------------

    async def approve(self, email: str, approved_by: str, *, subject_id: str | None = None) -> None:
        """Allow-list *email* and lift any block on it.

        Idempotent: approving an already allow-listed email refreshes
        ``approved_by`` and succeeds.  The un-block and session
        invalidation steps are best-effort.
        """
        actor = await self._require_admin(approved_by)
        target = self._target(email)

        try:
            await self._allowlist.upsert(target, approved_by=actor)
        except SQLAlchemyError as exc:
            logger.error("Allow-list upsert failed for %s", target, exc_info=True)
            raise UpstreamError("Could not update the allow-list") from exc

        try:
            async with self._session.begin_nested():
                if await self._blocklist.delete(target):
                    logger.info("Lifted block on %s during approval", target)
        except SQLAlchemyError:
            logger.warning("Best-effort unblock of %s failed; approval stands", target, exc_info=True)

        logger.info("Approved %s (by %s)", target, actor)
        await self._invalidate(subject_id or target, reason="approved")

    async def block(
        self,
        email: str,
        blocked_by: str,
        *,
        reason: str | None = None,
        subject_id: str | None = None,
    ) -> None:
        """Put *email* on the block-list.  Idempotent."""
        actor = await self._require_admin(blocked_by)
        target = self._target(email)
        if target == actor:
            raise Conflict("Admins cannot block themselves")

        try:
            await self._blocklist.upsert(target, reason=reason, blocked_by=actor, user_id=subject_id)
        except SQLAlchemyError as exc:
            logger.error("Block-list upsert failed for %s", target, exc_info=True)
            raise UpstreamError("Could not update the block-list") from exc

        logger.info("Blocked %s (by %s, reason=%s)", target, actor, reason)
        await self._invalidate(subject_id or target, reason="blocked")

    async def unblock(self, email: str, unblocked_by: str) -> bool:
        """Remove *email* from the block-list.  Returns whether a block existed."""
        actor = await self._require_admin(unblocked_by)
        target = self._target(email)
        try:
            removed = await self._blocklist.delete(target)
        except SQLAlchemyError as exc:
            logger.error("Block-list delete failed for %s", target, exc_info=True)
            raise UpstreamError("Could not update the block-list") from exc
        logger.info("Unblocked %s (by %s, existed=%s)", target, actor, removed)
        return removed

    async def grant_admin(self, email: str, granted_by: str) -> None:
        actor = await self._require_admin(granted_by)
        target = self._target(email)
        await self._admins.grant(target, granted_by=actor)
        logger.info("Granted admin to %s (by %s)", target, actor)

    async def revoke_admin(self, email: str, revoked_by: str) -> bool:
        """Remove *email* from the admin list.  An admin cannot revoke themselves."""
        actor = await self._require_admin(revoked_by)
        target = self._target(email)
        if target == actor:
            raise Conflict("Admins cannot revoke their own admin access")
        removed = await self._admins.revoke(target)
        logger.info("Revoked admin from %s (by %s, existed=%s)", target, actor, removed)
        return removed

    async def snapshot(self, requested_by: str) -> AccessSnapshot:
        """Return the three access lists for the admin console."""
        await self._require_admin(requested_by)
        allowed = await self._allowlist.list_all()
        blocked = await self._blocklist.list_all()
        admins = await self._admins.list_all()
        return AccessSnapshot(
            allowed=[
                {"email": r.email, "approved_by": r.approved_by, "created_at": r.created_at.isoformat()}
                for r in allowed
            ],
            blocked=[
                {
                    "email": r.email,
                    "reason": r.reason,
                    "blocked_by": r.blocked_by,
                    "created_at": r.created_at.isoformat(),
                }
                for r in blocked
            ],
            admins=[{"email": r.email, "granted_by": r.granted_by} for r in admins],
        )

    # -- Hooks --------------------------------------------------------------

    async def _invalidate(self, subject: str, *, reason: str) -> None:
        if self._invalidator is None:
            return
        try:
            async with self._session.begin_nested():
                await self._invalidator.invalidate(subject, reason=reason)
        except Exception:
            logger.warning("Session invalidation for %s failed; continuing", subject, exc_info=True)
