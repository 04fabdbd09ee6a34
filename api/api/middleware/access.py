"""Access-gate guards for routers.

Usage in routers::

    from api.middleware.access import AdminDep, CustomerAccessDep

    @router.post("/access/approve")
    async def approve(body: ..., admin: AdminDep) -> ...:

Customer-facing endpoints that accept anonymous callers classify the
declared email instead of a resolved identity, via
:func:`enforce_customer_access`.
"""

from __future__ import annotations

import logging
from typing import Annotated

from fastapi import Depends

from api.dependencies import Identity, IdentityDep, SessionDep
from api.errors import Blocked, Forbidden, NotAllowed
from api.services.access_service import AccessClassification, AccessService, RevocationInvalidator

logger = logging.getLogger(__name__)


def get_access_service(session: SessionDep) -> AccessService:
    """Build a request-scoped :class:`AccessService` with revocation hooks."""
    return AccessService(session, session_invalidator=RevocationInvalidator(session))


AccessServiceDep = Annotated[AccessService, Depends(get_access_service)]


async def enforce_customer_access(access: AccessService, email: str | None) -> AccessClassification:
    """Classify *email* and raise unless it may use customer-facing flows.

    Raises
    ------
    Unauthenticated
        If *email* is empty.
    Blocked
        If *email* is on the block-list.
    NotAllowed
        If *email* is neither allow-listed nor an admin.
    """
    classification = await access.classify(email)
    if classification == AccessClassification.BLOCKED:
        logger.info("Customer flow rejected: %s is blocked", email)
        raise Blocked("This account has been blocked")
    if classification == AccessClassification.NOT_ALLOWED:
        logger.info("Customer flow rejected: %s is not allow-listed", email)
        raise NotAllowed("This account is not yet approved")
    return classification


async def require_customer_access(identity: IdentityDep, access: AccessServiceDep) -> Identity:
    """Guard for signed-in customer endpoints."""
    await enforce_customer_access(access, identity.email)
    return identity


async def require_admin(identity: IdentityDep, access: AccessServiceDep) -> Identity:
    """Guard for admin endpoints.  Raises :class:`Forbidden` for non-admins."""
    if await access.classify(identity.email) != AccessClassification.ADMIN:
        logger.warning("Admin endpoint denied for %s", identity.email)
        raise Forbidden("Admin access required")
    return identity


CustomerAccessDep = Annotated[Identity, Depends(require_customer_access)]
AdminDep = Annotated[Identity, Depends(require_admin)]
