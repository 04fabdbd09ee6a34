"""Admin control surface: allow-list approvals, blocks, and the admin list.

Every endpoint requires a resolved identity; the access service re-checks
that the caller is an admin before any write.
"""

from __future__ import annotations

import logging
from typing import Literal

from fastapi import APIRouter
from pydantic import BaseModel, Field

from api.dependencies import IdentityDep
from api.middleware.access import AccessServiceDep
from api.schemas import AccessListResponse, BlockActionResponse, OkResponse

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin", tags=["admin"])


# ---------------------------------------------------------------------------
# Request schemas
# ---------------------------------------------------------------------------


class ApproveAccessRequest(BaseModel):
    """Request body for ``POST /admin/access/approve``."""

    email: str = Field(..., min_length=3, max_length=320)
    # Credential-system subject whose sessions should be refreshed.
    user_id: str | None = Field(default=None, max_length=128)


class BlockRequest(BaseModel):
    """Request body for ``POST /admin/access/block``."""

    email: str = Field(..., min_length=3, max_length=320)
    action: Literal["block", "unblock"] = "block"
    reason: str | None = Field(default=None, max_length=500)
    user_id: str | None = Field(default=None, max_length=128)


class AdminGrantRequest(BaseModel):
    email: str = Field(..., min_length=3, max_length=320)


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------


@router.post("/access/approve", response_model=OkResponse)
async def approve_access(body: ApproveAccessRequest, identity: IdentityDep, access: AccessServiceDep) -> OkResponse:
    """Allow-list an email.  Idempotent; also lifts any block."""
    await access.approve(body.email, identity.email, subject_id=body.user_id)
    return OkResponse()


@router.post("/access/block", response_model=BlockActionResponse)
async def block_access(body: BlockRequest, identity: IdentityDep, access: AccessServiceDep) -> BlockActionResponse:
    """Block or unblock an email depending on ``action``."""
    email = body.email.strip().lower()
    if body.action == "unblock":
        changed = await access.unblock(email, identity.email)
        return BlockActionResponse(email=email, blocked=False, changed=changed)

    await access.block(email, identity.email, reason=body.reason, subject_id=body.user_id)
    return BlockActionResponse(email=email, blocked=True)


@router.get("/access", response_model=AccessListResponse)
async def list_access(identity: IdentityDep, access: AccessServiceDep) -> AccessListResponse:
    snapshot = await access.snapshot(identity.email)
    return AccessListResponse(allowed=snapshot.allowed, blocked=snapshot.blocked, admins=snapshot.admins)


@router.post("/admins", response_model=OkResponse)
async def grant_admin(body: AdminGrantRequest, identity: IdentityDep, access: AccessServiceDep) -> OkResponse:
    await access.grant_admin(body.email, identity.email)
    return OkResponse()


@router.delete("/admins/{email}", response_model=OkResponse)
async def revoke_admin(email: str, identity: IdentityDep, access: AccessServiceDep) -> OkResponse:
    """Remove an admin.  Revoking your own admin entry is a conflict."""
    await access.revoke_admin(email, identity.email)
    return OkResponse()
