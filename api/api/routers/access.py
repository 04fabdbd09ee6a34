"""Caller-facing access check."""

from __future__ import annotations

from fastapi import APIRouter

from api.dependencies import IdentityDep
from api.middleware.access import AccessServiceDep
from api.schemas import AccessMeResponse
from api.services.access_service import AccessClassification

router = APIRouter(prefix="/access", tags=["access"])


@router.get("/me", response_model=AccessMeResponse)
async def access_me(identity: IdentityDep, access: AccessServiceDep) -> AccessMeResponse:
    """Report the caller's classification and, when blocked, the recorded reason."""
    classification = await access.classify(identity.email)
    blocked = classification == AccessClassification.BLOCKED
    return AccessMeResponse(
        email=identity.email,
        classification=classification.value,
        blocked=blocked,
        reason=await access.block_reason(identity.email) if blocked else None,
    )
