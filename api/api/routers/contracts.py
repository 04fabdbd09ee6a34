"""Contract lifecycle endpoints: draft, sign, approve, and status checks.

Customer-facing endpoints accept anonymous callers.  The access gate then
classifies the email the caller declares; when a session resolved, the
session email is classified instead.
"""

from __future__ import annotations

import logging
from typing import Annotated, Literal

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import Response
from fuelflow_core.state.tables import ContractTable
from pydantic import BaseModel, Field

from api.dependencies import (
    BotCheckDep,
    ClientIPDep,
    IdentityDep,
    MailDep,
    OptionalIdentityDep,
    SessionDep,
    SettingsDep,
)
from api.errors import Forbidden, Unauthenticated
from api.middleware.access import AccessServiceDep, enforce_customer_access
from api.schemas import (
    ContractApproveResponse,
    ContractDraftResponse,
    ContractSignResponse,
    LatestContractResponse,
)
from api.services.access_service import AccessClassification
from api.services.contract_document import contract_filename, render_contract_pdf
from api.services.contract_service import ContractDraft, ContractService
from api.services.notification_service import ContractNotifier

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/contracts", tags=["contracts"])

ContractType = Literal["buy", "rent"]


def get_contract_service(
    session: SessionDep,
    settings: SettingsDep,
    access: AccessServiceDep,
    bot_checker: BotCheckDep,
    mail: MailDep,
) -> ContractService:
    return ContractService(
        session,
        access,
        bot_checker=bot_checker,
        notifier=ContractNotifier(mail, company_name=settings.company_name),
        terms_version=settings.terms_version,
        buy_capex=settings.buy_capex_gbp,
        auto_approve_types=settings.auto_approve_contract_types,
    )


ContractServiceDep = Annotated[ContractService, Depends(get_contract_service)]


# ---------------------------------------------------------------------------
# Request schemas
# ---------------------------------------------------------------------------


class SignRequest(BaseModel):
    """Request body for ``POST /contracts/{contract_id}/sign``."""

    signer_name: str = Field(..., min_length=1, max_length=256)
    signer_email: str = Field(..., min_length=3, max_length=320)
    terms_version: str | None = Field(default=None, max_length=32)
    bot_check_token: str | None = Field(default=None, description="hCaptcha response token.")


def _latest_response(contract: ContractTable | None) -> LatestContractResponse:
    if contract is None:
        return LatestContractResponse(exists=False)
    return LatestContractResponse(
        exists=True,
        status=contract.status,
        approved=contract.status == "active",
        id=contract.id,
    )


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------


@router.post("/draft", response_model=ContractDraftResponse)
async def create_draft(
    body: ContractDraft,
    identity: OptionalIdentityDep,
    access: AccessServiceDep,
    contracts: ContractServiceDep,
) -> ContractDraftResponse:
    await enforce_customer_access(access, identity.email if identity else body.email)
    contract = await contracts.create_draft(body, identity)
    return ContractDraftResponse(id=contract.id)


@router.post("/{contract_id}/sign", response_model=ContractSignResponse)
async def sign_contract(
    contract_id: str,
    body: SignRequest,
    request: Request,
    identity: OptionalIdentityDep,
    client_ip: ClientIPDep,
    access: AccessServiceDep,
    contracts: ContractServiceDep,
) -> ContractSignResponse:
    """Capture a signature.

    The bot-check outcome is recorded on the acceptance but never blocks
    the signature.  ``emailed`` reports whether the signed copy was sent.
    """
    await enforce_customer_access(access, identity.email if identity else body.signer_email)
    outcome = await contracts.sign(
        contract_id,
        signer_name=body.signer_name,
        signer_email=body.signer_email,
        terms_version=body.terms_version,
        bot_check_token=body.bot_check_token,
        client_ip=client_ip,
        user_agent=request.headers.get("user-agent"),
    )
    return ContractSignResponse(
        acceptance_id=outcome.acceptance.id,
        status=outcome.contract.status,
        emailed=outcome.emailed,
        email_error=outcome.email_error,
    )


@router.post("/{contract_id}/approve", response_model=ContractApproveResponse)
async def approve_contract(
    contract_id: str,
    identity: IdentityDep,
    contracts: ContractServiceDep,
) -> ContractApproveResponse:
    """Admin-only: move a signed contract to active."""
    outcome = await contracts.approve(contract_id, identity.email)
    approved_at = outcome.contract.approved_at
    return ContractApproveResponse(
        status=outcome.contract.status,
        approved_at=approved_at.isoformat() if approved_at else None,
        emailed=outcome.emailed,
        email_error=outcome.email_error,
    )


@router.get("/latest", response_model=LatestContractResponse)
async def latest_active_contract(
    identity: OptionalIdentityDep,
    contracts: ContractServiceDep,
    contract_type: ContractType = Query(..., alias="type"),
    email: str | None = Query(default=None, max_length=320),
) -> LatestContractResponse:
    """Newest signed or active contract for the caller (or the given email)."""
    if identity is None and not email:
        raise Unauthenticated("Sign in or pass an email")
    contract = await contracts.latest_active_for(
        contract_type,
        user_id=identity.subject_id if identity else None,
        email=identity.email if identity else email,
    )
    return _latest_response(contract)


@router.get("/status", response_model=LatestContractResponse)
async def contract_status(
    identity: IdentityDep,
    contracts: ContractServiceDep,
    contract_type: ContractType = Query(..., alias="type"),
) -> LatestContractResponse:
    """Newest contract of any status for the signed-in caller."""
    contract = await contracts.latest_for(contract_type, user_id=identity.subject_id, email=identity.email)
    return _latest_response(contract)


@router.get("/{contract_id}/pdf")
async def contract_pdf(
    contract_id: str,
    identity: IdentityDep,
    settings: SettingsDep,
    access: AccessServiceDep,
    contracts: ContractServiceDep,
) -> Response:
    """Render the contract as PDF for an admin or its gated owner."""
    is_admin = await access.classify(identity.email) == AccessClassification.ADMIN
    if not is_admin:
        await enforce_customer_access(access, identity.email)

    contract = await contracts.get(contract_id)
    is_owner = contract.email == identity.email or (
        identity.subject_id is not None and contract.user_id == identity.subject_id
    )
    if not is_owner and not is_admin:
        raise Forbidden("Only the contract owner or an admin can download it")

    pdf_bytes = render_contract_pdf(contract, company_name=settings.company_name)
    return Response(
        content=pdf_bytes,
        media_type="application/pdf",
        headers={"Content-Disposition": f'inline; filename="{contract_filename(contract)}"'},
    )
