"""Contract lifecycle: draft, sign, approve, and latest-contract queries.

States move strictly forward::

    draft -> signed -> active

Every transition is a conditional update in the store (``UPDATE ... WHERE
status IN (...)``), so concurrent approvals cannot both succeed and a draft
can never be approved.  Transitions are committed before any notification
runs; a failed notification is reported as ``emailed=False`` and never
unwinds the committed state.

Bot-check verification during signing fails open: an error or a negative
answer is recorded as ``bot_check_passed=False`` on the acceptance row and
the signature is still captured.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Literal

from fuelflow_core.state.repository import AcceptanceRepository, ContractRepository, normalise_email
from fuelflow_core.state.tables import AcceptanceTable, ContractTable
from pydantic import BaseModel, Field
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from api.dependencies import Identity
from api.errors import Conflict, Forbidden, NotFound, UpstreamError, ValidationError
from api.middleware.prometheus import CONTRACT_TRANSITIONS_TOTAL
from api.services.access_service import AccessClassification, AccessService
from api.services.bot_check import BotCheckVerifier
from api.services.notification_service import ContractNotifier

logger = logging.getLogger(__name__)

ACTIVE_STATUSES: tuple[str, ...] = ("signed", "active")
AUTO_APPROVER = "system:auto"


class ContractDraft(BaseModel):
    """Fields captured when a customer starts a contract.

    Numeric terms are optional but, when present, must be finite.
    """

    contract_type: Literal["buy", "rent"]
    customer_name: str = Field(..., min_length=1, max_length=256)
    email: str | None = Field(default=None, max_length=320)
    company_name: str | None = Field(default=None, max_length=256)
    phone: str | None = Field(default=None, max_length=64)
    address_line1: str | None = Field(default=None, max_length=256)
    address_line2: str | None = Field(default=None, max_length=256)
    city: str | None = Field(default=None, max_length=128)
    postcode: str | None = Field(default=None, max_length=32)
    tank_option: Literal["buy", "rent", "none"] | None = None
    fuel: Literal["petrol", "diesel"] | None = None
    tank_size_litres: float | None = Field(default=None, ge=0, allow_inf_nan=False)
    monthly_consumption_litres: float | None = Field(default=None, ge=0, allow_inf_nan=False)
    market_price_per_litre: float | None = Field(default=None, ge=0, allow_inf_nan=False)
    cheaper_by_per_litre: float | None = Field(default=None, ge=0, allow_inf_nan=False)
    platform_price_per_litre: float | None = Field(default=None, ge=0, allow_inf_nan=False)
    est_monthly_savings: float | None = Field(default=None, allow_inf_nan=False)
    est_payback_months: float | None = Field(default=None, ge=0, allow_inf_nan=False)
    extra: dict[str, Any] | None = None


@dataclass
class SignOutcome:
    contract: ContractTable
    acceptance: AcceptanceTable
    emailed: bool
    email_error: str | None = None
    auto_approved: bool = False


@dataclass
class ApprovalOutcome:
    contract: ContractTable
    emailed: bool
    email_error: str | None = None


class ContractService:
    """Owns contract records and validates every transition.

    Parameters
    ----------
    session:
        An async database session.  The service commits each transition
        itself so notifications only ever follow durable state.
    access:
        Access gate used to confirm the approver is an admin.
    bot_checker:
        hCaptcha verifier consulted during signing.
    notifier:
        Optional post-commit notifier.  ``None`` disables emails.
    terms_version:
        Terms version stamped on drafts and acceptances by default.
    buy_capex:
        Capital expenditure assumed for ``buy`` contracts.
    auto_approve_types:
        Contract types approved by the system right after signing.
    """

    def __init__(
        self,
        session: AsyncSession,
        access: AccessService,
        *,
        bot_checker: BotCheckVerifier,
        notifier: ContractNotifier | None = None,
        terms_version: str = "v1.1",
        buy_capex: float = 12000.0,
        auto_approve_types: list[str] | tuple[str, ...] = (),
    ) -> None:
        self._session = session
        self._access = access
        self._contracts = ContractRepository(session)
        self._acceptances = AcceptanceRepository(session)
        self._bot_checker = bot_checker
        self._notifier = notifier
        self._terms_version = terms_version
        self._buy_capex = buy_capex
        self._auto_approve_types = frozenset(auto_approve_types)

    # -- Helpers ------------------------------------------------------------

    async def _commit(self, action: str) -> None:
        try:
            await self._session.commit()
        except SQLAlchemyError as exc:
            await self._session.rollback()
            logger.error("Contract store commit failed during %s", action, exc_info=True)
            raise UpstreamError(f"Could not {action} the contract") from exc

    def _derive_terms(self, draft: ContractDraft) -> dict[str, Any]:
        """Fill price, saving, capex, and payback figures the customer left blank."""
        market = draft.market_price_per_litre
        cheaper_by = draft.cheaper_by_per_litre
        consumption = draft.monthly_consumption_litres

        platform_price = draft.platform_price_per_litre
        if platform_price is None and market is not None and cheaper_by is not None:
            platform_price = round(max(market - cheaper_by, 0.0), 4)

        savings = draft.est_monthly_savings
        if savings is None and cheaper_by is not None and consumption is not None:
            savings = round(cheaper_by * consumption, 2)

        capex = self._buy_capex if draft.contract_type == "buy" else 0.0

        payback = draft.est_payback_months
        if payback is None and capex > 0 and savings:
            payback = round(capex / savings, 2) if savings > 0 else None

        return {
            "platform_price_per_litre": platform_price,
            "est_monthly_savings": savings,
            "capex_required": capex,
            "est_payback_months": payback,
        }

    # -- Operations ---------------------------------------------------------

    async def create_draft(self, draft: ContractDraft, identity: Identity | None = None) -> ContractTable:
        """Insert a ``draft`` contract and return it.

        The owner email is the declared email, falling back to the caller's
        identity.  ``user_id`` is bound only when an identity resolved.
        """
        email = normalise_email(draft.email) or (identity.email if identity else "")
        if not email or "@" not in email:
            raise ValidationError("Customer email is required")
        if not draft.customer_name.strip():
            raise ValidationError("Customer name is required")

        terms = self._derive_terms(draft)
        try:
            contract = await self._contracts.create(
                contract_type=draft.contract_type,
                email=email,
                customer_name=draft.customer_name.strip(),
                terms_version=self._terms_version,
                user_id=identity.subject_id if identity else None,
                company_name=draft.company_name,
                phone=draft.phone,
                address_line1=draft.address_line1,
                address_line2=draft.address_line2,
                city=draft.city,
                postcode=draft.postcode,
                tank_option=draft.tank_option,
                fuel=draft.fuel,
                tank_size_litres=draft.tank_size_litres,
                monthly_consumption_litres=draft.monthly_consumption_litres,
                market_price_per_litre=draft.market_price_per_litre,
                cheaper_by_per_litre=draft.cheaper_by_per_litre,
                extra_json=draft.extra,
                **terms,
            )
        except SQLAlchemyError as exc:
            await self._session.rollback()
            logger.error("Draft insert failed for %s", email, exc_info=True)
            raise UpstreamError("Could not create the contract") from exc
        await self._commit("create")

        CONTRACT_TRANSITIONS_TOTAL.labels(transition="drafted").inc()
        logger.info("Drafted %s contract %s for %s", contract.contract_type, contract.id, email)
        return contract

    async def get(self, contract_id: str) -> ContractTable:
        contract = await self._contracts.get(contract_id)
        if contract is None:
            raise NotFound(f"Contract {contract_id} not found")
        return contract

    async def sign(
        self,
        contract_id: str,
        *,
        signer_name: str,
        signer_email: str,
        terms_version: str | None = None,
        bot_check_token: str | None = None,
        client_ip: str | None = None,
        user_agent: str | None = None,
    ) -> SignOutcome:
        """Capture a signature and move the contract to ``signed``.

        Raises
        ------
        ValidationError
            If the signer name or email is missing.
        NotFound
            If *contract_id* does not exist.
        Conflict
            If the contract is already ``active``.
        """
        signer_name = signer_name.strip()
        signer_email = normalise_email(signer_email)
        if not signer_name or not signer_email:
            raise ValidationError("Signer name and email are required")

        contract = await self.get(contract_id)
        if contract.status == "active":
            raise Conflict(f"Contract {contract_id} is already active")

        try:
            bot_passed = await self._bot_checker.verify(bot_check_token, client_ip)
        except Exception:
            logger.warning("Bot check raised for contract %s; recording as failed", contract_id, exc_info=True)
            bot_passed = False

        version = terms_version or contract.terms_version or self._terms_version
        try:
            acceptance = await self._acceptances.create(
                contract_id=contract.id,
                accepted_name=signer_name,
                accepted_email=signer_email,
                client_ip=client_ip,
                user_agent=user_agent,
                terms_version=version,
                bot_check_passed=bot_passed,
            )
            moved = await self._contracts.mark_signed(
                contract.id,
                acceptance_id=acceptance.id,
                signature_name=signer_name,
                terms_version=version,
            )
        except SQLAlchemyError as exc:
            await self._session.rollback()
            logger.error("Signing failed for contract %s", contract_id, exc_info=True)
            raise UpstreamError("Could not record the signature") from exc

        if not moved:
            await self._session.rollback()
            raise Conflict(f"Contract {contract_id} can no longer be signed")
        await self._commit("sign")
        await self._session.refresh(contract)

        CONTRACT_TRANSITIONS_TOTAL.labels(transition="signed").inc()
        logger.info(
            "Contract %s signed by %s (acceptance=%s, bot_check=%s)",
            contract.id,
            signer_email,
            acceptance.id,
            bot_passed,
        )

        auto_approved = False
        if contract.contract_type in self._auto_approve_types:
            auto_approved = await self._auto_approve(contract, acceptance)

        emailed, email_error = await self._notify(
            contract, approved=auto_approved, recipient=acceptance.accepted_email
        )
        return SignOutcome(
            contract=contract,
            acceptance=acceptance,
            emailed=emailed,
            email_error=email_error,
            auto_approved=auto_approved,
        )

    async def _auto_approve(self, contract: ContractTable, acceptance: AcceptanceTable) -> bool:
        """Approve a just-signed contract as the system.

        The signature is already committed, so a store failure here leaves
        the contract ``signed`` and is logged rather than raised.  Rolling
        back expires loaded rows; both are reloaded before returning.
        """
        contract_id = contract.id
        try:
            moved = await self._contracts.mark_active(contract_id, approved_by=AUTO_APPROVER)
            if moved:
                await self._session.commit()
        except SQLAlchemyError:
            await self._session.rollback()
            logger.error("Auto-approval failed for contract %s; left signed", contract_id, exc_info=True)
            await self._session.refresh(contract)
            await self._session.refresh(acceptance)
            return False
        if not moved:
            return False
        await self._session.refresh(contract)
        CONTRACT_TRANSITIONS_TOTAL.labels(transition="auto_approved").inc()
        logger.info("Contract %s auto-approved (%s)", contract.id, contract.contract_type)
        return True

    async def approve(self, contract_id: str, approver_email: str) -> ApprovalOutcome:
        """Move a ``signed`` contract to ``active`` and stamp ``approved_at``.

        Raises
        ------
        Forbidden
            If the approver is not classified as admin.  Checked before any
            write.
        NotFound
            If *contract_id* does not exist.
        Conflict
            If the contract is not currently ``signed``.
        """
        approver = normalise_email(approver_email)
        if await self._access.classify(approver) != AccessClassification.ADMIN:
            raise Forbidden("Only admins can approve contracts")

        try:
            moved = await self._contracts.mark_active(contract_id, approved_by=approver)
        except SQLAlchemyError as exc:
            await self._session.rollback()
            logger.error("Approval failed for contract %s", contract_id, exc_info=True)
            raise UpstreamError("Could not approve the contract") from exc

        if not moved:
            contract = await self.get(contract_id)
            raise Conflict(f"Contract {contract_id} is {contract.status}; only signed contracts can be approved")

        await self._commit("approve")
        contract = await self.get(contract_id)
        await self._session.refresh(contract)

        CONTRACT_TRANSITIONS_TOTAL.labels(transition="approved").inc()
        logger.info("Contract %s approved by %s", contract.id, approver)

        emailed, email_error = await self._notify(
            contract, approved=True, recipient=await self._signer_email(contract)
        )
        return ApprovalOutcome(contract=contract, emailed=emailed, email_error=email_error)

    async def latest_active_for(
        self,
        contract_type: str,
        *,
        user_id: str | None = None,
        email: str | None = None,
    ) -> ContractTable | None:
        """Newest ``signed`` or ``active`` contract of *contract_type* for the party."""
        return await self._contracts.latest_for_owner(
            contract_type,
            user_id=user_id,
            email=email,
            statuses=ACTIVE_STATUSES,
        )

    async def latest_for(
        self,
        contract_type: str,
        *,
        user_id: str | None = None,
        email: str | None = None,
    ) -> ContractTable | None:
        """Newest contract of *contract_type* for the party, any status."""
        return await self._contracts.latest_for_owner(contract_type, user_id=user_id, email=email)

    async def _signer_email(self, contract: ContractTable) -> str | None:
        """Email recorded on the contract's current acceptance, if readable."""
        if not contract.acceptance_id:
            return None
        try:
            acceptance = await self._acceptances.get(contract.acceptance_id)
        except SQLAlchemyError:
            logger.warning("Could not load acceptance for contract %s; mailing owner", contract.id, exc_info=True)
            return None
        return acceptance.accepted_email if acceptance else None

    async def _notify(
        self, contract: ContractTable, *, approved: bool, recipient: str | None = None
    ) -> tuple[bool, str | None]:
        if self._notifier is None:
            return False, "notifications disabled"
        if approved:
            result = await self._notifier.notify_approved(contract, recipient)
        else:
            result = await self._notifier.notify_signed(contract, recipient)
        return result.delivered, result.reason
