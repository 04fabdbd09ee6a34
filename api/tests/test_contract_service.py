"""Tests for the contract state machine.

Covers:
- Draft validation and derived price, saving, capex, and payback figures
- sign: acceptance row, status, bot-check fail-open, NotFound, active Conflict
- approve: admin only, signed only, double approval is a Conflict
- latest_active_for / latest_for ordering and status filtering
- Email failure after sign leaves the contract signed with emailed=False
- Sign and approval emails go to the signer, not the draft owner
- Store failure during sign aborts the transition with UpstreamError
- Auto-approval for configured contract types
"""

from __future__ import annotations

from unittest.mock import AsyncMock

import pydantic
import pytest
from fuelflow_core.state.repository import AcceptanceRepository, ContractRepository
from prometheus_client import REGISTRY
from sqlalchemy.exc import OperationalError

from api.dependencies import Identity
from api.errors import Conflict, Forbidden, NotFound, UpstreamError, ValidationError
from api.services.access_service import AccessService
from api.services.contract_service import AUTO_APPROVER, ContractDraft, ContractService
from api.services.notification_service import ContractNotifier

ADMIN = "ops@fuelflow.co.uk"
CUSTOMER = "jane@example.com"


def _draft(**overrides) -> ContractDraft:
    fields = {
        "contract_type": "buy",
        "customer_name": "Jane Doe",
        "email": CUSTOMER,
        "tank_size_litres": 1000,
        "monthly_consumption_litres": 200,
    }
    fields.update(overrides)
    return ContractDraft(**fields)


def _service(db_session, bot_checker, mail_service=None, **kwargs) -> ContractService:
    return ContractService(
        db_session,
        AccessService(db_session),
        bot_checker=bot_checker,
        notifier=ContractNotifier(mail_service) if mail_service is not None else None,
        **kwargs,
    )


@pytest.fixture
def service(db_session, bot_checker, mail_service) -> ContractService:
    return _service(db_session, bot_checker, mail_service)


async def _sign(service: ContractService, contract_id: str, **kwargs):
    params = {
        "signer_name": "Jane Doe",
        "signer_email": CUSTOMER,
        "bot_check_token": "captcha-ok",
        "client_ip": "203.0.113.7",
        "user_agent": "pytest",
    }
    params.update(kwargs)
    return await service.sign(contract_id, **params)


# ---------------------------------------------------------------------------
# Drafts
# ---------------------------------------------------------------------------


class TestCreateDraft:
    @pytest.mark.asyncio
    async def test_inserts_draft(self, service: ContractService) -> None:
        contract = await service.create_draft(_draft())

        assert contract.status == "draft"
        assert contract.email == CUSTOMER
        assert contract.user_id is None
        assert contract.terms_version == "v1.1"
        assert contract.tank_size_litres == 1000

    @pytest.mark.asyncio
    async def test_binds_identity(self, service: ContractService) -> None:
        contract = await service.create_draft(
            _draft(email=None), Identity(email="owner@example.com", subject_id="user-9")
        )
        assert contract.user_id == "user-9"
        assert contract.email == "owner@example.com"

    @pytest.mark.asyncio
    async def test_buy_derivations(self, service: ContractService) -> None:
        contract = await service.create_draft(
            _draft(market_price_per_litre=1.50, cheaper_by_per_litre=0.10, monthly_consumption_litres=2000)
        )
        assert contract.platform_price_per_litre == pytest.approx(1.40)
        assert contract.est_monthly_savings == pytest.approx(200.0)
        assert contract.capex_required == 12000.0
        assert contract.est_payback_months == pytest.approx(60.0)

    @pytest.mark.asyncio
    async def test_rent_has_no_capex(self, service: ContractService) -> None:
        contract = await service.create_draft(
            _draft(contract_type="rent", cheaper_by_per_litre=0.05, monthly_consumption_litres=1000)
        )
        assert contract.capex_required == 0.0
        assert contract.est_payback_months is None

    @pytest.mark.asyncio
    async def test_optional_commercial_fields_may_be_absent(self, service: ContractService) -> None:
        contract = await service.create_draft(
            ContractDraft(contract_type="rent", customer_name="Bob", email="bob@example.com")
        )
        assert contract.status == "draft"
        assert contract.est_monthly_savings is None

    @pytest.mark.asyncio
    async def test_email_required(self, service: ContractService) -> None:
        with pytest.raises(ValidationError):
            await service.create_draft(_draft(email=None))

    @pytest.mark.asyncio
    async def test_blank_name_rejected(self, service: ContractService) -> None:
        with pytest.raises(ValidationError):
            await service.create_draft(_draft(customer_name="   "))

    @pytest.mark.parametrize("value", [float("inf"), float("nan")])
    def test_numeric_fields_must_be_finite(self, value: float) -> None:
        with pytest.raises(pydantic.ValidationError):
            _draft(tank_size_litres=value)


# ---------------------------------------------------------------------------
# Signing
# ---------------------------------------------------------------------------


class TestSign:
    @pytest.mark.asyncio
    async def test_sign_records_acceptance(self, service: ContractService, db_session, mail_recorder) -> None:
        contract = await service.create_draft(_draft())
        outcome = await _sign(service, contract.id)

        assert outcome.contract.status == "signed"
        assert outcome.contract.acceptance_id == outcome.acceptance.id
        assert outcome.contract.signature_name == "Jane Doe"
        assert outcome.contract.signed_at is not None
        assert outcome.acceptance.bot_check_passed is True
        assert outcome.acceptance.client_ip == "203.0.113.7"
        assert outcome.emailed is True
        assert mail_recorder.sent[0]["to"] == [CUSTOMER]
        assert mail_recorder.sent[0]["attachments"][0]["filename"].endswith(".pdf")

        rows = await AcceptanceRepository(db_session).list_for_contract(contract.id)
        assert len(rows) == 1

    @pytest.mark.asyncio
    async def test_emails_go_to_signer(self, service: ContractService, seed_access, mail_recorder) -> None:
        await seed_access(admins=(ADMIN,))
        contract = await service.create_draft(_draft())
        await _sign(service, contract.id, signer_name="Sam Doe", signer_email="Sam@Example.com")
        await service.approve(contract.id, ADMIN)

        assert [m["to"] for m in mail_recorder.sent] == [["sam@example.com"], ["sam@example.com"]]

    @pytest.mark.asyncio
    async def test_failed_bot_check_still_signs(self, service: ContractService, bot_stub) -> None:
        bot_stub.success = False
        contract = await service.create_draft(_draft())
        outcome = await _sign(service, contract.id)

        assert outcome.contract.status == "signed"
        assert outcome.acceptance.bot_check_passed is False

    @pytest.mark.asyncio
    async def test_bot_check_exception_recorded_as_failed(self, service: ContractService, bot_checker, monkeypatch) -> None:
        monkeypatch.setattr(bot_checker, "verify", AsyncMock(side_effect=RuntimeError("boom")))
        contract = await service.create_draft(_draft())
        outcome = await _sign(service, contract.id)

        assert outcome.contract.status == "signed"
        assert outcome.acceptance.bot_check_passed is False

    @pytest.mark.asyncio
    async def test_resign_creates_new_acceptance(self, service: ContractService, db_session) -> None:
        contract = await service.create_draft(_draft())
        first = await _sign(service, contract.id)
        second = await _sign(service, contract.id, signer_name="Jane Q Doe")

        assert second.contract.acceptance_id == second.acceptance.id != first.acceptance.id
        assert len(await AcceptanceRepository(db_session).list_for_contract(contract.id)) == 2

    @pytest.mark.asyncio
    async def test_missing_contract(self, service: ContractService) -> None:
        with pytest.raises(NotFound):
            await _sign(service, "does-not-exist")

    @pytest.mark.asyncio
    async def test_signer_fields_required(self, service: ContractService) -> None:
        contract = await service.create_draft(_draft())
        with pytest.raises(ValidationError):
            await _sign(service, contract.id, signer_name=" ")

    @pytest.mark.asyncio
    async def test_signing_active_contract_conflicts(self, service: ContractService, seed_access) -> None:
        await seed_access(admins=(ADMIN,))
        contract = await service.create_draft(_draft())
        await _sign(service, contract.id)
        await service.approve(contract.id, ADMIN)

        with pytest.raises(Conflict):
            await _sign(service, contract.id)

    @pytest.mark.asyncio
    async def test_email_failure_keeps_contract_signed(
        self, service: ContractService, mail_recorder, session_factory
    ) -> None:
        mail_recorder.fail_status = 503
        contract = await service.create_draft(_draft())
        outcome = await _sign(service, contract.id)

        assert outcome.emailed is False
        assert "503" in (outcome.email_error or "")
        async with session_factory() as fresh:
            stored = await ContractRepository(fresh).get(contract.id)
        assert stored is not None
        assert stored.status == "signed"

    @pytest.mark.asyncio
    async def test_store_failure_aborts_sign(self, service: ContractService, monkeypatch, session_factory) -> None:
        contract = await service.create_draft(_draft())
        contract_id = contract.id
        monkeypatch.setattr(
            ContractRepository,
            "mark_signed",
            AsyncMock(side_effect=OperationalError("UPDATE", {}, Exception("disk full"))),
        )

        with pytest.raises(UpstreamError):
            await _sign(service, contract_id)

        async with session_factory() as fresh:
            stored = await ContractRepository(fresh).get(contract_id)
            acceptances = await AcceptanceRepository(fresh).list_for_contract(contract_id)
        assert stored is not None
        assert stored.status == "draft"
        assert acceptances == []

    @pytest.mark.asyncio
    async def test_without_notifier_reports_not_emailed(self, db_session, bot_checker) -> None:
        service = _service(db_session, bot_checker)
        contract = await service.create_draft(_draft())
        outcome = await _sign(service, contract.id)
        assert outcome.contract.status == "signed"
        assert outcome.emailed is False


# ---------------------------------------------------------------------------
# Approval
# ---------------------------------------------------------------------------


class TestApprove:
    @pytest.mark.asyncio
    async def test_approve_signed(self, service: ContractService, seed_access, mail_recorder) -> None:
        await seed_access(admins=(ADMIN,))
        contract = await service.create_draft(_draft())
        await _sign(service, contract.id)

        outcome = await service.approve(contract.id, ADMIN)

        assert outcome.contract.status == "active"
        assert outcome.contract.approved_at is not None
        assert outcome.contract.approved_by == ADMIN
        assert outcome.emailed is True
        assert "now active" in mail_recorder.sent[-1]["subject"]

    @pytest.mark.asyncio
    async def test_approve_draft_conflicts(self, service: ContractService, seed_access) -> None:
        await seed_access(admins=(ADMIN,))
        contract = await service.create_draft(_draft())
        with pytest.raises(Conflict):
            await service.approve(contract.id, ADMIN)

    @pytest.mark.asyncio
    async def test_double_approval_conflicts(self, service: ContractService, seed_access) -> None:
        await seed_access(admins=(ADMIN,))
        contract = await service.create_draft(_draft())
        await _sign(service, contract.id)
        await service.approve(contract.id, ADMIN)

        with pytest.raises(Conflict):
            await service.approve(contract.id, ADMIN)

    @pytest.mark.asyncio
    async def test_non_admin_forbidden_without_write(self, service: ContractService, seed_access) -> None:
        await seed_access(allowed=(CUSTOMER,))
        contract = await service.create_draft(_draft())
        await _sign(service, contract.id)

        with pytest.raises(Forbidden):
            await service.approve(contract.id, CUSTOMER)
        assert (await service.get(contract.id)).status == "signed"

    @pytest.mark.asyncio
    async def test_missing_contract(self, service: ContractService, seed_access) -> None:
        await seed_access(admins=(ADMIN,))
        with pytest.raises(NotFound):
            await service.approve("missing", ADMIN)

    @pytest.mark.asyncio
    async def test_transition_counter(self, service: ContractService, seed_access) -> None:
        await seed_access(admins=(ADMIN,))
        before = REGISTRY.get_sample_value("fuelflow_contract_transitions_total", {"transition": "approved"}) or 0.0
        contract = await service.create_draft(_draft())
        await _sign(service, contract.id)
        await service.approve(contract.id, ADMIN)
        after = REGISTRY.get_sample_value("fuelflow_contract_transitions_total", {"transition": "approved"})
        assert after == before + 1


class TestAutoApproval:
    @pytest.mark.asyncio
    async def test_configured_type_becomes_active(self, db_session, bot_checker, mail_service, mail_recorder) -> None:
        service = _service(db_session, bot_checker, mail_service, auto_approve_types=("rent",))
        contract = await service.create_draft(_draft(contract_type="rent"))

        outcome = await _sign(service, contract.id)

        assert outcome.auto_approved is True
        assert outcome.contract.status == "active"
        assert outcome.contract.approved_by == AUTO_APPROVER
        assert len(mail_recorder.sent) == 1
        assert "now active" in mail_recorder.sent[0]["subject"]

    @pytest.mark.asyncio
    async def test_other_types_stay_signed(self, db_session, bot_checker, mail_service) -> None:
        service = _service(db_session, bot_checker, mail_service, auto_approve_types=("rent",))
        contract = await service.create_draft(_draft(contract_type="buy"))
        outcome = await _sign(service, contract.id)
        assert outcome.auto_approved is False
        assert outcome.contract.status == "signed"

    @pytest.mark.asyncio
    async def test_store_failure_leaves_contract_signed(
        self, db_session, bot_checker, mail_service, mail_recorder, monkeypatch, session_factory
    ) -> None:
        service = _service(db_session, bot_checker, mail_service, auto_approve_types=("rent",))
        contract = await service.create_draft(_draft(contract_type="rent"))
        contract_id = contract.id
        monkeypatch.setattr(
            ContractRepository,
            "mark_active",
            AsyncMock(side_effect=OperationalError("UPDATE", {}, Exception("connection reset"))),
        )

        outcome = await _sign(service, contract_id)

        assert outcome.auto_approved is False
        assert outcome.contract.status == "signed"
        assert outcome.contract.approved_at is None
        assert outcome.acceptance.contract_id == contract_id
        assert outcome.emailed is True
        assert "has been signed" in mail_recorder.sent[0]["subject"]
        async with session_factory() as fresh:
            stored = await ContractRepository(fresh).get(contract_id)
        assert stored.status == "signed"
        assert stored.acceptance_id == outcome.acceptance.id


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------


class TestLatest:
    @pytest.mark.asyncio
    async def test_none_when_only_drafts(self, service: ContractService) -> None:
        await service.create_draft(_draft())
        assert await service.latest_active_for("buy", email=CUSTOMER) is None
        assert (await service.latest_for("buy", email=CUSTOMER)).status == "draft"

    @pytest.mark.asyncio
    async def test_sign_then_latest_returns_it(self, service: ContractService) -> None:
        older = await service.create_draft(_draft())
        await _sign(service, older.id)
        newer = await service.create_draft(_draft())
        await _sign(service, newer.id)

        latest = await service.latest_active_for("buy", email=CUSTOMER)
        assert latest is not None
        assert latest.id == newer.id

    @pytest.mark.asyncio
    async def test_type_and_owner_filtered(self, service: ContractService) -> None:
        contract = await service.create_draft(_draft())
        await _sign(service, contract.id)

        assert await service.latest_active_for("rent", email=CUSTOMER) is None
        assert await service.latest_active_for("buy", email="someone@else.com") is None
        assert await service.latest_active_for("buy") is None

    @pytest.mark.asyncio
    async def test_matches_by_user_id(self, service: ContractService) -> None:
        contract = await service.create_draft(_draft(), Identity(email=CUSTOMER, subject_id="user-5"))
        await _sign(service, contract.id)
        latest = await service.latest_active_for("buy", user_id="user-5")
        assert latest is not None
        assert latest.id == contract.id

    @pytest.mark.asyncio
    async def test_full_lifecycle(self, service: ContractService, seed_access, db_session) -> None:
        await seed_access(admins=(ADMIN,))
        contract = await service.create_draft(_draft(tank_size_litres=1000, monthly_consumption_litres=200))
        signed = await _sign(service, contract.id)
        assert signed.contract.status == "signed"
        assert len(await AcceptanceRepository(db_session).list_for_contract(contract.id)) == 1

        approved = await service.approve(contract.id, ADMIN)
        assert approved.contract.status == "active"
        assert approved.contract.approved_at is not None

        latest = await service.latest_active_for("buy", email=CUSTOMER)
        assert latest is not None
        assert latest.id == contract.id
        assert latest.status == "active"
