"""Contract notifications sent after a committed state change.

The notifier runs strictly after the contract transition has been
committed.  It renders the contract PDF and dispatches one email.  Any
failure, whether in rendering or delivery, is reported in the returned
:class:`~api.services.mail_service.DeliveryResult` and never raised, so
the caller can surface it as ``emailed: false`` without touching the
already-committed state.
"""

from __future__ import annotations

import html
import logging

from fuelflow_core.state.tables import ContractTable

from api.services.contract_document import contract_filename, render_contract_pdf
from api.services.mail_service import Attachment, DeliveryResult, MailService

logger = logging.getLogger(__name__)


class ContractNotifier:
    """Email the contract PDF to its signer at lifecycle milestones.

    *recipient* defaults to the contract owner when the signer is unknown.
    """

    def __init__(self, mail: MailService, company_name: str = "FuelFlow") -> None:
        self._mail = mail
        self._company_name = company_name

    async def notify_signed(self, contract: ContractTable, recipient: str | None = None) -> DeliveryResult:
        subject = f"{self._company_name}: your {contract.contract_type} contract has been signed"
        intro = "Thank you for signing. A copy of your contract is attached. We will confirm once it is approved."
        return await self._send(contract, recipient or contract.email, subject, intro)

    async def notify_approved(self, contract: ContractTable, recipient: str | None = None) -> DeliveryResult:
        subject = f"{self._company_name}: your {contract.contract_type} contract is now active"
        intro = "Your contract has been approved and is now active. The final copy is attached."
        return await self._send(contract, recipient or contract.email, subject, intro)

    async def _send(self, contract: ContractTable, recipient: str, subject: str, intro: str) -> DeliveryResult:
        try:
            pdf_bytes = render_contract_pdf(contract, company_name=self._company_name)
        except Exception as exc:
            logger.warning("Contract %s PDF render failed; skipping email", contract.id, exc_info=True)
            return DeliveryResult.failed(f"render error: {exc.__class__.__name__}")

        body = (
            f"<p>Hello {html.escape(contract.signature_name or contract.customer_name)},</p>"
            f"<p>{html.escape(intro)}</p>"
            f"<p>Reference: <code>{html.escape(contract.id)}</code></p>"
        )
        return await self._mail.dispatch(
            to=recipient,
            subject=subject,
            html=body,
            attachments=[Attachment(filename=contract_filename(contract), content=pdf_bytes)],
        )
