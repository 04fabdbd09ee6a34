"""Invoice generation endpoint.

Open to admins and to machine callers presenting the configured
``X-Invoice-Secret``.  The invoice is rendered, optionally emailed, and
never stored.
"""

from __future__ import annotations

import hmac
import logging

from fastapi import APIRouter, Header
from pydantic import Field

from api.dependencies import MailDep, OptionalIdentityDep, SettingsDep
from api.errors import Forbidden, Unauthenticated
from api.middleware.access import AccessServiceDep
from api.schemas import InvoiceResponse
from api.services.access_service import AccessClassification
from api.services.invoice_service import InvoicePayload, InvoiceService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/invoices", tags=["invoices"])


class InvoiceRequest(InvoicePayload):
    """Request body for ``POST /invoices``."""

    email: bool = Field(default=True, description="Email the PDF to the customer.")


def _secret_matches(presented: str | None, configured: str) -> bool:
    if not presented or not configured:
        return False
    return hmac.compare_digest(presented.encode("utf-8"), configured.encode("utf-8"))


@router.post("", response_model=InvoiceResponse)
async def create_invoice(
    body: InvoiceRequest,
    identity: OptionalIdentityDep,
    settings: SettingsDep,
    access: AccessServiceDep,
    mail: MailDep,
    x_invoice_secret: str | None = Header(default=None),
) -> InvoiceResponse:
    """Render an invoice and email it unless ``email`` is false.

    Rendering failures surface as errors; delivery failures are reported in
    ``emailed``/``email_error`` with a 200.
    """
    if not _secret_matches(x_invoice_secret, settings.invoice_secret.get_secret_value()):
        if identity is None:
            raise Unauthenticated("Sign in or present the invoice secret")
        if await access.classify(identity.email) != AccessClassification.ADMIN:
            raise Forbidden("Admin access required to issue invoices")

    service = InvoiceService(
        company_name=settings.company_name,
        company_address=settings.company_address,
        company_email=settings.company_email,
    )
    rendered = service.render_invoice(body)

    response = InvoiceResponse(
        filename=rendered.filename,
        total=float(rendered.total),
        currency=rendered.currency,
        emailed=False,
    )
    if body.email:
        result = await service.send_invoice(rendered, body, mail)
        response.emailed = result.delivered
        response.email_id = result.message_id
        response.email_error = result.reason
    return response
