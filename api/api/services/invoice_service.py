"""Invoice rendering and delivery.

Invoices are transient artifacts: they are rendered from a payload of line
items, returned to the caller, and optionally emailed.  Nothing is
persisted.

Rendering is deterministic: reportlab runs in ``invariant`` mode and every
value printed on the page comes from the payload, so identical payloads
produce identical bytes.  Each rendering is nevertheless given a fresh
filename.
"""

from __future__ import annotations

import html
import io
import logging
import re
import uuid
from dataclasses import dataclass
from datetime import UTC, date, datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Literal

from pydantic import BaseModel, Field, field_validator

from api.errors import ValidationError
from api.services.mail_service import Attachment, DeliveryResult, MailService

logger = logging.getLogger(__name__)

CURRENCY_SYMBOLS: dict[str, str] = {"GBP": "£", "EUR": "€", "USD": "$"}
BRAND_COLOUR = "#1a1a2e"

_CENT = Decimal("0.01")
_UNSAFE_FILENAME_RE = re.compile(r"[^A-Za-z0-9_-]+")


def to_money(value: Decimal | float | int | str) -> Decimal:
    """Quantise to two decimal places, rounding half up."""
    return Decimal(str(value)).quantize(_CENT, rounding=ROUND_HALF_UP)


def format_money(value: Decimal | float | int, currency: str = "GBP") -> str:
    """Render *value* with its currency symbol, e.g. ``£1,234.50``."""
    symbol = CURRENCY_SYMBOLS.get(currency.upper(), f"{currency.upper()} ")
    return f"{symbol}{to_money(value):,.2f}"


# ---------------------------------------------------------------------------
# Payload
# ---------------------------------------------------------------------------


class InvoiceLineItem(BaseModel):
    description: str = Field(..., min_length=1, max_length=500)
    quantity: float = Field(..., ge=0, allow_inf_nan=False)
    unit_price: float = Field(..., ge=0, allow_inf_nan=False)


class InvoiceCustomer(BaseModel):
    name: str = Field(..., min_length=1, max_length=256)
    email: str = Field(..., min_length=3, max_length=320)
    address_lines: list[str] = Field(default_factory=list, max_length=6)


class InvoicePayload(BaseModel):
    """Everything printed on an invoice."""

    customer: InvoiceCustomer
    items: list[InvoiceLineItem] = Field(default_factory=list)
    currency: Literal["GBP", "EUR", "USD"] = "GBP"
    invoice_number: str | None = Field(default=None, max_length=64)
    issued_on: date | None = None
    notes: str | None = Field(default=None, max_length=2000)

    @field_validator("currency", mode="before")
    @classmethod
    def _upper_currency(cls, value: object) -> object:
        return value.upper() if isinstance(value, str) else value


@dataclass(frozen=True)
class RenderedInvoice:
    """Output of :meth:`InvoiceService.render_invoice`."""

    pdf_bytes: bytes
    filename: str
    total: Decimal
    currency: str
    invoice_number: str | None


def invoice_total(items: list[InvoiceLineItem]) -> Decimal:
    """Sum of quantity × unit price, rounded once to two places."""
    raw = sum((Decimal(str(i.quantity)) * Decimal(str(i.unit_price)) for i in items), Decimal("0"))
    return to_money(raw)


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------


class InvoiceService:
    """Render invoices and hand them to the mail service.

    Parameters
    ----------
    company_name, company_address, company_email:
        Seller identity printed in the invoice header.
    """

    def __init__(
        self,
        company_name: str = "FuelFlow",
        company_address: str = "",
        company_email: str = "",
    ) -> None:
        self._company_name = company_name
        self._company_address = company_address
        self._company_email = company_email

    def render_invoice(self, payload: InvoicePayload) -> RenderedInvoice:
        """Render *payload* to PDF and compute its total.

        Raises
        ------
        ValidationError
            If the payload has no line items.
        """
        if not payload.items:
            raise ValidationError("An invoice needs at least one line item")

        total = invoice_total(payload.items)
        issued_on = payload.issued_on or datetime.now(UTC).date()
        pdf_bytes = self._render_pdf(payload, issued_on, total)

        stem = _UNSAFE_FILENAME_RE.sub("-", payload.invoice_number or "").strip("-") or "INV"
        filename = f"{stem}-{uuid.uuid4().hex[:8]}.pdf"

        logger.info(
            "Rendered invoice %s for %s: %d item(s), total %s %s",
            payload.invoice_number or "(unnumbered)",
            payload.customer.email,
            len(payload.items),
            payload.currency,
            total,
        )
        return RenderedInvoice(
            pdf_bytes=pdf_bytes,
            filename=filename,
            total=total,
            currency=payload.currency,
            invoice_number=payload.invoice_number,
        )

    async def send_invoice(
        self,
        rendered: RenderedInvoice,
        payload: InvoicePayload,
        mail: MailService,
    ) -> DeliveryResult:
        """Email *rendered* to the invoice customer.  Never raises."""
        number = rendered.invoice_number or rendered.filename.removesuffix(".pdf")
        subject = f"{self._company_name} Invoice {number} · Total {rendered.currency} {rendered.total:.2f}"
        body = (
            f"<p>Hello {html.escape(payload.customer.name)},</p>"
            f"<p>Please find attached invoice <strong>{html.escape(number)}</strong> "
            f"for {html.escape(format_money(rendered.total, rendered.currency))}.</p>"
            f"<p>Thank you,<br>{html.escape(self._company_name)}</p>"
        )
        return await mail.dispatch(
            to=payload.customer.email,
            subject=subject,
            html=body,
            attachments=[Attachment(filename=rendered.filename, content=rendered.pdf_bytes)],
        )

    # -- Rendering ----------------------------------------------------------

    def _render_pdf(self, payload: InvoicePayload, issued_on: date, total: Decimal) -> bytes:
        from reportlab.lib import colors
        from reportlab.lib.pagesizes import A4
        from reportlab.lib.styles import ParagraphStyle, getSampleStyleSheet
        from reportlab.lib.units import inch
        from reportlab.platypus import Paragraph, SimpleDocTemplate, Spacer, Table, TableStyle

        buf = io.BytesIO()
        doc = SimpleDocTemplate(
            buf,
            pagesize=A4,
            topMargin=0.75 * inch,
            bottomMargin=0.75 * inch,
            title=f"Invoice {payload.invoice_number or ''}".strip(),
            author=self._company_name,
            invariant=1,
        )
        styles = getSampleStyleSheet()
        esc = html.escape
        currency = payload.currency

        elements = []

        header_style = ParagraphStyle(
            "Header", parent=styles["Heading1"], fontSize=20, textColor=colors.HexColor(BRAND_COLOUR)
        )
        meta_style = ParagraphStyle("Meta", parent=styles["Normal"], fontSize=10, textColor=colors.grey)

        elements.append(Paragraph(esc(self._company_name), header_style))
        if self._company_address:
            elements.append(Paragraph(esc(self._company_address), meta_style))
        if self._company_email:
            elements.append(Paragraph(esc(self._company_email), meta_style))
        elements.append(Spacer(1, 12))

        elements.append(Paragraph("TAX INVOICE", styles["Heading2"]))
        if payload.invoice_number:
            elements.append(Paragraph(f"Invoice: {esc(payload.invoice_number)}", styles["Heading3"]))
        elements.append(Paragraph(f"Date: {issued_on.isoformat()}", meta_style))
        elements.append(Spacer(1, 12))

        elements.append(Paragraph("Bill to", styles["Heading4"]))
        elements.append(Paragraph(esc(payload.customer.name), styles["Normal"]))
        for line in payload.customer.address_lines:
            elements.append(Paragraph(esc(line), styles["Normal"]))
        elements.append(Paragraph(esc(payload.customer.email), meta_style))
        elements.append(Spacer(1, 24))

        table_data = [["Description", "Quantity", "Unit Price", "Amount"]]
        for item in payload.items:
            amount = Decimal(str(item.quantity)) * Decimal(str(item.unit_price))
            table_data.append(
                [
                    Paragraph(esc(item.description), styles["Normal"]),
                    f"{item.quantity:g}",
                    format_money(item.unit_price, currency),
                    format_money(amount, currency),
                ]
            )
        table_data.append(["", "", "Total:", format_money(total, currency)])

        table = Table(table_data, colWidths=[3.2 * inch, 1 * inch, 1.25 * inch, 1.25 * inch])
        table.setStyle(
            TableStyle(
                [
                    ("BACKGROUND", (0, 0), (-1, 0), colors.HexColor(BRAND_COLOUR)),
                    ("TEXTCOLOR", (0, 0), (-1, 0), colors.white),
                    ("FONTNAME", (0, 0), (-1, 0), "Helvetica-Bold"),
                    ("FONTSIZE", (0, 0), (-1, 0), 10),
                    ("BOTTOMPADDING", (0, 0), (-1, 0), 12),
                    ("GRID", (0, 0), (-1, -2), 0.5, colors.grey),
                    ("ALIGN", (1, 0), (-1, -1), "RIGHT"),
                    ("FONTNAME", (2, -1), (-1, -1), "Helvetica-Bold"),
                    ("LINEABOVE", (2, -1), (-1, -1), 2, colors.black),
                ]
            )
        )
        elements.append(table)
        elements.append(Spacer(1, 24))

        if payload.notes:
            elements.append(Paragraph(esc(payload.notes), styles["Normal"]))
            elements.append(Spacer(1, 12))

        footer_style = ParagraphStyle("Footer", parent=styles["Normal"], fontSize=8, textColor=colors.grey)
        elements.append(Paragraph(f"Generated by {esc(self._company_name)}", footer_style))

        doc.build(elements)
        return buf.getvalue()
