"""Contract PDF rendering.

Produces a one-to-two page summary of a contract: the customer, contact
details, supply address, tank and return-on-investment figures, and the
signature block.  Uses the same reportlab styling as invoices.
"""

from __future__ import annotations

import html
import io
from typing import Any

from fuelflow_core.state.tables import ContractTable

from api.services.invoice_service import BRAND_COLOUR, format_money


def _fmt_number(value: float | None, suffix: str = "") -> str:
    if value is None:
        return "n/a"
    return f"{value:,.0f}{suffix}"


def _fmt_money(value: float | None, per_litre: bool = False) -> str:
    if value is None:
        return "n/a"
    if per_litre:
        return f"£{value:,.3f}/L"
    return format_money(value, "GBP")


def _fmt_payback(months: float | None) -> str:
    if months is None or months <= 0:
        return "n/a"
    return f"{months:.1f} months"


def contract_filename(contract: ContractTable) -> str:
    return f"contract-{contract.contract_type}-{contract.id[:8]}.pdf"


def render_contract_pdf(contract: ContractTable, company_name: str = "FuelFlow") -> bytes:
    """Render *contract* to PDF bytes."""
    from reportlab.lib import colors
    from reportlab.lib.pagesizes import A4
    from reportlab.lib.styles import ParagraphStyle, getSampleStyleSheet
    from reportlab.lib.units import inch
    from reportlab.platypus import Paragraph, SimpleDocTemplate, Spacer, Table, TableStyle

    esc = html.escape
    buf = io.BytesIO()
    doc = SimpleDocTemplate(
        buf,
        pagesize=A4,
        topMargin=0.75 * inch,
        bottomMargin=0.75 * inch,
        title=f"{company_name} {contract.contract_type} contract",
        author=company_name,
        invariant=1,
    )
    styles = getSampleStyleSheet()
    header_style = ParagraphStyle(
        "Header", parent=styles["Heading1"], fontSize=20, textColor=colors.HexColor(BRAND_COLOUR)
    )
    meta_style = ParagraphStyle("Meta", parent=styles["Normal"], fontSize=9, textColor=colors.grey)

    title = "Tank Purchase Agreement" if contract.contract_type == "buy" else "Tank Rental Agreement"
    elements: list[Any] = [
        Paragraph(esc(company_name), header_style),
        Paragraph(title, styles["Heading2"]),
        Paragraph(
            f"Contract {esc(contract.id)} · status {esc(contract.status)} · terms {esc(contract.terms_version)}",
            meta_style,
        ),
        Spacer(1, 18),
    ]

    def section(heading: str, rows: list[tuple[str, str]]) -> None:
        elements.append(Paragraph(heading, styles["Heading3"]))
        table = Table(
            [[label, Paragraph(esc(value), styles["Normal"])] for label, value in rows],
            colWidths=[2.2 * inch, 4.3 * inch],
        )
        table.setStyle(
            TableStyle(
                [
                    ("FONTNAME", (0, 0), (0, -1), "Helvetica-Bold"),
                    ("FONTSIZE", (0, 0), (-1, -1), 9),
                    ("LINEBELOW", (0, 0), (-1, -1), 0.25, colors.lightgrey),
                    ("VALIGN", (0, 0), (-1, -1), "TOP"),
                ]
            )
        )
        elements.append(table)
        elements.append(Spacer(1, 12))

    section(
        "Customer",
        [
            ("Name", contract.customer_name),
            ("Company", contract.company_name or "n/a"),
        ],
    )
    section(
        "Contact",
        [
            ("Email", contract.email),
            ("Phone", contract.phone or "n/a"),
        ],
    )
    address = ", ".join(
        part for part in (contract.address_line1, contract.address_line2, contract.city, contract.postcode) if part
    )
    section("Supply address", [("Address", address or "n/a")])
    section(
        "Tank & ROI",
        [
            ("Tank option", contract.tank_option or contract.contract_type),
            ("Fuel", contract.fuel or "n/a"),
            ("Tank size", _fmt_number(contract.tank_size_litres, " L")),
            ("Monthly consumption", _fmt_number(contract.monthly_consumption_litres, " L")),
            ("Market price", _fmt_money(contract.market_price_per_litre, per_litre=True)),
            ("FuelFlow price", _fmt_money(contract.platform_price_per_litre, per_litre=True)),
            ("Estimated monthly saving", _fmt_money(contract.est_monthly_savings)),
            ("Capital expenditure", _fmt_money(contract.capex_required)),
            ("Estimated payback", _fmt_payback(contract.est_payback_months)),
        ],
    )
    section(
        "Signature",
        [
            ("Signed by", contract.signature_name or "Not yet signed"),
            ("Signed at", contract.signed_at.isoformat() if contract.signed_at else "n/a"),
            ("Approved at", contract.approved_at.isoformat() if contract.approved_at else "Pending approval"),
            ("Acceptance", contract.acceptance_id or "n/a"),
        ],
    )

    doc.build(elements)
    return buf.getvalue()
