"""
Payroll Recon - Receipt PDF Service

Renders a payment receipt from its stored breakdown document using
ReportLab: earnings and deductions tables, the net/paid/balance block,
signature lines and the company footer.
"""

import io
import logging
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional
from xml.sax.saxutils import escape

from reportlab.lib import colors
from reportlab.lib.enums import TA_CENTER, TA_RIGHT
from reportlab.lib.pagesizes import A4
from reportlab.lib.styles import getSampleStyleSheet, ParagraphStyle
from reportlab.lib.units import mm
from reportlab.platypus import SimpleDocTemplate, Table, TableStyle, Paragraph, Spacer

from payroll_recon.config import settings
from payroll_recon.models.payroll import PayrollReceipt

logger = logging.getLogger(__name__)


EARNING_LABELS = (
    ("basic_salary", "Basic Salary"),
    ("medical_tax_exemption", "Medical Tax Exemption"),
    ("bonus", "Bonus"),
    ("additional_taxable", "Additional Taxable Earnings"),
    ("total_taxable_salary", "Total Taxable Salary"),
    ("medical_allowance", "Medical Allowance"),
    ("travel_reimbursement", "Travel Reimbursement"),
    ("utility_reimbursement", "Utility Reimbursement"),
    ("meals_reimbursement", "Meals Reimbursement"),
    ("mobile_reimbursement", "Mobile Reimbursement"),
    ("expense_reimbursement", "Expense Reimbursement"),
    ("advance_loan", "Advance Loan"),
    ("additional_non_taxable", "Additional Non-Taxable Earnings"),
)

DEDUCTION_LABELS = (
    ("income_tax", "Income Tax"),
    ("adjustment", "Adjustment"),
    ("loan_repayment", "Loan Repayment"),
    ("additional_deductions", "Additional Deductions"),
)

NET_LABELS = (
    ("net_salary", "Net Salary"),
    ("paid", "Paid"),
    ("previous_balance", "Previous Balance"),
    ("balance", "Balance"),
)

SIGNATORIES = ("Accountant", "Employee", "HR Representative")

HEADER_COLOR = colors.HexColor("#1a365d")


class ReceiptPDFService:
    """Service for rendering payment receipt PDFs."""

    def __init__(self, company_name: Optional[str] = None, company_address: Optional[str] = None):
        self.company_name = company_name or settings.company_name
        self.company_address = company_address if company_address is not None else settings.company_address

    def _format_amount(self, value: Any, currency: str) -> str:
        try:
            amount = Decimal(str(value))
        except (InvalidOperation, ValueError):
            amount = Decimal("0")
        return f"{currency} {amount:,.2f}"

    def _amount_table(self, rows: List[List[str]], total: Optional[List[str]] = None) -> Table:
        data = [["Item", "Amount"]] + rows
        if total:
            data.append(total)
        table = Table(data, colWidths=[110 * mm, 55 * mm])
        style = [
            ("BACKGROUND", (0, 0), (-1, 0), HEADER_COLOR),
            ("TEXTCOLOR", (0, 0), (-1, 0), colors.white),
            ("FONTNAME", (0, 0), (-1, 0), "Helvetica-Bold"),
            ("ALIGN", (1, 0), (1, -1), "RIGHT"),
            ("GRID", (0, 0), (-1, -1), 0.5, colors.grey),
            ("FONTSIZE", (0, 0), (-1, -1), 9),
        ]
        if total:
            style.append(("FONTNAME", (0, -1), (-1, -1), "Helvetica-Bold"))
            style.append(("BACKGROUND", (0, -1), (-1, -1), colors.HexColor("#edf2f7")))
        table.setStyle(TableStyle(style))
        return table

    def _signature_block(self) -> Table:
        lines = [["_" * 24 for _ in SIGNATORIES], list(SIGNATORIES)]
        table = Table(lines, colWidths=[55 * mm] * len(SIGNATORIES))
        table.setStyle(TableStyle([
            ("ALIGN", (0, 0), (-1, -1), "CENTER"),
            ("FONTSIZE", (0, 0), (-1, -1), 9),
            ("TOPPADDING", (0, 0), (-1, 0), 24),
        ]))
        return table

    def render(self, receipt: Dict[str, Any]) -> bytes:
        """Render a receipt breakdown document to PDF bytes."""
        currency = receipt.get("currency") or settings.payroll_default_currency
        earnings = receipt.get("earnings", {})
        deductions = receipt.get("deductions", {})
        net = receipt.get("net", {})

        buffer = io.BytesIO()
        doc = SimpleDocTemplate(
            buffer,
            pagesize=A4,
            rightMargin=20 * mm,
            leftMargin=20 * mm,
            topMargin=20 * mm,
            bottomMargin=20 * mm,
            title=f"Payment Receipt {receipt.get('period_key', '')}",
        )

        styles = getSampleStyleSheet()
        title_style = ParagraphStyle(
            "ReceiptTitle",
            parent=styles["Heading1"],
            fontSize=18,
            textColor=HEADER_COLOR,
            alignment=TA_CENTER,
        )
        heading_style = ParagraphStyle(
            "ReceiptHeading",
            parent=styles["Heading2"],
            fontSize=12,
            textColor=HEADER_COLOR,
            spaceBefore=10,
            spaceAfter=4,
        )
        right_style = ParagraphStyle("ReceiptRight", parent=styles["Normal"], alignment=TA_RIGHT)
        footer_style = ParagraphStyle(
            "ReceiptFooter",
            parent=styles["Normal"],
            fontSize=8,
            textColor=colors.grey,
            alignment=TA_CENTER,
        )

        elements = [
            Paragraph(f"<b>{escape(self.company_name)}</b>", title_style),
            Paragraph("Payment Receipt", heading_style),
            Paragraph(f"<b>Employee:</b> {escape(str(receipt.get('payroll_name', '')))}", styles["Normal"]),
            Paragraph(
                f"<b>Period:</b> {receipt.get('period_label') or receipt.get('period_key', '')}",
                styles["Normal"],
            ),
            Spacer(1, 8),
            Paragraph("Earnings", heading_style),
            self._amount_table(
                [[label, self._format_amount(earnings.get(key, "0"), currency)] for key, label in EARNING_LABELS],
                ["Total Earnings", self._format_amount(earnings.get("total_earnings", "0"), currency)],
            ),
            Paragraph("Deductions", heading_style),
            self._amount_table(
                [[label, self._format_amount(deductions.get(key, "0"), currency)] for key, label in DEDUCTION_LABELS],
                ["Total Deductions", self._format_amount(deductions.get("total_deductions", "0"), currency)],
            ),
            Paragraph("Net Pay", heading_style),
            self._amount_table(
                [[label, self._format_amount(net.get(key, "0"), currency)] for key, label in NET_LABELS],
            ),
            Spacer(1, 12),
            Paragraph(f"All amounts in {currency}", right_style),
            Spacer(1, 24),
            self._signature_block(),
            Spacer(1, 24),
        ]
        footer = self.company_name
        if self.company_address:
            footer = f"{footer} | {self.company_address}"
        elements.append(Paragraph(escape(footer), footer_style))

        doc.build(elements)
        pdf_bytes = buffer.getvalue()
        buffer.close()
        return pdf_bytes

    def render_receipt(self, receipt: PayrollReceipt) -> bytes:
        logger.debug(f"Rendering receipt {receipt.id} v{receipt.version}")
        return self.render(receipt.receipt_json or {})
