"""
Invoice PDF built from a persisted Invoice row.

Rendering only reads the database, so a document can be produced again at
any time from the stored record.
"""
import re
from io import BytesIO
from typing import Optional

import qrcode
import structlog
from slugify import slugify
from reportlab.lib import colors
from reportlab.lib.pagesizes import A4
from reportlab.lib.styles import getSampleStyleSheet, ParagraphStyle
from reportlab.lib.units import mm
from reportlab.platypus import SimpleDocTemplate, Paragraph, Spacer, Image, Table, TableStyle
from sqlalchemy.orm import Session

from ..config import settings
from ..models.models import BillerProfile, Invoice, Project, WorkPeriodClosing
from ..services.calendar_utils import parse_local_date, get_iso_week
from ..storage.local_provider import LocalStorageProvider
from ..storage.provider import StorageProvider


logger = structlog.get_logger(__name__)


def format_currency(value) -> str:
    return f"{float(value or 0):,.2f}".replace(",", " ")


def format_display_date(date_str: Optional[str]) -> str:
    if not date_str:
        return ""
    d = parse_local_date(date_str)
    return f"{d.day:02d}.{d.month:02d}.{d.year}"


def variable_symbol(invoice_number: str) -> str:
    """Numeric part of the invoice number used as the payment reference."""
    return re.sub(r"\D", "", invoice_number or "")


def payment_qr_payload(iban: str, amount, invoice_number: str, calendar_week: Optional[int], supplier_name: str) -> str:
    clean_iban = re.sub(r"\s", "", iban or "")
    message = f"{calendar_week} woche {supplier_name}" if calendar_week else supplier_name
    return (
        f"SPD*1.0*ACC:{clean_iban}*AM:{float(amount or 0):.2f}*CC:{settings.currency}"
        f"*X-VS:{variable_symbol(invoice_number)}*MSG:{message}*RN:{settings.customer_name}"
    )


def generate_qr_code_image(data: str) -> BytesIO:
    """Generate QR code image as BytesIO"""
    qr = qrcode.QRCode(
        version=None,
        error_correction=qrcode.constants.ERROR_CORRECT_M,
        box_size=10,
        border=4,
    )
    qr.add_data(data)
    qr.make(fit=True)

    img = qr.make_image(fill_color="black", back_color="white")
    buffer = BytesIO()
    img.save(buffer)
    buffer.seek(0)
    return buffer


def _calendar_week(db: Session, invoice: Invoice) -> Optional[int]:
    if invoice.week_closing_id:
        closing = db.query(WorkPeriodClosing).filter(WorkPeriodClosing.id == invoice.week_closing_id).first()
        if closing:
            return closing.calendar_week
    if invoice.delivery_date:
        return get_iso_week(invoice.delivery_date)
    return None


def build_invoice_pdf(db: Session, invoice: Invoice) -> bytes:
    """Generate PDF bytes for the given invoice."""
    profile = db.query(BillerProfile).filter(BillerProfile.user_id == invoice.user_id).first()
    project = None
    if invoice.project_id:
        project = db.query(Project).filter(Project.id == invoice.project_id).first()
    calendar_week = _calendar_week(db, invoice)
    supplier_name = profile.full_name if profile else ""

    buffer = BytesIO()
    doc = SimpleDocTemplate(
        buffer,
        pagesize=A4,
        rightMargin=18 * mm,
        leftMargin=18 * mm,
        topMargin=18 * mm,
        bottomMargin=18 * mm,
        title=f"Invoice {invoice.invoice_number}",
    )
    styles = getSampleStyleSheet()
    title_style = ParagraphStyle(
        'InvoiceTitle',
        parent=styles['Heading1'],
        fontSize=20,
        textColor=colors.HexColor('#1e1e1e'),
        spaceAfter=12,
        fontName='Helvetica-Bold',
    )
    body_style = ParagraphStyle(
        'InvoiceBody',
        parent=styles['Normal'],
        fontSize=9,
        leading=12,
        textColor=colors.HexColor('#1e1e1e'),
        fontName='Helvetica',
    )
    label_style = ParagraphStyle('InvoiceLabel', parent=body_style, fontName='Helvetica-Bold', textColor=colors.HexColor('#505050'))

    story = [Paragraph(f"INVOICE {invoice.invoice_number}", title_style)]

    # Supplier / customer block
    supplier_lines = [f"<b>{supplier_name}</b>"]
    if profile:
        for value in (profile.company_name, profile.address):
            if value:
                supplier_lines.append(value)
        if profile.ico:
            supplier_lines.append(f"ICO: {profile.ico}")
        if profile.dic:
            supplier_lines.append(f"DIC: {profile.dic}")
        if profile.is_vat_payer and profile.vat_number:
            supplier_lines.append(f"VAT ID: {profile.vat_number}")
        elif not profile.is_vat_payer:
            supplier_lines.append("Not a VAT payer.")
    customer_lines = [f"<b>{settings.customer_name}</b>", settings.customer_street, settings.customer_country]
    for label, value in (("ICO", settings.customer_ico), ("DIC", settings.customer_dic), ("VAT ID", settings.customer_ic_dph)):
        if value:
            customer_lines.append(f"{label}: {value}")

    parties = Table(
        [
            [Paragraph("SUPPLIER", label_style), Paragraph("CUSTOMER", label_style)],
            [Paragraph("<br/>".join(supplier_lines), body_style), Paragraph("<br/>".join(customer_lines), body_style)],
        ],
        colWidths=[87 * mm, 87 * mm],
    )
    parties.setStyle(TableStyle([('VALIGN', (0, 0), (-1, -1), 'TOP')]))
    story.append(parties)
    story.append(Spacer(1, 6 * mm))

    # Dates and payment
    info_rows = [
        ["Issue date:", format_display_date(invoice.issue_date), "Payment:", "Bank transfer"],
        ["Delivery date:", format_display_date(invoice.delivery_date), "Variable symbol:", variable_symbol(invoice.invoice_number)],
        ["Due date:", format_display_date(invoice.due_date), "IBAN:", (profile.iban if profile else "") or ""],
    ]
    if profile and profile.contract_number:
        info_rows.append(["Contract:", profile.contract_number, "SWIFT/BIC:", profile.swift_bic or ""])
    info = Table(info_rows, colWidths=[30 * mm, 57 * mm, 32 * mm, 55 * mm])
    info.setStyle(TableStyle([
        ('FONTNAME', (0, 0), (0, -1), 'Helvetica-Bold'),
        ('FONTNAME', (2, 0), (2, -1), 'Helvetica-Bold'),
        ('FONTSIZE', (0, 0), (-1, -1), 9),
    ]))
    story.append(info)
    story.append(Spacer(1, 6 * mm))

    # Line items
    description = f"Work performed under contract in calendar week {calendar_week}" if calendar_week else "Work performed under contract"
    if project:
        description += f" ({project.name})"
    items = [
        ["No.", "Description", "Quantity", "Unit price", "Total"],
        ["1.", Paragraph(description, body_style), f"{float(invoice.total_hours or 0):.2f} h", format_currency(invoice.hourly_rate), format_currency(invoice.subtotal)],
    ]
    items_table = Table(items, colWidths=[12 * mm, 88 * mm, 24 * mm, 24 * mm, 26 * mm])
    items_table.setStyle(TableStyle([
        ('FONTNAME', (0, 0), (-1, 0), 'Helvetica-Bold'),
        ('FONTSIZE', (0, 0), (-1, -1), 9),
        ('TEXTCOLOR', (0, 0), (-1, 0), colors.HexColor('#505050')),
        ('ALIGN', (2, 0), (-1, -1), 'RIGHT'),
        ('LINEBELOW', (0, 0), (-1, -1), 0.2, colors.HexColor('#c8c8c8')),
        ('VALIGN', (0, 0), (-1, -1), 'MIDDLE'),
    ]))
    story.append(items_table)
    story.append(Spacer(1, 4 * mm))

    # Totals
    totals = [["Subtotal", f"{format_currency(invoice.subtotal)} {settings.currency}"]]
    if invoice.vat_amount:
        totals.append([f"VAT {int(settings.vat_rate * 100)} %", f"{format_currency(invoice.vat_amount)} {settings.currency}"])
    if invoice.advance_deduction:
        totals.append(["Advance deduction", f"-{format_currency(invoice.advance_deduction)} {settings.currency}"])
    if invoice.accommodation_deduction:
        totals.append(["Lodging deduction", f"-{format_currency(invoice.accommodation_deduction)} {settings.currency}"])
    totals.append(["Total", f"{format_currency(invoice.total_amount)} {settings.currency}"])
    totals_table = Table(totals, colWidths=[40 * mm, 40 * mm], hAlign='RIGHT')
    totals_table.setStyle(TableStyle([
        ('FONTSIZE', (0, 0), (-1, -1), 10),
        ('ALIGN', (1, 0), (1, -1), 'RIGHT'),
        ('FONTNAME', (0, -1), (-1, -1), 'Helvetica-Bold'),
        ('LINEABOVE', (0, -1), (-1, -1), 0.5, colors.HexColor('#1e1e1e')),
    ]))
    story.append(totals_table)

    if invoice.is_reverse_charge:
        story.append(Spacer(1, 4 * mm))
        story.append(Paragraph("Reverse charge: VAT is accounted for by the recipient.", body_style))

    # Payment QR code
    if profile and profile.iban and float(invoice.total_amount or 0) > 0:
        payload = payment_qr_payload(profile.iban, invoice.total_amount, invoice.invoice_number, calendar_week, supplier_name)
        story.append(Spacer(1, 8 * mm))
        qr_table = Table(
            [[Image(generate_qr_code_image(payload), width=40 * mm, height=40 * mm)], [Paragraph("PAY by square", body_style)]],
            colWidths=[45 * mm],
            hAlign='LEFT',
        )
        story.append(qr_table)

    doc.build(story)
    return buffer.getvalue()


def invoice_document_key(invoice: Invoice) -> str:
    name = slugify(invoice.invoice_number or "", lowercase=False) or str(invoice.id)
    return f"invoices/{invoice.user_id}/{name}.pdf"


def store_invoice_document(db: Session, invoice: Invoice, storage: Optional[StorageProvider] = None) -> str:
    """Render the invoice and store the PDF; returns the storage key. Overwrites a previous rendering."""
    storage = storage or LocalStorageProvider()
    data = build_invoice_pdf(db, invoice)
    key = invoice_document_key(invoice)
    storage.put(key, data, content_type="application/pdf")
    logger.info("invoice_document_stored", invoice_id=str(invoice.id), key=key, size=len(data))
    return key
