"""Receipts and invoices for paid POS transactions.

Numbers come from per-year counters (``R-2026-000001``, ``I-2026-000001``).
``ensure_paid_transaction_documents`` is safe to call repeatedly: a receipt is
issued once per transaction, an invoice once when required, and the
missing-buyer skip is audited once. Seller identity and footer lines come
from the stored POS settings.
"""

import io
import logging
from datetime import datetime
from typing import Any, Iterable, Optional, Sequence
from xml.sax.saxutils import escape

from reportlab.lib import colors
from reportlab.lib.pagesizes import A4
from reportlab.lib.styles import ParagraphStyle, getSampleStyleSheet
from reportlab.lib.units import cm
from reportlab.platypus import Paragraph, SimpleDocTemplate, Spacer, Table, TableStyle
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from kassa.core.errors import PosConflictError, PosNotFoundError, PosValidationError
from kassa.db.base import as_utc, utcnow
from kassa.models.pos import AuditAction, PosCounter, PosLocation, PosTerminal, PosTransaction
from kassa.services.pos.audit import append_audit_log
from kassa.services.pos.payment_status import PAID
from kassa.services.pos.pos_settings import build_settings_snapshot, get_pos_settings
from kassa.services.pos.storage import DocumentStorage, get_document_storage, safe_segment
from kassa.services.pos.totals import compute_vat_breakdown, has_invoice_buyer_data, invoice_required

logger = logging.getLogger(__name__)

RECEIPT_SCOPE = "receipt"
INVOICE_SCOPE = "invoice"
NUMBER_PREFIXES = {RECEIPT_SCOPE: "R", INVOICE_SCOPE: "I"}
MISSING_BUYER = "missing_buyer"


def format_cents(cents: int) -> str:
    return f"EUR {cents / 100:.2f}"


def format_datetime(value: datetime) -> str:
    return as_utc(value).strftime("%Y-%m-%d %H:%M:%S")


def next_document_number(db: Session, scope: str, year: int) -> str:
    """Increment the ``(scope, year)`` counter and format the new number."""
    for _ in range(3):
        result = db.execute(
            update(PosCounter)
            .where(PosCounter.scope == scope, PosCounter.year == year)
            .values(value=PosCounter.value + 1)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            try:
                db.add(PosCounter(scope=scope, year=year, value=1))
                db.flush()
            except IntegrityError:
                # Created concurrently; increment the existing row instead
                db.rollback()
                continue
        value = db.execute(
            select(PosCounter.value).where(PosCounter.scope == scope, PosCounter.year == year)
        ).scalar_one()
        db.commit()
        return f"{NUMBER_PREFIXES[scope]}-{year}-{max(1, value):06d}"

    raise RuntimeError(f"could not allocate {scope} number for {year}")


def render_pdf(title: str, blocks: Sequence[Any]) -> bytes:
    """Render a simple A4 document.

    ``blocks`` holds strings (one paragraph each, empty string for a gap) and
    lists of rows, rendered as a table with the first row as header.
    """
    buffer = io.BytesIO()
    doc = SimpleDocTemplate(buffer, pagesize=A4, topMargin=2 * cm, bottomMargin=2 * cm, title=title)
    styles = getSampleStyleSheet()
    title_style = ParagraphStyle("DocTitle", parent=styles["Heading1"], fontSize=16, spaceAfter=14)

    elements: list = [Paragraph(escape(title), title_style)]
    for block in blocks:
        if isinstance(block, str):
            if block:
                elements.append(Paragraph(escape(block), styles["Normal"]))
            else:
                elements.append(Spacer(1, 0.4 * cm))
            continue

        table = Table([[str(cell) for cell in row] for row in block], repeatRows=1)
        table.setStyle(TableStyle([
            ("BACKGROUND", (0, 0), (-1, 0), colors.grey),
            ("TEXTCOLOR", (0, 0), (-1, 0), colors.whitesmoke),
            ("FONTNAME", (0, 0), (-1, 0), "Helvetica-Bold"),
            ("FONTSIZE", (0, 0), (-1, -1), 8),
            ("GRID", (0, 0), (-1, -1), 0.5, colors.black),
        ]))
        elements.append(table)

    doc.build(elements)
    return buffer.getvalue()


def _seller_lines(pos_settings: dict[str, Any]) -> list[str]:
    seller = pos_settings["seller"]
    tax = pos_settings["tax"]
    lines = [
        pos_settings["brandName"],
        f"Seller: {seller['companyName']}",
        seller["addressLine1"],
        seller["addressLine2"],
    ]
    contact = " | ".join(value for value in (seller["email"], seller["phone"]) if value)
    if contact:
        lines.append(contact)
    if tax["ustId"]:
        lines.append(f"VAT ID: {tax['ustId']}")
    if tax["steuernummer"]:
        lines.append(f"Tax ID: {tax['steuernummer']}")
    if tax["finanzamt"]:
        lines.append(f"Tax office: {tax['finanzamt']}")
    return lines


def _item_rows(items: Iterable[dict]) -> list[list[str]]:
    rows = [["Item", "Qty", "Unit", "VAT", "Gross"]]
    for item in items:
        rows.append([
            item["titleSnapshot"],
            str(item["qty"]),
            format_cents(item["unitGrossCents"]),
            f"{item['vatRate']}%",
            format_cents(item["qty"] * item["unitGrossCents"]),
        ])
    return rows


def _totals_blocks(tx: PosTransaction) -> list[Any]:
    vat_rows = [["VAT rate", "Net", "VAT", "Gross"]]
    for bucket in compute_vat_breakdown(tx.items or []):
        vat_rows.append([
            f"{bucket['rate']}%",
            format_cents(bucket["netCents"]),
            format_cents(bucket["vatCents"]),
            format_cents(bucket["grossCents"]),
        ])
    return [
        vat_rows,
        "",
        f"Net total: {format_cents(tx.net_cents)}",
        f"VAT total: {format_cents(tx.vat_cents)}",
        f"Gross total: {format_cents(tx.gross_cents)}",
    ]


def build_receipt_pdf(
    tx: PosTransaction,
    receipt_no: str,
    paid_at: datetime,
    location: Optional[PosLocation] = None,
    terminal: Optional[PosTerminal] = None,
    pos_settings: Optional[dict[str, Any]] = None,
) -> bytes:
    pos_settings = pos_settings or build_settings_snapshot({})
    blocks: list[Any] = [*_seller_lines(pos_settings), ""]
    blocks += [
        f"Receipt number: {receipt_no}",
        f"Transaction ID: {tx.id}",
        f"Date/Time: {format_datetime(paid_at)}",
    ]
    if location is not None:
        blocks.append(f"Location: {location.name}")
    if terminal is not None:
        blocks.append(f"Terminal: {terminal.label}")
    blocks += [f"Payment method: {tx.payment_method}", ""]
    if tx.tse_signature:
        blocks += [
            f"TSE serial: {tx.tse_serial or '-'}",
            f"TSE signature counter: {tx.tse_signature_counter or '-'}",
            f"TSE signature: {tx.tse_signature}",
            "",
        ]
    blocks += [_item_rows(tx.items or []), ""]
    blocks += _totals_blocks(tx)
    if pos_settings["receiptFooterLines"]:
        blocks += ["", *pos_settings["receiptFooterLines"]]
    return render_pdf("Receipt (Beleg)", blocks)


def build_invoice_pdf(
    tx: PosTransaction,
    invoice_no: str,
    paid_at: datetime,
    pos_settings: Optional[dict[str, Any]] = None,
) -> bytes:
    pos_settings = pos_settings or build_settings_snapshot({})
    billing = tx.buyer_billing_address or tx.buyer_shipping_address
    blocks: list[Any] = [*_seller_lines(pos_settings), ""]
    blocks += [
        f"Invoice number: {invoice_no}",
        f"Invoice date: {format_datetime(paid_at)}",
        f"Related transaction: {tx.id}",
        "",
        f"Buyer: {tx.buyer_name or '-'}",
        f"Company: {tx.buyer_company or '-'}",
        f"Address: {billing or '-'}",
        f"Buyer VAT ID: {tx.buyer_vat_id or '-'}",
        f"Buyer type: {tx.buyer_type}",
        "",
        _item_rows(tx.items or []),
        "",
    ]
    blocks += _totals_blocks(tx)
    return render_pdf("Invoice", blocks)


def _issue_receipt(
    db: Session,
    storage: DocumentStorage,
    tx: PosTransaction,
    paid_at: datetime,
    actor_id: int,
) -> None:
    receipt_no = tx.receipt_no or next_document_number(db, RECEIPT_SCOPE, paid_at.year)
    location = db.get(PosLocation, tx.location_id)
    terminal = db.get(PosTerminal, tx.terminal_id) if tx.terminal_id else None
    pdf = build_receipt_pdf(tx, receipt_no, paid_at, location, terminal, get_pos_settings(db))
    pdf_url = storage.put(f"pos/receipts/{paid_at.year}/{safe_segment(receipt_no)}.pdf", pdf)

    result = db.execute(
        update(PosTransaction)
        .where(PosTransaction.id == tx.id, PosTransaction.receipt_pdf_url.is_(None))
        .values(receipt_no=receipt_no, receipt_pdf_url=pdf_url)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    if result.rowcount == 0:
        logger.info(f"Receipt for transaction {tx.id} was issued concurrently")
        return

    append_audit_log(
        db, actor_id, AuditAction.ISSUE_RECEIPT, tx_id=tx.id,
        payload={"receiptNo": receipt_no, "pdfUrl": pdf_url},
    )


def _issue_invoice(
    db: Session,
    storage: DocumentStorage,
    tx: PosTransaction,
    paid_at: datetime,
    actor_id: int,
) -> None:
    invoice_no = tx.invoice_no or next_document_number(db, INVOICE_SCOPE, paid_at.year)
    pdf = build_invoice_pdf(tx, invoice_no, paid_at, get_pos_settings(db))
    pdf_url = storage.put(f"pos/invoices/{paid_at.year}/{safe_segment(invoice_no)}.pdf", pdf)

    result = db.execute(
        update(PosTransaction)
        .where(PosTransaction.id == tx.id, PosTransaction.invoice_pdf_url.is_(None))
        .values(invoice_no=invoice_no, invoice_pdf_url=pdf_url, invoice_skipped_reason=None)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    if result.rowcount == 0:
        logger.info(f"Invoice for transaction {tx.id} was issued concurrently")
        return

    append_audit_log(
        db, actor_id, AuditAction.ISSUE_INVOICE, tx_id=tx.id,
        payload={"invoiceNo": invoice_no, "pdfUrl": pdf_url},
    )


def _skip_invoice(db: Session, tx: PosTransaction, actor_id: int) -> None:
    result = db.execute(
        update(PosTransaction)
        .where(
            PosTransaction.id == tx.id,
            (PosTransaction.invoice_skipped_reason.is_(None))
            | (PosTransaction.invoice_skipped_reason != MISSING_BUYER),
        )
        .values(invoice_skipped_reason=MISSING_BUYER)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    if result.rowcount == 0:
        return

    append_audit_log(
        db, actor_id, AuditAction.INVOICE_SKIPPED_MISSING_BUYER, tx_id=tx.id,
        payload={"reason": MISSING_BUYER, "buyerType": tx.buyer_type, "grossCents": tx.gross_cents},
    )


def ensure_paid_transaction_documents(
    db: Session,
    tx_id: int,
    actor_id: int,
    storage: Optional[DocumentStorage] = None,
) -> None:
    """Issue the receipt and, when required, the invoice of a paid transaction."""
    tx = db.get(PosTransaction, tx_id, populate_existing=True)
    if tx is None or tx.status != PAID:
        return

    storage = storage or get_document_storage()
    paid_at = as_utc(tx.payment_approved_at or tx.updated_at or tx.created_at) or utcnow()

    if not tx.receipt_pdf_url:
        _issue_receipt(db, storage, tx, paid_at, actor_id)
        tx = db.get(PosTransaction, tx_id, populate_existing=True)

    if not invoice_required(tx.buyer_type, tx.gross_cents) or tx.invoice_pdf_url:
        return

    if has_invoice_buyer_data(
        tx.buyer_type, tx.buyer_name, tx.buyer_company, tx.buyer_billing_address, tx.buyer_shipping_address
    ):
        _issue_invoice(db, storage, tx, paid_at, actor_id)
    else:
        _skip_invoice(db, tx, actor_id)


def queue_receipt_email(db: Session, tx_id: int, actor_id: int, email: Optional[str] = None) -> dict[str, Any]:
    """Record that the receipt of a paid transaction should be emailed.

    The address falls back to the last requested address, then the buyer's.
    Delivery itself happens outside this service.
    """
    tx = db.get(PosTransaction, tx_id, populate_existing=True)
    if tx is None:
        raise PosNotFoundError("transaction_not_found")
    if tx.status != PAID:
        raise PosConflictError("transaction_not_paid")
    if not tx.receipt_pdf_url:
        raise PosConflictError("receipt_not_generated")

    address = (email or "").strip() or (tx.receipt_request_email or "").strip() or (tx.buyer_email or "").strip()
    if not address:
        raise PosValidationError("receipt_email_missing")

    queued_at = utcnow()
    result = db.execute(
        update(PosTransaction)
        .where(PosTransaction.id == tx_id, PosTransaction.status == PAID)
        .values(receipt_request_email=address, receipt_email_queued_at=queued_at)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    if result.rowcount == 0:
        raise PosConflictError("transaction_not_paid")

    append_audit_log(
        db, actor_id, AuditAction.QUEUE_RECEIPT_EMAIL, tx_id=tx_id,
        payload={"email": address, "receiptNo": tx.receipt_no},
    )
    return {
        "ok": True,
        "mode": "queued",
        "email": address,
        "queuedAt": queued_at.isoformat(),
        "receiptPdfUrl": tx.receipt_pdf_url,
    }
