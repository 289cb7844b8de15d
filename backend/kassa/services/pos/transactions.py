"""Transaction lookup and serialization shared by the admin routes."""

from typing import Any, Dict, Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from kassa.core.errors import PosNotFoundError
from kassa.models.pos import PosTransaction


def get_transaction(db: Session, tx_id: int) -> PosTransaction:
    tx = db.get(PosTransaction, tx_id, populate_existing=True)
    if tx is None:
        raise PosNotFoundError("transaction_not_found")
    return tx


def list_transactions(
    db: Session,
    status: Optional[str] = None,
    location_id: Optional[int] = None,
    skip: int = 0,
    limit: int = 50,
) -> tuple[list[PosTransaction], int]:
    query = select(PosTransaction)
    count_query = select(func.count(PosTransaction.id))
    if status:
        query = query.where(PosTransaction.status == status)
        count_query = count_query.where(PosTransaction.status == status)
    if location_id is not None:
        query = query.where(PosTransaction.location_id == location_id)
        count_query = count_query.where(PosTransaction.location_id == location_id)

    total = db.execute(count_query).scalar_one()
    items = db.execute(
        query.order_by(PosTransaction.created_at.desc(), PosTransaction.id.desc()).offset(skip).limit(limit)
    ).scalars().all()
    return list(items), total


def transaction_summary(tx: PosTransaction) -> Dict[str, Any]:
    """Status plus document references, as returned after payment actions."""
    return {
        "txId": tx.id,
        "status": tx.status,
        "receipt": {"receiptNo": tx.receipt_no, "pdfUrl": tx.receipt_pdf_url},
        "invoice": {
            "invoiceNo": tx.invoice_no,
            "pdfUrl": tx.invoice_pdf_url,
            "skippedReason": tx.invoice_skipped_reason,
        },
        "contract": {"contractId": tx.contract_id, "pdfUrl": tx.contract_pdf_url},
    }


def serialize_transaction(tx: PosTransaction) -> Dict[str, Any]:
    return {
        "id": tx.id,
        "locationId": tx.location_id,
        "terminalId": tx.terminal_id,
        "status": tx.status,
        "items": tx.items,
        "totals": tx.totals,
        "buyer": tx.buyer,
        "payment": tx.payment,
        "tse": tx.tse,
        "receipt": {
            "receiptNo": tx.receipt_no,
            "pdfUrl": tx.receipt_pdf_url,
            "requestEmail": tx.receipt_request_email,
            "emailQueuedAt": tx.receipt_email_queued_at,
        },
        "invoice": {
            "invoiceNo": tx.invoice_no,
            "pdfUrl": tx.invoice_pdf_url,
            "skippedReason": tx.invoice_skipped_reason,
        },
        "contract": {"contractId": tx.contract_id, "pdfUrl": tx.contract_pdf_url},
        "needsAuditReconciliation": tx.needs_audit_reconciliation,
        "createdByAdminId": tx.created_by_admin_id,
        "createdAt": tx.created_at,
        "updatedAt": tx.updated_at,
    }
