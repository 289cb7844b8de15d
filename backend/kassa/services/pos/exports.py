"""DSFinV-K style export of POS data for a date range.

A zip of CSV files (transactions, lines, payments, TSE data and the audit
chain with its hash values) plus a README describing the mapping. This is
an extendable export layout, not certified DSFinV-K output.
"""

import csv
import io
import json
import logging
import zipfile
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Dict, Iterable, Optional, Sequence

from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from kassa.core.errors import PosValidationError
from kassa.db.base import as_utc
from kassa.models.pos import PosAuditLog, PosTransaction

logger = logging.getLogger(__name__)

EXPORT_VERSION = "0.1.0"

TRANSACTION_COLUMNS = (
    "tx_id", "created_at", "updated_at", "status", "location_id", "terminal_id",
    "buyer_type", "buyer_name", "buyer_company", "buyer_email",
    "gross_cents", "net_cents", "vat_cents",
    "receipt_no", "receipt_pdf_url", "invoice_no", "invoice_pdf_url", "contract_id", "contract_pdf_url",
)
LINE_COLUMNS = (
    "tx_id", "line_no", "item_id", "title_snapshot", "qty", "unit_gross_cents", "vat_rate", "line_gross_cents",
)
PAYMENT_COLUMNS = (
    "tx_id", "status", "provider", "provider_tx_id", "method", "approved_at", "gross_cents",
)
TSE_COLUMNS = (
    "tx_id", "tse_provider", "tse_tx_id", "serial", "signature", "signature_counter",
    "log_time", "started_at", "finished_at",
)
AUDIT_COLUMNS = ("audit_id", "created_at", "actor_admin_id", "action", "tx_id", "prev_hash", "hash", "payload_json")


def _parse_day(value: Optional[str]) -> Optional[date]:
    try:
        return datetime.strptime((value or "").strip(), "%Y-%m-%d").date()
    except ValueError:
        return None


def parse_export_range(from_value: Optional[str], to_value: Optional[str]) -> tuple[date, date]:
    """Both ends are required ``YYYY-MM-DD`` days, inclusive, ``from <= to``."""
    start, end = _parse_day(from_value), _parse_day(to_value)
    if start is None or end is None or start > end:
        raise PosValidationError("invalid_date_range")
    return start, end


def _iso(value: Optional[datetime]) -> str:
    value = as_utc(value)
    return value.isoformat() if value else ""


def _text(value: Any) -> Any:
    return "" if value is None else value


def to_csv(columns: Sequence[str], rows: Iterable[Dict[str, Any]]) -> str:
    buffer = io.StringIO()
    writer = csv.DictWriter(buffer, fieldnames=list(columns), quoting=csv.QUOTE_MINIMAL, lineterminator="\n")
    writer.writeheader()
    for row in rows:
        writer.writerow({column: _text(row.get(column)) for column in columns})
    return buffer.getvalue()


def _transaction_row(tx: PosTransaction) -> Dict[str, Any]:
    return {
        "tx_id": tx.id,
        "created_at": _iso(tx.created_at),
        "updated_at": _iso(tx.updated_at),
        "status": tx.status,
        "location_id": tx.location_id,
        "terminal_id": tx.terminal_id,
        "buyer_type": tx.buyer_type,
        "buyer_name": tx.buyer_name,
        "buyer_company": tx.buyer_company,
        "buyer_email": tx.buyer_email,
        "gross_cents": tx.gross_cents,
        "net_cents": tx.net_cents,
        "vat_cents": tx.vat_cents,
        "receipt_no": tx.receipt_no,
        "receipt_pdf_url": tx.receipt_pdf_url,
        "invoice_no": tx.invoice_no,
        "invoice_pdf_url": tx.invoice_pdf_url,
        "contract_id": tx.contract_id,
        "contract_pdf_url": tx.contract_pdf_url,
    }


def _line_rows(tx: PosTransaction) -> list[Dict[str, Any]]:
    rows = []
    for line_no, line in enumerate(tx.items or [], start=1):
        qty = int(line.get("qty") or 0)
        unit = int(line.get("unitGrossCents") or 0)
        rows.append({
            "tx_id": tx.id,
            "line_no": line_no,
            "item_id": line.get("itemId"),
            "title_snapshot": line.get("titleSnapshot"),
            "qty": qty,
            "unit_gross_cents": unit,
            "vat_rate": line.get("vatRate"),
            "line_gross_cents": qty * unit,
        })
    return rows


def _payment_row(tx: PosTransaction) -> Dict[str, Any]:
    return {
        "tx_id": tx.id,
        "status": tx.status,
        "provider": tx.payment_provider,
        "provider_tx_id": tx.payment_provider_tx_id,
        "method": tx.payment_method,
        "approved_at": _iso(tx.payment_approved_at),
        "gross_cents": tx.gross_cents,
    }


def _tse_row(tx: PosTransaction) -> Dict[str, Any]:
    return {
        "tx_id": tx.id,
        "tse_provider": tx.tse_provider,
        "tse_tx_id": tx.tse_tx_id,
        "serial": tx.tse_serial,
        "signature": tx.tse_signature,
        "signature_counter": tx.tse_signature_counter,
        "log_time": tx.tse_log_time,
        "started_at": _iso(tx.tse_started_at),
        "finished_at": _iso(tx.tse_finished_at),
    }


def _audit_row(entry: PosAuditLog) -> Dict[str, Any]:
    return {
        "audit_id": entry.id,
        "created_at": _iso(entry.created_at),
        "actor_admin_id": entry.actor_id,
        "action": entry.action,
        "tx_id": entry.tx_id,
        "prev_hash": entry.prev_hash,
        "hash": entry.hash,
        "payload_json": json.dumps(entry.payload or {}, sort_keys=True, separators=(",", ":")),
    }


def _readme(start: datetime, end: datetime) -> str:
    return "\n".join([
        "DSFinV-K Export",
        f"Version: {EXPORT_VERSION}",
        f"Range from: {start.isoformat()}",
        f"Range to: {end.isoformat()}",
        "",
        "Files:",
        "- transactions.csv: POS transaction master data",
        "- lines.csv: line items per transaction",
        "- payments.csv: payment-related fields per transaction",
        "- tse.csv: TSE-related fields per transaction",
        "- audit.csv: append-only audit trail with hash-chain values",
        "",
        "Mapping notes:",
        "- tx_id maps to pos_transactions.id",
        "- cents fields are integer cent amounts",
        "- timestamps are ISO-8601 UTC",
        "- this is an extendable export layout, not certified DSFinV-K output",
        "",
    ])


def build_dsfinvk_export(db: Session, from_day: date, to_day: date) -> tuple[str, bytes]:
    """Return ``(filename, zip bytes)`` for transactions created in the range.

    The audit file holds entries created in the range plus every entry of an
    exported transaction, in chain order.
    """
    start = datetime.combine(from_day, time.min, tzinfo=timezone.utc)
    end = datetime.combine(to_day + timedelta(days=1), time.min, tzinfo=timezone.utc)

    txs = db.execute(
        select(PosTransaction)
        .where(PosTransaction.created_at >= start, PosTransaction.created_at < end)
        .order_by(PosTransaction.created_at, PosTransaction.id)
    ).scalars().all()
    tx_ids = [tx.id for tx in txs]

    audit_filter = (PosAuditLog.created_at >= start) & (PosAuditLog.created_at < end)
    if tx_ids:
        audit_filter = or_(audit_filter, PosAuditLog.tx_id.in_(tx_ids))
    audits = db.execute(select(PosAuditLog).where(audit_filter).order_by(PosAuditLog.id)).scalars().all()

    files = {
        "transactions.csv": to_csv(TRANSACTION_COLUMNS, (_transaction_row(tx) for tx in txs)),
        "lines.csv": to_csv(LINE_COLUMNS, (row for tx in txs for row in _line_rows(tx))),
        "payments.csv": to_csv(PAYMENT_COLUMNS, (_payment_row(tx) for tx in txs)),
        "tse.csv": to_csv(TSE_COLUMNS, (_tse_row(tx) for tx in txs)),
        "audit.csv": to_csv(AUDIT_COLUMNS, (_audit_row(entry) for entry in audits)),
        "README.txt": _readme(start, end - timedelta(microseconds=1)),
    }

    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w", compression=zipfile.ZIP_DEFLATED) as archive:
        for name, content in files.items():
            archive.writestr(name, content.encode("utf-8"))

    logger.info(f"DSFinV-K export {from_day} to {to_day}: {len(txs)} transactions, {len(audits)} audit entries")
    return f"dsfinvk-{from_day.isoformat()}-to-{to_day.isoformat()}.zip", buffer.getvalue()
