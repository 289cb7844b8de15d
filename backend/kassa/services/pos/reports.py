"""Daily close report over transactions created on one UTC day."""

import logging
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Dict, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from kassa.core.errors import PosValidationError
from kassa.models.pos import VAT_RATES, PosTransaction, TransactionStatus
from kassa.services.pos.documents import format_cents, render_pdf
from kassa.services.pos.payment_status import PAID, REFUNDED, STORNO
from kassa.services.pos.totals import compute_net_cents

logger = logging.getLogger(__name__)


def parse_report_date(value: Optional[str]) -> date:
    try:
        return datetime.strptime((value or "").strip(), "%Y-%m-%d").date()
    except ValueError:
        raise PosValidationError("invalid_date")


def build_daily_close(db: Session, report_date: date) -> Dict[str, Any]:
    """Counts per status, paid totals, refund/storno gross and VAT buckets.

    Paid totals and VAT buckets include only transactions still ``paid``;
    refunded and reversed sales are reported separately by gross.
    """
    start = datetime.combine(report_date, time.min, tzinfo=timezone.utc)
    end = start + timedelta(days=1)
    rows = db.execute(
        select(PosTransaction).where(PosTransaction.created_at >= start, PosTransaction.created_at < end)
    ).scalars().all()

    counts = {status.value: 0 for status in TransactionStatus}
    buckets = {rate: {"vatRate": rate, "grossCents": 0, "netCents": 0, "vatCents": 0} for rate in VAT_RATES}
    gross_paid = net_paid = vat_paid = refund_gross = storno_gross = 0

    for tx in rows:
        counts[tx.status] = counts.get(tx.status, 0) + 1
        if tx.status == PAID:
            gross_paid += tx.gross_cents
            net_paid += tx.net_cents
            vat_paid += tx.vat_cents
            for line in tx.items or []:
                rate = int(line.get("vatRate", 19))
                line_gross = int(line.get("qty", 0)) * int(line.get("unitGrossCents", 0))
                line_net = compute_net_cents(line_gross, rate)
                bucket = buckets[rate]
                bucket["grossCents"] += line_gross
                bucket["netCents"] += line_net
                bucket["vatCents"] += line_gross - line_net
        elif tx.status == REFUNDED:
            refund_gross += tx.gross_cents
        elif tx.status == STORNO:
            storno_gross += tx.gross_cents

    return {
        "ok": True,
        "date": report_date.isoformat(),
        "range": {"from": start.isoformat(), "to": (end - timedelta(microseconds=1)).isoformat()},
        "summary": {
            "transactionCount": len(rows),
            "paidCount": counts["paid"],
            "createdCount": counts["created"],
            "pendingCount": counts["payment_pending"],
            "failedCount": counts["failed"],
            "cancelledCount": counts["cancelled"],
            "refundedCount": counts["refunded"],
            "stornoCount": counts["storno"],
            "grossPaidCents": gross_paid,
            "netPaidCents": net_paid,
            "vatPaidCents": vat_paid,
            "refundGrossCents": refund_gross,
            "stornoGrossCents": storno_gross,
        },
        "vatBuckets": [buckets[rate] for rate in VAT_RATES],
    }


def build_daily_close_pdf(report: Dict[str, Any]) -> bytes:
    summary = report["summary"]
    rows = [["VAT rate", "Gross", "Net", "VAT"]]
    for bucket in report["vatBuckets"]:
        rows.append([
            f"{bucket['vatRate']}%",
            format_cents(bucket["grossCents"]),
            format_cents(bucket["netCents"]),
            format_cents(bucket["vatCents"]),
        ])
    return render_pdf(f"Daily Close {report['date']}", [
        f"Range: {report['range']['from']} to {report['range']['to']}",
        "",
        f"Transactions total: {summary['transactionCount']}",
        f"Paid: {summary['paidCount']}",
        f"Pending: {summary['pendingCount']}",
        f"Failed: {summary['failedCount']}",
        f"Cancelled: {summary['cancelledCount']}",
        f"Refunded: {summary['refundedCount']}",
        f"Storno: {summary['stornoCount']}",
        "",
        f"Gross paid: {format_cents(summary['grossPaidCents'])}",
        f"Net paid: {format_cents(summary['netPaidCents'])}",
        f"VAT paid: {format_cents(summary['vatPaidCents'])}",
        f"Refund gross: {format_cents(summary['refundGrossCents'])}",
        f"Storno gross: {format_cents(summary['stornoGrossCents'])}",
        "",
        rows,
    ])
