"""Payment status application and admin payment actions.

``apply_payment_status`` is the one place where a payment status coming from
outside (bridge agent report, provider poll, webhook) changes a transaction.
``mark_paid``, ``refund_transaction`` and ``storno_transaction`` are the
admin-initiated transitions. Every status write is conditioned on the status
it was computed from, so concurrent writers cannot both win.
"""

import logging
from typing import Any, Dict, Optional

from sqlalchemy import update
from sqlalchemy.orm import Session

from kassa.core.errors import PosConflictError, PosValidationError
from kassa.db.base import utcnow
from kassa.models.pos import AuditAction, PosTransaction
from kassa.services.pos.audit import append_audit_log
from kassa.services.pos.contracts import ensure_paid_artwork_contract_document
from kassa.services.pos.documents import ensure_paid_transaction_documents
from kassa.services.pos.payment_status import (
    CANCELLED,
    FAILED,
    PAID,
    PENDING_STATUSES,
    REFUNDED,
    STORNO,
    as_record,
    reconcile_payment_status,
)
from kassa.services.pos.payments import get_payment_provider
from kassa.services.pos.transactions import get_transaction, transaction_summary
from kassa.services.pos.tse import tse_cancel, tse_finish

logger = logging.getLogger(__name__)

ALREADY_SETTLED = frozenset({PAID, REFUNDED, STORNO})
NOT_REVERSIBLE = frozenset({REFUNDED, STORNO})


async def settle_paid_transaction(db: Session, tx_id: int, actor_id: int) -> None:
    """Sign the fiscal record and issue receipt, invoice and contract."""
    await tse_finish(db, tx_id, actor_id)
    ensure_paid_transaction_documents(db, tx_id, actor_id)
    ensure_paid_artwork_contract_document(db, tx_id, actor_id)


async def apply_payment_status(
    db: Session,
    tx_id: int,
    incoming: Optional[str],
    source: str,
    raw_updates: Optional[Dict[str, Any]] = None,
    audit_details: Optional[Dict[str, Any]] = None,
    cancel_reason_prefix: Optional[str] = None,
    actor_id: Optional[int] = None,
    extra_values: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """Reconcile an externally reported payment status into a transaction.

    Provider details in ``raw_updates`` are merged into the stored raw status
    even when the status itself does not change. A status change is applied
    only if the transaction still has the status it was reconciled from; the
    loser of a race gets ``concurrent: True`` and triggers no side effects.
    """
    tx = db.get(PosTransaction, tx_id, populate_existing=True)
    if tx is None:
        logger.warning(f"Payment status for unknown transaction {tx_id} from {source}")
        return {"changed": False, "status": None}

    before = tx.status
    after = reconcile_payment_status(before, incoming)
    changed = after != before
    if actor_id is None:
        actor_id = tx.created_by_admin_id

    values: Dict[str, Any] = {"payment_raw_status": {**as_record(tx.payment_raw_status), **(raw_updates or {})}}
    values.update(extra_values or {})
    conditions = [PosTransaction.id == tx_id]
    if changed:
        values["status"] = after
        conditions.append(PosTransaction.status == before)
    if after == PAID and tx.payment_approved_at is None:
        values["payment_approved_at"] = utcnow()

    result = db.execute(
        update(PosTransaction).where(*conditions).values(**values).execution_options(synchronize_session=False)
    )
    db.commit()

    if changed and result.rowcount == 0:
        fresh = db.get(PosTransaction, tx_id, populate_existing=True)
        logger.info(f"Transaction {tx_id} changed concurrently while applying {incoming} from {source}")
        return {"changed": False, "status": fresh.status if fresh else before, "concurrent": True}

    if changed:
        append_audit_log(
            db,
            actor_id,
            AuditAction.PAYMENT_STATUS_UPDATE,
            tx_id=tx_id,
            payload={
                "source": source,
                "provider": tx.payment_provider,
                "providerTxId": tx.payment_provider_tx_id,
                "beforeStatus": before,
                "afterStatus": after,
                "occurredAt": utcnow().isoformat(),
                **(audit_details or {}),
            },
        )
        if after in (FAILED, CANCELLED):
            await tse_cancel(db, tx_id, actor_id, f"{cancel_reason_prefix or 'payment'}_{after}")

    if after == PAID:
        # Idempotent, so a retried report completes what a failed attempt left open
        await settle_paid_transaction(db, tx_id, actor_id)

    return {"changed": changed, "status": after}


def _mark_paid_response(tx: PosTransaction, idempotent: bool = False) -> Dict[str, Any]:
    response = {"ok": True, **transaction_summary(tx)}
    if idempotent:
        response["idempotent"] = True
    return response


async def mark_paid(
    db: Session,
    tx_id: int,
    actor_id: int,
    method: str = "external",
    slip_no: Optional[str] = None,
    rrn: Optional[str] = None,
    note: Optional[str] = None,
) -> Dict[str, Any]:
    """Record a payment taken outside the system (cash or a standalone terminal)."""
    tx = get_transaction(db, tx_id)
    if tx.status in ALREADY_SETTLED:
        return _mark_paid_response(tx, idempotent=True)
    if tx.status not in PENDING_STATUSES:
        raise PosConflictError(f"status_not_markable:{tx.status}")

    before = tx.status
    external_ref = {"terminalSlipNo": slip_no, "rrn": rrn, "note": note}
    result = db.execute(
        update(PosTransaction)
        .where(PosTransaction.id == tx_id, PosTransaction.status == before)
        .values(
            status=PAID,
            payment_provider="external",
            payment_provider_tx_id=f"{method}:{tx_id}",
            payment_method="cash" if method == "cash" else "terminal_external",
            payment_approved_at=utcnow(),
            payment_external_ref=external_ref,
            payment_raw_status={
                **as_record(tx.payment_raw_status),
                "externalMeta": {**external_ref, "method": method},
            },
        )
        .execution_options(synchronize_session=False)
    )
    db.commit()

    if result.rowcount == 0:
        tx = get_transaction(db, tx_id)
        if tx.status in ALREADY_SETTLED:
            return _mark_paid_response(tx, idempotent=True)
        raise PosConflictError(f"status_not_markable:{tx.status}")

    append_audit_log(
        db,
        actor_id,
        AuditAction.PAYMENT_MARK_PAID,
        tx_id=tx_id,
        payload={
            "source": "manual_cash" if method == "cash" else "manual_external",
            "method": method,
            "beforeStatus": before,
            "afterStatus": PAID,
            "slipNo": slip_no,
            "rrn": rrn,
            "note": note,
        },
    )

    await settle_paid_transaction(db, tx_id, actor_id)
    return _mark_paid_response(get_transaction(db, tx_id))


async def refund_transaction(
    db: Session,
    tx_id: int,
    actor_id: int,
    reason: str,
    amount_cents: Optional[int] = None,
) -> Dict[str, Any]:
    """Refund a paid transaction in full or in part.

    All checks run before the provider is contacted, so a rejected request
    leaves the transaction untouched.
    """
    tx = get_transaction(db, tx_id)
    if tx.status == REFUNDED:
        raise PosConflictError("already_refunded")
    if tx.status != PAID:
        raise PosConflictError("only_paid_transactions_can_be_refunded")

    refund_amount = amount_cents if amount_cents is not None else tx.gross_cents
    if refund_amount > tx.gross_cents:
        raise PosValidationError("refund_amount_exceeds_gross")
    if not tx.payment_provider_tx_id:
        raise PosConflictError("missing_provider_tx_id")

    provider = get_payment_provider(tx.payment_provider, db)
    await provider.refund_payment(tx.payment_provider_tx_id, refund_amount)
    await tse_finish(db, tx_id, actor_id)

    tx = get_transaction(db, tx_id)
    result = db.execute(
        update(PosTransaction)
        .where(PosTransaction.id == tx_id, PosTransaction.status == PAID)
        .values(
            status=REFUNDED,
            payment_raw_status={
                **as_record(tx.payment_raw_status),
                "refund": {"amountCents": refund_amount, "reason": reason, "at": utcnow().isoformat()},
            },
        )
        .execution_options(synchronize_session=False)
    )
    db.commit()
    if result.rowcount == 0:
        fresh = get_transaction(db, tx_id)
        if fresh.status == REFUNDED:
            raise PosConflictError("already_refunded")
        raise PosConflictError("only_paid_transactions_can_be_refunded")

    append_audit_log(
        db,
        actor_id,
        AuditAction.REFUND,
        tx_id=tx_id,
        payload={
            "reason": reason,
            "refundAmountCents": refund_amount,
            "previousStatus": PAID,
            "provider": tx.payment_provider,
            "providerTxId": tx.payment_provider_tx_id,
        },
    )
    return {"ok": True, "txId": tx_id, "status": REFUNDED}


async def storno_transaction(db: Session, tx_id: int, actor_id: int, reason: str) -> Dict[str, Any]:
    """Reverse a transaction that is not yet refunded or reversed."""
    tx = get_transaction(db, tx_id)
    if tx.status in NOT_REVERSIBLE:
        raise PosConflictError(f"status_not_reversible:{tx.status}")

    previous = tx.status
    if tx.payment_provider_tx_id:
        provider = get_payment_provider(tx.payment_provider, db)
        await provider.cancel_payment(tx.payment_provider_tx_id)

    if previous == PAID:
        await tse_finish(db, tx_id, actor_id)
    else:
        await tse_cancel(db, tx_id, actor_id, "storno")

    result = db.execute(
        update(PosTransaction)
        .where(PosTransaction.id == tx_id, PosTransaction.status == previous)
        .values(status=STORNO)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    if result.rowcount == 0:
        raise PosConflictError("status_changed_concurrently")

    append_audit_log(
        db,
        actor_id,
        AuditAction.STORNO,
        tx_id=tx_id,
        payload={
            "reason": reason,
            "previousStatus": previous,
            "provider": tx.payment_provider,
            "providerTxId": tx.payment_provider_tx_id,
        },
    )
    return {"ok": True, "txId": tx_id, "status": STORNO}
