"""Tests for mark-paid, refund and storno."""

import pytest
from sqlalchemy import select

from kassa.core.errors import PosConflictError, PosValidationError
from kassa.models.pos import PosAuditLog, PosTransaction
from kassa.services.pos import apply_payment_status, mark_paid, refund_transaction, storno_transaction
from kassa.services.pos.audit import verify_audit_chain
from kassa.services.pos.tse import tse_start


def actions_for(db_session, tx_id):
    return db_session.execute(
        select(PosAuditLog.action).where(PosAuditLog.tx_id == tx_id).order_by(PosAuditLog.id)
    ).scalars().all()


class TestMarkPaid:
    @pytest.mark.asyncio
    async def test_cash_payment(self, db_session, make_transaction):
        tx = make_transaction()
        await tse_start(db_session, tx.id, 1)

        response = await mark_paid(db_session, tx.id, 1, method="cash", note="paid at counter")

        assert response["status"] == "paid"
        assert response["receipt"]["receiptNo"].startswith("R-")
        tx = db_session.get(PosTransaction, tx.id, populate_existing=True)
        assert tx.payment_method == "cash"
        assert tx.payment_provider_tx_id == f"cash:{tx.id}"
        assert tx.payment_external_ref == {"terminalSlipNo": None, "rrn": None, "note": "paid at counter"}
        assert tx.tse_signature is not None
        assert actions_for(db_session, tx.id) == ["TSE_START", "PAYMENT_MARK_PAID", "TSE_FINISH", "ISSUE_RECEIPT"]

    @pytest.mark.asyncio
    async def test_second_call_is_idempotent(self, db_session, make_transaction):
        tx = make_transaction()
        await mark_paid(db_session, tx.id, 1, slip_no="42")
        again = await mark_paid(db_session, tx.id, 1, slip_no="43")

        assert again["idempotent"] is True
        assert again["status"] == "paid"
        tx = db_session.get(PosTransaction, tx.id, populate_existing=True)
        assert tx.payment_external_ref["terminalSlipNo"] == "42"
        assert actions_for(db_session, tx.id).count("PAYMENT_MARK_PAID") == 1

    @pytest.mark.asyncio
    async def test_failed_transaction_not_markable(self, db_session, make_transaction):
        tx = make_transaction(status="failed")
        with pytest.raises(PosConflictError) as exc_info:
            await mark_paid(db_session, tx.id, 1)
        assert exc_info.value.code == "status_not_markable:failed"

    @pytest.mark.asyncio
    async def test_invoice_issued_for_large_business_sale(self, db_session, make_transaction):
        tx = make_transaction(
            unit_gross_cents=25000,
            buyer_type="b2b",
            buyer_company="Acme GmbH",
            buyer_billing_address="Hauptstrasse 1, Berlin",
        )
        response = await mark_paid(db_session, tx.id, 1)
        assert response["invoice"]["invoiceNo"].startswith("I-")
        assert response["invoice"]["skippedReason"] is None

    @pytest.mark.asyncio
    async def test_invoice_skipped_without_buyer_data(self, db_session, make_transaction):
        """Missing buyer data does not block the sale; the skip is audited once."""
        tx = make_transaction(unit_gross_cents=25000, buyer_type="b2b")
        response = await mark_paid(db_session, tx.id, 1)
        assert response["invoice"]["invoiceNo"] is None
        assert response["invoice"]["skippedReason"] == "missing_buyer"

        await apply_payment_status(db_session, tx.id, "paid", source="polling_fallback")
        assert actions_for(db_session, tx.id).count("INVOICE_SKIPPED_MISSING_BUYER") == 1

    @pytest.mark.asyncio
    async def test_receipt_numbers_are_sequential(self, db_session, make_transaction):
        first = await mark_paid(db_session, make_transaction().id, 1)
        second = await mark_paid(db_session, make_transaction().id, 1)
        first_no = int(first["receipt"]["receiptNo"].rsplit("-", 1)[1])
        second_no = int(second["receipt"]["receiptNo"].rsplit("-", 1)[1])
        assert second_no == first_no + 1


class TestRefund:
    @pytest.mark.asyncio
    async def test_full_refund(self, db_session, make_transaction):
        tx = make_transaction()
        await mark_paid(db_session, tx.id, 1)

        response = await refund_transaction(db_session, tx.id, 1, "customer returned artwork")

        assert response == {"ok": True, "txId": tx.id, "status": "refunded"}
        tx = db_session.get(PosTransaction, tx.id, populate_existing=True)
        assert tx.payment_raw_status["refund"]["amountCents"] == 10000
        entry = db_session.execute(
            select(PosAuditLog).where(PosAuditLog.tx_id == tx.id, PosAuditLog.action == "REFUND")
        ).scalar_one()
        assert entry.payload["reason"] == "customer returned artwork"
        assert entry.payload["previousStatus"] == "paid"

    @pytest.mark.asyncio
    async def test_amount_above_gross_rejected(self, db_session, make_transaction):
        """The check runs before the provider is contacted and leaves the sale paid."""
        tx = make_transaction()
        await mark_paid(db_session, tx.id, 1)
        with pytest.raises(PosValidationError) as exc_info:
            await refund_transaction(db_session, tx.id, 1, "too much", amount_cents=10001)
        assert exc_info.value.code == "refund_amount_exceeds_gross"
        assert db_session.get(PosTransaction, tx.id, populate_existing=True).status == "paid"

    @pytest.mark.asyncio
    async def test_second_refund_rejected(self, db_session, make_transaction):
        tx = make_transaction()
        await mark_paid(db_session, tx.id, 1)
        await refund_transaction(db_session, tx.id, 1, "first", amount_cents=4000)
        with pytest.raises(PosConflictError) as exc_info:
            await refund_transaction(db_session, tx.id, 1, "second")
        assert exc_info.value.code == "already_refunded"

    @pytest.mark.asyncio
    async def test_only_paid_refundable(self, db_session, make_transaction):
        tx = make_transaction()
        with pytest.raises(PosConflictError) as exc_info:
            await refund_transaction(db_session, tx.id, 1, "nope")
        assert exc_info.value.code == "only_paid_transactions_can_be_refunded"


class TestStorno:
    @pytest.mark.asyncio
    async def test_pending_storno_cancels_tse(self, db_session, make_transaction):
        tx = make_transaction(payment_provider_tx_id="external:1")
        await tse_start(db_session, tx.id, 1)

        response = await storno_transaction(db_session, tx.id, 1, "wrong item")

        assert response["status"] == "storno"
        tx = db_session.get(PosTransaction, tx.id, populate_existing=True)
        assert tx.tse_signature is None
        assert tx.tse_raw_payload["cancel"]["reason"] == "storno"
        assert actions_for(db_session, tx.id) == ["TSE_START", "CANCEL", "STORNO"]

    @pytest.mark.asyncio
    async def test_paid_storno_keeps_signature(self, db_session, make_transaction):
        tx = make_transaction()
        await tse_start(db_session, tx.id, 1)
        await mark_paid(db_session, tx.id, 1)
        signature = db_session.get(PosTransaction, tx.id, populate_existing=True).tse_signature

        await storno_transaction(db_session, tx.id, 1, "void sale")

        tx = db_session.get(PosTransaction, tx.id, populate_existing=True)
        assert tx.status == "storno"
        assert tx.tse_signature == signature

    @pytest.mark.asyncio
    async def test_storno_is_final(self, db_session, make_transaction):
        tx = make_transaction()
        await storno_transaction(db_session, tx.id, 1, "first")
        with pytest.raises(PosConflictError) as exc_info:
            await storno_transaction(db_session, tx.id, 1, "second")
        assert exc_info.value.code == "status_not_reversible:storno"

    @pytest.mark.asyncio
    async def test_refunded_not_reversible(self, db_session, make_transaction):
        tx = make_transaction()
        await mark_paid(db_session, tx.id, 1)
        await refund_transaction(db_session, tx.id, 1, "refund")
        with pytest.raises(PosConflictError):
            await storno_transaction(db_session, tx.id, 1, "too late")

    @pytest.mark.asyncio
    async def test_chain_stays_valid_through_lifecycle(self, db_session, make_transaction):
        tx = make_transaction()
        await tse_start(db_session, tx.id, 1)
        await mark_paid(db_session, tx.id, 1)
        await refund_transaction(db_session, tx.id, 1, "refund")
        assert verify_audit_chain(db_session).ok
