"""Tests for Verifone webhook ingestion."""

import hashlib
import hmac
import json

import pytest
from sqlalchemy import select

from kassa.core.config import settings
from kassa.models.pos import PosTransaction, PosWebhookEvent
from kassa.services.pos import webhooks
from kassa.services.pos.webhooks import (
    handle_verifone_webhook,
    webhook_amount_cents,
    webhook_event_id,
    webhook_status,
)

SECRET = "whsec_test"


def signed(payload) -> tuple[bytes, dict]:
    body = json.dumps(payload).encode("utf-8")
    signature = hmac.new(SECRET.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return body, {"x-verifone-signature": signature, "Content-Type": "application/json"}


def recorded_events(db_session):
    return db_session.execute(select(PosWebhookEvent.event_id).order_by(PosWebhookEvent.id)).scalars().all()


@pytest.fixture
def webhook_secret(monkeypatch):
    monkeypatch.setattr(settings, "verifone_webhook_secret", SECRET)


@pytest.fixture
def verifone_tx(make_transaction):
    return make_transaction(payment_provider="verifone", payment_provider_tx_id="vf-123", payment_method="terminal")


class TestPayloadParsing:
    @pytest.mark.parametrize("payload,expected", [
        ({"eventType": "payment.approved"}, "paid"),
        ({"type": "PAYMENT_DECLINED"}, "failed"),
        ({"data": {"status": "voided"}}, "cancelled"),
        ({"eventType": "refund.failed"}, "refunded"),
        ({"status": "in_progress"}, "payment_pending"),
    ])
    def test_status_keywords(self, payload, expected):
        assert webhook_status(payload) == expected

    def test_event_id_and_amount(self):
        payload = {"data": {"eventId": 77, "amount": {"value": "1500"}}}
        assert webhook_event_id(payload) == "77"
        assert webhook_amount_cents(payload) == 1500


class TestVerifoneWebhook:
    def test_paid_event_settles_transaction(self, client, db_session, webhook_secret, verifone_tx):
        body, headers = signed({"eventId": "evt-1", "paymentId": "vf-123", "status": "APPROVED", "amountCents": 10000})

        response = client.post("/api/v1/webhooks/verifone", content=body, headers=headers)

        assert response.status_code == 200
        assert response.json() == {"ok": True, "txId": verifone_tx.id, "status": "paid", "changed": True}
        tx = db_session.get(PosTransaction, verifone_tx.id, populate_existing=True)
        assert tx.status == "paid"
        assert tx.receipt_no is not None
        assert tx.payment_raw_status["lastWebhookEventId"] == "evt-1"
        assert recorded_events(db_session) == ["evt-1"]
        assert tx.payment_raw_status["lastWebhookAmountCents"] == 10000

    def test_duplicate_event_ignored(self, client, webhook_secret, verifone_tx):
        body, headers = signed({"eventId": "evt-1", "paymentId": "vf-123", "status": "DECLINED"})
        client.post("/api/v1/webhooks/verifone", content=body, headers=headers)

        response = client.post("/api/v1/webhooks/verifone", content=body, headers=headers)

        assert response.json()["duplicate"] is True
        assert response.json()["status"] == "failed"

    def test_unknown_payment_acknowledged(self, client, webhook_secret):
        body, headers = signed({"eventId": "evt-9", "paymentId": "vf-unknown", "status": "APPROVED"})
        response = client.post("/api/v1/webhooks/verifone", content=body, headers=headers)
        assert response.status_code == 200
        assert response.json() == {"ok": True, "ignored": "transaction_not_found"}

    def test_bad_signature(self, client, webhook_secret, verifone_tx):
        body, headers = signed({"paymentId": "vf-123", "status": "APPROVED"})
        headers["x-verifone-signature"] = "0" * 64
        response = client.post("/api/v1/webhooks/verifone", content=body, headers=headers)
        assert response.status_code == 401
        assert response.json() == {"ok": False, "error": "invalid_signature"}

    def test_not_configured(self, client, monkeypatch):
        monkeypatch.setattr(settings, "verifone_webhook_secret", "")
        response = client.post("/api/v1/webhooks/verifone", content=b"{}")
        assert response.status_code == 503
        assert response.json()["error"] == "webhook_not_configured"

    def test_missing_payment_id(self, client, webhook_secret):
        body, headers = signed({"eventId": "evt-2", "status": "APPROVED"})
        response = client.post("/api/v1/webhooks/verifone", content=body, headers=headers)
        assert response.status_code == 400
        assert response.json()["error"] == "missing_provider_tx_id"

    def test_paid_transaction_not_failed_by_late_event(self, client, db_session, webhook_secret, verifone_tx):
        paid, headers = signed({"eventId": "evt-1", "paymentId": "vf-123", "status": "APPROVED"})
        client.post("/api/v1/webhooks/verifone", content=paid, headers=headers)
        failed, headers = signed({"eventId": "evt-2", "paymentId": "vf-123", "status": "FAILED"})

        response = client.post("/api/v1/webhooks/verifone", content=failed, headers=headers)

        assert response.json()["status"] == "paid"
        assert response.json()["changed"] is False
        tx = db_session.get(PosTransaction, verifone_tx.id, populate_existing=True)
        assert recorded_events(db_session) == ["evt-1", "evt-2"]


class TestEventDeduplication:
    @pytest.mark.asyncio
    async def test_interleaved_deliveries_both_recorded(self, db_session, webhook_secret, verifone_tx, monkeypatch):
        """A second event arriving while the first is applied does not evict the first."""
        first, first_headers = signed({"eventId": "evt-1", "paymentId": "vf-123", "status": "in_progress"})
        second, second_headers = signed({"eventId": "evt-2", "paymentId": "vf-123", "status": "APPROVED"})
        original_apply = webhooks.apply_payment_status
        nested = []

        async def apply_with_second_delivery(db, tx_id, status, **kwargs):
            if not nested:
                nested.append(await handle_verifone_webhook(db, second, second_headers["x-verifone-signature"]))
            return await original_apply(db, tx_id, status, **kwargs)

        monkeypatch.setattr(webhooks, "apply_payment_status", apply_with_second_delivery)
        await handle_verifone_webhook(db_session, first, first_headers["x-verifone-signature"])

        assert nested[0]["status"] == "paid"
        assert sorted(recorded_events(db_session)) == ["evt-1", "evt-2"]
        for body, headers in ((first, first_headers), (second, second_headers)):
            again = await handle_verifone_webhook(db_session, body, headers["x-verifone-signature"])
            assert again == {"ok": True, "txId": verifone_tx.id, "status": "paid", "duplicate": True}

    @pytest.mark.asyncio
    async def test_failed_application_allows_redelivery(self, db_session, webhook_secret, verifone_tx, monkeypatch):
        body, headers = signed({"eventId": "evt-1", "paymentId": "vf-123", "status": "APPROVED"})
        original_apply = webhooks.apply_payment_status

        async def broken_apply(db, tx_id, status, **kwargs):
            raise RuntimeError("database unavailable")

        monkeypatch.setattr(webhooks, "apply_payment_status", broken_apply)
        with pytest.raises(RuntimeError):
            await handle_verifone_webhook(db_session, body, headers["x-verifone-signature"])
        assert recorded_events(db_session) == []

        monkeypatch.setattr(webhooks, "apply_payment_status", original_apply)
        response = await handle_verifone_webhook(db_session, body, headers["x-verifone-signature"])

        assert response["status"] == "paid"
        assert recorded_events(db_session) == ["evt-1"]
