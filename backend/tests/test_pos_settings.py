"""Tests for the stored POS settings and the receipt email request."""

import pytest
from sqlalchemy import select

from kassa.core.config import settings
from kassa.core.errors import PosConflictError, PosValidationError
from kassa.models.pos import PosAuditLog, PosSetting, PosTransaction
from kassa.services.pos import documents
from kassa.services.pos.documents import ensure_paid_transaction_documents, queue_receipt_email
from kassa.services.pos.pos_settings import get_pos_settings, update_pos_settings

API = "/api/v1/pos"


class TestSettingsService:
    def test_defaults_from_environment(self, db_session, monkeypatch):
        monkeypatch.setattr(settings, "pos_seller_name", "Galerie Nord GmbH")
        monkeypatch.setattr(settings, "pos_seller_vat_id", "DE123456789")

        snapshot = get_pos_settings(db_session)

        assert snapshot["seller"]["companyName"] == "Galerie Nord GmbH"
        assert snapshot["tax"] == {"steuernummer": None, "ustId": "DE123456789", "finanzamt": None}
        assert snapshot["receiptFooterLines"] == []
        assert snapshot["currency"] == "EUR"

    def test_update_merges_seller_fields(self, db_session):
        update_pos_settings(db_session, 1, {"seller": {"companyName": "Galerie Nord GmbH", "phone": "+49 30 1234"}})
        snapshot = update_pos_settings(db_session, 1, {"seller": {"phone": "+49 30 9999"}})

        assert snapshot["seller"]["companyName"] == "Galerie Nord GmbH"
        assert snapshot["seller"]["phone"] == "+49 30 9999"
        rows = db_session.execute(select(PosSetting).where(PosSetting.key == "seller")).scalars().all()
        assert len(rows) == 1

    def test_update_is_audited(self, db_session):
        update_pos_settings(db_session, 7, {"receiptFooterLines": ["Danke!"], "currency": "eur"})

        entry = db_session.execute(select(PosAuditLog)).scalar_one()
        assert entry.action == "UPDATE_SETTINGS"
        assert entry.actor_id == 7
        assert entry.payload == {"keys": ["receiptFooterLines", "currency"]}
        assert get_pos_settings(db_session)["currency"] == "EUR"

    def test_unknown_keys_ignored(self, db_session):
        update_pos_settings(db_session, 1, {"terminals": []})
        assert db_session.execute(select(PosSetting)).scalars().all() == []
        assert db_session.execute(select(PosAuditLog)).scalars().all() == []

    def test_receipt_uses_stored_settings(self, db_session, make_transaction, monkeypatch):
        rendered = []
        original_render = documents.render_pdf

        def capture(title, blocks):
            rendered.append((title, blocks))
            return original_render(title, blocks)

        monkeypatch.setattr(documents, "render_pdf", capture)
        update_pos_settings(db_session, 1, {
            "seller": {"companyName": "Galerie Nord GmbH"},
            "tax": {"steuernummer": "27/123/45678"},
            "receiptFooterLines": ["Vielen Dank für Ihren Besuch"],
        })
        tx = make_transaction(status="paid")

        ensure_paid_transaction_documents(db_session, tx.id, 1)

        title, blocks = rendered[0]
        assert title == "Receipt (Beleg)"
        assert "Seller: Galerie Nord GmbH" in blocks
        assert "Tax ID: 27/123/45678" in blocks
        assert blocks[-1] == "Vielen Dank für Ihren Besuch"


class TestSettingsRoutes:
    def test_get_and_put(self, client, auth_headers):
        initial = client.get(f"{API}/settings", headers=auth_headers).json()
        assert initial["ok"] is True
        assert initial["settings"]["brandName"] == settings.pos_brand_name

        response = client.put(f"{API}/settings", json={
            "brandName": "Galerie Nord",
            "tax": {"ustId": "DE999999999"},
            "receiptFooterLines": ["  Danke!  ", ""],
        }, headers=auth_headers)

        assert response.status_code == 200
        stored = response.json()["settings"]
        assert stored["brandName"] == "Galerie Nord"
        assert stored["tax"]["ustId"] == "DE999999999"
        assert stored["receiptFooterLines"] == ["Danke!"]
        assert client.get(f"{API}/settings", headers=auth_headers).json()["settings"] == stored

    def test_invalid_currency(self, client, auth_headers):
        response = client.put(f"{API}/settings", json={"currency": "EURO"}, headers=auth_headers)
        assert response.status_code == 400

    def test_requires_admin(self, client):
        assert client.get(f"{API}/settings").status_code == 401


class TestReceiptEmail:
    def paid_with_receipt(self, db_session, make_transaction, **fields):
        tx = make_transaction(status="paid", **fields)
        ensure_paid_transaction_documents(db_session, tx.id, 1)
        return db_session.get(PosTransaction, tx.id, populate_existing=True)

    def test_queues_buyer_email(self, db_session, make_transaction):
        tx = self.paid_with_receipt(db_session, make_transaction, buyer_email="jana@example.com")

        response = queue_receipt_email(db_session, tx.id, 1)

        assert response["ok"] is True
        assert response["mode"] == "queued"
        assert response["email"] == "jana@example.com"
        assert response["receiptPdfUrl"] == tx.receipt_pdf_url
        tx = db_session.get(PosTransaction, tx.id, populate_existing=True)
        assert tx.receipt_request_email == "jana@example.com"
        assert tx.receipt_email_queued_at is not None
        entry = db_session.execute(
            select(PosAuditLog).where(PosAuditLog.action == "QUEUE_RECEIPT_EMAIL")
        ).scalar_one()
        assert entry.payload["receiptNo"] == tx.receipt_no

    def test_explicit_email_then_remembered(self, db_session, make_transaction):
        tx = self.paid_with_receipt(db_session, make_transaction)
        queue_receipt_email(db_session, tx.id, 1, "  office@example.com ")
        assert queue_receipt_email(db_session, tx.id, 1)["email"] == "office@example.com"

    def test_missing_email(self, db_session, make_transaction):
        tx = self.paid_with_receipt(db_session, make_transaction)
        with pytest.raises(PosValidationError) as exc_info:
            queue_receipt_email(db_session, tx.id, 1)
        assert exc_info.value.code == "receipt_email_missing"

    @pytest.mark.parametrize("status", ["payment_pending", "refunded"])
    def test_only_paid_transactions(self, db_session, make_transaction, status):
        tx = make_transaction(status=status, buyer_email="jana@example.com")
        with pytest.raises(PosConflictError) as exc_info:
            queue_receipt_email(db_session, tx.id, 1)
        assert exc_info.value.code == "transaction_not_paid"

    def test_receipt_must_exist(self, db_session, make_transaction):
        tx = make_transaction(status="paid", buyer_email="jana@example.com")
        with pytest.raises(PosConflictError) as exc_info:
            queue_receipt_email(db_session, tx.id, 1)
        assert exc_info.value.code == "receipt_not_generated"

    def test_route(self, client, db_session, auth_headers, make_transaction):
        tx = self.paid_with_receipt(db_session, make_transaction)

        response = client.post(f"{API}/transactions/{tx.id}/send-receipt", json={"email": "jana@example.com"},
                               headers=auth_headers)

        assert response.status_code == 200
        assert response.json()["email"] == "jana@example.com"
        detail = client.get(f"{API}/transactions/{tx.id}", headers=auth_headers).json()
        assert detail["transaction"]["receipt"]["requestEmail"] == "jana@example.com"

    def test_route_without_body_or_address(self, client, db_session, auth_headers, make_transaction):
        tx = self.paid_with_receipt(db_session, make_transaction)
        response = client.post(f"{API}/transactions/{tx.id}/send-receipt", headers=auth_headers)
        assert response.status_code == 400
        assert response.json() == {"ok": False, "error": "receipt_email_missing"}

    def test_route_unknown_transaction(self, client, auth_headers):
        response = client.post(f"{API}/transactions/999/send-receipt", json={}, headers=auth_headers)
        assert response.status_code == 404
