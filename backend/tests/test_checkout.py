"""Tests for checkout start and status polling."""

import pytest
from sqlalchemy import func, select

from kassa.core.config import settings
from kassa.core.errors import PosConflictError, PosNotFoundError, PosValidationError
from kassa.models.pos import PosAuditLog, PosCommand, PosContract, PosTransaction
from kassa.schemas.pos import CheckoutStartRequest
from kassa.services.pos import get_checkout_status, refund_transaction, report_command_result, start_checkout
from kassa.services.pos.payments import BridgePaymentProvider
from kassa.services.pos.payments import mock as mock_module


def transaction_count(db_session) -> int:
    return db_session.execute(select(func.count(PosTransaction.id))).scalar_one()


def checkout_request(location_id, cart, buyer, terminal_id=None, payment_method="terminal_bridge", contract=None):
    body = {
        "locationId": location_id,
        "terminalId": terminal_id,
        "paymentMethod": payment_method,
        "cart": cart,
        "buyer": buyer,
    }
    if contract is not None:
        body["contract"] = contract
    return CheckoutStartRequest.model_validate(body)


class TestValidation:
    @pytest.mark.asyncio
    async def test_artwork_requires_contract(self, db_session, test_location, test_terminal, test_agent,
                                             test_artwork, b2c_buyer):
        """Nothing is persisted when the contract is missing."""
        request = checkout_request(
            test_location.id, [{"itemId": test_artwork.id, "qty": 1}], b2c_buyer, test_terminal.id
        )
        with pytest.raises(PosValidationError) as exc_info:
            await start_checkout(db_session, request, 1)
        assert exc_info.value.code == "contract_required"
        assert transaction_count(db_session) == 0

    @pytest.mark.asyncio
    async def test_contract_must_match_cart(self, db_session, test_location, test_artwork, test_event,
                                            b2c_buyer, signature_data_url):
        request = checkout_request(
            test_location.id,
            [{"itemId": test_artwork.id, "qty": 1}],
            b2c_buyer,
            payment_method="cash",
            contract={
                "artworks": [{"itemId": test_event.id}],
                "deliveryMethod": "pickup",
                "buyerSignatureDataUrl": signature_data_url,
            },
        )
        with pytest.raises(PosValidationError) as exc_info:
            await start_checkout(db_session, request, 1)
        assert exc_info.value.code == "contract_artwork_mismatch"
        assert transaction_count(db_session) == 0

    @pytest.mark.asyncio
    async def test_no_online_agent_suggests_external(self, db_session, test_location, test_terminal,
                                                      test_event, b2c_buyer):
        request = checkout_request(
            test_location.id, [{"itemId": test_event.id, "qty": 1}], b2c_buyer, test_terminal.id
        )
        with pytest.raises(PosConflictError) as exc_info:
            await start_checkout(db_session, request, 1)
        assert exc_info.value.to_dict() == {
            "ok": False, "error": "no_bridge_agent_online", "fallback": "terminal_external",
        }
        assert transaction_count(db_session) == 0

    @pytest.mark.asyncio
    async def test_invoice_buyer_required(self, db_session, test_location, test_event):
        """A business sale above the invoice threshold needs company and address."""
        qty = settings.pos_invoice_threshold_b2b_cents // test_event.price_gross_cents
        request = checkout_request(
            test_location.id,
            [{"itemId": test_event.id, "qty": qty}],
            {"type": "b2b", "name": "Max Roth"},
            payment_method="cash",
        )
        with pytest.raises(PosValidationError) as exc_info:
            await start_checkout(db_session, request, 1)
        assert exc_info.value.code == "invoice_buyer_required"

    @pytest.mark.asyncio
    async def test_terminal_required_for_terminal_payment(self, db_session, test_location, test_event, b2c_buyer):
        request = checkout_request(test_location.id, [{"itemId": test_event.id, "qty": 1}], b2c_buyer)
        with pytest.raises(PosValidationError) as exc_info:
            await start_checkout(db_session, request, 1)
        assert exc_info.value.code == "terminal_required"

    @pytest.mark.asyncio
    async def test_terminal_without_host(self, db_session, test_location, test_terminal, test_agent,
                                         test_event, b2c_buyer):
        test_terminal.host = None
        db_session.commit()
        request = checkout_request(
            test_location.id, [{"itemId": test_event.id, "qty": 1}], b2c_buyer, test_terminal.id
        )
        with pytest.raises(PosValidationError) as exc_info:
            await start_checkout(db_session, request, 1)
        assert exc_info.value.code == "terminal_host_missing"

    @pytest.mark.asyncio
    async def test_inactive_item(self, db_session, test_location, test_event, b2c_buyer):
        test_event.is_active = False
        db_session.commit()
        request = checkout_request(
            test_location.id, [{"itemId": test_event.id, "qty": 1}], b2c_buyer, payment_method="cash"
        )
        with pytest.raises(PosValidationError) as exc_info:
            await start_checkout(db_session, request, 1)
        assert exc_info.value.code == f"item_inactive:{test_event.id}"

    @pytest.mark.asyncio
    async def test_unknown_location(self, db_session, test_event, b2c_buyer):
        request = checkout_request(999, [{"itemId": test_event.id, "qty": 1}], b2c_buyer, payment_method="cash")
        with pytest.raises(PosNotFoundError):
            await start_checkout(db_session, request, 1)


class TestStart:
    @pytest.mark.asyncio
    async def test_bridge_checkout_queues_payment(self, db_session, test_location, test_terminal, test_agent,
                                                  test_event, b2c_buyer):
        request = checkout_request(
            test_location.id,
            [{"itemId": test_event.id, "qty": 1}, {"itemId": test_event.id, "qty": 1}],
            b2c_buyer,
            test_terminal.id,
        )
        response = await start_checkout(db_session, request, 1)

        assert response["ok"] is True
        assert response["status"] == "payment_pending"
        assert response["provider"] == "bridge"

        tx = db_session.get(PosTransaction, response["txId"])
        assert tx.items == [{
            "itemId": test_event.id, "qty": 2, "unitGrossCents": 2500, "vatRate": 7, "titleSnapshot": "Opening Night",
        }]
        assert (tx.gross_cents, tx.net_cents, tx.vat_cents) == (5000, 4673, 327)
        assert tx.payment_method == "terminal_bridge"
        assert tx.tse_tx_id == f"noop-tse-{tx.id}"

        command = db_session.get(PosCommand, int(response["providerTxId"]))
        assert command.agent_id == test_agent.id
        assert command.payload["txId"] == tx.id
        assert command.payload["terminalHost"] == "192.168.1.50"
        assert command.payload["terminalPort"] == 22000

        actions = db_session.execute(
            select(PosAuditLog.action).where(PosAuditLog.tx_id == tx.id).order_by(PosAuditLog.id)
        ).scalars().all()
        assert actions == ["CREATE_TX", "TSE_START"]

    @pytest.mark.asyncio
    async def test_cash_checkout_uses_external_provider(self, db_session, test_location, test_event, b2c_buyer):
        request = checkout_request(
            test_location.id, [{"itemId": test_event.id, "qty": 1}], b2c_buyer, payment_method="cash"
        )
        response = await start_checkout(db_session, request, 1)
        assert response["provider"] == "external"
        assert response["providerTxId"] == f"external:{response['txId']}"
        assert db_session.get(PosTransaction, response["txId"]).payment_method == "cash"

    @pytest.mark.asyncio
    async def test_external_terminal_mode(self, db_session, test_location, test_terminal, test_event, b2c_buyer):
        test_terminal.mode = "external"
        db_session.commit()
        request = checkout_request(
            test_location.id, [{"itemId": test_event.id, "qty": 1}], b2c_buyer, test_terminal.id
        )
        response = await start_checkout(db_session, request, 1)
        assert response["provider"] == "external"
        assert db_session.get(PosTransaction, response["txId"]).payment_method == "terminal_external"

    @pytest.mark.asyncio
    async def test_artwork_checkout_creates_contract_draft(self, db_session, test_location, test_artwork,
                                                           b2c_buyer, signature_data_url):
        request = checkout_request(
            test_location.id,
            [{"itemId": test_artwork.id, "qty": 1}],
            b2c_buyer,
            payment_method="cash",
            contract={
                "artworks": [{"itemId": test_artwork.id, "year": "2024", "techniqueSize": "Oil, 50x70"}],
                "deliveryMethod": "pickup",
                "buyerSignatureDataUrl": signature_data_url,
            },
        )
        response = await start_checkout(db_session, request, 1)

        contract = db_session.execute(
            select(PosContract).where(PosContract.tx_id == response["txId"])
        ).scalar_one()
        assert contract.status == "draft"
        assert contract.snapshot["artworks"][0]["artistName"] == "Mira Kovac"
        assert contract.snapshot["artworks"][0]["techniqueSize"] == "Oil, 50x70"
        assert contract.snapshot["purchase"]["status"] == "open"
        assert db_session.get(PosTransaction, response["txId"]).contract_id == contract.id

    @pytest.mark.asyncio
    async def test_provider_failure_marks_transaction_failed(self, db_session, test_location, test_terminal,
                                                             test_event, b2c_buyer, monkeypatch):
        """A failure after the row exists leaves a failed transaction with a closed TSE."""
        monkeypatch.setattr(settings, "pos_payment_provider", "verifone")
        monkeypatch.setattr(settings, "verifone_api_base_url", "")
        request = checkout_request(
            test_location.id, [{"itemId": test_event.id, "qty": 1}], b2c_buyer, test_terminal.id,
            payment_method="terminal",
        )
        with pytest.raises(Exception) as exc_info:
            await start_checkout(db_session, request, 1)
        assert getattr(exc_info.value, "code", "").startswith("verifone_not_configured")

        tx = db_session.execute(select(PosTransaction)).scalar_one()
        assert tx.status == "failed"
        assert tx.tse_finished_at is not None
        assert tx.tse_signature is None
        assert tx.tse_raw_payload["cancel"]["reason"] == "checkout_start_failed"

    @pytest.mark.asyncio
    async def test_agent_report_during_payment_creation(self, db_session, test_location, test_terminal,
                                                        test_agent, test_event, b2c_buyer, monkeypatch):
        """A fast agent may settle the sale before checkout stores the command reference."""
        original_create = BridgePaymentProvider.create_payment

        async def create_and_report(self, payment):
            result = await original_create(self, payment)
            await report_command_result(
                db_session, test_agent, int(result.provider_tx_id), True, {"status": "approved"}
            )
            return result

        monkeypatch.setattr(BridgePaymentProvider, "create_payment", create_and_report)
        request = checkout_request(
            test_location.id, [{"itemId": test_event.id, "qty": 1}], b2c_buyer, test_terminal.id
        )

        response = await start_checkout(db_session, request, 1)

        tx = db_session.get(PosTransaction, response["txId"], populate_existing=True)
        assert response["status"] == "paid"
        assert tx.status == "paid"
        assert tx.payment_provider_tx_id == response["providerTxId"]
        assert tx.payment_raw_status["createPayment"]["provider"] == "bridge"
        assert tx.payment_raw_status["lastBridgeAgentOk"] is True

        refunded = await refund_transaction(db_session, tx.id, 1, "returned")
        assert refunded["status"] == "refunded"


class TestStatusPolling:
    async def _start_mock_checkout(self, db_session, location, terminal, item, buyer, monkeypatch):
        monkeypatch.setattr(settings, "pos_payment_provider", "mock")
        request = checkout_request(
            location.id, [{"itemId": item.id, "qty": 1}], buyer, terminal.id, payment_method="terminal"
        )
        return await start_checkout(db_session, request, 1)

    @pytest.mark.asyncio
    async def test_poll_settles_paid_payment(self, db_session, test_location, test_terminal, test_event,
                                             b2c_buyer, monkeypatch):
        started = await self._start_mock_checkout(
            db_session, test_location, test_terminal, test_event, b2c_buyer, monkeypatch
        )
        monkeypatch.setattr(mock_module, "MOCK_PAYMENT_DELAY_SECONDS", 0)

        status = await get_checkout_status(db_session, started["txId"], 1)

        assert status["polledProvider"] is True
        assert status["changed"] is True
        assert status["status"] == "paid"
        assert status["receipt"]["receiptNo"].startswith("R-")
        assert status["tse"]["signature"].startswith("noop-signature-")

        tx = db_session.get(PosTransaction, started["txId"], populate_existing=True)
        assert tx.payment_raw_status["lastStatusPoll"]["status"] == "paid"
        assert tx.last_provider_poll_at is not None

    @pytest.mark.asyncio
    async def test_polls_are_rate_limited(self, db_session, test_location, test_terminal, test_event,
                                          b2c_buyer, monkeypatch):
        started = await self._start_mock_checkout(
            db_session, test_location, test_terminal, test_event, b2c_buyer, monkeypatch
        )
        first = await get_checkout_status(db_session, started["txId"], 1)
        second = await get_checkout_status(db_session, started["txId"], 1)

        assert first["polledProvider"] is True
        assert first["status"] == "payment_pending"
        assert second["rateLimited"] is True
        assert 0 < second["nextPollInMs"] <= settings.pos_status_poll_min_interval_seconds * 1000

    @pytest.mark.asyncio
    async def test_bridge_payments_not_polled(self, db_session, test_location, test_terminal, test_agent,
                                              test_event, b2c_buyer):
        request = checkout_request(
            test_location.id, [{"itemId": test_event.id, "qty": 1}], b2c_buyer, test_terminal.id
        )
        started = await start_checkout(db_session, request, 1)
        status = await get_checkout_status(db_session, started["txId"], 1)
        assert status["polledProvider"] is False
        assert status["status"] == "payment_pending"

    @pytest.mark.asyncio
    async def test_missing_provider_tx_id(self, db_session, make_transaction):
        tx = make_transaction(payment_provider="mock")
        with pytest.raises(PosConflictError) as exc_info:
            await get_checkout_status(db_session, tx.id, 1)
        assert exc_info.value.code == "missing_provider_tx_id"

    @pytest.mark.asyncio
    async def test_unknown_transaction(self, db_session):
        with pytest.raises(PosNotFoundError):
            await get_checkout_status(db_session, 404, 1)
