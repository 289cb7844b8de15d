"""Checkout orchestration.

``start_checkout`` validates everything it can before the transaction row
exists, then creates the transaction, the contract draft, the fiscal start
and the terminal payment in that order. Once the row exists, any failure
marks it ``failed`` and closes the fiscal transaction before the error is
re-raised.
"""

import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from kassa.core.config import settings
from kassa.core.errors import PosConflictError, PosNotFoundError, PosValidationError
from kassa.db.base import as_utc, utcnow
from kassa.models.pos import AuditAction, ItemType, PosItem, PosLocation, PosTerminal, PosTransaction, TerminalMode
from kassa.schemas.pos import CheckoutStartRequest
from kassa.services.pos.actions import apply_payment_status
from kassa.services.pos.audit import append_audit_log
from kassa.services.pos.bridge import select_online_agent
from kassa.services.pos.contracts import ArtworkLine, create_artwork_contract_draft, validate_contract_input
from kassa.services.pos.payment_status import (
    CANCELLED,
    CREATED,
    FAILED,
    PAYMENT_PENDING,
    PENDING_STATUSES,
    as_record,
)
from kassa.services.pos.payments import CreatePaymentInput, get_payment_provider, map_provider_status
from kassa.services.pos.totals import build_totals, has_invoice_buyer_data, invoice_required
from kassa.services.pos.transactions import get_transaction, transaction_summary
from kassa.services.pos.tse import tse_cancel, tse_start

logger = logging.getLogger(__name__)

EXTERNAL_METHODS = ("terminal_external", "cash")
UNPOLLED_PROVIDERS = ("bridge", "external")


@dataclass
class PaymentPlan:
    provider: str
    method: str
    agent_id: Optional[int] = None
    terminal_port: Optional[int] = None


def _resolve_terminal(db: Session, request: CheckoutStartRequest, location: PosLocation) -> Optional[PosTerminal]:
    if request.terminal_id is None:
        if request.payment_method in EXTERNAL_METHODS:
            return None
        raise PosValidationError("terminal_required")

    terminal = db.get(PosTerminal, request.terminal_id)
    if terminal is None:
        raise PosNotFoundError("terminal_not_found")
    if terminal.location_id != location.id:
        raise PosValidationError("terminal_location_mismatch")
    if not terminal.is_active:
        raise PosValidationError("terminal_inactive")
    return terminal


def _snapshot_cart(db: Session, request: CheckoutStartRequest) -> tuple[List[Dict[str, Any]], List[ArtworkLine]]:
    """Merge cart lines per item and snapshot price, VAT rate and title."""
    merged: Dict[int, int] = {}
    for line in request.cart:
        merged[line.item_id] = merged.get(line.item_id, 0) + line.qty

    items = {
        item.id: item
        for item in db.execute(select(PosItem).where(PosItem.id.in_(list(merged)))).scalars()
    }

    lines: List[Dict[str, Any]] = []
    artwork_lines: List[ArtworkLine] = []
    for item_id, qty in merged.items():
        item = items.get(item_id)
        if item is None:
            raise PosValidationError(f"item_not_found:{item_id}")
        if not item.is_active:
            raise PosValidationError(f"item_inactive:{item_id}")

        lines.append({
            "itemId": item.id,
            "qty": qty,
            "unitGrossCents": item.price_gross_cents,
            "vatRate": item.vat_rate,
            "titleSnapshot": item.title,
        })
        if item.type == ItemType.ARTWORK.value:
            artwork_lines.append(ArtworkLine(
                item_id=item.id,
                title=item.title,
                qty=qty,
                unit_gross_cents=item.price_gross_cents,
                artist_name=item.artist_name,
            ))
    return lines, artwork_lines


def _plan_payment(db: Session, request: CheckoutStartRequest, terminal: Optional[PosTerminal]) -> PaymentPlan:
    use_external = (
        request.payment_method in EXTERNAL_METHODS
        or (terminal is not None and terminal.mode == TerminalMode.EXTERNAL.value)
    )
    if use_external:
        method = "cash" if request.payment_method == "cash" else "terminal_external"
        return PaymentPlan(provider="external", method=method)

    provider = (settings.pos_payment_provider or "bridge").strip().lower()
    if provider == "external":
        provider = "bridge"
    if provider != "bridge":
        return PaymentPlan(provider=provider, method="terminal")

    host = (terminal.host or "").strip()
    if not host:
        raise PosValidationError("terminal_host_missing")
    port = terminal.port if terminal.port is not None else settings.pos_default_terminal_port
    if port <= 0 or port > 65535:
        raise PosValidationError("terminal_port_invalid")

    agent = select_online_agent(db, terminal)
    if agent is None:
        raise PosConflictError("no_bridge_agent_online", fallback="terminal_external")
    return PaymentPlan(provider="bridge", method="terminal_bridge", agent_id=agent.id, terminal_port=port)


async def _fail_started_checkout(db: Session, tx_id: int, actor_id: int) -> None:
    """Compensate a checkout that failed after its transaction was created."""
    try:
        db.rollback()
        db.execute(
            update(PosTransaction)
            .where(PosTransaction.id == tx_id, PosTransaction.status.in_(list(PENDING_STATUSES)))
            .values(status=FAILED)
            .execution_options(synchronize_session=False)
        )
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        logger.exception(f"Could not mark checkout transaction {tx_id} as failed")

    try:
        await tse_cancel(db, tx_id, actor_id, "checkout_start_failed")
    except Exception:
        logger.exception(f"Could not cancel TSE transaction for failed checkout {tx_id}")


async def start_checkout(db: Session, request: CheckoutStartRequest, actor_id: int) -> Dict[str, Any]:
    location = db.get(PosLocation, request.location_id)
    if location is None:
        raise PosNotFoundError("location_not_found")
    terminal = _resolve_terminal(db, request, location)

    lines, artwork_lines = _snapshot_cart(db, request)
    totals = build_totals(lines)

    buyer = request.buyer
    if invoice_required(buyer.type, totals.gross_cents) and not has_invoice_buyer_data(
        buyer.type, buyer.name, buyer.company, buyer.billing_address, buyer.shipping_address
    ):
        raise PosValidationError("invoice_buyer_required")

    if artwork_lines:
        if request.contract is None:
            raise PosValidationError("contract_required")
        validate_contract_input(request.contract, artwork_lines)

    plan = _plan_payment(db, request, terminal)

    tx = PosTransaction(
        location_id=location.id,
        terminal_id=terminal.id if terminal else None,
        status=CREATED,
        items=lines,
        gross_cents=totals.gross_cents,
        net_cents=totals.net_cents,
        vat_cents=totals.vat_cents,
        buyer_type=buyer.type,
        buyer_name=buyer.name,
        buyer_company=buyer.company,
        buyer_email=buyer.email,
        buyer_phone=buyer.phone,
        buyer_vat_id=buyer.vat_id,
        buyer_billing_address=buyer.billing_address,
        buyer_shipping_address=buyer.shipping_address,
        payment_provider=plan.provider,
        payment_method=plan.method,
        tse_provider=settings.pos_tse_provider,
        created_by_admin_id=actor_id,
    )
    db.add(tx)
    db.commit()
    db.refresh(tx)
    tx_id = tx.id
    logger.info(f"Checkout started: tx {tx_id}, {totals.gross_cents} cents via {plan.provider}")

    try:
        if artwork_lines:
            create_artwork_contract_draft(
                db, tx_id, buyer, artwork_lines, request.contract, totals.gross_cents
            )

        append_audit_log(
            db,
            actor_id,
            AuditAction.CREATE_TX,
            tx_id=tx_id,
            payload={
                "locationId": location.id,
                "terminalId": terminal.id if terminal else None,
                "itemCount": len(lines),
                "grossCents": totals.gross_cents,
                "paymentMethod": plan.method,
            },
        )

        await tse_start(db, tx_id, actor_id)

        provider = get_payment_provider(plan.provider, db)
        payment = await provider.create_payment(CreatePaymentInput(
            amount_cents=totals.gross_cents,
            currency=settings.pos_currency,
            reference_id=str(tx_id),
            terminal_ref=terminal.terminal_ref if terminal else None,
            metadata={
                "txId": tx_id,
                "locationId": location.id,
                "terminalId": terminal.id if terminal else None,
                "agentId": plan.agent_id,
                "terminalHost": terminal.host if terminal else None,
                "terminalPort": plan.terminal_port,
                "zvtPassword": terminal.zvt_password if terminal else None,
                "paymentMethod": plan.method,
            },
        ))

        # An agent report or webhook may already have settled the transaction;
        # the provider reference is stored regardless of its status.
        tx = get_transaction(db, tx_id)
        db.execute(
            update(PosTransaction)
            .where(PosTransaction.id == tx_id)
            .values(
                payment_provider_tx_id=payment.provider_tx_id,
                payment_raw_status={**as_record(tx.payment_raw_status), "createPayment": payment.raw},
            )
            .execution_options(synchronize_session=False)
        )
        db.commit()

        mapped = map_provider_status(payment.status)
        status = mapped if mapped in (FAILED, CANCELLED) else PAYMENT_PENDING
        result = db.execute(
            update(PosTransaction)
            .where(PosTransaction.id == tx_id, PosTransaction.status == CREATED)
            .values(status=status)
            .execution_options(synchronize_session=False)
        )
        db.commit()
        if result.rowcount == 0:
            logger.info(f"Transaction {tx_id} was updated while its payment was being created")
        elif status in (FAILED, CANCELLED):
            await tse_cancel(db, tx_id, actor_id, f"payment_{status}")
    except Exception:
        await _fail_started_checkout(db, tx_id, actor_id)
        raise

    tx = get_transaction(db, tx_id)
    return {
        "ok": True,
        "txId": tx_id,
        "status": tx.status,
        "provider": plan.provider,
        "providerTxId": tx.payment_provider_tx_id,
    }


async def get_checkout_status(db: Session, tx_id: int, actor_id: int) -> Dict[str, Any]:
    """Current checkout status, polling the provider when no push is expected.

    Bridge and external payments are never polled: the agent report or an
    admin action moves them. Other providers are polled at most once per
    ``POS_STATUS_POLL_MIN_INTERVAL_SECONDS`` while the transaction is pending.
    """
    tx = get_transaction(db, tx_id)
    response: Dict[str, Any] = {"ok": True, "provider": tx.payment_provider, "polledProvider": False}

    if tx.payment_provider in UNPOLLED_PROVIDERS or tx.status not in PENDING_STATUSES:
        return {**response, **transaction_summary(tx), "tse": tx.tse}
    if not tx.payment_provider_tx_id:
        raise PosConflictError("missing_provider_tx_id")

    raw = as_record(tx.payment_raw_status)
    last_webhook_status = raw.get("lastWebhookStatus")
    if raw.get("lastWebhookAt") and last_webhook_status and last_webhook_status != PAYMENT_PENDING:
        return {**response, **transaction_summary(tx), "tse": tx.tse, "lastWebhookStatus": last_webhook_status}

    now = utcnow()
    min_interval = timedelta(seconds=settings.pos_status_poll_min_interval_seconds)
    last_poll = as_utc(tx.last_provider_poll_at)
    if last_poll is not None and now - last_poll < min_interval:
        next_poll_ms = int((min_interval - (now - last_poll)).total_seconds() * 1000)
        return {
            **response, **transaction_summary(tx), "tse": tx.tse,
            "rateLimited": True, "nextPollInMs": next_poll_ms,
        }

    provider = get_payment_provider(tx.payment_provider, db)
    result = await provider.get_payment_status(tx.payment_provider_tx_id)
    outcome = await apply_payment_status(
        db,
        tx_id,
        map_provider_status(result.status),
        source="polling_fallback",
        raw_updates={"lastStatusPoll": result.raw, "lastStatusPolledAt": now.isoformat()},
        actor_id=actor_id,
        extra_values={"last_provider_poll_at": now},
    )

    tx = get_transaction(db, tx_id)
    return {
        **response,
        **transaction_summary(tx),
        "tse": tx.tse,
        "polledProvider": True,
        "changed": outcome.get("changed", False),
    }
