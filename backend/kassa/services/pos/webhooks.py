"""Verifone webhook ingestion.

Webhooks are an optional push channel next to status polling. Events are
deduplicated by event id through a unique row per delivered event and
then reconciled through the same path as polls and agent reports.
"""

import json
import logging
from typing import Any, Dict, Optional

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from kassa.core.config import settings
from kassa.core.errors import PosAuthError, PosError, PosValidationError
from kassa.db.base import utcnow
from kassa.models.pos import PosTransaction, PosWebhookEvent
from kassa.services.pos.actions import apply_payment_status
from kassa.services.pos.payment_status import (
    CANCELLED,
    FAILED,
    PAID,
    PAYMENT_PENDING,
    REFUNDED,
)
from kassa.services.pos.payments.verifone import dig_path, extract_provider_tx_id, verify_webhook_signature

logger = logging.getLogger(__name__)

PROVIDER = "verifone"

EVENT_ID_PATHS = (
    ("eventId",),
    ("event_id",),
    ("webhookId",),
    ("id",),
    ("data", "eventId"),
    ("data", "event_id"),
)

STATUS_FIELDS = (
    ("status",),
    ("eventType",),
    ("event_type",),
    ("type",),
    ("data", "status"),
    ("payment", "status"),
    ("transaction", "status"),
)

AMOUNT_PATHS = (
    ("amount", "value"),
    ("amountCents",),
    ("amount",),
    ("data", "amount", "value"),
    ("payment", "amount", "value"),
)

EVENT_TYPE_PATHS = (
    ("eventType",),
    ("event_type",),
    ("type",),
)

OCCURRED_AT_PATHS = (
    ("occurredAt",),
    ("createdAt",),
    ("timestamp",),
    ("data", "occurredAt"),
)

# Checked in order: a "refund failed" event is a refund event, not a failure
STATUS_MARKERS = (
    (REFUNDED, ("refund",)),
    (CANCELLED, ("cancel", "void", "abort")),
    (FAILED, ("fail", "declin", "reject", "error")),
    (PAID, ("paid", "approve", "captur", "complet", "success", "settl")),
)


class WebhookNotConfiguredError(PosError):
    status_code = 503


def _first(payload: Any, paths) -> Any:
    for path in paths:
        value = dig_path(payload, path)
        if value is not None and value != "":
            return value
    return None


def webhook_status(payload: Dict[str, Any]) -> str:
    """Map a webhook body to a normalized status by keyword."""
    text = " ".join(
        str(value).lower() for value in (dig_path(payload, path) for path in STATUS_FIELDS) if isinstance(value, str)
    )
    for status, markers in STATUS_MARKERS:
        if any(marker in text for marker in markers):
            return status
    return PAYMENT_PENDING


def webhook_event_id(payload: Dict[str, Any]) -> Optional[str]:
    value = _first(payload, EVENT_ID_PATHS)
    if isinstance(value, (str, int)) and not isinstance(value, bool):
        return str(value).strip() or None
    return None


def webhook_amount_cents(payload: Dict[str, Any]) -> Optional[int]:
    value = _first(payload, AMOUNT_PATHS)
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    return None


async def handle_verifone_webhook(db: Session, raw_body: bytes, signature: Optional[str]) -> Dict[str, Any]:
    """Verify, deduplicate and apply one Verifone webhook delivery."""
    if not settings.verifone_webhook_secret:
        raise WebhookNotConfiguredError("webhook_not_configured")
    if not verify_webhook_signature(raw_body, signature):
        raise PosAuthError("invalid_signature")

    try:
        payload = json.loads(raw_body.decode("utf-8") or "null")
    except (UnicodeDecodeError, ValueError):
        raise PosValidationError("invalid_json")
    if not isinstance(payload, dict):
        raise PosValidationError("invalid_payload")

    provider_tx_id = extract_provider_tx_id(payload)
    if not provider_tx_id:
        raise PosValidationError("missing_provider_tx_id")

    tx = db.execute(
        select(PosTransaction).where(
            PosTransaction.payment_provider == PROVIDER,
            PosTransaction.payment_provider_tx_id == provider_tx_id,
        )
    ).scalar_one_or_none()
    if tx is None:
        logger.info(f"Verifone webhook for unknown payment {provider_tx_id} ignored")
        return {"ok": True, "ignored": "transaction_not_found"}

    event_id = webhook_event_id(payload)
    if event_id and not _record_event(db, event_id, tx.id, payload):
        tx = db.get(PosTransaction, tx.id, populate_existing=True)
        return {"ok": True, "txId": tx.id, "status": tx.status, "duplicate": True}

    status = webhook_status(payload)
    try:
        outcome = await apply_payment_status(
            db,
            tx.id,
            status,
            source="verifone_webhook",
            raw_updates={
                "lastWebhook": payload,
                "lastWebhookAt": utcnow().isoformat(),
                "lastWebhookEventId": event_id,
                "lastWebhookStatus": status,
                "lastWebhookAmountCents": webhook_amount_cents(payload),
                "lastWebhookOccurredAt": _first(payload, OCCURRED_AT_PATHS),
            },
            audit_details={"eventId": event_id},
        )
    except Exception:
        # Let the provider's redelivery apply the event
        if event_id:
            _forget_event(db, event_id)
        raise
    return {"ok": True, "txId": tx.id, "status": outcome["status"], "changed": outcome["changed"]}


def _record_event(db: Session, event_id: str, tx_id: int, payload: Dict[str, Any]) -> bool:
    """Insert the delivery's event id; False when another delivery already holds it."""
    event_type = _first(payload, EVENT_TYPE_PATHS)
    db.add(PosWebhookEvent(
        provider=PROVIDER,
        event_id=event_id[:200],
        tx_id=tx_id,
        event_type=str(event_type)[:100] if isinstance(event_type, str) else None,
        created_at=utcnow(),
    ))
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        logger.info(f"Duplicate Verifone webhook event {event_id} for transaction {tx_id}")
        return False
    return True


def _forget_event(db: Session, event_id: str) -> None:
    db.rollback()
    db.execute(
        delete(PosWebhookEvent).where(
            PosWebhookEvent.provider == PROVIDER,
            PosWebhookEvent.event_id == event_id[:200],
        )
    )
    db.commit()
