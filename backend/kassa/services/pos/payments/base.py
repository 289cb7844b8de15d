"""Abstract base class for terminal payment providers."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from kassa.core.errors import ExternalServiceError
from kassa.services.pos.payment_status import (
    CANCELLED,
    FAILED,
    PAID,
    PAYMENT_PENDING,
    REFUNDED,
)

PAID_WORDS = frozenset({"paid", "approved", "captured", "completed", "success", "successful", "settled"})
FAILED_WORDS = frozenset({"failed", "declined", "error", "rejected"})
CANCELLED_WORDS = frozenset({"cancelled", "canceled", "voided", "aborted"})
REFUNDED_WORDS = frozenset({"refunded", "refund", "partially_refunded", "partial_refund"})


def map_provider_status(value: Any) -> str:
    """Normalize provider wording into paid/failed/cancelled/refunded/payment_pending."""
    raw = str(value or "").strip().lower()
    if raw in PAID_WORDS:
        return PAID
    if raw in FAILED_WORDS:
        return FAILED
    if raw in CANCELLED_WORDS:
        return CANCELLED
    if raw in REFUNDED_WORDS:
        return REFUNDED
    return PAYMENT_PENDING


@dataclass
class CreatePaymentInput:
    amount_cents: int
    currency: str
    reference_id: str
    terminal_ref: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class PaymentResult:
    provider_tx_id: str
    status: str
    raw: Any = None


@dataclass
class PaymentStatusResult:
    status: str
    raw: Any = None


class PaymentProviderError(ExternalServiceError):
    """Raised by terminal payment providers."""


class TerminalPaymentProvider(ABC):
    """Base interface for card terminal payment integrations.

    ``create_payment`` passes ``reference_id`` as the idempotency key so a
    retried request cannot charge twice. ``cancel_payment`` and
    ``refund_payment`` need the provider transaction id returned by
    ``create_payment``; calling them without one is a programming error.
    """

    name: str = ""

    def __init__(self, db: Optional[Session] = None):
        self.db = db

    @abstractmethod
    async def create_payment(self, payment: CreatePaymentInput) -> PaymentResult:
        """Start a payment on the terminal."""

    @abstractmethod
    async def get_payment_status(self, provider_tx_id: str) -> PaymentStatusResult:
        """Fetch the current normalized status of a payment."""

    @abstractmethod
    async def cancel_payment(self, provider_tx_id: str) -> None:
        """Abort or void a payment."""

    @abstractmethod
    async def refund_payment(self, provider_tx_id: str, amount_cents: Optional[int] = None) -> None:
        """Refund a payment in full or in part."""

    @staticmethod
    def _require_provider_tx_id(provider_tx_id: Optional[str]) -> str:
        if not provider_tx_id or not str(provider_tx_id).strip():
            raise ValueError("provider_tx_id is required")
        return str(provider_tx_id).strip()
