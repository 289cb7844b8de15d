"""Transaction status state machine and payment status reconciliation.

All entry points that receive a payment status from outside (bridge agent
reports, provider polling, manual actions) go through
``reconcile_payment_status`` so the absorbing-state rules live in one place.
"""

from typing import Any, Optional

from kassa.models.pos import TransactionStatus

CREATED = TransactionStatus.CREATED.value
PAYMENT_PENDING = TransactionStatus.PAYMENT_PENDING.value
PAID = TransactionStatus.PAID.value
FAILED = TransactionStatus.FAILED.value
CANCELLED = TransactionStatus.CANCELLED.value
REFUNDED = TransactionStatus.REFUNDED.value
STORNO = TransactionStatus.STORNO.value

# Normalized statuses a payment provider may report
PAYMENT_STATUSES = frozenset({PAID, FAILED, CANCELLED, REFUNDED, PAYMENT_PENDING})

# No transition leaves these
ABSORBING_STATUSES = frozenset({REFUNDED, STORNO})

PENDING_STATUSES = frozenset({CREATED, PAYMENT_PENDING})

ALLOWED_TRANSITIONS: dict[str, frozenset[str]] = {
    CREATED: frozenset({PAYMENT_PENDING, PAID, FAILED, CANCELLED, STORNO}),
    PAYMENT_PENDING: frozenset({PAID, FAILED, CANCELLED, STORNO}),
    PAID: frozenset({REFUNDED, STORNO}),
    FAILED: frozenset({STORNO}),
    CANCELLED: frozenset({STORNO}),
    REFUNDED: frozenset(),
    STORNO: frozenset(),
}


def is_pending_status(status: str) -> bool:
    return status in PENDING_STATUSES


def can_transition(before: str, after: str) -> bool:
    """True when ``before -> after`` is a legal change of status."""
    return after in ALLOWED_TRANSITIONS.get(before, frozenset())


def normalize_payment_status(value: Optional[str]) -> str:
    """Coerce an already-normalized provider status; unknown values stay pending."""
    if value in PAYMENT_STATUSES:
        return value
    return PAYMENT_PENDING


def reconcile_payment_status(current: str, incoming: Optional[str]) -> str:
    """Decide the next transaction status when a payment status arrives.

    - ``storno`` and ``refunded`` never change.
    - ``paid`` only advances to ``refunded``; a terminal cannot un-pay.
    - ``failed`` and ``cancelled`` ignore payment feeds; reversal is a storno.
    - otherwise the incoming status is adopted, unknown values meaning pending.
    """
    incoming_status = normalize_payment_status(incoming)

    if current in ABSORBING_STATUSES:
        return current

    if current == PAID:
        return REFUNDED if incoming_status == REFUNDED else PAID

    if current in (FAILED, CANCELLED):
        return current

    # A pending transaction cannot jump straight to refunded
    if incoming_status == REFUNDED:
        return current

    return incoming_status


def as_record(value: Any) -> dict:
    return value if isinstance(value, dict) else {}
