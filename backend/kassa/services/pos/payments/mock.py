"""In-memory terminal that approves every payment two seconds after it starts."""

import secrets
import time
from typing import Dict, Optional

from kassa.services.pos.payment_status import CANCELLED, FAILED, PAID, PAYMENT_PENDING, REFUNDED
from kassa.services.pos.payments.base import (
    CreatePaymentInput,
    PaymentResult,
    PaymentStatusResult,
    TerminalPaymentProvider,
)
from kassa.services.pos.payments.registry import PaymentProviderRegistry

MOCK_PAYMENT_DELAY_SECONDS = 2.0

# provider_tx_id -> (status, created_at epoch seconds)
_mock_state: Dict[str, tuple[str, float]] = {}


def reset_mock_payments() -> None:
    _mock_state.clear()


def _created_at_from_id(provider_tx_id: str) -> float:
    parts = provider_tx_id.split("_")
    try:
        return int(parts[1]) / 1000
    except (IndexError, ValueError):
        return time.time()


@PaymentProviderRegistry.register
class MockPaymentProvider(TerminalPaymentProvider):
    name = "mock"

    async def create_payment(self, payment: CreatePaymentInput) -> PaymentResult:
        created_at = time.time()
        provider_tx_id = f"mock_{int(created_at * 1000)}_{secrets.token_hex(4)}"
        _mock_state[provider_tx_id] = (PAYMENT_PENDING, created_at)
        return PaymentResult(
            provider_tx_id=provider_tx_id,
            status=PAYMENT_PENDING,
            raw={"provider": "mock", "referenceId": payment.reference_id},
        )

    async def get_payment_status(self, provider_tx_id: str) -> PaymentStatusResult:
        provider_tx_id = self._require_provider_tx_id(provider_tx_id)
        status, created_at = _mock_state.get(provider_tx_id, (PAYMENT_PENDING, _created_at_from_id(provider_tx_id)))
        if status in (CANCELLED, FAILED, REFUNDED):
            return PaymentStatusResult(status=status, raw={"provider": "mock", "status": status})

        status = PAID if time.time() - created_at >= MOCK_PAYMENT_DELAY_SECONDS else PAYMENT_PENDING
        _mock_state[provider_tx_id] = (status, created_at)
        return PaymentStatusResult(status=status, raw={"provider": "mock", "status": status})

    async def cancel_payment(self, provider_tx_id: str) -> None:
        provider_tx_id = self._require_provider_tx_id(provider_tx_id)
        _, created_at = _mock_state.get(provider_tx_id, (PAYMENT_PENDING, time.time()))
        _mock_state[provider_tx_id] = (CANCELLED, created_at)

    async def refund_payment(self, provider_tx_id: str, amount_cents: Optional[int] = None) -> None:
        provider_tx_id = self._require_provider_tx_id(provider_tx_id)
        _, created_at = _mock_state.get(provider_tx_id, (PAYMENT_PENDING, time.time()))
        _mock_state[provider_tx_id] = (REFUNDED, created_at)
