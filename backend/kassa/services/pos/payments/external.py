"""Pseudo-provider for cash and out-of-band terminals.

Nothing is sent anywhere: the payment stays pending until an admin marks the
transaction paid.
"""

from typing import Optional

from kassa.services.pos.payment_status import PAYMENT_PENDING
from kassa.services.pos.payments.base import (
    CreatePaymentInput,
    PaymentResult,
    PaymentStatusResult,
    TerminalPaymentProvider,
)
from kassa.services.pos.payments.registry import PaymentProviderRegistry


@PaymentProviderRegistry.register
class ExternalPaymentProvider(TerminalPaymentProvider):
    name = "external"

    async def create_payment(self, payment: CreatePaymentInput) -> PaymentResult:
        return PaymentResult(
            provider_tx_id=f"external:{payment.reference_id}",
            status=PAYMENT_PENDING,
            raw={"provider": "external", "method": payment.metadata.get("paymentMethod")},
        )

    async def get_payment_status(self, provider_tx_id: str) -> PaymentStatusResult:
        self._require_provider_tx_id(provider_tx_id)
        return PaymentStatusResult(status=PAYMENT_PENDING, raw={"provider": "external"})

    async def cancel_payment(self, provider_tx_id: str) -> None:
        self._require_provider_tx_id(provider_tx_id)

    async def refund_payment(self, provider_tx_id: str, amount_cents: Optional[int] = None) -> None:
        # Money goes back over the counter; only the bookkeeping changes.
        self._require_provider_tx_id(provider_tx_id)
