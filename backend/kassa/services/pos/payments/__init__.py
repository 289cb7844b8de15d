"""Terminal payment providers."""

from kassa.services.pos.payments.base import (
    CreatePaymentInput,
    PaymentProviderError,
    PaymentResult,
    PaymentStatusResult,
    TerminalPaymentProvider,
    map_provider_status,
)
from kassa.services.pos.payments.bridge import BridgePaymentProvider
from kassa.services.pos.payments.external import ExternalPaymentProvider
from kassa.services.pos.payments.mock import MockPaymentProvider, reset_mock_payments
from kassa.services.pos.payments.registry import PaymentProviderRegistry, get_payment_provider
from kassa.services.pos.payments.verifone import VerifonePaymentProvider, verify_webhook_signature

__all__ = [
    "BridgePaymentProvider",
    "CreatePaymentInput",
    "ExternalPaymentProvider",
    "MockPaymentProvider",
    "PaymentProviderError",
    "PaymentProviderRegistry",
    "PaymentResult",
    "PaymentStatusResult",
    "TerminalPaymentProvider",
    "VerifonePaymentProvider",
    "get_payment_provider",
    "map_provider_status",
    "reset_mock_payments",
]
