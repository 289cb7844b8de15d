"""Payment provider registry."""

from typing import Dict, Optional, Type

from sqlalchemy.orm import Session

from kassa.core.config import settings
from kassa.core.errors import PosValidationError
from kassa.services.pos.payments.base import TerminalPaymentProvider


class PaymentProviderRegistry:
    """Maps provider names to provider classes."""

    _providers: Dict[str, Type[TerminalPaymentProvider]] = {}

    @classmethod
    def register(cls, provider_class: Type[TerminalPaymentProvider]) -> Type[TerminalPaymentProvider]:
        """Class decorator: register a provider under its ``name``."""
        cls._providers[provider_class.name] = provider_class
        return provider_class

    @classmethod
    def get(cls, name: Optional[str] = None, db: Optional[Session] = None) -> TerminalPaymentProvider:
        normalized = (name or settings.pos_payment_provider or "").strip().lower()
        provider_class = cls._providers.get(normalized)
        if provider_class is None:
            raise PosValidationError(f"unknown_payment_provider:{normalized}")
        return provider_class(db=db)

    @classmethod
    def list_providers(cls) -> list[str]:
        return list(cls._providers.keys())


def get_payment_provider(name: Optional[str] = None, db: Optional[Session] = None) -> TerminalPaymentProvider:
    return PaymentProviderRegistry.get(name, db)
