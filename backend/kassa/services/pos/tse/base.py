"""Abstract base class for fiscal signing (TSE) providers."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional

from kassa.core.errors import ExternalServiceError


@dataclass
class TseContext:
    """What a provider needs to know about a transaction."""

    tx_id: str
    amount_cents: int
    currency: str = "EUR"
    tse_tx_id: Optional[str] = None
    serial: Optional[str] = None
    existing_signature: Optional[str] = None
    raw_payload: Dict[str, Any] = field(default_factory=dict)


@dataclass
class TseStartResult:
    tse_tx_id: str
    serial: str
    started_at: Optional[datetime] = None
    raw: Any = None


@dataclass
class TseFinishResult:
    signature: str
    signature_counter: int
    log_time: datetime
    finished_at: Optional[datetime] = None
    raw: Any = None


class TseError(ExternalServiceError):
    """Raised by TSE providers. ``kind`` tells configuration and transient errors apart."""


class TseProvider(ABC):
    """Base interface for fiscal signing integrations."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Return the provider name stored on transactions (e.g. 'fiskaly')."""

    @abstractmethod
    async def start_transaction(self, ctx: TseContext) -> TseStartResult:
        """Open a fiscal transaction."""

    @abstractmethod
    async def finish_transaction(self, ctx: TseContext) -> TseFinishResult:
        """Close a fiscal transaction and return its signature."""

    @abstractmethod
    async def cancel_transaction(self, ctx: TseContext) -> None:
        """Cancel an open fiscal transaction."""

    async def health(self) -> Dict[str, Any]:
        """Check connectivity to the signing service."""
        return {"ok": True, "provider": self.name}
