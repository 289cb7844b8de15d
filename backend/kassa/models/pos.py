"""POS transaction lifecycle models.

Transactions, bridge agents and their command queue, the hash-chained audit
log with its chain-tip counter, artwork contracts, the small catalog the
checkout snapshots prices from, admin settings and applied webhook events.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from sqlalchemy import (
    BigInteger,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    JSON,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from kassa.db.base import Base, TimestampMixin


class TransactionStatus(str, Enum):
    CREATED = "created"
    PAYMENT_PENDING = "payment_pending"
    PAID = "paid"
    FAILED = "failed"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"
    STORNO = "storno"


class BuyerType(str, Enum):
    B2C = "b2c"
    B2B = "b2b"


class ItemType(str, Enum):
    ARTWORK = "artwork"
    EVENT = "event"


class TerminalMode(str, Enum):
    """How a terminal is driven: by a bridge agent, a REST provider, or by hand."""

    BRIDGE = "bridge"
    CONNECTED = "connected"
    EXTERNAL = "external"


class CommandType(str, Enum):
    ZVT_PAYMENT = "zvt_payment"
    ZVT_ABORT = "zvt_abort"
    ZVT_REFUND = "zvt_refund"
    PING = "ping"


class CommandStatus(str, Enum):
    QUEUED = "queued"
    SENT = "sent"
    DONE = "done"
    FAILED = "failed"


class AuditAction(str, Enum):
    CREATE_TX = "CREATE_TX"
    CANCEL = "CANCEL"
    REFUND = "REFUND"
    STORNO = "STORNO"
    ISSUE_RECEIPT = "ISSUE_RECEIPT"
    ISSUE_INVOICE = "ISSUE_INVOICE"
    SIGN_CONTRACT = "SIGN_CONTRACT"
    TSE_START = "TSE_START"
    TSE_FINISH = "TSE_FINISH"
    PAYMENT_STATUS_UPDATE = "PAYMENT_STATUS_UPDATE"
    PAYMENT_MARK_PAID = "PAYMENT_MARK_PAID"
    INVOICE_SKIPPED_MISSING_BUYER = "INVOICE_SKIPPED_MISSING_BUYER"
    QUEUE_RECEIPT_EMAIL = "QUEUE_RECEIPT_EMAIL"
    UPDATE_SETTINGS = "UPDATE_SETTINGS"


VAT_RATES = (0, 7, 19)


class PosLocation(Base, TimestampMixin):
    """A physical point of sale (gallery, event venue)."""

    __tablename__ = "pos_locations"
    __table_args__ = {'extend_existing': True}

    id: Mapped[int] = mapped_column(primary_key=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    address: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)


class PosTerminal(Base, TimestampMixin):
    """A card terminal at a location."""

    __tablename__ = "pos_terminals"
    __table_args__ = {'extend_existing': True}

    id: Mapped[int] = mapped_column(primary_key=True)
    location_id: Mapped[int] = mapped_column(
        ForeignKey("pos_locations.id", ondelete="CASCADE"), nullable=False, index=True
    )
    provider: Mapped[str] = mapped_column(String(50), default="bridge", nullable=False)
    terminal_ref: Mapped[str] = mapped_column(String(100), nullable=False)
    label: Mapped[str] = mapped_column(String(200), nullable=False)
    status: Mapped[str] = mapped_column(String(30), default="ready", nullable=False)
    mode: Mapped[str] = mapped_column(String(20), default=TerminalMode.BRIDGE.value, nullable=False)
    # ZVT over TCP, reached by the bridge agent on the local network
    host: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    port: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    zvt_password: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    agent_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("pos_agents.id", ondelete="SET NULL"), nullable=True
    )
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)


class PosItem(Base, TimestampMixin):
    """Sellable catalog entry. Prices are VAT-inclusive integer cents."""

    __tablename__ = "pos_items"
    __table_args__ = {'extend_existing': True}

    id: Mapped[int] = mapped_column(primary_key=True)
    type: Mapped[str] = mapped_column(String(20), nullable=False)
    title: Mapped[str] = mapped_column(String(300), nullable=False)
    sku: Mapped[Optional[str]] = mapped_column(String(100), nullable=True, index=True)
    price_gross_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    vat_rate: Mapped[int] = mapped_column(Integer, default=19, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), default="EUR", nullable=False)
    artist_name: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)


class PosTransaction(Base, TimestampMixin):
    """A POS sale. Never deleted; mutated only through status transitions.

    ``items`` holds the checkout-time snapshot as a list of
    ``{itemId, qty, unitGrossCents, vatRate, titleSnapshot}``.
    """

    __tablename__ = "pos_transactions"
    __table_args__ = (
        Index("ix_pos_transactions_status_created", "status", "created_at"),
        {'extend_existing': True},
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    location_id: Mapped[int] = mapped_column(
        ForeignKey("pos_locations.id"), nullable=False, index=True
    )
    terminal_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("pos_terminals.id"), nullable=True, index=True
    )
    status: Mapped[str] = mapped_column(
        String(20), default=TransactionStatus.CREATED.value, nullable=False, index=True
    )
    items: Mapped[list] = mapped_column(JSON, nullable=False)

    gross_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    net_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    vat_cents: Mapped[int] = mapped_column(Integer, nullable=False)

    buyer_type: Mapped[str] = mapped_column(String(10), nullable=False)
    buyer_name: Mapped[str] = mapped_column(String(200), nullable=False)
    buyer_company: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    buyer_email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    buyer_phone: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    buyer_vat_id: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    buyer_billing_address: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    buyer_shipping_address: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)

    payment_provider: Mapped[str] = mapped_column(String(30), nullable=False)
    payment_provider_tx_id: Mapped[Optional[str]] = mapped_column(String(200), nullable=True, index=True)
    payment_method: Mapped[str] = mapped_column(String(30), nullable=False)
    payment_approved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    payment_external_ref: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    payment_raw_status: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    last_provider_poll_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    tse_provider: Mapped[Optional[str]] = mapped_column(String(30), nullable=True)
    tse_tx_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    tse_serial: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    tse_signature: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    tse_signature_counter: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    tse_log_time: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    tse_started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    tse_finished_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    tse_raw_payload: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)

    receipt_no: Mapped[Optional[str]] = mapped_column(String(30), nullable=True)
    receipt_pdf_url: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    receipt_request_email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    receipt_email_queued_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    invoice_no: Mapped[Optional[str]] = mapped_column(String(30), nullable=True)
    invoice_pdf_url: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    invoice_skipped_reason: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    contract_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    contract_pdf_url: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)

    # Set when a state change committed but its audit entry could not be appended
    needs_audit_reconciliation: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_by_admin_id: Mapped[int] = mapped_column(Integer, nullable=False)

    @property
    def totals(self) -> dict[str, int]:
        return {"grossCents": self.gross_cents, "netCents": self.net_cents, "vatCents": self.vat_cents}

    @property
    def buyer(self) -> dict[str, Any]:
        return {
            "type": self.buyer_type,
            "name": self.buyer_name,
            "company": self.buyer_company,
            "email": self.buyer_email,
            "phone": self.buyer_phone,
            "vatId": self.buyer_vat_id,
            "billingAddress": self.buyer_billing_address,
            "shippingAddress": self.buyer_shipping_address,
        }

    @property
    def payment(self) -> dict[str, Any]:
        return {
            "provider": self.payment_provider,
            "providerTxId": self.payment_provider_tx_id,
            "method": self.payment_method,
            "approvedAt": self.payment_approved_at,
            "externalRef": self.payment_external_ref,
            "rawStatusPayload": self.payment_raw_status,
        }

    @property
    def tse(self) -> dict[str, Any]:
        return {
            "provider": self.tse_provider,
            "txId": self.tse_tx_id,
            "serial": self.tse_serial,
            "signature": self.tse_signature,
            "signatureCounter": self.tse_signature_counter,
            "logTime": self.tse_log_time,
            "startedAt": self.tse_started_at,
            "finishedAt": self.tse_finished_at,
        }


class PosContract(Base, TimestampMixin):
    """Artwork sales contract signed at checkout."""

    __tablename__ = "pos_contracts"
    __table_args__ = {'extend_existing': True}

    id: Mapped[int] = mapped_column(primary_key=True)
    tx_id: Mapped[int] = mapped_column(
        ForeignKey("pos_transactions.id"), nullable=False, unique=True
    )
    status: Mapped[str] = mapped_column(String(20), default="draft", nullable=False)
    snapshot: Mapped[dict] = mapped_column(JSON, nullable=False)
    buyer_signature_key: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    pdf_url: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    signed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)


class PosAgent(Base, TimestampMixin):
    """An on-premise bridge process that drives terminals over ZVT."""

    __tablename__ = "pos_agents"
    __table_args__ = {'extend_existing': True}

    id: Mapped[int] = mapped_column(primary_key=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    agent_key: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    location_label: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    paired_terminal_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    last_seen_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True, index=True)


class PosCommand(Base, TimestampMixin):
    """Unit of work queued for a bridge agent: queued -> sent -> done|failed."""

    __tablename__ = "pos_commands"
    __table_args__ = (
        Index("ix_pos_commands_agent_status", "agent_id", "status", "id"),
        {'extend_existing': True},
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    agent_id: Mapped[int] = mapped_column(ForeignKey("pos_agents.id"), nullable=False)
    type: Mapped[str] = mapped_column(String(30), nullable=False)
    payload: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    status: Mapped[str] = mapped_column(String(20), default=CommandStatus.QUEUED.value, nullable=False)


class PosAuditLog(Base):
    """Append-only, hash-chained audit entry. Never updated or deleted."""

    __tablename__ = "pos_audit_logs"
    __table_args__ = {'extend_existing': True}

    id: Mapped[int] = mapped_column(primary_key=True)
    actor_id: Mapped[int] = mapped_column(Integer, nullable=False)
    action: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    tx_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True, index=True)
    payload: Mapped[dict] = mapped_column(JSON, nullable=False)
    prev_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    hash: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class PosWebhookEvent(Base):
    """Provider webhook deliveries already applied, one row per provider event id."""

    __tablename__ = "pos_webhook_events"
    __table_args__ = (
        UniqueConstraint("provider", "event_id", name="uq_pos_webhook_events_provider_event"),
        {'extend_existing': True},
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    provider: Mapped[str] = mapped_column(String(30), nullable=False)
    event_id: Mapped[str] = mapped_column(String(200), nullable=False)
    tx_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    event_type: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class PosSetting(Base):
    """Admin-editable POS setting, one JSON value per key."""

    __tablename__ = "pos_settings"
    __table_args__ = {'extend_existing': True}

    id: Mapped[int] = mapped_column(primary_key=True)
    key: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    value: Mapped[Optional[Any]] = mapped_column(JSON, nullable=True)
    updated_by_admin_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class PosCounter(Base):
    """Named counters: document numbers per year and the audit chain tip."""

    __tablename__ = "pos_counters"
    __table_args__ = (
        UniqueConstraint("scope", "year", name="uq_pos_counters_scope_year"),
        {'extend_existing': True},
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    scope: Mapped[str] = mapped_column(String(50), nullable=False)
    year: Mapped[int] = mapped_column(Integer, nullable=False)
    value: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_hash: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
