"""SQLAlchemy models."""

from kassa.models.pos import (
    AuditAction,
    BuyerType,
    CommandStatus,
    CommandType,
    ItemType,
    PosAgent,
    PosAuditLog,
    PosCommand,
    PosContract,
    PosCounter,
    PosItem,
    PosLocation,
    PosSetting,
    PosTerminal,
    PosTransaction,
    PosWebhookEvent,
    TerminalMode,
    TransactionStatus,
)
