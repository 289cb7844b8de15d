"""TSE lifecycle for POS transactions.

Per transaction the fiscal state moves ``not started -> started -> finished``
(signature set) or ``started -> cancelled`` (finished_at set, no signature).
``tse_start``, ``tse_finish`` and ``tse_cancel`` are idempotent: each checks the
persisted state first, and each write is conditioned on the state it expects,
so concurrent callers produce one transition and one audit entry.
"""

import logging
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple, TypeVar

from sqlalchemy import update
from sqlalchemy.orm import Session

from kassa.core.config import settings
from kassa.db.base import utcnow
from kassa.models.pos import AuditAction, PosTransaction
from kassa.services.pos.audit import append_audit_log
from kassa.services.pos.tse.base import TseContext, TseError, TseProvider
from kassa.services.pos.tse.fiskaly import FiskalySignDeProvider
from kassa.services.pos.tse.noop import NoopTseProvider

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Error kinds for which a configured noop fallback may take over
SOFT_ERROR_KINDS = frozenset({"not_configured", "network", "auth_failed", "api_error"})


class TseProviderRegistry:
    """Registry of TSE provider classes by name."""

    _providers: Dict[str, type] = {}

    @classmethod
    def register(cls, name: str, provider_class: type) -> None:
        cls._providers[name] = provider_class

    @classmethod
    def get(cls, name: Optional[str] = None) -> TseProvider:
        """Resolve a provider; unknown or empty names use the configured default."""
        normalized = (name or settings.pos_tse_provider or "noop").strip().lower()
        provider_class = cls._providers.get(normalized) or cls._providers["noop"]
        return provider_class()

    @classmethod
    def list_providers(cls) -> list[str]:
        return list(cls._providers.keys())


TseProviderRegistry.register("noop", NoopTseProvider)
TseProviderRegistry.register("fiskaly", FiskalySignDeProvider)


def get_tse_provider(name: Optional[str] = None) -> TseProvider:
    return TseProviderRegistry.get(name)


def _fallback_allowed() -> bool:
    return settings.pos_tse_allow_noop_fallback and not settings.pos_tse_strict


def _compact(message: str, max_length: int = 700) -> str:
    compact = " ".join(message.split())
    return compact if len(compact) <= max_length else f"{compact[:max_length]}..."


async def _run_with_fallback(
    provider: TseProvider,
    phase: str,
    operation: Callable[[TseProvider], Awaitable[T]],
) -> Tuple[TseProvider, T, Optional[Dict[str, Any]]]:
    """Run a provider call; on a soft error optionally retry it on the noop provider."""
    try:
        return provider, await operation(provider), None
    except TseError as e:
        if provider.name != NoopTseProvider.name and _fallback_allowed() and e.kind in SOFT_ERROR_KINDS:
            logger.warning(f"TSE {phase} on {provider.name} failed ({e.code}); falling back to noop")
            noop = NoopTseProvider()
            fallback = {"from": provider.name, "reason": e.code, "at": utcnow().isoformat()}
            return noop, await operation(noop), fallback
        raise TseError(
            f"tse_{phase}_failed:{provider.name}:{_compact(e.code)}",
            provider=provider.name,
            kind=e.kind,
        ) from e


def _reload(db: Session, tx_id: int) -> Optional[PosTransaction]:
    return db.get(PosTransaction, tx_id, populate_existing=True)


def _context(tx: PosTransaction) -> TseContext:
    return TseContext(
        tx_id=str(tx.id),
        amount_cents=tx.gross_cents or 0,
        currency=settings.pos_currency,
        tse_tx_id=tx.tse_tx_id,
        serial=tx.tse_serial,
        existing_signature=tx.tse_signature,
        raw_payload=dict(tx.tse_raw_payload or {}),
    )


async def tse_start(db: Session, tx_id: int, actor_id: int) -> bool:
    """Open the fiscal transaction. Returns False when nothing had to be done."""
    tx = _reload(db, tx_id)
    if tx is None:
        return False
    if tx.tse_started_at is not None and tx.tse_tx_id:
        return False

    ctx = _context(tx)
    provider, result, fallback = await _run_with_fallback(
        get_tse_provider(tx.tse_provider), "start", lambda p: p.start_transaction(ctx)
    )

    started_at = result.started_at or utcnow()
    raw_payload = {**ctx.raw_payload, "start": result.raw}
    if fallback:
        raw_payload["fallback"] = fallback

    outcome = db.execute(
        update(PosTransaction)
        .where(PosTransaction.id == tx_id, PosTransaction.tse_started_at.is_(None))
        .values(
            tse_provider=provider.name,
            tse_tx_id=result.tse_tx_id,
            tse_serial=result.serial,
            tse_started_at=started_at,
            tse_raw_payload=raw_payload,
        )
        .execution_options(synchronize_session=False)
    )
    db.commit()
    if outcome.rowcount == 0:
        logger.info(f"TSE for transaction {tx_id} was started concurrently")
        return False

    payload: Dict[str, Any] = {
        "provider": provider.name,
        "tseTxId": result.tse_tx_id,
        "serial": result.serial,
        "startedAt": started_at.isoformat(),
    }
    if fallback:
        payload.update({"fallbackFrom": fallback["from"], "fallbackReason": fallback["reason"]})
    append_audit_log(db, actor_id, AuditAction.TSE_START, tx_id=tx_id, payload=payload)
    return True


async def tse_finish(db: Session, tx_id: int, actor_id: int) -> bool:
    """Finish and sign. No-op unless started, unsigned and not cancelled."""
    tx = _reload(db, tx_id)
    if tx is None or tx.tse_started_at is None:
        return False
    if tx.tse_signature or tx.tse_finished_at is not None:
        return False

    ctx = _context(tx)
    provider, result, fallback = await _run_with_fallback(
        get_tse_provider(tx.tse_provider), "finish", lambda p: p.finish_transaction(ctx)
    )

    finished_at = result.finished_at or utcnow()
    raw_payload = {**ctx.raw_payload, "finish": result.raw}
    if fallback:
        raw_payload["fallback"] = fallback

    outcome = db.execute(
        update(PosTransaction)
        .where(
            PosTransaction.id == tx_id,
            PosTransaction.tse_signature.is_(None),
            PosTransaction.tse_finished_at.is_(None),
        )
        .values(
            tse_provider=provider.name,
            tse_signature=result.signature,
            tse_signature_counter=result.signature_counter,
            tse_log_time=result.log_time.isoformat(),
            tse_finished_at=finished_at,
            tse_raw_payload=raw_payload,
        )
        .execution_options(synchronize_session=False)
    )
    db.commit()
    if outcome.rowcount == 0:
        logger.info(f"TSE for transaction {tx_id} was finished concurrently")
        return False

    payload: Dict[str, Any] = {
        "provider": provider.name,
        "signature": result.signature,
        "signatureCounter": result.signature_counter,
        "logTime": result.log_time.isoformat(),
        "finishedAt": finished_at.isoformat(),
    }
    if fallback:
        payload.update({"fallbackFrom": fallback["from"], "fallbackReason": fallback["reason"]})
    append_audit_log(db, actor_id, AuditAction.TSE_FINISH, tx_id=tx_id, payload=payload)
    return True


async def tse_cancel(db: Session, tx_id: int, actor_id: int, reason: str = "tse_cancel") -> bool:
    """Cancel an open fiscal transaction. No-op unless started and not yet finished."""
    tx = _reload(db, tx_id)
    if tx is None or tx.tse_started_at is None or tx.tse_finished_at is not None:
        return False

    ctx = _context(tx)
    provider, _, fallback = await _run_with_fallback(
        get_tse_provider(tx.tse_provider), "cancel", lambda p: p.cancel_transaction(ctx)
    )

    finished_at = utcnow()
    raw_payload = {**ctx.raw_payload, "cancel": {"cancelledAt": finished_at.isoformat(), "reason": reason}}
    if fallback:
        raw_payload["fallback"] = fallback

    outcome = db.execute(
        update(PosTransaction)
        .where(PosTransaction.id == tx_id, PosTransaction.tse_finished_at.is_(None))
        .values(tse_provider=provider.name, tse_finished_at=finished_at, tse_raw_payload=raw_payload)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    if outcome.rowcount == 0:
        logger.info(f"TSE for transaction {tx_id} was closed concurrently")
        return False

    payload: Dict[str, Any] = {
        "reason": reason,
        "provider": provider.name,
        "finishedAt": finished_at.isoformat(),
    }
    if fallback:
        payload.update({"fallbackFrom": fallback["from"], "fallbackReason": fallback["reason"]})
    append_audit_log(db, actor_id, AuditAction.CANCEL, tx_id=tx_id, payload=payload)
    return True


async def get_tse_health() -> Dict[str, Any]:
    provider = get_tse_provider()
    try:
        return await provider.health()
    except TseError as e:
        return {"ok": False, "provider": provider.name, "error": e.code}
