"""Append-only, hash-chained POS audit log.

Every state-changing POS action appends one entry. Entries form a single
global chain: ``hash = sha256(prev_hash + payload_json + timestamp)`` and each
entry's ``prev_hash`` is the previous entry's ``hash``.

The chain tip lives in a ``pos_counters`` row. A writer reads the tip, computes
its hash, and moves the tip with ``UPDATE ... WHERE last_hash = <tip it read>``
in the same database transaction as the entry insert. If another writer moved
the tip first the update matches nothing, the transaction is rolled back and
the writer retries with a fresh read. No in-process lock is involved, so this
holds across several application processes.
"""

from __future__ import annotations

import hashlib
import json
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from kassa.core.config import settings
from kassa.core.errors import AuditAppendError
from kassa.db.base import as_utc, utcnow
from kassa.models.pos import AuditAction, PosAuditLog, PosCounter, PosTransaction

logger = logging.getLogger(__name__)

AUDIT_HASH_SCOPE = "audit_hash"
AUDIT_HASH_YEAR = 2000
GENESIS_HASH = ""


def canonical_json(payload: Any) -> str:
    """Stable JSON encoding used for hashing (sorted keys, no whitespace)."""
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str)


def format_timestamp(value: datetime) -> str:
    """UTC ISO-8601 with microseconds, e.g. ``2026-03-01T10:00:00.123456Z``."""
    return as_utc(value).replace(tzinfo=None).isoformat(timespec="microseconds") + "Z"


def compute_entry_hash(prev_hash: str, payload_json: str, timestamp: str) -> str:
    return hashlib.sha256(f"{prev_hash}{payload_json}{timestamp}".encode("utf-8")).hexdigest()


def _tip_filter():
    return (PosCounter.scope == AUDIT_HASH_SCOPE, PosCounter.year == AUDIT_HASH_YEAR)


def _ensure_chain_tip(db: Session) -> None:
    existing = db.execute(select(PosCounter.id).where(*_tip_filter())).scalar_one_or_none()
    if existing is not None:
        return
    try:
        db.add(PosCounter(scope=AUDIT_HASH_SCOPE, year=AUDIT_HASH_YEAR, value=0, last_hash=GENESIS_HASH))
        db.commit()
    except IntegrityError:
        # Another writer created the tip row first
        db.rollback()


def _read_chain_tip(db: Session) -> str:
    tip = db.execute(select(PosCounter.last_hash).where(*_tip_filter())).scalar_one_or_none()
    return tip or GENESIS_HASH


def _advance_chain_tip(db: Session, prev_hash: str, new_hash: str) -> bool:
    result = db.execute(
        update(PosCounter)
        .where(*_tip_filter(), PosCounter.last_hash == prev_hash)
        .values(last_hash=new_hash, value=PosCounter.value + 1)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def _flag_for_reconciliation(db: Session, tx_id: int) -> None:
    """Best effort: mark a transaction whose audit entry is missing."""
    try:
        db.execute(
            update(PosTransaction)
            .where(PosTransaction.id == tx_id)
            .values(needs_audit_reconciliation=True)
            .execution_options(synchronize_session=False)
        )
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        logger.exception(f"Could not flag transaction {tx_id} for audit reconciliation")


def append_audit_log(
    db: Session,
    actor_id: int,
    action: AuditAction | str,
    tx_id: Optional[int] = None,
    payload: Optional[dict[str, Any]] = None,
) -> PosAuditLog:
    """Append one entry to the global chain.

    Must be called after the audited state change has been committed. Raises
    ``AuditAppendError`` when the tip could not be moved within
    ``POS_AUDIT_MAX_ATTEMPTS``; the transaction is then flagged with
    ``needs_audit_reconciliation`` and the state change stays in place.
    """
    action_value = action.value if isinstance(action, AuditAction) else AuditAction(action).value
    payload_json = canonical_json(payload if payload is not None else {})
    stored_payload = json.loads(payload_json)
    max_attempts = max(1, settings.pos_audit_max_attempts)

    _ensure_chain_tip(db)

    for attempt in range(1, max_attempts + 1):
        prev_hash = _read_chain_tip(db)
        created_at = utcnow()
        entry_hash = compute_entry_hash(prev_hash, payload_json, format_timestamp(created_at))

        if not _advance_chain_tip(db, prev_hash, entry_hash):
            db.rollback()
            logger.debug(f"Audit chain tip moved during append of {action_value} (attempt {attempt})")
            continue

        entry = PosAuditLog(
            actor_id=actor_id,
            action=action_value,
            tx_id=tx_id,
            payload=stored_payload,
            prev_hash=prev_hash,
            hash=entry_hash,
            created_at=created_at,
        )
        db.add(entry)
        db.commit()
        return entry

    logger.error(f"Failed to append {action_value} audit entry for tx {tx_id} after {max_attempts} attempts")
    if tx_id is not None:
        _flag_for_reconciliation(db, tx_id)
    raise AuditAppendError(max_attempts)


@dataclass
class ChainVerification:
    ok: bool
    count: int
    broken_at_id: Optional[int] = None
    reason: Optional[str] = None

    def as_dict(self) -> dict[str, Any]:
        return {"ok": self.ok, "count": self.count, "brokenAtId": self.broken_at_id, "reason": self.reason}


def verify_audit_chain(db: Session) -> ChainVerification:
    """Walk the whole chain and recompute every hash."""
    expected_prev = GENESIS_HASH
    count = 0
    for entry in db.execute(select(PosAuditLog).order_by(PosAuditLog.id)).scalars():
        count += 1
        if entry.prev_hash != expected_prev:
            return ChainVerification(ok=False, count=count, broken_at_id=entry.id, reason="prev_hash_mismatch")
        recomputed = compute_entry_hash(
            entry.prev_hash, canonical_json(entry.payload), format_timestamp(entry.created_at)
        )
        if recomputed != entry.hash:
            return ChainVerification(ok=False, count=count, broken_at_id=entry.id, reason="hash_mismatch")
        expected_prev = entry.hash

    tip = _read_chain_tip(db)
    if tip != expected_prev:
        return ChainVerification(ok=False, count=count, reason="tip_mismatch")
    return ChainVerification(ok=True, count=count)


def list_audit_entries(db: Session, tx_id: Optional[int] = None, limit: int = 100) -> list[PosAuditLog]:
    query = select(PosAuditLog).order_by(PosAuditLog.id.desc()).limit(limit)
    if tx_id is not None:
        query = query.where(PosAuditLog.tx_id == tx_id)
    return list(db.execute(query).scalars())


def serialize_audit_entry(entry: PosAuditLog) -> dict[str, Any]:
    return {
        "id": entry.id,
        "actorId": entry.actor_id,
        "action": entry.action,
        "txId": entry.tx_id,
        "payload": entry.payload,
        "prevHash": entry.prev_hash,
        "hash": entry.hash,
        "createdAt": format_timestamp(entry.created_at),
    }
