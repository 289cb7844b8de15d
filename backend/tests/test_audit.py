"""Tests for the hash-chained audit log."""

import threading

import pytest
from sqlalchemy import create_engine, select, update
from sqlalchemy.orm import sessionmaker

from kassa.core.config import settings
from kassa.core.errors import AuditAppendError
from kassa.db.base import Base
from kassa.models.pos import AuditAction, PosAuditLog, PosTransaction
from kassa.services.pos import audit
from kassa.services.pos.audit import (
    GENESIS_HASH,
    append_audit_log,
    canonical_json,
    compute_entry_hash,
    format_timestamp,
    verify_audit_chain,
)


class TestAppend:
    def test_first_entry_starts_from_genesis(self, db_session):
        """The first entry links to the empty genesis hash."""
        entry = append_audit_log(db_session, 1, AuditAction.CREATE_TX, tx_id=None, payload={"a": 1})
        assert entry.prev_hash == GENESIS_HASH
        assert entry.hash == compute_entry_hash("", canonical_json({"a": 1}), format_timestamp(entry.created_at))

    def test_entries_link_to_predecessor(self, db_session):
        first = append_audit_log(db_session, 1, AuditAction.CREATE_TX, payload={"n": 1})
        second = append_audit_log(db_session, 1, "STORNO", payload={"n": 2})
        assert second.prev_hash == first.hash
        assert second.action == "STORNO"

    def test_unknown_action_rejected(self, db_session):
        with pytest.raises(ValueError):
            append_audit_log(db_session, 1, "DELETE_EVERYTHING")

    def test_canonical_json_is_key_order_independent(self):
        assert canonical_json({"b": 1, "a": [1, 2]}) == canonical_json({"a": [1, 2], "b": 1})


class TestVerify:
    def test_empty_chain_is_valid(self, db_session):
        assert verify_audit_chain(db_session).as_dict() == {
            "ok": True, "count": 0, "brokenAtId": None, "reason": None,
        }

    def test_intact_chain(self, db_session):
        for n in range(5):
            append_audit_log(db_session, 1, AuditAction.CREATE_TX, payload={"n": n})
        result = verify_audit_chain(db_session)
        assert result.ok
        assert result.count == 5

    def test_tampered_payload_detected(self, db_session):
        """Editing a stored payload breaks that entry's hash."""
        append_audit_log(db_session, 1, AuditAction.CREATE_TX, payload={"grossCents": 100})
        target = append_audit_log(db_session, 1, AuditAction.REFUND, payload={"refundAmountCents": 100})
        append_audit_log(db_session, 1, AuditAction.CREATE_TX, payload={"grossCents": 200})

        db_session.execute(
            update(PosAuditLog).where(PosAuditLog.id == target.id).values(payload={"refundAmountCents": 1})
        )
        db_session.commit()

        result = verify_audit_chain(db_session)
        assert not result.ok
        assert result.broken_at_id == target.id
        assert result.reason == "hash_mismatch"

    def test_deleted_entry_detected(self, db_session):
        append_audit_log(db_session, 1, AuditAction.CREATE_TX, payload={"n": 1})
        middle = append_audit_log(db_session, 1, AuditAction.CREATE_TX, payload={"n": 2})
        last = append_audit_log(db_session, 1, AuditAction.CREATE_TX, payload={"n": 3})
        db_session.delete(middle)
        db_session.commit()

        result = verify_audit_chain(db_session)
        assert not result.ok
        assert result.broken_at_id == last.id
        assert result.reason == "prev_hash_mismatch"


class TestRetryExhaustion:
    def test_transaction_flagged_when_tip_never_moves(self, db_session, make_transaction, monkeypatch):
        """A lost append flags the transaction and leaves its status alone."""
        tx = make_transaction(status="paid")
        monkeypatch.setattr(settings, "pos_audit_max_attempts", 3)
        monkeypatch.setattr(audit, "_advance_chain_tip", lambda db, prev, new: False)

        with pytest.raises(AuditAppendError) as exc_info:
            append_audit_log(db_session, 1, AuditAction.REFUND, tx_id=tx.id, payload={})

        assert exc_info.value.code == "failed_to_append_pos_audit_log"
        assert exc_info.value.attempts == 3
        refreshed = db_session.get(PosTransaction, tx.id, populate_existing=True)
        assert refreshed.needs_audit_reconciliation is True
        assert refreshed.status == "paid"
        assert db_session.execute(select(PosAuditLog)).first() is None


class TestConcurrentWriters:
    def test_parallel_appends_form_one_chain(self, tmp_path, monkeypatch):
        """Writers on separate connections never fork the chain."""
        engine = create_engine(
            f"sqlite:///{tmp_path / 'audit.db'}",
            connect_args={"check_same_thread": False, "timeout": 30},
        )
        Base.metadata.create_all(bind=engine)
        SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
        monkeypatch.setattr(settings, "pos_audit_max_attempts", 200)

        with SessionLocal() as session:
            append_audit_log(session, 1, AuditAction.CREATE_TX, payload={"seed": True})

        writers, per_writer = 4, 5
        errors = []

        def write(worker: int):
            with SessionLocal() as session:
                for n in range(per_writer):
                    try:
                        append_audit_log(session, worker, AuditAction.CREATE_TX, payload={"w": worker, "n": n})
                    except Exception as e:  # collected and asserted below
                        errors.append(e)

        threads = [threading.Thread(target=write, args=(w,)) for w in range(writers)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        with SessionLocal() as session:
            result = verify_audit_chain(session)
            hashes = session.execute(select(PosAuditLog.prev_hash)).scalars().all()
        assert result.ok, result.as_dict()
        assert result.count == writers * per_writer + 1
        assert len(set(hashes)) == len(hashes)
        engine.dispose()
