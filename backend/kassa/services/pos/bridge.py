"""Bridge agent protocol.

On-premise agents drive card terminals over ZVT. They never receive inbound
connections: they long-poll ``claim_next_command`` for queued work and send
results back through ``report_command_result``. A command moves
``queued -> sent -> done|failed``; both moves are conditional updates, so a
command is claimed by one poller and reported once.
"""

import asyncio
import logging
import time
from datetime import timedelta
from typing import Any, Dict, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from kassa.core.config import settings
from kassa.core.errors import PosAuthError, PosError, PosNotFoundError
from kassa.core.security import generate_agent_key
from kassa.db.base import as_utc, utcnow
from kassa.models.pos import CommandStatus, CommandType, PosAgent, PosCommand, PosTerminal
from kassa.services.pos.payment_status import (
    CANCELLED,
    FAILED,
    PAID,
    PAYMENT_PENDING,
    REFUNDED,
    as_record,
)

logger = logging.getLogger(__name__)

AGENT_KEY_ATTEMPTS = 6
FINISHED_COMMAND_STATUSES = (CommandStatus.DONE.value, CommandStatus.FAILED.value)
OPEN_COMMAND_STATUSES = (CommandStatus.QUEUED.value, CommandStatus.SENT.value)

_BRIDGE_PAID = {"paid", "success", "approved", "completed"}
_BRIDGE_CANCELLED = {"cancelled", "canceled", "aborted", "voided"}
_BRIDGE_FAILED = {"failed", "declined", "error", "rejected"}
_BRIDGE_REFUNDED = {"refunded", "refund"}
_BRIDGE_PENDING = {"payment_pending", "pending"}


def map_bridge_status(status_value: Any, ok: bool) -> str:
    """Map an agent report onto a payment status.

    A failed report is always ``failed``. A successful report without a status,
    or with one we do not know, counts as paid: the agent only reports ``ok``
    after the terminal confirmed the authorization.
    """
    if not ok:
        return FAILED
    normalized = str(status_value or "").strip().lower()
    if not normalized or normalized in _BRIDGE_PAID:
        return PAID
    if normalized in _BRIDGE_CANCELLED:
        return CANCELLED
    if normalized in _BRIDGE_FAILED:
        return FAILED
    if normalized in _BRIDGE_REFUNDED:
        return REFUNDED
    if normalized in _BRIDGE_PENDING:
        return PAYMENT_PENDING
    return PAID


def register_agent(
    db: Session,
    name: str,
    location_label: Optional[str] = None,
    paired_terminal_id: Optional[int] = None,
) -> PosAgent:
    """Create an agent with a fresh key, retrying on the rare key collision."""
    for _ in range(AGENT_KEY_ATTEMPTS):
        agent = PosAgent(
            name=name.strip(),
            agent_key=generate_agent_key(),
            location_label=location_label,
            paired_terminal_id=paired_terminal_id,
            is_active=True,
        )
        db.add(agent)
        try:
            db.commit()
        except IntegrityError:
            db.rollback()
            continue
        db.refresh(agent)
        logger.info(f"Registered POS bridge agent {agent.id} ({agent.name})")
        return agent

    raise PosError("failed_to_generate_unique_agent_key")


def authenticate_agent(db: Session, agent_key: Optional[str]) -> PosAgent:
    key = (agent_key or "").strip()
    if not key:
        raise PosAuthError("missing_agent_key")
    agent = db.execute(
        select(PosAgent).where(PosAgent.agent_key == key, PosAgent.is_active.is_(True))
    ).scalar_one_or_none()
    if agent is None:
        raise PosAuthError("invalid_agent_key")
    return agent


def _touch(db: Session, agent_id: int) -> None:
    db.execute(
        update(PosAgent)
        .where(PosAgent.id == agent_id)
        .values(last_seen_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    db.commit()


def heartbeat(db: Session, agent: PosAgent) -> Dict[str, Any]:
    _touch(db, agent.id)
    return {"ok": True, "agentId": agent.id}


def is_agent_online(agent: PosAgent) -> bool:
    seen = as_utc(agent.last_seen_at)
    if not agent.is_active or seen is None:
        return False
    return seen >= utcnow() - timedelta(seconds=settings.pos_agent_online_window_seconds)


def select_online_agent(db: Session, terminal: PosTerminal) -> Optional[PosAgent]:
    """Pick the agent that should drive ``terminal``.

    The agent assigned to the terminal (or paired with it) wins when it is
    online; otherwise the most recently seen online agent takes the job.
    """
    online_since = utcnow() - timedelta(seconds=settings.pos_agent_online_window_seconds)
    online = (PosAgent.is_active.is_(True), PosAgent.last_seen_at >= online_since)

    if terminal.agent_id is not None:
        preferred = db.execute(
            select(PosAgent).where(PosAgent.id == terminal.agent_id, *online)
        ).scalar_one_or_none()
        if preferred is not None:
            return preferred

    paired = db.execute(
        select(PosAgent)
        .where(PosAgent.paired_terminal_id == terminal.id, *online)
        .order_by(PosAgent.last_seen_at.desc())
        .limit(1)
    ).scalar_one_or_none()
    if paired is not None:
        return paired

    return db.execute(
        select(PosAgent).where(*online).order_by(PosAgent.last_seen_at.desc()).limit(1)
    ).scalar_one_or_none()


def enqueue_command(
    db: Session,
    agent_id: int,
    command_type: CommandType | str,
    payload: Optional[Dict[str, Any]] = None,
) -> PosCommand:
    type_value = command_type.value if isinstance(command_type, CommandType) else CommandType(command_type).value
    command = PosCommand(
        agent_id=agent_id,
        type=type_value,
        payload=payload or {},
        status=CommandStatus.QUEUED.value,
    )
    db.add(command)
    db.commit()
    db.refresh(command)
    logger.info(f"Queued {type_value} command {command.id} for agent {agent_id}")
    return command


def _try_claim(db: Session, agent_id: int) -> Optional[PosCommand]:
    """Claim the oldest queued command; losing the race to another poller just retries."""
    while True:
        candidate_id = db.execute(
            select(PosCommand.id)
            .where(PosCommand.agent_id == agent_id, PosCommand.status == CommandStatus.QUEUED.value)
            .order_by(PosCommand.created_at, PosCommand.id)
            .limit(1)
        ).scalar_one_or_none()
        if candidate_id is None:
            db.rollback()
            return None

        result = db.execute(
            update(PosCommand)
            .where(PosCommand.id == candidate_id, PosCommand.status == CommandStatus.QUEUED.value)
            .values(status=CommandStatus.SENT.value, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        db.commit()
        if result.rowcount == 1:
            return db.get(PosCommand, candidate_id, populate_existing=True)


async def claim_next_command(db: Session, agent: PosAgent, wait_seconds: int) -> Optional[PosCommand]:
    """Long-poll for the next command. Returns None once ``wait_seconds`` elapsed."""
    wait = min(max(int(wait_seconds), 0), settings.pos_agent_max_wait_seconds)
    deadline = time.monotonic() + wait
    interval = settings.pos_agent_poll_interval_seconds
    _touch(db, agent.id)

    while True:
        command = _try_claim(db, agent.id)
        if command is not None:
            _touch(db, agent.id)
            return command

        remaining = deadline - time.monotonic()
        if wait == 0 or remaining <= 0:
            return None
        await asyncio.sleep(min(interval, remaining))


def serialize_command(command: PosCommand) -> Dict[str, Any]:
    return {
        "id": command.id,
        "type": command.type,
        "payload": command.payload or {},
        "createdAt": command.created_at,
    }


async def report_command_result(
    db: Session,
    agent: PosAgent,
    command_id: int,
    ok: bool,
    result: Optional[Dict[str, Any]] = None,
    error: Optional[str] = None,
) -> Dict[str, Any]:
    """Record the outcome of a command and reconcile its transaction."""
    from kassa.services.pos.actions import apply_payment_status

    command = db.execute(
        select(PosCommand).where(PosCommand.id == command_id, PosCommand.agent_id == agent.id)
    ).scalar_one_or_none()
    if command is None:
        raise PosNotFoundError("command_not_found")

    if command.status in FINISHED_COMMAND_STATUSES:
        return {"ok": True, "commandId": command.id, "status": command.status, "idempotent": True}

    payload = as_record(command.payload)
    reported_at = utcnow().isoformat()

    if command.type == CommandType.ZVT_PAYMENT.value:
        tx_id = payload.get("txId")
        if isinstance(tx_id, str) and tx_id.isdigit():
            tx_id = int(tx_id)
        if isinstance(tx_id, int):
            await apply_payment_status(
                db,
                tx_id,
                map_bridge_status(as_record(result).get("status"), ok),
                source="bridge_agent",
                raw_updates={
                    "lastBridgeAgentReport": result,
                    "lastBridgeAgentError": error,
                    "lastBridgeAgentReportAt": reported_at,
                    "lastBridgeAgentOk": ok,
                    "bridgeCommandId": command.id,
                    "bridgeAgentId": agent.id,
                },
                audit_details={
                    "commandId": command.id,
                    "agentId": agent.id,
                    "ok": ok,
                    "result": result,
                    "error": error,
                },
                cancel_reason_prefix="bridge_agent",
            )

    next_status = CommandStatus.DONE.value if ok else CommandStatus.FAILED.value
    db.execute(
        update(PosCommand)
        .where(
            PosCommand.id == command.id,
            PosCommand.agent_id == agent.id,
            PosCommand.status.in_(OPEN_COMMAND_STATUSES),
        )
        .values(
            status=next_status,
            payload={**payload, "report": {"ok": ok, "result": result, "error": error, "reportedAt": reported_at}},
            updated_at=utcnow(),
        )
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return {"ok": True, "commandId": command.id, "status": next_status}
