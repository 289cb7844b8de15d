"""Terminal payments relayed through an on-premise bridge agent.

The provider transaction id is the id of the queued ``zvt_payment`` command.
Status is read from that command: the agent's report decides the outcome.
"""

from typing import Any, Dict, Optional

from sqlalchemy import update

from kassa.core.config import settings
from kassa.core.errors import PosValidationError
from kassa.db.base import utcnow
from kassa.models.pos import CommandStatus, CommandType, PosCommand
from kassa.services.pos.bridge import enqueue_command, map_bridge_status
from kassa.services.pos.payment_status import FAILED, PAYMENT_PENDING, as_record
from kassa.services.pos.payments.base import (
    CreatePaymentInput,
    PaymentResult,
    PaymentStatusResult,
    TerminalPaymentProvider,
)
from kassa.services.pos.payments.registry import PaymentProviderRegistry


@PaymentProviderRegistry.register
class BridgePaymentProvider(TerminalPaymentProvider):
    name = "bridge"

    def _session(self):
        if self.db is None:
            raise RuntimeError("bridge payment provider needs a database session")
        return self.db

    def _payment_command(self, provider_tx_id: str) -> PosCommand:
        provider_tx_id = self._require_provider_tx_id(provider_tx_id)
        command = None
        if provider_tx_id.isdigit():
            command = self._session().get(PosCommand, int(provider_tx_id), populate_existing=True)
        if command is None or command.type != CommandType.ZVT_PAYMENT.value:
            raise PosValidationError(f"bridge_command_not_found:{provider_tx_id}")
        return command

    async def create_payment(self, payment: CreatePaymentInput) -> PaymentResult:
        metadata = payment.metadata
        agent_id = metadata.get("agentId")
        if not isinstance(agent_id, int):
            raise PosValidationError("bridge_agent_required")

        command = enqueue_command(
            self._session(),
            agent_id,
            CommandType.ZVT_PAYMENT,
            {
                "txId": metadata.get("txId"),
                "referenceId": payment.reference_id,
                "amountCents": payment.amount_cents,
                "currency": payment.currency,
                "terminalRef": payment.terminal_ref,
                "terminalHost": metadata.get("terminalHost"),
                "terminalPort": metadata.get("terminalPort") or settings.pos_default_terminal_port,
                "zvtPassword": metadata.get("zvtPassword"),
            },
        )
        return PaymentResult(
            provider_tx_id=str(command.id),
            status=PAYMENT_PENDING,
            raw={"provider": "bridge", "commandId": command.id, "agentId": agent_id},
        )

    async def get_payment_status(self, provider_tx_id: str) -> PaymentStatusResult:
        command = self._payment_command(provider_tx_id)
        report = as_record(as_record(command.payload).get("report"))
        raw: Dict[str, Any] = {"provider": "bridge", "commandId": command.id, "commandStatus": command.status}

        if command.status == CommandStatus.DONE.value:
            status = map_bridge_status(as_record(report.get("result")).get("status"), True)
        elif command.status == CommandStatus.FAILED.value:
            status = FAILED
        else:
            status = PAYMENT_PENDING
        return PaymentStatusResult(status=status, raw={**raw, "report": report or None})

    async def cancel_payment(self, provider_tx_id: str) -> None:
        command = self._payment_command(provider_tx_id)
        db = self._session()

        # Not yet picked up by the agent: drop it from the queue
        result = db.execute(
            update(PosCommand)
            .where(PosCommand.id == command.id, PosCommand.status == CommandStatus.QUEUED.value)
            .values(
                status=CommandStatus.FAILED.value,
                payload={
                    **as_record(command.payload),
                    "report": {"ok": False, "result": None, "error": "cancelled_before_dispatch",
                               "reportedAt": utcnow().isoformat()},
                },
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        db.commit()
        if result.rowcount == 1:
            return

        enqueue_command(
            db,
            command.agent_id,
            CommandType.ZVT_ABORT,
            {"txId": as_record(command.payload).get("txId"), "paymentCommandId": command.id},
        )

    async def refund_payment(self, provider_tx_id: str, amount_cents: Optional[int] = None) -> None:
        command = self._payment_command(provider_tx_id)
        payload = as_record(command.payload)
        enqueue_command(
            self._session(),
            command.agent_id,
            CommandType.ZVT_REFUND,
            {
                "txId": payload.get("txId"),
                "paymentCommandId": command.id,
                "amountCents": amount_cents if amount_cents is not None else payload.get("amountCents"),
                "currency": payload.get("currency"),
                "terminalHost": payload.get("terminalHost"),
                "terminalPort": payload.get("terminalPort"),
                "zvtPassword": payload.get("zvtPassword"),
            },
        )
