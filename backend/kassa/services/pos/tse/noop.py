"""No-op TSE used in development, tests and as a soft-failure fallback."""

from datetime import datetime, timezone
from typing import Any, Dict

from kassa.core.config import settings
from kassa.services.pos.tse.base import TseContext, TseFinishResult, TseProvider, TseStartResult

NOOP_SERIAL = "NOOP-SERIAL-001"


class NoopTseProvider(TseProvider):
    name = "noop"

    async def start_transaction(self, ctx: TseContext) -> TseStartResult:
        return TseStartResult(
            tse_tx_id=f"noop-tse-{ctx.tx_id}",
            serial=NOOP_SERIAL,
            started_at=datetime.now(timezone.utc),
            raw={"provider": "noop", "state": "ACTIVE"},
        )

    async def finish_transaction(self, ctx: TseContext) -> TseFinishResult:
        log_time = datetime.now(timezone.utc)
        millis = int(log_time.timestamp() * 1000)
        return TseFinishResult(
            signature=f"noop-signature-{ctx.tse_tx_id or ctx.tx_id}-{millis}",
            signature_counter=max(1, millis // 1000),
            log_time=log_time,
            finished_at=log_time,
            raw={"provider": "noop", "state": "FINISHED", "logTime": log_time.isoformat()},
        )

    async def cancel_transaction(self, ctx: TseContext) -> None:
        return None

    async def health(self) -> Dict[str, Any]:
        return {"ok": True, "provider": self.name, "env": "debug" if settings.debug else "production"}
