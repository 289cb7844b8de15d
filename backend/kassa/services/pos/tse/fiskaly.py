"""fiskaly SIGN DE v2 integration.

Transactions are upserted with ``PUT /tss/{tss_id}/tx/{tx_id}?tx_revision=N``.
The signing service enforces strictly increasing revisions per transaction,
so finish and cancel read the current revision first when they can.
"""

import hashlib
import json
import logging
import re
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Optional

import httpx

from kassa.core.config import settings
from kassa.services.pos.tse.base import (
    TseContext,
    TseError,
    TseFinishResult,
    TseProvider,
    TseStartResult,
)

logger = logging.getLogger(__name__)

FISKALY_MIDDLEWARE_BASE = "https://kassensichv-middleware.fiskaly.com/api/v2"
FISKALY_BACKEND_BASE = "https://kassensichv.fiskaly.com/api/v2"
DEFAULT_SERIAL = "FISKALY-SIGN-DE"
TX_UUID_NAMESPACE = "artclub-fiskaly-tx"

# Refresh the bearer token this long before it expires
TOKEN_REFRESH_MARGIN_SECONDS = 15
DEFAULT_TOKEN_TTL_SECONDS = 300
MIN_TOKEN_TTL_SECONDS = 60

_UUID_RE = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[1-5][0-9a-f]{3}-[89ab][0-9a-f]{3}-[0-9a-f]{12}$", re.IGNORECASE
)

# cache key -> (token, expires_at monotonic seconds)
_token_cache: Dict[str, tuple[str, float]] = {}


def clear_token_cache() -> None:
    _token_cache.clear()


@dataclass(frozen=True)
class FiskalyConfig:
    env: str
    base_url: str
    api_key: str
    api_secret: str
    tss_id: str
    client_id: str


class FiskalyError(TseError):
    def __init__(self, code: str, kind: str = "api_error"):
        super().__init__(code, provider="fiskaly", kind=kind)


def deterministic_tx_uuid(tx_id: str) -> str:
    """Stable UUID (v4 layout) for a POS transaction id."""
    digest = bytearray(hashlib.sha256(f"{TX_UUID_NAMESPACE}:{tx_id}".encode("utf-8")).digest()[:16])
    digest[6] = (digest[6] & 0x0F) | 0x40
    digest[8] = (digest[8] & 0x3F) | 0x80
    h = digest.hex()
    return f"{h[0:8]}-{h[8:12]}-{h[12:16]}-{h[16:20]}-{h[20:32]}"


def normalize_base_url(override: Optional[str]) -> str:
    raw = (override or "").strip().rstrip("/")
    if not raw:
        return FISKALY_MIDDLEWARE_BASE
    return raw if raw.endswith("/api/v2") else f"{raw}/api/v2"


def load_config() -> FiskalyConfig:
    """Read fiskaly settings, raising ``fiskaly_not_configured:*`` when incomplete."""
    api_key = settings.fiskaly_api_key.strip()
    api_secret = settings.fiskaly_api_secret.strip()
    tss_id = settings.fiskaly_tss_id.strip()
    client_id = settings.fiskaly_client_id.strip()

    if not api_key or not api_secret:
        raise FiskalyError("fiskaly_not_configured:missing_api_key_or_secret", kind="not_configured")
    if not tss_id:
        raise FiskalyError("fiskaly_not_configured:missing_tss_id", kind="not_configured")
    if not client_id:
        raise FiskalyError("fiskaly_not_configured:missing_client_id", kind="not_configured")
    if not _UUID_RE.match(client_id):
        raise FiskalyError("fiskaly_not_configured:invalid_client_id_uuid", kind="not_configured")

    return FiskalyConfig(
        env=settings.fiskaly_env,
        base_url=normalize_base_url(settings.fiskaly_api_base_url),
        api_key=api_key,
        api_secret=api_secret,
        tss_id=tss_id,
        client_id=client_id,
    )


def _pick_str(record: Dict[str, Any], keys: Iterable[str]) -> Optional[str]:
    for key in keys:
        value = record.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def _pick_int(record: Dict[str, Any], keys: Iterable[str]) -> Optional[int]:
    for key in keys:
        value = record.get(key)
        if isinstance(value, bool):
            continue
        if isinstance(value, (int, float)):
            return int(value)
        if isinstance(value, str) and value.strip():
            try:
                return int(float(value))
            except ValueError:
                continue
    return None


def _parse_time(value: Any) -> Optional[datetime]:
    """fiskaly reports unix seconds; ISO strings are accepted too."""
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    if isinstance(value, str) and value.strip():
        try:
            parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError:
            return None
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    return None


def _as_dict(value: Any) -> Dict[str, Any]:
    return value if isinstance(value, dict) else {}


def next_revision_from_raw(raw_payload: Dict[str, Any], fallback: int = 2) -> int:
    for section in ("current", "finish", "start"):
        revision = _pick_int(_as_dict(raw_payload.get(section)), ("tx_revision", "revision"))
        if revision is not None:
            return revision + 1
    return fallback


def summarize_error(payload: Any) -> str:
    record = _as_dict(payload)
    parts = [
        _pick_str(record, ("message", "error")),
        _pick_str(_as_dict(record.get("error")), ("message", "type", "code")),
        _pick_str(record, ("code", "type")),
    ]
    parts = [p for p in parts if p]
    if parts:
        return " | ".join(parts)
    text = json.dumps(payload, default=str)
    return text if len(text) <= 600 else f"{text[:600]}..."


def _read_json(response: httpx.Response) -> Any:
    if not response.content:
        return None
    try:
        return response.json()
    except ValueError:
        return {"rawText": response.text}


def _amount_major(amount_cents: int) -> float:
    return round(max(0, amount_cents) / 100, 2)


class FiskalySignDeProvider(TseProvider):
    """fiskaly SIGN DE v2 client."""

    name = "fiskaly"

    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None):
        self._transport = transport
        self._timeout = settings.fiskaly_timeout_seconds

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=self._transport, timeout=self._timeout)

    async def _authenticate(self, config: FiskalyConfig) -> str:
        cache_key = hashlib.sha256(
            f"{config.base_url}|{config.api_key}|{config.api_secret}".encode("utf-8")
        ).hexdigest()
        cached = _token_cache.get(cache_key)
        now = time.monotonic()
        if cached and cached[1] - TOKEN_REFRESH_MARGIN_SECONDS > now:
            return cached[0]

        body = {
            "api_key": config.api_key,
            "api_secret": config.api_secret,
            "base_url": re.sub(r"/api/v2/?$", "", config.base_url),
        }

        async with self._client() as client:
            auth_base = config.base_url
            response = await self._post_auth(client, auth_base, body)
            # Some middleware hosts do not serve /auth; the backend host does
            if response.status_code == 404:
                auth_base = FISKALY_BACKEND_BASE
                response = await self._post_auth(client, auth_base, body)

        payload = _read_json(response)
        if not response.is_success:
            raise FiskalyError(
                f"fiskaly_auth_failed:{response.status_code}:{summarize_error(payload)}:auth_via={auth_base}",
                kind="auth_failed",
            )

        record = _as_dict(payload)
        token = _pick_str(record, ("access_token", "token"))
        if not token:
            raise FiskalyError("fiskaly_auth_failed:missing_access_token", kind="auth_failed")
        expires_in = _pick_int(record, ("expires_in", "expiresIn")) or DEFAULT_TOKEN_TTL_SECONDS
        _token_cache[cache_key] = (token, now + max(MIN_TOKEN_TTL_SECONDS, expires_in))
        return token

    async def _post_auth(self, client: httpx.AsyncClient, base_url: str, body: Dict[str, Any]) -> httpx.Response:
        try:
            return await client.post(f"{base_url}/auth", json=body)
        except httpx.RequestError as e:
            raise FiskalyError(f"fiskaly_network_error:auth:{base_url}/auth:{e}", kind="network")

    async def _request(
        self,
        config: FiskalyConfig,
        method: str,
        path: str,
        body: Optional[Dict[str, Any]] = None,
        idempotency_key: Optional[str] = None,
    ) -> Any:
        token = await self._authenticate(config)
        headers = {"Authorization": f"Bearer {token}"}
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key

        try:
            async with self._client() as client:
                response = await client.request(method, f"{config.base_url}{path}", headers=headers, json=body)
        except httpx.RequestError as e:
            raise FiskalyError(f"fiskaly_network_error:api:{path}:{e}", kind="network")

        payload = _read_json(response)
        if not response.is_success:
            raise FiskalyError(
                f"fiskaly_api_error:{response.status_code}:{path}:{summarize_error(payload)}",
                kind="api_error",
            )
        return payload

    @staticmethod
    def _tx_path(config: FiskalyConfig, fiskaly_tx_id: str) -> str:
        return f"/tss/{config.tss_id}/tx/{fiskaly_tx_id}"

    @staticmethod
    def _schema(receipt_type_name: str, data: str) -> Dict[str, Any]:
        return {"standard_v1": {"receipt": {"receipt_type": "RECEIPT", "type": receipt_type_name, "data": data}}}

    @staticmethod
    def _receipt_data(ctx: TseContext, state: str) -> str:
        return json.dumps({
            "txId": ctx.tx_id,
            "amount": _amount_major(ctx.amount_cents),
            "currency": ctx.currency or "EUR",
            "status": state,
        })

    async def _current_state(self, config: FiskalyConfig, fiskaly_tx_id: str) -> Dict[str, Any]:
        """Read the transaction as the signing service sees it; empty when unavailable."""
        try:
            return _as_dict(await self._request(config, "GET", self._tx_path(config, fiskaly_tx_id)))
        except FiskalyError as e:
            if e.kind == "auth_failed":
                raise
            logger.warning(f"fiskaly revision lookup failed for {fiskaly_tx_id}: {e.code}")
            return {}

    async def start_transaction(self, ctx: TseContext) -> TseStartResult:
        if ctx.tse_tx_id:
            return TseStartResult(
                tse_tx_id=ctx.tse_tx_id,
                serial=ctx.serial or DEFAULT_SERIAL,
                raw=ctx.raw_payload.get("start"),
            )

        config = load_config()
        fiskaly_tx_id = deterministic_tx_uuid(ctx.tx_id)
        body = {
            "state": "ACTIVE",
            "client_id": config.client_id,
            # type and data stay empty when a transaction is opened
            "schema": self._schema("", ""),
            "amounts_per_vat_rate": [{"vat_rate": "NORMAL", "amount": _amount_major(ctx.amount_cents)}],
        }
        payload = await self._request(
            config,
            "PUT",
            f"{self._tx_path(config, fiskaly_tx_id)}?tx_revision=1",
            body=body,
            idempotency_key=ctx.tx_id,
        )
        record = _as_dict(payload)
        return TseStartResult(
            tse_tx_id=_pick_str(record, ("_id", "id", "tx_id")) or fiskaly_tx_id,
            serial=_pick_str(record, ("tss_serial_number", "serial_number", "serial")) or ctx.serial or DEFAULT_SERIAL,
            started_at=_parse_time(record.get("time_start")) or datetime.now(timezone.utc),
            raw=payload,
        )

    async def finish_transaction(self, ctx: TseContext) -> TseFinishResult:
        if ctx.existing_signature:
            return TseFinishResult(
                signature=ctx.existing_signature,
                signature_counter=0,
                log_time=datetime.now(timezone.utc),
                raw=ctx.raw_payload.get("finish"),
            )

        config = load_config()
        fiskaly_tx_id = ctx.tse_tx_id or deterministic_tx_uuid(ctx.tx_id)
        revision = next_revision_from_raw(ctx.raw_payload, 2)
        current_revision = _pick_int(await self._current_state(config, fiskaly_tx_id), ("revision", "tx_revision"))
        if current_revision is not None:
            revision = current_revision + 1

        amount = _amount_major(ctx.amount_cents)
        body = {
            "state": "FINISHED",
            "client_id": config.client_id,
            "schema": self._schema("Kassenbeleg-V1", self._receipt_data(ctx, "FINISHED")),
            "amounts_per_vat_rate": [{"vat_rate": "NORMAL", "amount": amount}],
            "amounts_per_payment_type": [{"payment_type": "NON_CASH", "amount": amount}],
        }
        payload = await self._request(
            config,
            "PUT",
            f"{self._tx_path(config, fiskaly_tx_id)}?tx_revision={revision}",
            body=body,
            idempotency_key=f"{ctx.tx_id}:finish",
        )

        record = _as_dict(payload)
        signature_record = _as_dict(record.get("signature"))
        log_record = _as_dict(record.get("log"))
        signature = _pick_str(signature_record, ("value", "signature")) or _pick_str(record, ("signature",))
        if not signature:
            raise FiskalyError("fiskaly_finish_failed:missing_signature", kind="invalid_response")

        counter = (
            _pick_int(signature_record, ("counter",))
            or _pick_int(record, ("signature_counter", "log_message_serial_number"))
            or _pick_int(log_record, ("signature_counter", "message_serial_number"))
            or 0
        )
        log_time = (
            _parse_time(record.get("time_end"))
            or _parse_time(log_record.get("timestamp"))
            or datetime.now(timezone.utc)
        )
        return TseFinishResult(
            signature=signature,
            signature_counter=counter,
            log_time=log_time,
            finished_at=_parse_time(record.get("time_end")) or datetime.now(timezone.utc),
            raw=payload,
        )

    async def cancel_transaction(self, ctx: TseContext) -> None:
        if not ctx.tse_tx_id:
            return

        config = load_config()
        revision = next_revision_from_raw(ctx.raw_payload, 2)
        current = await self._current_state(config, ctx.tse_tx_id)
        state = (_pick_str(current, ("state",)) or "").upper()
        if state in ("FINISHED", "CANCELLED"):
            return
        current_revision = _pick_int(current, ("revision", "tx_revision"))
        if current_revision is not None:
            revision = current_revision + 1

        body = {
            "state": "CANCELLED",
            "client_id": config.client_id,
            "schema": self._schema("Kassenbeleg-V1", self._receipt_data(ctx, "CANCELLED")),
            "amounts_per_vat_rate": [],
        }
        await self._request(
            config,
            "PUT",
            f"{self._tx_path(config, ctx.tse_tx_id)}?tx_revision={revision}",
            body=body,
            idempotency_key=f"{ctx.tx_id}:cancel",
        )

    async def health(self) -> Dict[str, Any]:
        config = load_config()
        tss = await self._request(config, "GET", f"/tss/{config.tss_id}")
        return {
            "ok": True,
            "provider": self.name,
            "env": config.env,
            "baseUrl": config.base_url,
            "tssState": _pick_str(_as_dict(tss), ("state",)),
        }
