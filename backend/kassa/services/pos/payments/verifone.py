"""Verifone cloud terminal integration.

Payments are started with ``POST {merchant prefix}/payments`` and polled with
``GET .../payments/{id}``. Authentication is either an OAuth client-credentials
token or a static API key, depending on ``verifone_auth_mode``.
"""

import hashlib
import hmac
import logging
import time
from typing import Any, Dict, Iterable, Optional

import httpx

from kassa.core.config import settings
from kassa.services.pos.payment_status import PAYMENT_PENDING
from kassa.services.pos.payments.base import (
    CreatePaymentInput,
    PaymentProviderError,
    PaymentResult,
    PaymentStatusResult,
    TerminalPaymentProvider,
    map_provider_status,
)
from kassa.services.pos.payments.registry import PaymentProviderRegistry

logger = logging.getLogger(__name__)

STATUS_PATHS = (
    ("status",),
    ("paymentStatus",),
    ("transactionStatus",),
    ("state",),
    ("result",),
    ("data", "status"),
    ("data", "paymentStatus"),
    ("payment", "status"),
    ("payment", "state"),
    ("transaction", "status"),
    ("result", "status"),
)

PROVIDER_TX_ID_PATHS = (
    ("providerTxId",),
    ("transactionId",),
    ("paymentId",),
    ("id",),
    ("payment_id",),
    ("data", "id"),
    ("data", "transactionId"),
    ("payment", "id"),
    ("payment", "transactionId"),
)

TOKEN_EXPIRY_MARGIN_SECONDS = 30
MIN_TOKEN_TTL_SECONDS = 60

# client_id -> (token, expires_at monotonic seconds)
_oauth_cache: Dict[str, tuple[str, float]] = {}


def clear_oauth_cache() -> None:
    _oauth_cache.clear()


class VerifoneError(PaymentProviderError):
    def __init__(self, code: str, kind: str = "api_error", **extra: Any):
        super().__init__(code, provider="verifone", kind=kind, **extra)


def dig_path(payload: Any, path: Iterable[str]) -> Any:
    current = payload
    for key in path:
        if not isinstance(current, dict):
            return None
        current = current.get(key)
    return current


def extract_status(payload: Any) -> str:
    """First candidate field that maps to a non-pending status wins."""
    for path in STATUS_PATHS:
        value = dig_path(payload, path)
        if isinstance(value, str) and value.strip():
            mapped = map_provider_status(value)
            if mapped != PAYMENT_PENDING:
                return mapped
    return PAYMENT_PENDING


def extract_provider_tx_id(payload: Any) -> Optional[str]:
    for path in PROVIDER_TX_ID_PATHS:
        value = dig_path(payload, path)
        if isinstance(value, (str, int)) and not isinstance(value, bool) and str(value).strip():
            return str(value).strip()
    return None


def verify_webhook_signature(raw_body: bytes, signature: Optional[str]) -> bool:
    """Check an ``X-Verifone-Signature`` header (hex HMAC-SHA256 of the body)."""
    secret = settings.verifone_webhook_secret
    if not secret or not signature:
        return False
    provided = signature.strip()
    if provided.lower().startswith("sha256="):
        provided = provided[len("sha256="):]
    expected = hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, provided.lower())


def _read_json(response: httpx.Response) -> Any:
    if not response.content:
        return {}
    try:
        return response.json()
    except ValueError:
        return {"rawText": response.text}


@PaymentProviderRegistry.register
class VerifonePaymentProvider(TerminalPaymentProvider):
    """Verifone REST terminal provider."""

    name = "verifone"

    def __init__(self, db=None, transport: Optional[httpx.AsyncBaseTransport] = None):
        super().__init__(db)
        self._transport = transport
        self.base_url = settings.verifone_api_base_url.strip().rstrip("/")
        self.auth_mode = settings.verifone_auth_mode
        self.merchant_id = settings.verifone_merchant_id.strip()

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=self._transport, timeout=settings.verifone_timeout_seconds)

    def _check_config(self) -> None:
        if not self.base_url:
            raise VerifoneError("verifone_not_configured:missing_api_base_url", kind="not_configured")
        if self.auth_mode == "apikey":
            if not settings.verifone_api_key:
                raise VerifoneError("verifone_not_configured:missing_api_key", kind="not_configured")
        elif not settings.verifone_client_id or not settings.verifone_client_secret:
            raise VerifoneError("verifone_not_configured:missing_oauth_credentials", kind="not_configured")

    @property
    def _prefix(self) -> str:
        if self.merchant_id:
            return f"{self.base_url}/v1/merchants/{self.merchant_id}"
        return f"{self.base_url}/v1"

    async def _access_token(self) -> str:
        client_id = settings.verifone_client_id
        cached = _oauth_cache.get(client_id)
        now = time.monotonic()
        if cached and cached[1] > now:
            return cached[0]

        try:
            async with self._client() as client:
                response = await client.post(
                    f"{self.base_url}/oauth/token",
                    data={
                        "grant_type": "client_credentials",
                        "client_id": client_id,
                        "client_secret": settings.verifone_client_secret,
                    },
                )
        except httpx.RequestError as e:
            raise VerifoneError(f"verifone_network_error:oauth:{e}", kind="network")

        if not response.is_success:
            raise VerifoneError(f"verifone_oauth_failed:{response.status_code}", kind="auth_failed")

        payload = _read_json(response)
        token = payload.get("access_token") if isinstance(payload, dict) else None
        if not token:
            raise VerifoneError("verifone_oauth_missing_access_token", kind="auth_failed")

        expires_in = payload.get("expires_in")
        ttl = int(expires_in) if isinstance(expires_in, (int, float)) else 300
        _oauth_cache[client_id] = (token, now + max(MIN_TOKEN_TTL_SECONDS, ttl - TOKEN_EXPIRY_MARGIN_SECONDS))
        return token

    async def _headers(self, idempotency_key: Optional[str] = None) -> Dict[str, str]:
        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        if self.auth_mode == "apikey":
            headers["x-api-key"] = settings.verifone_api_key
        else:
            headers["Authorization"] = f"Bearer {await self._access_token()}"
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key
        return headers

    async def _request(
        self,
        method: str,
        url: str,
        body: Optional[Dict[str, Any]] = None,
        idempotency_key: Optional[str] = None,
    ) -> Any:
        self._check_config()
        headers = await self._headers(idempotency_key)
        try:
            async with self._client() as client:
                response = await client.request(method, url, headers=headers, json=body)
        except httpx.RequestError as e:
            raise VerifoneError(f"verifone_network_error:{e}", kind="network")

        payload = _read_json(response)
        if not response.is_success:
            logger.warning(f"Verifone {method} {url} failed with {response.status_code}")
            raise VerifoneError(f"verifone_request_failed:{response.status_code}", details=payload)
        return payload

    async def create_payment(self, payment: CreatePaymentInput) -> PaymentResult:
        body = {
            "amount": {"value": payment.amount_cents, "currency": payment.currency},
            "referenceId": payment.reference_id,
            "terminalRef": payment.terminal_ref,
            "commandMode": settings.verifone_terminal_command_mode,
            "metadata": payment.metadata,
        }
        payload = await self._request(
            "POST", f"{self._prefix}/payments", body=body, idempotency_key=payment.reference_id
        )
        provider_tx_id = extract_provider_tx_id(payload)
        if not provider_tx_id:
            raise VerifoneError("verifone_missing_provider_tx_id", kind="invalid_response")
        return PaymentResult(provider_tx_id=provider_tx_id, status=extract_status(payload), raw=payload)

    async def get_payment_status(self, provider_tx_id: str) -> PaymentStatusResult:
        provider_tx_id = self._require_provider_tx_id(provider_tx_id)
        payload = await self._request("GET", f"{self._prefix}/payments/{provider_tx_id}")
        return PaymentStatusResult(status=extract_status(payload), raw=payload)

    async def cancel_payment(self, provider_tx_id: str) -> None:
        provider_tx_id = self._require_provider_tx_id(provider_tx_id)
        await self._request(
            "POST",
            f"{self._prefix}/payments/{provider_tx_id}/cancel",
            body={},
            idempotency_key=f"{provider_tx_id}:cancel",
        )

    async def refund_payment(self, provider_tx_id: str, amount_cents: Optional[int] = None) -> None:
        provider_tx_id = self._require_provider_tx_id(provider_tx_id)
        body: Dict[str, Any] = {}
        if amount_cents is not None:
            body["amount"] = {"value": amount_cents, "currency": settings.pos_currency}
        await self._request(
            "POST",
            f"{self._prefix}/payments/{provider_tx_id}/refunds",
            body=body,
            idempotency_key=f"{provider_tx_id}:{amount_cents if amount_cents is not None else 'full'}",
        )
