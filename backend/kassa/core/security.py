"""Security utilities: admin JWT tokens and bridge agent keys."""

from __future__ import annotations

import secrets
from datetime import datetime, timedelta, timezone
from typing import Annotated, Any, Optional
import logging

import jwt
from fastapi import Depends, Request
from jwt.exceptions import PyJWTError

from kassa.core.config import settings
from kassa.core.errors import PosAuthError

logger = logging.getLogger(__name__)

AGENT_KEY_PREFIX = "pa_"
AGENT_KEY_HEADER = "x-pos-agent-key"


def create_access_token(data: dict[str, Any], expires_delta: timedelta | None = None) -> str:
    """Create a JWT access token with a unique JTI."""
    to_encode = data.copy()
    now = datetime.now(timezone.utc)

    if expires_delta:
        expire = now + expires_delta
    else:
        expire = now + timedelta(minutes=settings.access_token_expire_minutes)

    to_encode.update({
        "exp": expire,
        "iat": now,
        "jti": secrets.token_urlsafe(16),
    })
    return jwt.encode(to_encode, settings.secret_key, algorithm=settings.algorithm)


def decode_access_token(token: str) -> dict[str, Any] | None:
    """Decode and validate a JWT token. Returns None when invalid or expired."""
    try:
        return jwt.decode(
            token,
            settings.secret_key,
            algorithms=[settings.algorithm],
            options={"require_exp": True},
        )
    except PyJWTError as e:
        logger.debug(f"JWT decode error: {e}")
        return None


def generate_agent_key() -> str:
    """Generate a bridge agent secret (``pa_`` + 48 hex chars)."""
    return f"{AGENT_KEY_PREFIX}{secrets.token_hex(24)}"


class AdminActor:
    """The authenticated admin performing a POS action.

    ``id`` is recorded as ``actor_id`` on audit entries and as the creator of
    transactions.
    """

    def __init__(self, admin_id: int, email: str, role: str = "admin"):
        self.id = admin_id
        self.email = email
        self.role = role


async def get_current_admin(request: Request) -> AdminActor:
    """Resolve the admin from an ``Authorization: Bearer`` token."""
    payload: Optional[dict[str, Any]] = None
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        token = auth_header.split(" ", 1)[1]
        if token:
            payload = decode_access_token(token)

    if payload is None:
        raise PosAuthError("unauthorized")

    sub = payload.get("sub")
    email = payload.get("email")
    role = payload.get("role")
    if sub is None or email is None or role not in ("admin", "owner"):
        raise PosAuthError("unauthorized")

    try:
        admin_id = int(sub)
    except (TypeError, ValueError):
        raise PosAuthError("unauthorized")

    return AdminActor(admin_id=admin_id, email=email, role=role)


CurrentAdmin = Annotated[AdminActor, Depends(get_current_admin)]
