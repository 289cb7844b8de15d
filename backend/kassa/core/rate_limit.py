"""Shared rate limiter instance for use across route files."""

from slowapi import Limiter
from slowapi.util import get_remote_address
from fastapi import Request

from kassa.core.config import settings

limiter = Limiter(key_func=get_remote_address, enabled=settings.rate_limit_enabled)


def get_agent_or_ip(request: Request) -> str:
    """Rate limit bridge agents by their key, everyone else by IP."""
    agent_key = request.headers.get("x-pos-agent-key", "").strip()
    if agent_key:
        return f"agent:{agent_key[:12]}"
    return get_remote_address(request)


agent_limiter = Limiter(key_func=get_agent_or_ip, enabled=settings.rate_limit_enabled)
