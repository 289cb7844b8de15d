"""Inbound provider webhooks (no admin token; authenticated by signature)."""

import logging
from typing import Optional

from fastapi import APIRouter, Header, Request

from kassa.core.rate_limit import limiter
from kassa.db.session import DbSession
from kassa.services.pos.webhooks import handle_verifone_webhook

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/verifone")
@limiter.limit("120/minute")
async def verifone_webhook(
    request: Request,
    db: DbSession,
    signature: Optional[str] = Header(None, alias="x-verifone-signature"),
):
    raw_body = await request.body()
    return await handle_verifone_webhook(db, raw_body, signature)
