"""Bridge agent protocol routes.

Agents authenticate with the ``x-pos-agent-key`` header; only registration
needs an admin token.
"""

import logging
from typing import Annotated, Optional

from fastapi import APIRouter, Depends, Header, Query, Request, status
from fastapi.responses import Response

from kassa.core.rate_limit import agent_limiter, limiter
from kassa.core.security import AGENT_KEY_HEADER, CurrentAdmin
from kassa.db.session import DbSession
from kassa.models.pos import PosAgent
from kassa.schemas.pos import AgentRegisterRequest, AgentRegisterResponse, CommandReportRequest
from kassa.services.pos.bridge import (
    authenticate_agent,
    claim_next_command,
    heartbeat,
    register_agent,
    report_command_result,
    serialize_command,
)

logger = logging.getLogger(__name__)

router = APIRouter()


def get_current_agent(
    db: DbSession,
    agent_key: Optional[str] = Header(None, alias=AGENT_KEY_HEADER),
) -> PosAgent:
    return authenticate_agent(db, agent_key)


CurrentAgent = Annotated[PosAgent, Depends(get_current_agent)]


@router.post("/register", response_model=AgentRegisterResponse, status_code=status.HTTP_201_CREATED)
@limiter.limit("10/minute")
async def register(request: Request, data: AgentRegisterRequest, db: DbSession, admin: CurrentAdmin):
    """Create a bridge agent. The key is only returned here."""
    agent = register_agent(db, data.name, data.location_label, data.paired_terminal_id)
    return AgentRegisterResponse(
        agent_id=agent.id,
        agent_key=agent.agent_key,
        name=agent.name,
        created_at=agent.created_at,
    )


@router.post("/heartbeat")
@agent_limiter.limit("120/minute")
async def agent_heartbeat(request: Request, db: DbSession, agent: CurrentAgent):
    return heartbeat(db, agent)


@router.get("/commands/next")
@agent_limiter.limit("120/minute")
async def next_command(
    request: Request,
    db: DbSession,
    agent: CurrentAgent,
    wait: int = Query(25, ge=0, le=25),
):
    """Long-poll for the next queued command; 204 when none arrived in time."""
    command = await claim_next_command(db, agent, wait)
    if command is None:
        return Response(status_code=status.HTTP_204_NO_CONTENT)
    return {"ok": True, "command": serialize_command(command)}


@router.post("/commands/report")
@agent_limiter.limit("120/minute")
async def report_command(request: Request, data: CommandReportRequest, db: DbSession, agent: CurrentAgent):
    return await report_command_result(db, agent, data.command_id, data.ok, data.result, data.error)
