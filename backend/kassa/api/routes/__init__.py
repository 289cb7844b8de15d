"""API routes."""

from fastapi import APIRouter

from kassa.api.routes import pos, pos_agent, webhooks

api_router = APIRouter()

api_router.include_router(pos.router, prefix="/pos", tags=["pos"])
api_router.include_router(pos_agent.router, prefix="/pos-agent/v1", tags=["pos-agent"])
api_router.include_router(webhooks.router, prefix="/webhooks", tags=["webhooks"])
