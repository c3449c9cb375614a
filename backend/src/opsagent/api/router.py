"""Main API router aggregating all v1 routes."""

from fastapi import APIRouter

from opsagent.api.routes import agent_chat, health

api_router = APIRouter()

api_router.include_router(health.router)
api_router.include_router(agent_chat.router)
