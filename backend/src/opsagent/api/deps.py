"""FastAPI dependencies for API routes."""

from typing import Annotated

from fastapi import Depends, Request

from opsagent.api.middleware.auth import CurrentUser, get_current_user
from opsagent.domain.agent.service import AgentChatService, build_agent_service


def get_agent_service(request: Request) -> AgentChatService:
    """Service built at startup (per FastAPI app)."""
    service = getattr(request.app.state, "agent_service", None)
    if service is None:
        service = build_agent_service()
        request.app.state.agent_service = service
    return service


def get_access_token(request: Request) -> str | None:
    return getattr(request.state, "access_token", None)


AgentService = Annotated[AgentChatService, Depends(get_agent_service)]

__all__ = [
    "AgentService",
    "CurrentUser",
    "get_access_token",
    "get_agent_service",
    "get_current_user",
]
