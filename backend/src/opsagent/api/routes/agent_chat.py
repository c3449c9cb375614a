"""Agent chat API.

Chat turns may end in a pending confirmation instead of a reply; the client
then shows the action description and calls ``/agent/chat/confirm`` with
the user's decision.
"""

import asyncio
from datetime import datetime
from typing import Any, Literal

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

from opsagent.api.deps import AgentService, CurrentUser, get_access_token
from opsagent.api.ratelimit import RATE_LIMIT_AI, RATE_LIMIT_DEFAULT, limiter
from opsagent.domain.agent.router import AgentRoute
from opsagent.domain.agent.types import AgentReply, Decision, PendingAction, QAResult
from opsagent.infrastructure.ai.types import ChatMessage

router = APIRouter(prefix="/agent", tags=["agent"])


# ----- Request/Response Models -----


class ChatRequest(BaseModel):
    """One user message to an agent."""

    agent: str = Field(..., min_length=1, max_length=50, examples=["accounting"])
    message: str = Field(..., min_length=1, max_length=10000)
    conversation_id: str | None = Field(
        None,
        max_length=100,
        description="Omit to start a new conversation",
    )
    attachments: list[str] = Field(
        default_factory=list,
        max_length=10,
        description="Image URLs sent along with the message",
    )
    context: dict[str, Any] | None = Field(None, description="Page data the agent may use")
    timeout_seconds: float | None = Field(
        None,
        ge=1,
        le=300,
        description="Abort the turn if the model has not answered in time",
    )


class ConfirmRequest(BaseModel):
    """The user's decision on a pending action."""

    conversation_id: str = Field(..., min_length=1, max_length=100)
    action_id: str = Field(..., min_length=1, max_length=64)
    decision: Decision
    context: dict[str, Any] | None = None
    timeout_seconds: float | None = Field(None, ge=1, le=300)


class MessageInput(BaseModel):
    role: Literal["user", "assistant"]
    content: str = Field(..., max_length=20000)


class StreamRequest(BaseModel):
    agent: str = Field("assistant", min_length=1, max_length=50)
    messages: list[MessageInput] = Field(..., min_length=1, max_length=50)
    context: dict[str, Any] | None = None


class PendingActionResponse(BaseModel):
    id: str
    conversation_id: str
    tool: str
    args: dict[str, Any]
    description: str
    expires_at: datetime

    @classmethod
    def from_action(cls, action: PendingAction) -> "PendingActionResponse":
        return cls(
            id=action.id,
            conversation_id=action.conversation_id,
            tool=action.tool,
            args=action.args,
            description=action.description,
            expires_at=action.expires_at,
        )


class AgentReplyResponse(BaseModel):
    """Reply of a chat or confirm call."""

    conversation_id: str
    agent: str
    status: Literal["completed", "pending_confirmation", "exhausted"]
    reply: str
    pending_action: PendingActionResponse | None = None
    qa: QAResult | None = None
    model: str | None = None
    provider: str | None = None
    iterations: int
    tool_calls_made: list[str]
    fell_back: bool = False

    @classmethod
    def from_reply(cls, reply: AgentReply) -> "AgentReplyResponse":
        return cls(
            conversation_id=reply.conversation_id,
            agent=reply.agent,
            status=reply.status.value,
            reply=reply.content,
            pending_action=(
                PendingActionResponse.from_action(reply.pending_action)
                if reply.pending_action
                else None
            ),
            qa=reply.qa,
            model=reply.model,
            provider=reply.provider.value if reply.provider else None,
            iterations=reply.iterations,
            tool_calls_made=reply.tool_calls_made,
            fell_back=reply.fell_back,
        )


class RouteRequest(BaseModel):
    """A message the client's keyword matcher could not place confidently."""

    message: str = Field(..., min_length=1, max_length=4000)
    current_match: str | None = Field(None, max_length=50)
    current_confidence: float = Field(0.0, ge=0.0, le=1.0)


class ToolInfo(BaseModel):
    name: str
    label: str | None
    description: str
    gated: bool
    parameters: dict[str, Any]


def _deadline(timeout_seconds: float | None) -> asyncio.Event | None:
    """Abort signal that fires after ``timeout_seconds``."""
    if not timeout_seconds:
        return None
    event = asyncio.Event()
    asyncio.get_running_loop().call_later(timeout_seconds, event.set)
    return event


# ----- API Endpoints -----


@router.post("/chat", response_model=AgentReplyResponse)
@limiter.limit(RATE_LIMIT_AI)
async def chat(
    request: Request,
    body: ChatRequest,
    user: CurrentUser,
    service: AgentService,
    access_token: str | None = Depends(get_access_token),
) -> AgentReplyResponse:
    """Send a message to an agent.

    Returns either the final reply or, when the agent wants to run an action
    that needs approval, ``status=pending_confirmation`` with the action.
    """
    reply = await service.chat(
        user,
        agent=body.agent,
        message=body.message,
        conversation_id=body.conversation_id,
        attachments=body.attachments,
        context=body.context,
        auth_token=access_token,
        abort=_deadline(body.timeout_seconds),
    )
    return AgentReplyResponse.from_reply(reply)


@router.post("/chat/confirm", response_model=AgentReplyResponse)
@limiter.limit(RATE_LIMIT_AI)
async def confirm(
    request: Request,
    body: ConfirmRequest,
    user: CurrentUser,
    service: AgentService,
    access_token: str | None = Depends(get_access_token),
) -> AgentReplyResponse:
    """Confirm or cancel a pending action and let the agent continue."""
    reply = await service.resume(
        user,
        conversation_id=body.conversation_id,
        action_id=body.action_id,
        decision=body.decision,
        context=body.context,
        auth_token=access_token,
        abort=_deadline(body.timeout_seconds),
    )
    return AgentReplyResponse.from_reply(reply)


@router.post("/chat/stream")
@limiter.limit(RATE_LIMIT_AI)
async def chat_stream(
    request: Request,
    body: StreamRequest,
    user: CurrentUser,
    service: AgentService,
) -> StreamingResponse:
    """Stream a tool-less completion as server-sent events."""
    chunks = await service.stream(
        user,
        agent=body.agent,
        messages=[ChatMessage(role=m.role, content=m.content) for m in body.messages],
        context=body.context,
    )
    return StreamingResponse(
        chunks,
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@router.post("/route", response_model=AgentRoute)
@limiter.limit(RATE_LIMIT_AI)
async def route_message(
    request: Request,
    body: RouteRequest,
    user: CurrentUser,
    service: AgentService,
) -> AgentRoute:
    """Classify a message to up to three agents, most relevant first."""
    return await service.route(
        body.message,
        keyword_match=body.current_match,
        keyword_confidence=body.current_confidence,
    )


@router.get("/tools", response_model=list[ToolInfo])
@limiter.limit(RATE_LIMIT_DEFAULT)
async def list_tools(
    request: Request,
    user: CurrentUser,
    service: AgentService,
    agent: str | None = Query(None, max_length=50),
) -> list[ToolInfo]:
    """Tools available to an agent (all tools when no agent is given)."""
    return [
        ToolInfo(
            name=tool.name,
            label=tool.label,
            description=tool.description,
            gated=tool.gated,
            parameters=tool.parameters_schema,
        )
        for tool in service.list_tools(agent)
    ]


@router.get("/conversations/{conversation_id}/pending", response_model=PendingActionResponse | None)
@limiter.limit(RATE_LIMIT_DEFAULT)
async def get_pending_action(
    request: Request,
    conversation_id: str,
    user: CurrentUser,
    service: AgentService,
) -> PendingActionResponse | None:
    """The action awaiting confirmation in a conversation, if any."""
    action = await service.pending_action(user, conversation_id)
    return PendingActionResponse.from_action(action) if action else None
