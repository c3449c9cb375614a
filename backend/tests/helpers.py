"""Fakes shared by unit and integration tests."""

import json
from collections.abc import AsyncIterator
from itertools import count
from typing import Any

from pydantic import BaseModel, Field

from opsagent.domain.agent.registry import Tool, ToolRegistry
from opsagent.domain.agent.types import ToolContext
from opsagent.infrastructure.ai.types import AIRequest, AIResult, ProviderTag, ToolCall

_call_ids = count(1)


def tool_call(
    name: str,
    args: dict[str, Any] | None = None,
    *,
    raw: str | None = None,
    call_id: str | None = None,
) -> ToolCall:
    return ToolCall(
        id=call_id or f"call_{next(_call_ids)}",
        function_name=name,
        arguments_raw=raw if raw is not None else json.dumps(args or {}),
    )


def ai_result(
    content: str = "",
    tool_calls: list[ToolCall] | None = None,
    provider: ProviderTag = ProviderTag.GPT,
    model: str = "gpt-4o-mini",
) -> AIResult:
    return AIResult(content=content, tool_calls=list(tool_calls or []), provider=provider, model=model)


class ScriptedGateway:
    """Gateway that answers calls from a script and records every request."""

    def __init__(self, *responses: AIResult | Exception, chunks: list[bytes] | None = None) -> None:
        self.responses = list(responses)
        self.chunks = chunks or []
        self.calls: list[AIRequest] = []

    async def call(self, request: AIRequest) -> AIResult:
        self.calls.append(request)
        if not self.responses:
            raise AssertionError("unexpected provider call")
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response

    async def stream(self, request: AIRequest) -> AsyncIterator[bytes]:
        self.calls.append(request)
        for chunk in self.chunks:
            yield chunk


class RecordingHandler:
    """Tool handler that records its invocations."""

    def __init__(self, result: Any = "ok", error: Exception | None = None) -> None:
        self.result = result
        self.error = error
        self.calls: list[tuple[BaseModel, ToolContext]] = []

    async def __call__(self, params: BaseModel, context: ToolContext) -> Any:
        self.calls.append((params, context))
        if self.error is not None:
            raise self.error
        return self.result


class FixRequestInput(BaseModel):
    """Log a fix request."""

    description: str = Field(..., min_length=1)
    affected_area: str | None = None
    urgent: bool = False


class MachineStatusInput(BaseModel):
    """Set a machine's status."""

    id: str = Field(..., min_length=1)
    status: str = Field(..., min_length=1)


class LeadStatusInput(BaseModel):
    """Move a lead."""

    id: str
    status: str


def build_registry(
    fix_handler: RecordingHandler | None = None,
    machine_handler: RecordingHandler | None = None,
    lead_handler: RecordingHandler | None = None,
) -> ToolRegistry:
    """``log_fix_request`` runs automatically; the two status updates are gated."""
    return ToolRegistry(
        [
            Tool(
                name="log_fix_request",
                description="Log a fix request",
                input_model=FixRequestInput,
                handler=fix_handler or RecordingHandler(),
                label="Log fix request",
            ),
            Tool(
                name="update_machine_status",
                description="Set a machine's status",
                input_model=MachineStatusInput,
                handler=machine_handler or RecordingHandler(),
                gated=True,
                label="Update machine status",
            ),
            Tool(
                name="update_lead_status",
                description="Move a lead",
                input_model=LeadStatusInput,
                handler=lead_handler or RecordingHandler(),
                gated=True,
            ),
        ]
    )


def tool_context(conversation_id: str = "conv-1", agent: str = "shopfloor") -> ToolContext:
    return ToolContext(
        user_id="user-1",
        organization_id="org-1",
        conversation_id=conversation_id,
        agent=agent,
        email="ops@example.com",
        role="admin",
        auth_token="user-token",
    )
