"""Provider-agnostic request/response types for chat-completion vendors.

Both supported vendors speak the OpenAI chat-completions schema, so these
types map 1:1 onto that wire format and the orchestration code never branches
on the vendor.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Literal

Role = Literal["system", "user", "assistant", "tool"]

# Text, or an ordered list of {"type": "text"|"image_url", ...} parts
MessageContent = str | list[dict[str, Any]]


class ProviderTag(str, Enum):
    """Closed set of supported vendors."""

    GPT = "gpt"
    GEMINI = "gemini"


@dataclass(frozen=True, slots=True)
class ToolCall:
    """A tool invocation requested by the model; arguments are not validated yet."""

    id: str
    function_name: str
    arguments_raw: str

    def to_wire(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.function_name, "arguments": self.arguments_raw},
        }

    @classmethod
    def from_wire(cls, data: dict[str, Any]) -> ToolCall:
        function = data.get("function") or {}
        return cls(
            id=str(data.get("id", "")),
            function_name=str(function.get("name", "")),
            arguments_raw=function.get("arguments") or "{}",
        )


@dataclass
class ChatMessage:
    """A message in the conversation, in vendor wire shape."""

    role: Role
    content: MessageContent = ""
    tool_call_id: str | None = None
    tool_calls: list[ToolCall] = field(default_factory=list)

    def __post_init__(self) -> None:
        if self.role == "tool" and not self.tool_call_id:
            raise ValueError("tool messages require a tool_call_id")

    @classmethod
    def tool_result(cls, tool_call_id: str, content: str) -> ChatMessage:
        return cls(role="tool", content=content, tool_call_id=tool_call_id)

    @property
    def text(self) -> str:
        """Plain-text view of the content (image parts dropped)."""
        if isinstance(self.content, str):
            return self.content
        return "\n".join(
            str(part.get("text", "")) for part in self.content if part.get("type") == "text"
        ).strip()

    def to_wire(self) -> dict[str, Any]:
        data: dict[str, Any] = {"role": self.role, "content": self.content}
        if self.tool_call_id:
            data["tool_call_id"] = self.tool_call_id
        if self.tool_calls:
            data["tool_calls"] = [tc.to_wire() for tc in self.tool_calls]
        return data

    @classmethod
    def from_wire(cls, data: dict[str, Any]) -> ChatMessage:
        return cls(
            role=data["role"],
            content=data.get("content") or "",
            tool_call_id=data.get("tool_call_id"),
            tool_calls=[ToolCall.from_wire(tc) for tc in data.get("tool_calls") or []],
        )


@dataclass(frozen=True, slots=True)
class FallbackSpec:
    """Vendor/model to try once when the primary answers 429."""

    provider: ProviderTag
    model: str


@dataclass
class AIRequest:
    """A single chat-completion request."""

    provider: ProviderTag
    model: str
    messages: list[ChatMessage]
    temperature: float = 0.5
    max_tokens: int | None = None
    tools: list[dict[str, Any]] | None = None
    tool_choice: str | dict[str, Any] | None = None
    fallback: FallbackSpec | None = None
    abort: asyncio.Event | None = None
    timeout: float | None = None
    action: str = "agent_chat"

    def to_payload(self) -> dict[str, Any]:
        """Build the chat-completions body (without the vendor's model default)."""
        payload: dict[str, Any] = {
            "model": self.model,
            "messages": [message.to_wire() for message in self.messages],
            "temperature": self.temperature,
        }
        if self.max_tokens:
            payload["max_tokens"] = self.max_tokens
        if self.tools:
            payload["tools"] = self.tools
            if self.tool_choice:
                payload["tool_choice"] = self.tool_choice
        return payload


@dataclass
class AIResult:
    """Normalized result of a completion."""

    content: str
    tool_calls: list[ToolCall]
    provider: ProviderTag
    model: str
    input_tokens: int = 0
    output_tokens: int = 0
    latency_ms: float = 0.0
    fell_back: bool = False

    @property
    def has_tool_calls(self) -> bool:
        return bool(self.tool_calls)

    def to_assistant_message(self) -> ChatMessage:
        return ChatMessage(role="assistant", content=self.content, tool_calls=list(self.tool_calls))
