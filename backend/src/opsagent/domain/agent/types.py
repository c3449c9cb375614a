"""Agent orchestration domain types.

Kept free of service imports so stores, executor and loop can share them
without circular imports.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Any, Literal
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field

from opsagent.infrastructure.ai.types import ChatMessage, ProviderTag, ToolCall

Severity = Literal["none", "warning", "critical"]


class Decision(str, Enum):
    """Human decision on a pending action."""

    CONFIRM = "confirm"
    CANCEL = "cancel"


class PendingActionStatus(str, Enum):
    CREATED = "created"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


class PendingAction(BaseModel):
    """A gated tool call suspended until a human confirms or cancels it.

    ``deferred_calls`` holds the tool calls the model requested after the
    gated one in the same turn; each still needs a tool message on resume.
    Only the user who triggered the action may see or resolve it.
    """

    id: str = Field(default_factory=lambda: uuid4().hex)
    conversation_id: str
    user_id: str
    organization_id: str
    agent: str
    tool: str
    args: dict[str, Any]
    description: str
    tool_call_id: str
    deferred_calls: list[dict[str, Any]] = Field(default_factory=list)
    status: PendingActionStatus = PendingActionStatus.CREATED
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    expires_at: datetime

    @classmethod
    def open(
        cls,
        *,
        conversation_id: str,
        user_id: str,
        organization_id: str,
        agent: str,
        call: ToolCall,
        args: dict[str, Any],
        description: str,
        deferred: list[ToolCall],
        ttl_seconds: int,
    ) -> PendingAction:
        now = datetime.now(UTC)
        return cls(
            conversation_id=conversation_id,
            user_id=user_id,
            organization_id=organization_id,
            agent=agent,
            tool=call.function_name,
            args=args,
            description=description,
            tool_call_id=call.id,
            deferred_calls=[tc.to_wire() for tc in deferred],
            created_at=now,
            expires_at=now + timedelta(seconds=ttl_seconds),
        )

    def owned_by(self, user_id: str, organization_id: str) -> bool:
        return (self.user_id, self.organization_id) == (user_id, organization_id)

    def is_expired(self, now: datetime | None = None) -> bool:
        return (now or datetime.now(UTC)) >= self.expires_at

    def deferred_tool_calls(self) -> list[ToolCall]:
        return [ToolCall.from_wire(data) for data in self.deferred_calls]

    def ttl_remaining(self, now: datetime | None = None) -> int:
        remaining = (self.expires_at - (now or datetime.now(UTC))).total_seconds()
        return max(1, int(remaining))


class QAVerdict(BaseModel):
    """Verdict object the review model must answer with."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    passed: bool = Field(alias="pass")
    flags: list[str] = Field(default_factory=list)
    severity: Severity = "none"
    sanitized_reply: str | None = None


class QAResult(BaseModel):
    """Outcome of the QA review of one reply."""

    model_config = ConfigDict(populate_by_name=True)

    passed: bool = Field(default=True, alias="pass")
    flags: list[str] = Field(default_factory=list)
    severity: Severity = "none"
    sanitized_reply: str | None = None
    skipped: bool = False

    @classmethod
    def skip(cls) -> QAResult:
        return cls(passed=True, skipped=True)

    @classmethod
    def fail_open(cls, flag: str) -> QAResult:
        return cls(passed=True, flags=[flag])

    @classmethod
    def from_verdict(cls, verdict: QAVerdict) -> QAResult:
        return cls(
            passed=verdict.passed,
            flags=list(verdict.flags),
            severity=verdict.severity,
            sanitized_reply=verdict.sanitized_reply,
        )

    @property
    def requires_substitution(self) -> bool:
        return self.severity == "critical" and self.sanitized_reply is not None


@dataclass(frozen=True)
class ModelSelection:
    provider: ProviderTag
    model: str
    max_tokens: int
    temperature: float
    reason: str


@dataclass(frozen=True)
class ToolContext:
    """Acting identity and tenant scope passed to tool handlers."""

    user_id: str
    organization_id: str
    conversation_id: str
    agent: str
    email: str = ""
    role: str = "member"
    auth_token: str | None = None


@dataclass
class ToolExecution:
    """Result of executing a tool."""

    tool_name: str
    tool_input: dict[str, Any]
    result: str
    error: str | None = None
    tool_call_id: str | None = None

    @property
    def tool_message_content(self) -> str:
        return f"Error: {self.error}" if self.error else self.result


class TurnStatus(str, Enum):
    COMPLETED = "completed"
    PENDING_CONFIRMATION = "pending_confirmation"
    EXHAUSTED = "exhausted"


@dataclass
class TurnResult:
    """What one run of the orchestration loop produced."""

    status: TurnStatus
    content: str
    new_messages: list[ChatMessage]
    executions: list[ToolExecution] = field(default_factory=list)
    pending_action: PendingAction | None = None
    provider: ProviderTag | None = None
    model: str | None = None
    iterations: int = 0
    fell_back: bool = False

    @property
    def tool_calls_made(self) -> list[str]:
        return [execution.tool_name for execution in self.executions]


@dataclass
class AgentReply:
    """Final answer of a chat or resume invocation."""

    conversation_id: str
    agent: str
    status: TurnStatus
    content: str
    pending_action: PendingAction | None = None
    qa: QAResult | None = None
    provider: ProviderTag | None = None
    model: str | None = None
    iterations: int = 0
    tool_calls_made: list[str] = field(default_factory=list)
    fell_back: bool = False
