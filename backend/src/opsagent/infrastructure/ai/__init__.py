"""LLM vendor access: wire types, vendor clients and the gateway."""

from opsagent.infrastructure.ai.cost_tracker import CostTracker
from opsagent.infrastructure.ai.gateway import ProviderGateway
from opsagent.infrastructure.ai.types import (
    AIRequest,
    AIResult,
    ChatMessage,
    FallbackSpec,
    ProviderTag,
    ToolCall,
)

__all__ = [
    "AIRequest",
    "AIResult",
    "ChatMessage",
    "CostTracker",
    "FallbackSpec",
    "ProviderGateway",
    "ProviderTag",
    "ToolCall",
]
