"""Conversation history and pending-action persistence."""

from opsagent.infrastructure.stores.conversations import (
    ConversationStore,
    InMemoryConversationStore,
    RedisConversationStore,
)
from opsagent.infrastructure.stores.pending_actions import (
    InMemoryPendingActionStore,
    PendingActionStore,
    RedisPendingActionStore,
)

__all__ = [
    "ConversationStore",
    "InMemoryConversationStore",
    "InMemoryPendingActionStore",
    "PendingActionStore",
    "RedisConversationStore",
    "RedisPendingActionStore",
]
