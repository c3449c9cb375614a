"""Append-only conversation history."""

import asyncio
import json
from collections import defaultdict
from collections.abc import Sequence
from typing import Protocol

from redis.asyncio import Redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from opsagent.infrastructure.ai.types import ChatMessage
from opsagent.shared.logging import get_logger

logger = get_logger(__name__)

# Per conversation; older messages are dropped on append
MAX_STORED_MESSAGES = 200
CONVERSATION_TTL_SECONDS = 30 * 24 * 3600


def trim_history(messages: Sequence[ChatMessage]) -> list[ChatMessage]:
    """Drop leading tool messages whose assistant turn fell outside the window."""
    start = 0
    while start < len(messages) and messages[start].role == "tool":
        start += 1
    return list(messages[start:])


class ConversationStore(Protocol):
    async def claim(self, conversation_id: str, owner: str) -> bool:
        """Bind a new conversation to ``owner``; False if someone else owns it."""
        ...

    async def load(self, conversation_id: str, limit: int) -> list[ChatMessage]:
        """Return the last ``limit`` messages, oldest first."""
        ...

    async def append(self, conversation_id: str, messages: Sequence[ChatMessage]) -> None: ...


class InMemoryConversationStore:
    """Single-process store for development and tests."""

    def __init__(self) -> None:
        self._messages: dict[str, list[ChatMessage]] = defaultdict(list)
        self._owners: dict[str, str] = {}
        self._lock = asyncio.Lock()

    async def claim(self, conversation_id: str, owner: str) -> bool:
        async with self._lock:
            return self._owners.setdefault(conversation_id, owner) == owner

    async def load(self, conversation_id: str, limit: int) -> list[ChatMessage]:
        if limit <= 0:
            return []
        async with self._lock:
            window = self._messages.get(conversation_id, [])[-limit:]
        return trim_history(window)

    async def append(self, conversation_id: str, messages: Sequence[ChatMessage]) -> None:
        if not messages:
            return
        async with self._lock:
            stored = self._messages[conversation_id]
            stored.extend(messages)
            del stored[:-MAX_STORED_MESSAGES]


class RedisConversationStore:
    """One Redis list of JSON-encoded wire messages per conversation."""

    def __init__(self, client: Redis, key_prefix: str = "opsagent:conversation") -> None:
        self.client = client
        self.key_prefix = key_prefix

    def _key(self, conversation_id: str) -> str:
        return f"{self.key_prefix}:{conversation_id}:messages"

    def _owner_key(self, conversation_id: str) -> str:
        return f"{self.key_prefix}:{conversation_id}:owner"

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.1, max=1),
        retry=retry_if_exception_type((RedisConnectionError, RedisTimeoutError)),
        reraise=True,
    )
    async def claim(self, conversation_id: str, owner: str) -> bool:
        # The owner never changes once set, so SET NX then GET is safe to replay
        key = self._owner_key(conversation_id)
        if await self.client.set(key, owner, nx=True, ex=CONVERSATION_TTL_SECONDS):
            return True
        return await self.client.get(key) == owner

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.1, max=1),
        retry=retry_if_exception_type((RedisConnectionError, RedisTimeoutError)),
        reraise=True,
    )
    async def load(self, conversation_id: str, limit: int) -> list[ChatMessage]:
        if limit <= 0:
            return []
        raw_messages = await self.client.lrange(self._key(conversation_id), -limit, -1)
        messages = []
        for raw in raw_messages:
            try:
                messages.append(ChatMessage.from_wire(json.loads(raw)))
            except (ValueError, KeyError) as e:
                logger.warning(
                    "conversation_message_corrupt",
                    conversation_id=conversation_id,
                    error=str(e),
                )
        return trim_history(messages)

    async def append(self, conversation_id: str, messages: Sequence[ChatMessage]) -> None:
        # Not retried: a replayed RPUSH would duplicate messages
        if not messages:
            return
        key = self._key(conversation_id)
        async with self.client.pipeline(transaction=True) as pipe:
            pipe.rpush(key, *(json.dumps(m.to_wire(), ensure_ascii=False) for m in messages))
            pipe.ltrim(key, -MAX_STORED_MESSAGES, -1)
            pipe.expire(key, CONVERSATION_TTL_SECONDS)
            pipe.expire(self._owner_key(conversation_id), CONVERSATION_TTL_SECONDS)
            await pipe.execute()
