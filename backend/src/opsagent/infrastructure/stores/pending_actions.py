"""Pending-action persistence: at most one open action per conversation.

Opening is an atomic set-if-absent; taking an action for resolution is an
atomic compare-and-delete on the action id, so two resume calls for the
same action cannot both execute it.
"""

import asyncio
from typing import Protocol

from redis.asyncio import Redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from opsagent.domain.agent.types import PendingAction
from opsagent.shared.logging import get_logger

logger = get_logger(__name__)

_TAKE_IF_MATCHES = """
local raw = redis.call('GET', KEYS[1])
if not raw then
    return false
end
local ok, data = pcall(cjson.decode, raw)
if ok and data['id'] == ARGV[1] then
    redis.call('DEL', KEYS[1])
    return raw
end
return false
"""


class PendingActionStore(Protocol):
    async def create(self, action: PendingAction) -> bool:
        """Store ``action`` unless one is already open; return whether it was stored."""
        ...

    async def get(self, conversation_id: str) -> PendingAction | None: ...

    async def take(self, conversation_id: str, action_id: str) -> PendingAction | None:
        """Remove and return the open action if its id matches."""
        ...


class InMemoryPendingActionStore:
    """Single-process store for development and tests."""

    def __init__(self) -> None:
        self._actions: dict[str, PendingAction] = {}
        self._lock = asyncio.Lock()

    def _live(self, conversation_id: str) -> PendingAction | None:
        action = self._actions.get(conversation_id)
        if action is not None and action.is_expired():
            logger.info("pending_action_expired", conversation_id=conversation_id, action_id=action.id)
            del self._actions[conversation_id]
            return None
        return action

    async def create(self, action: PendingAction) -> bool:
        async with self._lock:
            if self._live(action.conversation_id) is not None:
                return False
            self._actions[action.conversation_id] = action
            return True

    async def get(self, conversation_id: str) -> PendingAction | None:
        async with self._lock:
            return self._live(conversation_id)

    async def take(self, conversation_id: str, action_id: str) -> PendingAction | None:
        async with self._lock:
            action = self._live(conversation_id)
            if action is None or action.id != action_id:
                return None
            del self._actions[conversation_id]
            return action


class RedisPendingActionStore:
    """Redis-backed store; expiry is the key TTL."""

    def __init__(self, client: Redis, key_prefix: str = "opsagent:pending") -> None:
        self.client = client
        self.key_prefix = key_prefix
        self._take_script = client.register_script(_TAKE_IF_MATCHES)

    def _key(self, conversation_id: str) -> str:
        return f"{self.key_prefix}:{conversation_id}"

    async def create(self, action: PendingAction) -> bool:
        stored = await self.client.set(
            self._key(action.conversation_id),
            action.model_dump_json(),
            nx=True,
            ex=action.ttl_remaining(),
        )
        return bool(stored)

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.1, max=1),
        retry=retry_if_exception_type((RedisConnectionError, RedisTimeoutError)),
        reraise=True,
    )
    async def get(self, conversation_id: str) -> PendingAction | None:
        raw = await self.client.get(self._key(conversation_id))
        if raw is None:
            return None
        return PendingAction.model_validate_json(raw)

    async def take(self, conversation_id: str, action_id: str) -> PendingAction | None:
        raw = await self._take_script(keys=[self._key(conversation_id)], args=[action_id])
        if not raw:
            return None
        return PendingAction.model_validate_json(raw)
