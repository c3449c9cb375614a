"""Unit tests for conversation and pending-action stores."""

import json
from unittest.mock import AsyncMock, MagicMock

import pytest
from helpers import tool_call
from redis.exceptions import ConnectionError as RedisConnectionError

from opsagent.domain.agent.types import PendingAction
from opsagent.infrastructure.ai.types import ChatMessage
from opsagent.infrastructure.stores.conversations import (
    MAX_STORED_MESSAGES,
    InMemoryConversationStore,
    RedisConversationStore,
    trim_history,
)
from opsagent.infrastructure.stores.pending_actions import RedisPendingActionStore


def _assistant_with_call(call_id: str) -> ChatMessage:
    return ChatMessage(
        role="assistant",
        content="",
        tool_calls=[tool_call("log_fix_request", {"description": "x"}, call_id=call_id)],
    )


def _action(conversation_id: str = "conv-1") -> PendingAction:
    return PendingAction.open(
        conversation_id=conversation_id,
        user_id="user-1",
        organization_id="org-1",
        agent="shopfloor",
        call=tool_call("update_machine_status", {"id": "m-1", "status": "down"}, call_id="call_1"),
        args={"id": "m-1", "status": "down"},
        description="Update machine status: id=m-1, status=down",
        deferred=[],
        ttl_seconds=900,
    )


class TestTrimHistory:
    def test_drops_leading_tool_messages(self):
        messages = [
            ChatMessage.tool_result("call_1", "ok"),
            ChatMessage.tool_result("call_2", "ok"),
            ChatMessage(role="assistant", content="done"),
            ChatMessage(role="user", content="thanks"),
        ]

        trimmed = trim_history(messages)

        assert [m.role for m in trimmed] == ["assistant", "user"]

    def test_keeps_tool_messages_after_their_assistant(self):
        messages = [_assistant_with_call("call_1"), ChatMessage.tool_result("call_1", "ok")]

        assert trim_history(messages) == messages


class TestInMemoryConversationStore:
    @pytest.mark.asyncio
    async def test_load_returns_last_messages_in_order(self):
        store = InMemoryConversationStore()
        await store.append("conv-1", [ChatMessage(role="user", content=str(i)) for i in range(5)])

        loaded = await store.load("conv-1", 3)

        assert [m.content for m in loaded] == ["2", "3", "4"]

    @pytest.mark.asyncio
    async def test_window_never_starts_with_orphan_tool_message(self):
        store = InMemoryConversationStore()
        await store.append(
            "conv-1",
            [
                ChatMessage(role="user", content="log it"),
                _assistant_with_call("call_1"),
                ChatMessage.tool_result("call_1", "logged"),
                ChatMessage(role="assistant", content="Done"),
            ],
        )

        loaded = await store.load("conv-1", 2)

        assert [m.role for m in loaded] == ["assistant"]

    @pytest.mark.asyncio
    async def test_unknown_conversation_is_empty(self):
        assert await InMemoryConversationStore().load("nope", 10) == []

    @pytest.mark.asyncio
    async def test_zero_limit(self):
        store = InMemoryConversationStore()
        await store.append("conv-1", [ChatMessage(role="user", content="hi")])

        assert await store.load("conv-1", 0) == []

    @pytest.mark.asyncio
    async def test_claim_binds_conversation_to_first_owner(self):
        store = InMemoryConversationStore()

        assert await store.claim("conv-1", "org-1:user-1")
        assert await store.claim("conv-1", "org-1:user-1")
        assert not await store.claim("conv-1", "org-1:user-2")
        assert await store.claim("conv-2", "org-1:user-2")

    @pytest.mark.asyncio
    async def test_stored_messages_are_capped(self):
        store = InMemoryConversationStore()
        messages = [ChatMessage(role="user", content=str(i)) for i in range(MAX_STORED_MESSAGES + 5)]
        await store.append("conv-1", messages)

        loaded = await store.load("conv-1", MAX_STORED_MESSAGES + 5)

        assert len(loaded) == MAX_STORED_MESSAGES
        assert loaded[0].content == "5"


class TestRedisConversationStore:
    @pytest.mark.asyncio
    async def test_load_decodes_wire_messages(self):
        client = MagicMock()
        client.lrange = AsyncMock(
            return_value=[
                json.dumps(_assistant_with_call("call_1").to_wire()),
                json.dumps({"role": "tool", "content": "ok", "tool_call_id": "call_1"}),
            ]
        )
        store = RedisConversationStore(client)

        loaded = await store.load("conv-1", 10)

        client.lrange.assert_awaited_once_with("opsagent:conversation:conv-1:messages", -10, -1)
        assert loaded[0].tool_calls[0].id == "call_1"
        assert loaded[1].tool_call_id == "call_1"

    @pytest.mark.asyncio
    async def test_load_skips_corrupt_entries(self):
        client = MagicMock()
        client.lrange = AsyncMock(return_value=["not json", json.dumps({"role": "user", "content": "hi"})])

        loaded = await RedisConversationStore(client).load("conv-1", 10)

        assert [m.content for m in loaded] == ["hi"]

    @pytest.mark.asyncio
    async def test_load_retries_connection_errors(self):
        client = MagicMock()
        client.lrange = AsyncMock(
            side_effect=[RedisConnectionError("reset"), [json.dumps({"role": "user", "content": "hi"})]]
        )

        loaded = await RedisConversationStore(client).load("conv-1", 10)

        assert client.lrange.await_count == 2
        assert loaded[0].content == "hi"

    @pytest.mark.asyncio
    async def test_append_pushes_trims_and_expires(self):
        pipe = MagicMock()
        pipe.execute = AsyncMock(return_value=[1, True, True])
        pipeline_cm = MagicMock()
        pipeline_cm.__aenter__ = AsyncMock(return_value=pipe)
        pipeline_cm.__aexit__ = AsyncMock(return_value=None)
        client = MagicMock()
        client.pipeline.return_value = pipeline_cm

        await RedisConversationStore(client).append("conv-1", [ChatMessage(role="user", content="hi")])

        key = "opsagent:conversation:conv-1:messages"
        pushed = pipe.rpush.call_args.args
        assert pushed[0] == key
        assert json.loads(pushed[1]) == {"role": "user", "content": "hi"}
        pipe.ltrim.assert_called_once_with(key, -MAX_STORED_MESSAGES, -1)
        assert [c.args[0] for c in pipe.expire.call_args_list] == [key, "opsagent:conversation:conv-1:owner"]
        pipe.execute.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_claim_new_conversation(self):
        client = MagicMock()
        client.set = AsyncMock(return_value=True)

        assert await RedisConversationStore(client).claim("conv-1", "org-1:user-1")

        args, kwargs = client.set.call_args
        assert args == ("opsagent:conversation:conv-1:owner", "org-1:user-1")
        assert kwargs["nx"] is True

    @pytest.mark.asyncio
    async def test_claim_compares_existing_owner(self):
        client = MagicMock()
        client.set = AsyncMock(return_value=None)
        client.get = AsyncMock(return_value="org-1:user-1")
        store = RedisConversationStore(client)

        assert await store.claim("conv-1", "org-1:user-1")
        assert not await store.claim("conv-1", "org-1:user-2")


class TestRedisPendingActionStore:
    def _client(self, script_result=None):
        client = MagicMock()
        client.register_script.return_value = AsyncMock(return_value=script_result)
        return client

    @pytest.mark.asyncio
    async def test_create_is_set_if_absent_with_ttl(self):
        client = self._client()
        client.set = AsyncMock(return_value=True)
        action = _action()

        created = await RedisPendingActionStore(client).create(action)

        assert created is True
        args, kwargs = client.set.call_args
        assert args[0] == "opsagent:pending:conv-1"
        assert kwargs["nx"] is True
        assert 0 < kwargs["ex"] <= 900

    @pytest.mark.asyncio
    async def test_create_reports_existing_action(self):
        client = self._client()
        client.set = AsyncMock(return_value=None)

        assert await RedisPendingActionStore(client).create(_action()) is False

    @pytest.mark.asyncio
    async def test_get_decodes_action(self):
        action = _action()
        client = self._client()
        client.get = AsyncMock(return_value=action.model_dump_json())

        loaded = await RedisPendingActionStore(client).get("conv-1")

        assert loaded.id == action.id
        assert loaded.args == {"id": "m-1", "status": "down"}

    @pytest.mark.asyncio
    async def test_take_runs_compare_and_delete(self):
        action = _action()
        client = self._client(script_result=action.model_dump_json())
        store = RedisPendingActionStore(client)

        taken = await store.take("conv-1", action.id)

        assert taken.id == action.id
        store._take_script.assert_awaited_once_with(keys=["opsagent:pending:conv-1"], args=[action.id])

    @pytest.mark.asyncio
    async def test_take_mismatch_returns_none(self):
        client = self._client(script_result=None)

        assert await RedisPendingActionStore(client).take("conv-1", "other") is None
