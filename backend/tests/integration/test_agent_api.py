"""Integration tests for the agent chat API.

The app runs with dev auth and an AgentChatService backed by scripted
gateways, so every request goes through routing, auth, rate limiting,
the service and the exception handlers.
"""

import pytest
from helpers import ai_result, tool_call

from opsagent.api.ratelimit import RATE_LIMIT_HEALTH, limiter
from opsagent.infrastructure.auth.provider import AuthUser
from opsagent.infrastructure.ratelimit import RateLimiter
from opsagent.shared.exceptions import AIServiceError, ConfigurationError, TokenInvalidError


@pytest.fixture(autouse=True)
def reset_http_limiter():
    limiter.reset()
    yield
    limiter.reset()


def _gated_response():
    return ai_result(
        "Marking machine m-1 down.",
        tool_calls=[tool_call("update_machine_status", {"id": "m-1", "status": "down"}, call_id="call_gated")],
    )


class TestHealth:
    @pytest.mark.asyncio
    async def test_health(self, async_client):
        response = await async_client.get("/api/v1/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    @pytest.mark.asyncio
    async def test_ready_with_memory_stores(self, async_client):
        response = await async_client.get("/api/v1/ready")

        body = response.json()
        assert body["ready"] is True
        assert body["checks"]["agent_service"] is True
        assert "redis" not in body["checks"]

    @pytest.mark.asyncio
    async def test_health_is_rate_limited_per_client(self, async_client):
        allowed = int(RATE_LIMIT_HEALTH.split("/")[0])
        for _ in range(allowed):
            assert (await async_client.get("/api/v1/health")).status_code == 200

        response = await async_client.get("/api/v1/health")

        assert response.status_code == 429
        assert "Retry-After" in response.headers



class TestChatEndpoint:
    @pytest.mark.asyncio
    async def test_requires_auth(self, async_client):
        response = await async_client.post("/api/v1/agent/chat", json={"agent": "sales", "message": "hi"})

        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_completed_reply(self, async_client, auth_headers, gateway):
        gateway.responses.append(ai_result("Hello from support."))

        response = await async_client.post(
            "/api/v1/agent/chat",
            json={"agent": "support", "message": "hi", "conversation_id": "conv-api"},
            headers=auth_headers,
        )

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "completed"
        assert body["reply"] == "Hello from support."
        assert body["conversation_id"] == "conv-api"
        assert body["pending_action"] is None
        assert body["qa"]["skipped"] is True
        assert body["qa"]["pass"] is True
        assert body["model"] == "gpt-4o-mini"
        assert body["provider"] == "gpt"

    @pytest.mark.asyncio
    async def test_validation_error(self, async_client, auth_headers):
        response = await async_client.post(
            "/api/v1/agent/chat",
            json={"agent": "support", "message": ""},
            headers=auth_headers,
        )

        assert response.status_code == 422
        assert response.json()["error"] == "validation_error"

    @pytest.mark.asyncio
    async def test_vendor_failure_is_503_with_retry_message(self, async_client, auth_headers, gateway):
        gateway.responses.append(AIServiceError("gpt API error: 500", status_code=500, provider="gpt"))

        response = await async_client.post(
            "/api/v1/agent/chat",
            json={"agent": "support", "message": "hi"},
            headers=auth_headers,
        )

        assert response.status_code == 503
        assert response.json()["message"] == "AI service temporarily unavailable, please retry"
        assert "500" not in response.text

    @pytest.mark.asyncio
    async def test_missing_vendor_key_is_503(self, async_client, auth_headers, gateway):
        gateway.responses.append(ConfigurationError("GPT_API_KEY is not configured"))

        response = await async_client.post(
            "/api/v1/agent/chat",
            json={"agent": "support", "message": "hi"},
            headers=auth_headers,
        )

        assert response.status_code == 503
        assert "GPT_API_KEY" not in response.text

    @pytest.mark.asyncio
    async def test_agent_budget_exhausted_is_429(self, async_client, auth_headers, gateway, agent_service):
        agent_service.rate_limiter = RateLimiter("memory://", max_requests=1, window_seconds=60)
        gateway.responses.append(ai_result("first"))
        await async_client.post(
            "/api/v1/agent/chat", json={"agent": "support", "message": "one"}, headers=auth_headers
        )

        response = await async_client.post(
            "/api/v1/agent/chat", json={"agent": "support", "message": "two"}, headers=auth_headers
        )

        assert response.status_code == 429
        body = response.json()
        assert body["error"] == "rate_limited"
        assert body["retry_after"] >= 1
        assert response.headers["Retry-After"] == str(body["retry_after"])


class TestConfirmationFlow:
    @pytest.mark.asyncio
    async def test_pending_then_cancel(self, async_client, auth_headers, gateway, machine_handler):
        gateway.responses.append(_gated_response())

        pending = await async_client.post(
            "/api/v1/agent/chat",
            json={"agent": "shopfloor", "message": "Mark m-1 down", "conversation_id": "conv-flow"},
            headers=auth_headers,
        )

        body = pending.json()
        assert body["status"] == "pending_confirmation"
        assert body["qa"] is None
        action = body["pending_action"]
        assert action["tool"] == "update_machine_status"
        assert action["args"] == {"id": "m-1", "status": "down"}

        lookup = await async_client.get("/api/v1/agent/conversations/conv-flow/pending", headers=auth_headers)
        assert lookup.json()["id"] == action["id"]

        gateway.responses.append(ai_result("Understood, nothing was changed."))
        resumed = await async_client.post(
            "/api/v1/agent/chat/confirm",
            json={"conversation_id": "conv-flow", "action_id": action["id"], "decision": "cancel"},
            headers=auth_headers,
        )

        assert resumed.status_code == 200
        assert resumed.json()["reply"] == "Understood, nothing was changed."
        assert machine_handler.calls == []

        after = await async_client.get("/api/v1/agent/conversations/conv-flow/pending", headers=auth_headers)
        assert after.json() is None

    @pytest.mark.asyncio
    async def test_confirm_executes_tool(self, async_client, auth_headers, gateway, machine_handler):
        gateway.responses.append(_gated_response())
        pending = await async_client.post(
            "/api/v1/agent/chat",
            json={"agent": "shopfloor", "message": "Mark m-1 down", "conversation_id": "conv-ok"},
            headers=auth_headers,
        )
        action_id = pending.json()["pending_action"]["id"]

        gateway.responses.append(ai_result("Machine m-1 is down."))
        resumed = await async_client.post(
            "/api/v1/agent/chat/confirm",
            json={"conversation_id": "conv-ok", "action_id": action_id, "decision": "confirm"},
            headers=auth_headers,
        )

        assert resumed.status_code == 200
        assert resumed.json()["tool_calls_made"] == ["update_machine_status"]
        assert len(machine_handler.calls) == 1
        assert machine_handler.calls[0][1].auth_token == "test-token"

    @pytest.mark.asyncio
    async def test_chat_while_pending_is_409(self, async_client, auth_headers, gateway):
        gateway.responses.append(_gated_response())
        await async_client.post(
            "/api/v1/agent/chat",
            json={"agent": "shopfloor", "message": "Mark m-1 down", "conversation_id": "conv-busy"},
            headers=auth_headers,
        )

        response = await async_client.post(
            "/api/v1/agent/chat",
            json={"agent": "shopfloor", "message": "and m-2?", "conversation_id": "conv-busy"},
            headers=auth_headers,
        )

        assert response.status_code == 409
        assert response.json()["details"]["open_tool"] == "update_machine_status"

    @pytest.mark.asyncio
    async def test_unknown_action_is_404(self, async_client, auth_headers):
        response = await async_client.post(
            "/api/v1/agent/chat/confirm",
            json={"conversation_id": "conv-none", "action_id": "missing", "decision": "confirm"},
            headers=auth_headers,
        )

        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_invalid_decision_is_422(self, async_client, auth_headers):
        response = await async_client.post(
            "/api/v1/agent/chat/confirm",
            json={"conversation_id": "conv-1", "action_id": "a", "decision": "maybe"},
            headers=auth_headers,
        )

        assert response.status_code == 422


class TestToolsAndStream:
    @pytest.mark.asyncio
    async def test_tools_for_agent(self, async_client, auth_headers):
        response = await async_client.get("/api/v1/agent/tools", params={"agent": "shopfloor"}, headers=auth_headers)

        assert response.status_code == 200
        tools = {tool["name"]: tool for tool in response.json()}
        assert set(tools) == {"update_machine_status", "log_fix_request"}
        assert tools["update_machine_status"]["gated"] is True
        assert tools["log_fix_request"]["parameters"]["required"] == ["description"]

    @pytest.mark.asyncio
    async def test_stream_returns_event_stream(self, async_client, auth_headers, gateway):
        gateway.chunks = [b"data: one\n\n", b"data: [DONE]\n\n"]

        response = await async_client.post(
            "/api/v1/agent/chat/stream",
            json={"messages": [{"role": "user", "content": "hi"}]},
            headers=auth_headers,
        )

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/event-stream")
        assert response.content == b"data: one\n\ndata: [DONE]\n\n"


class TokenAuthProvider:
    """Resolves fixed bearer tokens to users."""

    def __init__(self, users: dict[str, AuthUser]) -> None:
        self.users = users

    async def verify_token(self, token: str) -> AuthUser:
        if token not in self.users:
            raise TokenInvalidError("Unknown token")
        return self.users[token]


class TestConversationOwnership:
    @pytest.fixture(autouse=True)
    def two_users(self, app, auth_user):
        other = AuthUser(id="user-2", email="eve@example.com", organization_id="org-1", role="member")
        app.state.auth_provider = TokenAuthProvider({"test-token": auth_user, "other-token": other})

    @pytest.mark.asyncio
    async def test_other_user_gets_404_for_foreign_action(
        self, async_client, auth_headers, gateway, machine_handler
    ):
        gateway.responses.append(_gated_response())
        pending = await async_client.post(
            "/api/v1/agent/chat",
            json={"agent": "shopfloor", "message": "Mark m-1 down", "conversation_id": "conv-owned"},
            headers=auth_headers,
        )
        action_id = pending.json()["pending_action"]["id"]
        other_headers = {"Authorization": "Bearer other-token"}

        confirm = await async_client.post(
            "/api/v1/agent/chat/confirm",
            json={"conversation_id": "conv-owned", "action_id": action_id, "decision": "confirm"},
            headers=other_headers,
        )
        lookup = await async_client.get("/api/v1/agent/conversations/conv-owned/pending", headers=other_headers)
        chat = await async_client.post(
            "/api/v1/agent/chat",
            json={"agent": "shopfloor", "message": "what is pending?", "conversation_id": "conv-owned"},
            headers=other_headers,
        )

        assert confirm.status_code == 404
        assert lookup.json() is None
        assert chat.status_code == 404
        assert machine_handler.calls == []
        owner_lookup = await async_client.get("/api/v1/agent/conversations/conv-owned/pending", headers=auth_headers)
        assert owner_lookup.json()["id"] == action_id


class TestAgentRouting:
    @pytest.mark.asyncio
    async def test_route_classifies_message(self, async_client, auth_headers, gateway):
        gateway.responses.append(
            ai_result('{"agents": ["accounting", "legal"], "confidence": 0.8, "reasoning": "Invoice dispute."}')
        )

        response = await async_client.post(
            "/api/v1/agent/route",
            json={"message": "The client disputes invoice 42", "current_match": "sales", "current_confidence": 0.3},
            headers=auth_headers,
        )

        assert response.status_code == 200
        assert response.json() == {
            "agents": ["accounting", "legal"],
            "confidence": 0.8,
            "reasoning": "Invoice dispute.",
            "method": "llm",
        }

    @pytest.mark.asyncio
    async def test_route_falls_back_to_keyword_match_on_vendor_error(self, async_client, auth_headers, gateway):
        gateway.responses.append(AIServiceError("gpt API error: 500", status_code=500))

        response = await async_client.post(
            "/api/v1/agent/route",
            json={"message": "Truck 4 is late", "current_match": "delivery", "current_confidence": 0.4},
            headers=auth_headers,
        )

        assert response.status_code == 200
        body = response.json()
        assert body["agents"] == ["delivery"]
        assert body["method"] == "keyword_fallback"
        assert body["confidence"] == 0.4
