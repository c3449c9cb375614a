"""
Pytest configuration and fixtures for opsagent backend tests.
"""
import os
from collections.abc import AsyncGenerator

import pytest
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient

os.environ.setdefault("APP_ENV", "development")
os.environ.setdefault("AUTH_PROVIDER", "dev")
os.environ.setdefault("GPT_API_KEY", "sk-test")
os.environ.setdefault("GEMINI_API_KEY", "gemini-test")
os.environ.setdefault("STORE_BACKEND", "memory")

from helpers import RecordingHandler, ScriptedGateway, build_registry  # noqa: E402

from opsagent.config import Settings  # noqa: E402
from opsagent.domain.agent.confirmation import ConfirmationGate  # noqa: E402
from opsagent.domain.agent.qa_reviewer import QAReviewer  # noqa: E402
from opsagent.domain.agent.registry import ToolRegistry  # noqa: E402
from opsagent.domain.agent.service import AgentChatService  # noqa: E402
from opsagent.infrastructure.ai.types import FallbackSpec, ProviderTag  # noqa: E402
from opsagent.infrastructure.auth.provider import AuthUser  # noqa: E402
from opsagent.infrastructure.ratelimit import RateLimiter  # noqa: E402
from opsagent.infrastructure.stores.conversations import InMemoryConversationStore  # noqa: E402
from opsagent.infrastructure.stores.pending_actions import InMemoryPendingActionStore  # noqa: E402


@pytest.fixture
def test_settings() -> Settings:
    """Settings for tests, independent of any .env file."""
    return Settings(
        _env_file=None,
        app_env="development",
        auth_provider="dev",
        gpt_api_key="sk-test",
        gemini_api_key="gemini-test",
        store_backend="memory",
    )


@pytest.fixture
def auth_user() -> AuthUser:
    return AuthUser(
        id="user-1",
        email="ops@example.com",
        organization_id="org-1",
        role="admin",
        full_name="Olive Ops",
    )


@pytest.fixture
def fix_handler() -> RecordingHandler:
    return RecordingHandler(result="fix request logged")


@pytest.fixture
def machine_handler() -> RecordingHandler:
    return RecordingHandler(result={"success": True, "message": "Machine status changed to down"})


@pytest.fixture
def registry(fix_handler: RecordingHandler, machine_handler: RecordingHandler) -> ToolRegistry:
    return build_registry(fix_handler=fix_handler, machine_handler=machine_handler)


@pytest.fixture
def conversations() -> InMemoryConversationStore:
    return InMemoryConversationStore()


@pytest.fixture
def pending_store() -> InMemoryPendingActionStore:
    return InMemoryPendingActionStore()


@pytest.fixture
def gateway() -> ScriptedGateway:
    """Empty script; tests append responses to ``gateway.responses``."""
    return ScriptedGateway()


@pytest.fixture
def qa_gateway() -> ScriptedGateway:
    return ScriptedGateway()


@pytest.fixture
def agent_service(
    gateway: ScriptedGateway,
    qa_gateway: ScriptedGateway,
    registry: ToolRegistry,
    conversations: InMemoryConversationStore,
    pending_store: InMemoryPendingActionStore,
) -> AgentChatService:
    """Service wired to scripted gateways and in-memory stores."""
    return AgentChatService(
        gateway=gateway,  # type: ignore[arg-type]
        registry=registry,
        conversations=conversations,
        gate=ConfirmationGate(pending_store, registry, ttl_seconds=900),
        qa_reviewer=QAReviewer(qa_gateway, {"accounting", "legal", "estimation", "collections"}),
        rate_limiter=RateLimiter("memory://", max_requests=100, window_seconds=60),
        max_iterations=3,
        history_limit=10,
        fallback=FallbackSpec(ProviderTag.GEMINI, "gemini-2.5-flash"),
    )


@pytest.fixture
def app(agent_service: AgentChatService) -> FastAPI:
    """Test application with the scripted service and dev auth."""
    from opsagent.infrastructure.auth.dev import DevAuthProvider
    from opsagent.main import create_app

    application = create_app()
    application.state.agent_service = agent_service
    application.state.auth_provider = DevAuthProvider()
    return application


@pytest.fixture
async def async_client(app: FastAPI) -> AsyncGenerator[AsyncClient, None]:
    """Create async test client."""
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as client:
        yield client


@pytest.fixture
def auth_headers() -> dict[str, str]:
    return {"Authorization": "Bearer test-token"}
