"""Agent chat service.

Per-invocation façade over the runtime: rate limit, load history, pick a
model, run the loop, review and persist. Nothing about a conversation is
kept in process between invocations; history and pending actions live in
the stores.
"""

import asyncio
import json
from collections.abc import AsyncIterator, Awaitable, Callable, Sequence
from typing import Any
from uuid import uuid4

import redis.asyncio as redis

from opsagent.config import Settings, get_settings
from opsagent.domain.agent.catalog import (
    AgentProfile,
    build_default_registry,
    build_system_prompt,
    get_agent,
    normalize_agent,
)
from opsagent.domain.agent.confirmation import ConfirmationGate
from opsagent.domain.agent.model_selector import select_model
from opsagent.domain.agent.orchestrator import OrchestrationLoop
from opsagent.domain.agent.qa_reviewer import QAReviewer
from opsagent.domain.agent.registry import Tool, ToolRegistry
from opsagent.domain.agent.router import AgentRoute, AgentRouter
from opsagent.domain.agent.tool_executor import ToolExecutor
from opsagent.domain.agent.types import (
    AgentReply,
    Decision,
    ModelSelection,
    PendingAction,
    QAResult,
    ToolContext,
    ToolExecution,
    TurnResult,
    TurnStatus,
)
from opsagent.infrastructure.ai.factory import ProviderClientFactory, get_cost_tracker
from opsagent.infrastructure.ai.gateway import ProviderGateway
from opsagent.infrastructure.ai.types import AIRequest, ChatMessage, FallbackSpec, ProviderTag
from opsagent.infrastructure.auth.provider import AuthUser
from opsagent.infrastructure.business.client import BusinessActionClient
from opsagent.infrastructure.ratelimit import RateLimiter
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
from opsagent.observability.metrics import AGENT_TURNS
from opsagent.shared.exceptions import ConversationNotFoundError
from opsagent.shared.logging import bind_turn_context, clear_turn_context, get_logger

logger = get_logger(__name__)

AGENT_FUNCTION = "ai-agent"
STREAM_FUNCTION = "admin-chat"

STOP_NOTICE = (
    "[STOP] I processed the request but couldn't generate a text response. "
    "Please check the records and tasks that were updated."
)


def _owner(user: AuthUser) -> str:
    return f"{user.organization_id}:{user.id}"


def _user_content(message: str, attachments: Sequence[str]) -> str | list[dict[str, Any]]:
    if not attachments:
        return message
    parts: list[dict[str, Any]] = [{"type": "text", "text": message}]
    parts.extend({"type": "image_url", "image_url": {"url": url}} for url in attachments)
    return parts


def _last_user_text(messages: Sequence[ChatMessage]) -> str:
    for message in reversed(messages):
        if message.role == "user":
            return message.text
    return ""


def _context_summary(context: dict[str, Any] | None, executions: Sequence[ToolExecution]) -> str:
    parts = []
    if context:
        parts.append(json.dumps(context, default=str, ensure_ascii=False))
    for execution in executions:
        parts.append(f"[{execution.tool_name}] {execution.tool_message_content}")
    return "\n".join(parts)


async def _prepend(first: bytes, rest: AsyncIterator[bytes]) -> AsyncIterator[bytes]:
    yield first
    async for chunk in rest:
        yield chunk


class AgentChatService:
    """Entry points for chat, resume-after-confirmation and streaming."""

    def __init__(
        self,
        *,
        gateway: ProviderGateway,
        registry: ToolRegistry,
        conversations: ConversationStore,
        gate: ConfirmationGate,
        qa_reviewer: QAReviewer,
        rate_limiter: RateLimiter,
        max_iterations: int = 3,
        history_limit: int = 10,
        fallback: FallbackSpec | None = None,
        router: AgentRouter | None = None,
    ) -> None:
        self.gateway = gateway
        self.registry = registry
        self.conversations = conversations
        self.gate = gate
        self.qa_reviewer = qa_reviewer
        self.rate_limiter = rate_limiter
        self.history_limit = history_limit
        self.fallback = fallback
        self.router = router or AgentRouter(gateway)
        self.loop = OrchestrationLoop(gateway, ToolExecutor(registry), gate, max_iterations)
        self._closers: list[Callable[[], Awaitable[None]]] = []

    # ----- Public API -----

    async def chat(
        self,
        user: AuthUser,
        *,
        agent: str,
        message: str,
        conversation_id: str | None = None,
        attachments: Sequence[str] = (),
        context: dict[str, Any] | None = None,
        auth_token: str | None = None,
        abort: asyncio.Event | None = None,
    ) -> AgentReply:
        """Handle one user message.

        Tool calls left unanswered by a pending action that expired are
        answered (and persisted) as not executed before the model is called.

        Raises:
            RateLimitExceededError: The user exhausted the agent budget
            ConversationNotFoundError: The conversation belongs to another user
            PendingActionConflictError: The conversation awaits a confirmation
            AIServiceError: The vendor call failed terminally
        """
        profile = get_agent(agent)
        agent_id = normalize_agent(agent)
        conversation_id = conversation_id or uuid4().hex
        bind_turn_context(conversation_id=conversation_id, agent=agent_id, user_id=user.id)
        try:
            await self.rate_limiter.check(user.id, AGENT_FUNCTION)
            if not await self.conversations.claim(conversation_id, _owner(user)):
                raise ConversationNotFoundError(conversation_id)
            await self.gate.ensure_clear(conversation_id)

            history = await self.conversations.load(conversation_id, self.history_limit)
            expired = self.loop.answer_expired(history)
            if expired:
                await self.conversations.append(conversation_id, expired)
                history = [*history, *expired]
            selection = select_model(agent_id, message, bool(attachments), len(history))
            logger.info(
                "agent_model_selected",
                model=selection.model,
                provider=selection.provider.value,
                reason=selection.reason,
            )

            user_message = ChatMessage(role="user", content=_user_content(message, attachments))
            system = self._system_message(profile, user, context)
            turn = await self.loop.run(
                [system, *history, user_message],
                selection=selection,
                context=self._tool_context(user, conversation_id, agent_id, auth_token),
                tool_names=profile.tools,
                fallback=self._fallback_for(selection),
                abort=abort,
            )
            reply = await self._finish(conversation_id, agent_id, turn, context)
            await self.conversations.append(conversation_id, [user_message, *turn.new_messages])
            return reply
        finally:
            clear_turn_context()

    async def resume(
        self,
        user: AuthUser,
        *,
        conversation_id: str,
        action_id: str,
        decision: Decision,
        context: dict[str, Any] | None = None,
        auth_token: str | None = None,
        abort: asyncio.Event | None = None,
    ) -> AgentReply:
        """Continue a suspended turn with the user's confirm/cancel decision.

        The decision's tool messages are persisted before the model is called
        again, so a vendor failure afterwards cannot lose an executed action.

        Raises:
            PendingActionNotFoundError: Unknown, already resolved, expired, or
                another user's action
        """
        await self.rate_limiter.check(user.id, AGENT_FUNCTION)
        action = await self.gate.resolve(
            conversation_id,
            action_id,
            decision,
            user_id=user.id,
            organization_id=user.organization_id,
        )
        agent_id = normalize_agent(action.agent)
        profile = get_agent(agent_id)
        bind_turn_context(conversation_id=conversation_id, agent=agent_id, user_id=user.id)
        try:
            tool_context = self._tool_context(user, conversation_id, agent_id, auth_token)
            decision_messages, execution = await self.loop.apply_decision(action, decision, tool_context)
            await self.conversations.append(conversation_id, decision_messages)

            history = await self.conversations.load(
                conversation_id, self.history_limit + len(decision_messages)
            )
            selection = select_model(agent_id, _last_user_text(history), False, len(history))
            turn = await self.loop.run(
                [self._system_message(profile, user, context), *history],
                selection=selection,
                context=tool_context,
                tool_names=profile.tools,
                fallback=self._fallback_for(selection),
                abort=abort,
            )
            if execution is not None:
                turn.executions.insert(0, execution)
            reply = await self._finish(conversation_id, agent_id, turn, context)
            await self.conversations.append(conversation_id, turn.new_messages)
            return reply
        finally:
            clear_turn_context()

    async def stream(
        self,
        user: AuthUser,
        *,
        agent: str,
        messages: Sequence[ChatMessage],
        context: dict[str, Any] | None = None,
        abort: asyncio.Event | None = None,
    ) -> AsyncIterator[bytes]:
        """Open a tool-less streaming completion and return its SSE bytes.

        Limits and vendor errors surface here, before the first byte is handed
        to the caller.
        """
        await self.rate_limiter.check(user.id, STREAM_FUNCTION)
        agent_id = normalize_agent(agent)
        selection = select_model(agent_id, _last_user_text(messages), False, len(messages))
        request = AIRequest(
            provider=selection.provider,
            model=selection.model,
            messages=[self._system_message(get_agent(agent_id), user, context), *messages],
            temperature=selection.temperature,
            max_tokens=selection.max_tokens,
            fallback=self._fallback_for(selection),
            abort=abort,
            action="admin_chat_stream",
        )
        chunks = self.gateway.stream(request)
        first = await anext(chunks, None)
        if first is None:
            return _prepend(b"", chunks)
        return _prepend(first, chunks)

    async def route(
        self,
        message: str,
        *,
        keyword_match: str | None = None,
        keyword_confidence: float = 0.0,
    ) -> AgentRoute:
        """Choose agents for a message whose keyword match was ambiguous."""
        return await self.router.route(
            message, keyword_match=keyword_match, keyword_confidence=keyword_confidence
        )

    async def pending_action(self, user: AuthUser, conversation_id: str) -> PendingAction | None:
        return await self.gate.current(
            conversation_id, user_id=user.id, organization_id=user.organization_id
        )

    def list_tools(self, agent: str | None = None) -> list[Tool]:
        if agent is None:
            return self.registry.tools()
        return self.registry.tools(get_agent(agent).tools)

    def add_closer(self, closer: Callable[[], Awaitable[None]]) -> None:
        self._closers.append(closer)

    async def close(self) -> None:
        """Release clients built for this service (used at app shutdown)."""
        for closer in reversed(self._closers):
            await closer()
        self._closers.clear()

    # ----- Internals -----

    def _system_message(
        self, profile: AgentProfile, user: AuthUser, context: dict[str, Any] | None
    ) -> ChatMessage:
        return ChatMessage(
            role="system",
            content=build_system_prompt(
                profile,
                user_name=user.full_name or "User",
                user_email=user.email,
                context=context,
            ),
        )

    @staticmethod
    def _tool_context(
        user: AuthUser, conversation_id: str, agent: str, auth_token: str | None
    ) -> ToolContext:
        return ToolContext(
            user_id=user.id,
            organization_id=user.organization_id,
            conversation_id=conversation_id,
            agent=agent,
            email=user.email,
            role=user.role,
            auth_token=auth_token,
        )

    def _fallback_for(self, selection: ModelSelection) -> FallbackSpec | None:
        if self.fallback is None:
            return None
        if (self.fallback.provider, self.fallback.model) == (selection.provider, selection.model):
            return None
        return self.fallback

    async def _finish(
        self,
        conversation_id: str,
        agent: str,
        turn: TurnResult,
        context: dict[str, Any] | None,
    ) -> AgentReply:
        """Review the final content and shape the reply.

        A critical verdict with a sanitized reply replaces the content, also in
        the assistant message that gets persisted.
        """
        content = turn.content
        qa: QAResult | None = None

        if turn.status != TurnStatus.PENDING_CONFIRMATION:
            qa = await self.qa_reviewer.review(
                agent,
                content,
                context_summary=_context_summary(context, turn.executions),
                had_tool_calls=bool(turn.executions),
            )
            if qa.requires_substitution:
                assert qa.sanitized_reply is not None
                logger.warning("qa_reply_substituted", severity=qa.severity, flags=qa.flags)
                content = qa.sanitized_reply
                final = turn.new_messages[-1] if turn.new_messages else None
                if turn.status == TurnStatus.COMPLETED and final is not None and final.role == "assistant":
                    final.content = content
            if not content.strip():
                content = STOP_NOTICE

        AGENT_TURNS.labels(agent=agent, status=turn.status.value).inc()
        logger.info(
            "agent_turn_completed",
            status=turn.status.value,
            iterations=turn.iterations,
            tools=turn.tool_calls_made,
            fell_back=turn.fell_back,
        )
        return AgentReply(
            conversation_id=conversation_id,
            agent=agent,
            status=turn.status,
            content=content,
            pending_action=turn.pending_action,
            qa=qa,
            provider=turn.provider,
            model=turn.model,
            iterations=turn.iterations,
            tool_calls_made=turn.tool_calls_made,
            fell_back=turn.fell_back,
        )


def _build_router(settings: Settings, gateway: ProviderGateway) -> AgentRouter:
    """GPT classifies when its key is set, else Gemini; no key disables routing."""
    if settings.gpt_api_key:
        fallback = FallbackSpec(ProviderTag.GEMINI, "gemini-2.5-flash") if settings.gemini_api_key else None
        return AgentRouter(gateway, provider=ProviderTag.GPT, model="gpt-4o-mini", fallback=fallback)
    return AgentRouter(
        gateway,
        enabled=bool(settings.gemini_api_key),
        provider=ProviderTag.GEMINI,
        model="gemini-2.5-flash",
    )


def build_agent_service(
    settings: Settings | None = None,
    *,
    gateway: ProviderGateway | None = None,
    conversations: ConversationStore | None = None,
    pending_actions: PendingActionStore | None = None,
    registry: ToolRegistry | None = None,
    rate_limiter: RateLimiter | None = None,
) -> AgentChatService:
    """Wire the service from settings; any collaborator may be injected."""
    settings = settings or get_settings()
    closers: list[Callable[[], Awaitable[None]]] = []

    if gateway is None:
        clients = ProviderClientFactory(settings)
        gateway = ProviderGateway(clients, cost_tracker=get_cost_tracker())
        closers.append(clients.close)

    if registry is None:
        business_client = BusinessActionClient(
            base_url=settings.business_api_url,
            api_key=settings.business_api_key,
            timeout=settings.business_api_timeout_seconds,
        )
        registry = build_default_registry(business_client)
        closers.append(business_client.close)

    if conversations is None or pending_actions is None:
        if settings.store_backend == "redis":
            redis_client = redis.from_url(str(settings.redis_url), decode_responses=True)
            conversations = conversations or RedisConversationStore(redis_client)
            pending_actions = pending_actions or RedisPendingActionStore(redis_client)
            closers.append(redis_client.aclose)
        else:
            conversations = conversations or InMemoryConversationStore()
            pending_actions = pending_actions or InMemoryPendingActionStore()

    service = AgentChatService(
        gateway=gateway,
        registry=registry,
        conversations=conversations,
        gate=ConfirmationGate(pending_actions, registry, settings.pending_action_ttl_seconds),
        qa_reviewer=QAReviewer(
            gateway,
            settings.qa_high_risk_agents,
            min_reply_chars=settings.qa_min_reply_chars,
            provider=ProviderTag(settings.qa_provider),
            model=settings.qa_model,
        ),
        rate_limiter=rate_limiter
        or RateLimiter(
            settings.rate_limit_storage_uri,
            max_requests=settings.agent_rate_limit_max_requests,
            window_seconds=settings.agent_rate_limit_window_seconds,
        ),
        max_iterations=settings.agent_max_iterations,
        history_limit=settings.agent_history_limit,
        fallback=FallbackSpec(ProviderTag(settings.ai_fallback_provider), settings.ai_fallback_model),
        router=_build_router(settings, gateway),
    )
    for closer in closers:
        service.add_closer(closer)
    return service
