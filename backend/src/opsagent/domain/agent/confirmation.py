"""Human-confirmation gate for state-mutating tools."""

from opsagent.domain.agent.registry import ToolRegistry
from opsagent.domain.agent.types import Decision, PendingAction, PendingActionStatus
from opsagent.infrastructure.ai.types import ToolCall
from opsagent.infrastructure.stores.pending_actions import PendingActionStore
from opsagent.observability.metrics import PENDING_ACTIONS
from opsagent.shared.exceptions import PendingActionConflictError, PendingActionNotFoundError
from opsagent.shared.logging import get_logger

logger = get_logger(__name__)


class ConfirmationGate:
    """Suspends gated tool calls as PendingActions.

    At most one action is open per conversation. Opening a second one never
    replaces the first; it raises PendingActionConflictError instead.
    Expiry is the store's TTL, so an expired action simply cannot be found.
    """

    def __init__(self, store: PendingActionStore, registry: ToolRegistry, ttl_seconds: int = 900) -> None:
        self.store = store
        self.registry = registry
        self.ttl_seconds = ttl_seconds

    def requires_confirmation(self, tool_name: str) -> bool:
        return self.registry.is_gated(tool_name)

    def describe(self, tool_name: str, args: dict) -> str:
        tool = self.registry.get(tool_name)
        return tool.describe(args) if tool else tool_name

    async def current(
        self, conversation_id: str, *, user_id: str, organization_id: str
    ) -> PendingAction | None:
        """Return the open action if it belongs to the given user."""
        action = await self.store.get(conversation_id)
        if action is None or not action.owned_by(user_id, organization_id):
            return None
        return action

    async def ensure_clear(self, conversation_id: str) -> None:
        """Reject new work on a conversation that still awaits a decision.

        Raises:
            PendingActionConflictError: An action is open
        """
        action = await self.store.get(conversation_id)
        if action is not None:
            raise PendingActionConflictError(conversation_id, action.id, action.tool)

    async def open(
        self,
        *,
        conversation_id: str,
        user_id: str,
        organization_id: str,
        agent: str,
        call: ToolCall,
        args: dict,
        deferred: list[ToolCall],
    ) -> PendingAction:
        """Persist a pending action for ``call``.

        Args:
            conversation_id: Conversation the call belongs to
            user_id: User whose turn requested the call
            organization_id: That user's organization
            agent: Agent that requested the call
            call: The gated tool call
            args: Already validated arguments
            deferred: Calls the model requested after ``call`` in the same turn

        Raises:
            PendingActionConflictError: Another action is already open
        """
        action = PendingAction.open(
            conversation_id=conversation_id,
            user_id=user_id,
            organization_id=organization_id,
            agent=agent,
            call=call,
            args=args,
            description=self.describe(call.function_name, args),
            deferred=deferred,
            ttl_seconds=self.ttl_seconds,
        )
        if not await self.store.create(action):
            existing = await self.store.get(conversation_id)
            logger.warning(
                "pending_action_conflict",
                conversation_id=conversation_id,
                rejected_tool=call.function_name,
                open_action_id=existing.id if existing else None,
            )
            PENDING_ACTIONS.labels(tool=call.function_name, status="rejected").inc()
            raise PendingActionConflictError(
                conversation_id,
                existing.id if existing else "unknown",
                existing.tool if existing else "unknown",
            )

        PENDING_ACTIONS.labels(tool=action.tool, status=PendingActionStatus.CREATED.value).inc()
        logger.info(
            "pending_action_opened",
            conversation_id=conversation_id,
            action_id=action.id,
            tool=action.tool,
            deferred_calls=len(deferred),
        )
        return action

    async def resolve(
        self,
        conversation_id: str,
        action_id: str,
        decision: Decision,
        *,
        user_id: str,
        organization_id: str,
    ) -> PendingAction:
        """Take the open action off the store and record the decision.

        An action owned by someone else is reported as not found and stays
        open for its owner.

        Raises:
            PendingActionNotFoundError: No open action with that id for this
                user (already resolved, expired, foreign, or never existed)
        """
        open_action = await self.store.get(conversation_id)
        if open_action is None or open_action.id != action_id:
            raise PendingActionNotFoundError(conversation_id, action_id)
        if not open_action.owned_by(user_id, organization_id):
            logger.warning(
                "pending_action_foreign_resolve",
                conversation_id=conversation_id,
                action_id=action_id,
                user_id=user_id,
            )
            raise PendingActionNotFoundError(conversation_id, action_id)

        action = await self.store.take(conversation_id, action_id)
        if action is None:
            raise PendingActionNotFoundError(conversation_id, action_id)

        if decision == Decision.CONFIRM:
            action.status = PendingActionStatus.CONFIRMED
        else:
            action.status = PendingActionStatus.CANCELLED
        PENDING_ACTIONS.labels(tool=action.tool, status=action.status.value).inc()
        logger.info(
            "pending_action_resolved",
            conversation_id=conversation_id,
            action_id=action.id,
            tool=action.tool,
            decision=decision.value,
        )
        return action
