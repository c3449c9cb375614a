"""Bounded tool-calling loop.

One run is a sequence of at most ``max_iterations`` model calls. After
each call that requests tools, the calls are handled one at a time in the
order received and answered with exactly one ``tool`` message each before
the next model call. A gated call suspends the run: the loop opens a
PendingAction and returns instead of looping further. Resumption happens
in a later invocation via :meth:`OrchestrationLoop.apply_decision` followed
by :meth:`OrchestrationLoop.run`.
"""

import asyncio
from collections.abc import Sequence
from typing import Protocol

from opsagent.domain.agent.confirmation import ConfirmationGate
from opsagent.domain.agent.tool_executor import ToolExecutor
from opsagent.domain.agent.types import (
    Decision,
    ModelSelection,
    PendingAction,
    PendingActionStatus,
    ToolContext,
    ToolExecution,
    TurnResult,
    TurnStatus,
)
from opsagent.infrastructure.ai.types import AIRequest, AIResult, ChatMessage, FallbackSpec, ToolCall
from opsagent.observability.metrics import PENDING_ACTIONS
from opsagent.shared.exceptions import PendingActionConflictError
from opsagent.shared.logging import get_logger

logger = get_logger(__name__)

CANCELLED_RESULT = "Cancelled by user. The action was not executed."
DEFERRED_RESULT = (
    "Not executed: this call was requested together with an action that needed "
    "confirmation. Request it again if it is still needed."
)
EXPIRED_RESULT = (
    "Not executed: the confirmation request expired before the user decided. "
    "Ask again if the change is still wanted."
)


def unanswered_tool_calls(messages: Sequence[ChatMessage]) -> list[ToolCall]:
    """Tool calls of the last assistant message that have no tool message yet."""
    for index in range(len(messages) - 1, -1, -1):
        message = messages[index]
        if message.role != "assistant":
            continue
        if not message.tool_calls:
            return []
        answered = {m.tool_call_id for m in messages[index + 1 :] if m.role == "tool"}
        return [call for call in message.tool_calls if call.id not in answered]
    return []


class ChatGateway(Protocol):
    async def call(self, request: AIRequest) -> AIResult: ...


class OrchestrationLoop:
    """Drives model calls and tool execution for one invocation."""

    def __init__(
        self,
        gateway: ChatGateway,
        executor: ToolExecutor,
        gate: ConfirmationGate,
        max_iterations: int = 3,
    ) -> None:
        if max_iterations < 1:
            raise ValueError("max_iterations must be at least 1")
        self.gateway = gateway
        self.executor = executor
        self.gate = gate
        self.max_iterations = max_iterations

    async def run(
        self,
        messages: Sequence[ChatMessage],
        *,
        selection: ModelSelection,
        context: ToolContext,
        tool_names: Sequence[str],
        fallback: FallbackSpec | None = None,
        abort: asyncio.Event | None = None,
    ) -> TurnResult:
        """Run the loop until a final reply, a suspension or the iteration cap.

        Args:
            messages: System prompt, prior history and the new input, in order
            selection: Model parameters for every call of this run
            context: Acting identity passed to tool handlers
            tool_names: Tools offered to the model
            fallback: Vendor/model to try once on 429
            abort: Caller's abort signal, threaded into each vendor call

        Returns:
            TurnResult; ``new_messages`` holds everything appended during the run

        Raises:
            AIServiceError: A vendor call failed terminally
        """
        tools = self.executor.registry.definitions(tool_names) or None
        new_messages: list[ChatMessage] = []
        executions: list[ToolExecution] = []
        result: AIResult | None = None
        fell_back = False

        for iteration in range(1, self.max_iterations + 1):
            request = AIRequest(
                provider=selection.provider,
                model=selection.model,
                messages=[*messages, *new_messages],
                temperature=selection.temperature,
                max_tokens=selection.max_tokens,
                tools=tools,
                tool_choice="auto" if tools else None,
                fallback=fallback,
                abort=abort,
            )
            result = await self.gateway.call(request)
            fell_back = fell_back or result.fell_back
            new_messages.append(result.to_assistant_message())

            if not result.has_tool_calls:
                return self._result(
                    TurnStatus.COMPLETED, result, new_messages, executions, iteration, fell_back
                )

            logger.debug(
                "agent_tool_calls_requested",
                iteration=iteration,
                tools=[call.function_name for call in result.tool_calls],
            )
            calls = result.tool_calls
            for index, call in enumerate(calls):
                if self.gate.requires_confirmation(call.function_name):
                    pending = await self._suspend(
                        call, calls[index + 1 :], context, new_messages, executions
                    )
                    if pending is not None:
                        turn = self._result(
                            TurnStatus.PENDING_CONFIRMATION,
                            result,
                            new_messages,
                            executions,
                            iteration,
                            fell_back,
                        )
                        turn.pending_action = pending
                        return turn
                    continue

                execution = await self.executor.execute(call, context)
                executions.append(execution)
                new_messages.append(ChatMessage.tool_result(call.id, execution.tool_message_content))

        assert result is not None
        logger.warning(
            "agent_loop_exhausted",
            max_iterations=self.max_iterations,
            pending_tool_calls=len(result.tool_calls),
        )
        return self._result(
            TurnStatus.EXHAUSTED, result, new_messages, executions, self.max_iterations, fell_back
        )

    async def _suspend(
        self,
        call: ToolCall,
        deferred: Sequence[ToolCall],
        context: ToolContext,
        new_messages: list[ChatMessage],
        executions: list[ToolExecution],
    ) -> PendingAction | None:
        """Open a PendingAction for ``call``, or answer it with an error and return None."""
        args, failure = self.executor.validate(call)
        if failure is not None:
            executions.append(failure)
            new_messages.append(ChatMessage.tool_result(call.id, failure.tool_message_content))
            return None
        assert args is not None

        try:
            return await self.gate.open(
                conversation_id=context.conversation_id,
                user_id=context.user_id,
                organization_id=context.organization_id,
                agent=context.agent,
                call=call,
                args=args,
                deferred=list(deferred),
            )
        except PendingActionConflictError as e:
            rejected = ToolExecution(
                tool_name=call.function_name,
                tool_input=args,
                result="",
                error=f"{e.message}. Wait for the user to confirm or cancel it first.",
                tool_call_id=call.id,
            )
            executions.append(rejected)
            new_messages.append(ChatMessage.tool_result(call.id, rejected.tool_message_content))
            return None

    async def apply_decision(
        self,
        action: PendingAction,
        decision: Decision,
        context: ToolContext,
    ) -> tuple[list[ChatMessage], ToolExecution | None]:
        """Answer a resolved PendingAction and its deferred calls.

        On confirm the gated tool runs; on cancel its handler is never called.
        Either way every call of the suspended turn gets its tool message.

        Returns:
            The tool messages to append, and the execution if the tool ran
        """
        execution: ToolExecution | None = None
        if decision == Decision.CONFIRM:
            execution = await self.executor.run(
                action.tool, action.args, context, tool_call_id=action.tool_call_id
            )
            content = execution.tool_message_content
        else:
            content = CANCELLED_RESULT

        messages = [ChatMessage.tool_result(action.tool_call_id, content)]
        messages.extend(
            ChatMessage.tool_result(call.id, DEFERRED_RESULT) for call in action.deferred_tool_calls()
        )
        return messages, execution

    def answer_expired(self, history: Sequence[ChatMessage]) -> list[ChatMessage]:
        """Tool messages for calls left open by a pending action that expired.

        Treated like a cancel: nothing runs, and the next model call sees one
        tool message per requested call.
        """
        calls = unanswered_tool_calls(history)
        if not calls:
            return []
        PENDING_ACTIONS.labels(tool=calls[0].function_name, status=PendingActionStatus.EXPIRED.value).inc()
        logger.info(
            "pending_action_expired_calls_answered",
            tools=[call.function_name for call in calls],
        )
        return [ChatMessage.tool_result(call.id, EXPIRED_RESULT) for call in calls]

    @staticmethod
    def _result(
        status: TurnStatus,
        result: AIResult,
        new_messages: list[ChatMessage],
        executions: list[ToolExecution],
        iterations: int,
        fell_back: bool,
    ) -> TurnResult:
        return TurnResult(
            status=status,
            content=result.content,
            new_messages=new_messages,
            executions=executions,
            provider=result.provider,
            model=result.model,
            iterations=iterations,
            fell_back=fell_back,
        )
