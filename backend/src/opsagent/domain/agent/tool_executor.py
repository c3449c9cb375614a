"""Tool executor.

Validates untrusted tool-call arguments and runs handlers. Every failure,
whether bad arguments, an unknown tool or a handler exception, comes back
as a ToolExecution with ``error`` set so the model can react to it; nothing
raised by a handler escapes the turn.
"""

import json
import logging
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from opsagent.domain.agent.registry import Tool, ToolRegistry
from opsagent.domain.agent.types import ToolContext, ToolExecution
from opsagent.infrastructure.ai.types import ToolCall
from opsagent.observability.metrics import TOOL_EXECUTIONS

logger = logging.getLogger(__name__)


class ArgumentError(Exception):
    """Tool-call arguments failed validation."""


def _format_validation_error(exc: PydanticValidationError) -> str:
    problems = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error.get("loc", ())) or "arguments"
        problems.append(f"{location}: {error.get('msg', 'invalid')}")
    return "; ".join(problems)


class ToolExecutor:
    """Executes registry tools on behalf of the orchestration loop."""

    def __init__(self, registry: ToolRegistry):
        """Initialize the tool executor.

        Args:
            registry: Tools available for execution
        """
        self.registry = registry

    def is_gated(self, tool_name: str) -> bool:
        return self.registry.is_gated(tool_name)

    def _unknown_tool(self, tool_name: str) -> str:
        available = ", ".join(self.registry.names)
        return f"Unknown tool: {tool_name}. Available tools: {available}"

    def parse_arguments(self, tool: Tool, arguments_raw: str) -> dict[str, Any]:
        """Deserialize and validate raw arguments against the tool's contract.

        Required fields are checked before model validation so a missing
        field is reported by name even when other fields are malformed.

        Returns:
            The validated arguments as plain JSON-compatible data

        Raises:
            ArgumentError: If the arguments are not a JSON object, omit a
                required field, or fail the input model
        """
        try:
            raw = json.loads(arguments_raw) if arguments_raw.strip() else {}
        except json.JSONDecodeError as e:
            raise ArgumentError(f"arguments are not valid JSON ({e.msg})") from e
        if not isinstance(raw, dict):
            raise ArgumentError("arguments must be a JSON object")

        missing = [name for name in tool.required_fields if raw.get(name) in (None, "")]
        if missing:
            raise ArgumentError(f"missing required field(s): {', '.join(missing)}")

        try:
            params = tool.input_model.model_validate(raw)
        except PydanticValidationError as e:
            raise ArgumentError(_format_validation_error(e)) from e
        return params.model_dump(mode="json", exclude_none=True)

    def validate(self, call: ToolCall) -> tuple[dict[str, Any] | None, ToolExecution | None]:
        """Validate a call without running it.

        Returns:
            ``(args, None)`` when valid, ``(None, failed_execution)`` otherwise
        """
        tool = self.registry.get(call.function_name)
        if tool is None:
            return None, self._failed(call.function_name, {}, self._unknown_tool(call.function_name), call.id)
        try:
            return self.parse_arguments(tool, call.arguments_raw), None
        except ArgumentError as e:
            logger.info("Rejected arguments for tool %s: %s", call.function_name, e)
            return None, self._failed(
                call.function_name,
                {},
                f"Invalid arguments for {call.function_name}: {e}. Check the parameters and try again.",
                call.id,
                outcome="invalid_arguments",
            )

    async def execute(self, call: ToolCall, context: ToolContext) -> ToolExecution:
        """Validate and execute a single tool call.

        Args:
            call: Tool call as requested by the model
            context: Acting identity and scope

        Returns:
            ToolExecution with result or error
        """
        args, failure = self.validate(call)
        if failure is not None:
            return failure
        assert args is not None
        return await self.run(call.function_name, args, context, tool_call_id=call.id)

    async def run(
        self,
        tool_name: str,
        args: dict[str, Any],
        context: ToolContext,
        tool_call_id: str | None = None,
    ) -> ToolExecution:
        """Run a tool whose arguments were already validated (e.g. on confirmation)."""
        tool = self.registry.get(tool_name)
        if tool is None:
            return self._failed(tool_name, args, self._unknown_tool(tool_name), tool_call_id)

        logger.debug("Executing tool %s with input %s", tool_name, args)
        try:
            params = tool.input_model.model_validate(args)
            result = await tool.handler(params, context)
        except Exception as e:
            logger.exception("Error executing tool %s", tool_name)
            return self._failed(tool_name, args, f"{tool_name} failed: {e}", tool_call_id)

        if not isinstance(result, str):
            result = json.dumps(result, default=str, ensure_ascii=False)

        TOOL_EXECUTIONS.labels(tool=tool_name, outcome="ok").inc()
        return ToolExecution(
            tool_name=tool_name,
            tool_input=args,
            result=result,
            tool_call_id=tool_call_id,
        )

    def _failed(
        self,
        tool_name: str,
        tool_input: dict[str, Any],
        error: str,
        tool_call_id: str | None,
        outcome: str = "error",
    ) -> ToolExecution:
        TOOL_EXECUTIONS.labels(tool=tool_name, outcome=outcome).inc()
        return ToolExecution(
            tool_name=tool_name,
            tool_input=tool_input,
            result="",
            error=error,
            tool_call_id=tool_call_id,
        )
