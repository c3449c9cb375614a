"""Tool registry: name → input model, handler and confirmation policy."""

from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass
from functools import cached_property
from typing import Any, cast

from openai.types.chat import ChatCompletionToolParam
from openai.types.shared_params.function_definition import FunctionDefinition
from pydantic import BaseModel

from opsagent.domain.agent.types import ToolContext

ToolHandler = Callable[[Any, ToolContext], Awaitable[Any]]


@dataclass(frozen=True)
class Tool:
    """A named tool the model may call.

    Handlers receive the validated input model and the acting context and
    return a string (anything else is JSON-encoded by the executor).
    """

    name: str
    description: str
    input_model: type[BaseModel]
    handler: ToolHandler
    gated: bool = False
    label: str | None = None

    @cached_property
    def parameters_schema(self) -> dict[str, Any]:
        return self.input_model.model_json_schema()

    @property
    def required_fields(self) -> list[str]:
        return list(self.parameters_schema.get("required", []))

    def definition(self) -> ChatCompletionToolParam:
        """Tool definition in OpenAI format."""
        return ChatCompletionToolParam(
            type="function",
            function=FunctionDefinition(
                name=self.name,
                description=self.description,
                parameters=cast(Any, self.parameters_schema),
            ),
        )

    def describe(self, args: dict[str, Any]) -> str:
        """Human-readable summary shown when asking for confirmation."""
        label = self.label or self.name.replace("_", " ").capitalize()
        details = ", ".join(f"{key}={value}" for key, value in args.items() if value is not None)
        return f"{label}: {details}" if details else label


class ToolRegistry:
    """Holds every tool the runtime can execute."""

    def __init__(self, tools: Iterable[Tool] = ()) -> None:
        self._tools: dict[str, Tool] = {}
        for tool in tools:
            self.register(tool)

    def register(self, tool: Tool) -> None:
        if tool.name in self._tools:
            raise ValueError(f"Tool already registered: {tool.name}")
        self._tools[tool.name] = tool

    def get(self, name: str) -> Tool | None:
        return self._tools.get(name)

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    @property
    def names(self) -> list[str]:
        return list(self._tools)

    @property
    def gated_names(self) -> frozenset[str]:
        return frozenset(name for name, tool in self._tools.items() if tool.gated)

    def is_gated(self, name: str) -> bool:
        tool = self._tools.get(name)
        return tool is not None and tool.gated

    def tools(self, names: Iterable[str] | None = None) -> list[Tool]:
        if names is None:
            return list(self._tools.values())
        return [self._tools[name] for name in names if name in self._tools]

    def definitions(self, names: Iterable[str] | None = None) -> list[ChatCompletionToolParam]:
        """OpenAI-format definitions, limited to ``names`` when given."""
        return [tool.definition() for tool in self.tools(names)]
