from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Coroutine

from pilot.agent.errors import ToolExecutionFailed
from pilot.agent.state import ToolCall, ToolDescriptor, ToolResult

# A handler returns plain text, a list of text blocks, or a full ToolResult
# when it needs to flag an error or ask the loop to stop.
ToolHandler = Callable[..., Coroutine[Any, Any, Any]]


@dataclass
class ToolDefinition:
    name: str
    description: str
    parameters: dict
    handler: ToolHandler

    def descriptor(self) -> ToolDescriptor:
        return ToolDescriptor(
            name=self.name,
            description=self.description,
            parameters=self.parameters,
        )


class ToolRegistry:
    """Registry for in-process tools. Each tool is an async function the LLM can call."""

    def __init__(self):
        self._tools: dict[str, ToolDefinition] = {}

    def register(
        self,
        name: str,
        description: str,
        parameters: dict,
        handler: ToolHandler,
    ) -> None:
        self._tools[name] = ToolDefinition(
            name=name,
            description=description,
            parameters=parameters,
            handler=handler,
        )

    def tool(self, name: str, description: str, parameters: dict | None = None):
        """Decorator form of register()."""

        def decorator(handler: ToolHandler) -> ToolHandler:
            self.register(
                name,
                description,
                parameters or {"type": "object", "properties": {}},
                handler,
            )
            return handler

        return decorator

    def __contains__(self, name: str) -> bool:
        return name in self._tools

    def descriptors(self) -> list[ToolDescriptor]:
        return [t.descriptor() for t in self._tools.values()]

    async def execute(self, call: ToolCall, arguments: dict) -> ToolResult:
        """Run the handler for *call*. Exceptions propagate to the dispatcher."""
        tool = self._tools.get(call.name)
        if tool is None:
            raise ToolExecutionFailed(call.name, "not registered")
        try:
            result = await tool.handler(**arguments)
        except TypeError as exc:
            # wrong or missing arguments from the model
            raise ToolExecutionFailed(call.name, str(exc)) from exc
        return to_tool_result(call, result)


def to_tool_result(call: ToolCall, value: Any) -> ToolResult:
    if isinstance(value, ToolResult):
        if not value.tool_call_id:
            value.tool_call_id = call.id
        return value
    if value is None:
        content = []
    elif isinstance(value, list):
        content = [str(v) for v in value]
    else:
        content = [str(value)]
    return ToolResult(tool_call_id=call.id, name=call.name, content=content)
