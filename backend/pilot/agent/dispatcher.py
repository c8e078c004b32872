"""Tool dispatcher: executes model tool calls one at a time.

Resolution order for a call name:
    1. control tools (idle, chat-message), handled in-process
    2. the custom tool registry (operator tools live here)
    3. MCP tools from the live hub catalog, routed by owning server

Every call leaves the same footprint in the event stream: tool-call-start,
a tool-used event that moves from loading to a final status in place, then
one tool-result and one observation.
"""

from __future__ import annotations

import logging

from pilot.agent.cancellation import CancellationToken
from pilot.agent.constants import (
    CHAT_MESSAGE_TOOL,
    IDLE_TOOL,
    TOOL_RESULT_EVENT_MAX_CHARS,
)
from pilot.agent.errors import Cancelled, OperatorActionFailed
from pilot.agent.events import (
    ActionStatus,
    EventStream,
    EventType,
    truncate_observation,
)
from pilot.agent.mcp import MCPHub
from pilot.agent.state import ToolCall, ToolDescriptor, ToolResult
from pilot.agent.tool_registry import ToolRegistry

logger = logging.getLogger(__name__)

CONTROL_TOOL_NAMES = frozenset({IDLE_TOOL, CHAT_MESSAGE_TOOL})


def error_result(call: ToolCall, message: str) -> ToolResult:
    return ToolResult(
        tool_call_id=call.id,
        name=call.name,
        content=[message],
        is_error=True,
    )


class ToolDispatcher:
    def __init__(
        self,
        stream: EventStream,
        registry: ToolRegistry,
        hub: MCPHub | None = None,
    ):
        self.stream = stream
        self.registry = registry
        self.hub = hub
        self._mcp_catalog: dict[str, ToolDescriptor] = {}

    def set_mcp_catalog(self, tools: list[ToolDescriptor]) -> None:
        """Remember the MCP tools advertised in the latest action phase."""
        self._mcp_catalog = {t.name: t for t in tools}

    async def _find_mcp_tool(self, name: str, token: CancellationToken) -> ToolDescriptor | None:
        if self.hub is None:
            return None
        tool = self._mcp_catalog.get(name)
        if tool is None:
            self.set_mcp_catalog(await token.guard(self.hub.list_tools()))
            tool = self._mcp_catalog.get(name)
        return tool

    # ── Batch ───────────────────────────────────────────────────

    async def execute_batch(
        self,
        calls: list[ToolCall],
        token: CancellationToken,
        batch: int,
    ) -> list[ToolResult]:
        """Run *calls* in order. Stops early after a terminal result."""
        results = []
        for call in calls:
            token.raise_if_cancelled()
            result = await self.execute(call, token, batch)
            results.append(result)
            if result.terminal:
                break
        return results

    # ── Single call ─────────────────────────────────────────────

    async def execute(
        self,
        call: ToolCall,
        token: CancellationToken,
        batch: int = 0,
    ) -> ToolResult:
        self.stream.append(
            EventType.TOOL_CALL_START,
            {"tool": call.name, "params": call.arguments},
        )
        used = self.stream.append(
            EventType.TOOL_USED,
            {
                "id": call.id,
                "name": call.name,
                "args": call.arguments,
                "status": ActionStatus.LOADING.value,
                "batch": batch,
                "result": None,
            },
        )

        try:
            result = await self._run(call, token)
        except Cancelled:
            self.stream.update(used.id, status=ActionStatus.CANCELLED.value)
            raise
        except OperatorActionFailed as exc:
            if exc.fatal:
                self.stream.update(
                    used.id,
                    status=ActionStatus.ERROR.value,
                    result=[str(exc)],
                )
                raise
            result = error_result(call, f"Error executing tool: {exc}")
        except Exception as exc:
            logger.exception("Tool %s failed", call.name)
            result = error_result(call, f"Error executing tool: {exc}")

        self.stream.update(
            used.id,
            status=ActionStatus.ERROR.value if result.is_error else ActionStatus.SUCCESS.value,
            result=[c[:TOOL_RESULT_EVENT_MAX_CHARS] for c in result.content],
        )
        self.stream.append(EventType.TOOL_RESULT, result.to_dict())
        self.stream.append(
            EventType.OBSERVATION,
            {"content": truncate_observation(result.text)},
        )
        return result

    async def _run(self, call: ToolCall, token: CancellationToken) -> ToolResult:
        mcp_tool = None
        if call.name not in CONTROL_TOOL_NAMES and call.name not in self.registry:
            mcp_tool = await self._find_mcp_tool(call.name, token)
            if mcp_tool is None:
                logger.warning("Model called unknown tool %s", call.name)
                return error_result(call, f"Tool not found: {call.name}")

        try:
            arguments = call.parse_arguments()
        except ValueError as exc:
            return error_result(call, f"Invalid arguments for {call.name}: {exc}")

        if call.name == IDLE_TOOL:
            return ToolResult(
                tool_call_id=call.id,
                name=call.name,
                content=["Agent is idle"],
                terminal=True,
            )

        if call.name == CHAT_MESSAGE_TOOL:
            text = str(arguments.get("text", ""))
            attachments = arguments.get("attachments") or []
            self.stream.append(
                EventType.CHAT_TEXT,
                {"text": text, "attachments": attachments},
            )
            return ToolResult(tool_call_id=call.id, name=call.name, content=["Message sent"])

        if mcp_tool is None:
            logger.info("Executing custom tool %s", call.name)
            return await token.guard(self.registry.execute(call, arguments))

        logger.info("Executing MCP tool %s on %s", call.name, mcp_tool.server)
        result = await token.guard(
            self.hub.call_tool(mcp_tool.server, mcp_tool.name, arguments)
        )
        result.tool_call_id = call.id
        return result
