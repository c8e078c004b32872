from __future__ import annotations

import logging

from pilot.agent.constants import COMPUTER_ACTION_TOOL, COMPUTER_SCREENSHOT_TOOL
from pilot.agent.errors import ToolExecutionFailed
from pilot.agent.state import ToolResult
from pilot.agent.tool_registry import ToolRegistry
from pilot.operators.actions import ACTION_SPACE, parse_action
from pilot.operators.base import (
    ExecuteStatus,
    Operator,
    ScreenContext,
    ScreenshotOutput,
    screen_context,
)

logger = logging.getLogger(__name__)


class OperatorToolset:
    """Exposes an operator to the model as two custom tools."""

    def __init__(self, operator: Operator, coordinate_space: int | None = None):
        self.operator = operator
        self.coordinate_space = coordinate_space
        self.last_screenshot: ScreenshotOutput | None = None

    async def _screen(self) -> ScreenContext:
        if self.last_screenshot is None or not self.last_screenshot.width:
            self.last_screenshot = await self.operator.screenshot()
        shot = self.last_screenshot
        return screen_context(shot.width, shot.height, shot.scale_factor, self.coordinate_space)

    async def screenshot(self) -> str:
        shot = await self.operator.screenshot()
        self.last_screenshot = shot
        return (
            f"Screenshot captured: {shot.width}x{shot.height}, "
            f"scale factor {shot.scale_factor:g}, {len(shot.base64)} base64 chars"
        )

    async def action(self, action: str) -> ToolResult:
        try:
            parsed = parse_action(action)
        except ValueError as exc:
            raise ToolExecutionFailed(COMPUTER_ACTION_TOOL, str(exc)) from exc
        screen = await self._screen()
        logger.info("[%s] executing %s", self.operator.name, action)
        status = await self.operator.execute(parsed, screen)

        if status == ExecuteStatus.END:
            return ToolResult(
                tool_call_id="",
                name=COMPUTER_ACTION_TOOL,
                content=[f"Finished with {parsed.raw}"],
                terminal=True,
            )
        if status == ExecuteStatus.ERROR:
            return ToolResult(
                tool_call_id="",
                name=COMPUTER_ACTION_TOOL,
                content=[f"Could not perform {action}; check its arguments and the screen"],
                is_error=True,
            )
        return ToolResult(tool_call_id="", name=COMPUTER_ACTION_TOOL, content=[f"Executed {action}"])

    def register(self, registry: ToolRegistry) -> None:
        registry.register(
            COMPUTER_SCREENSHOT_TOOL,
            "Take a screenshot of the controlled device and report its size.",
            {"type": "object", "properties": {}},
            self.screenshot,
        )
        registry.register(
            COMPUTER_ACTION_TOOL,
            "Perform one GUI action on the controlled device. Supported actions:\n"
            + ACTION_SPACE,
            {
                "type": "object",
                "properties": {
                    "action": {
                        "type": "string",
                        "description": "One action call, e.g. click(start_box='[10,10,20,20]')",
                    }
                },
                "required": ["action"],
            },
            self.action,
        )
