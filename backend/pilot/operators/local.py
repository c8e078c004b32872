"""Local desktop operator backed by pyautogui.

pyautogui is blocking, so every call runs in a worker thread. Clicks are
issued in pyautogui's own coordinate space (logical points), which is also
the space screenshots are reported in.
"""

from __future__ import annotations

import asyncio
import base64
import io
import logging
import sys
from typing import Any

from pilot.agent.constants import LOCAL_SCROLL_CLICKS_PER_UNIT, LOCAL_SCROLL_MAX_AMOUNT
from pilot.operators.base import (
    Action,
    ActionType,
    ExecuteStatus,
    ScreenContext,
    ScreenshotOutput,
    remap_hotkey,
    resolve_point,
    strip_trailing_newline,
)

logger = logging.getLogger(__name__)


class LocalDesktopOperator:
    name = "local"

    def __init__(self, driver: Any = None, wait_seconds: float = 5.0, platform: str | None = None):
        self._driver = driver
        self.wait_seconds = wait_seconds
        self.platform = platform or sys.platform

    @property
    def driver(self) -> Any:
        if self._driver is None:
            import pyautogui

            pyautogui.FAILSAFE = True
            self._driver = pyautogui
        return self._driver

    async def _call(self, fn, *args, **kwargs):
        return await asyncio.to_thread(fn, *args, **kwargs)

    async def screenshot(self) -> ScreenshotOutput:
        image = await self._call(self.driver.screenshot)
        width, height = await self._call(self.driver.size)
        # Retina displays capture at physical resolution
        scale_factor = image.width / width if width else 1.0

        buffer = io.BytesIO()
        image.convert("RGB").save(buffer, format="JPEG", quality=75)
        return ScreenshotOutput(
            base64=base64.b64encode(buffer.getvalue()).decode("ascii"),
            scale_factor=scale_factor,
            width=width,
            height=height,
        )

    async def execute(self, action: Action, screen: ScreenContext) -> ExecuteStatus | None:
        if action.terminal:
            logger.info("[local] terminal action %s", action.type.value)
            return ExecuteStatus.END

        kind = action.type
        inputs = action.inputs
        point = resolve_point(inputs.start_box, screen)
        driver = self.driver

        if kind == ActionType.WAIT:
            await asyncio.sleep(self.wait_seconds)
            return None

        if kind in (
            ActionType.MOUSE_MOVE,
            ActionType.CLICK,
            ActionType.LEFT_DOUBLE,
            ActionType.RIGHT_SINGLE,
            ActionType.MIDDLE_CLICK,
        ):
            if point is None:
                logger.error("[local] %s needs a start_box, got %r", kind.value, inputs.start_box)
                return ExecuteStatus.ERROR
            x, y = point
            if kind == ActionType.MOUSE_MOVE:
                await self._call(driver.moveTo, x, y)
            elif kind == ActionType.CLICK:
                await self._call(driver.click, x, y)
            elif kind == ActionType.LEFT_DOUBLE:
                await self._call(driver.doubleClick, x, y)
            elif kind == ActionType.RIGHT_SINGLE:
                await self._call(driver.rightClick, x, y)
            else:
                await self._call(driver.middleClick, x, y)
            return None

        if kind == ActionType.DRAG:
            end = resolve_point(inputs.end_box, screen)
            if point is None or end is None:
                logger.error("[local] drag needs start_box and end_box")
                return ExecuteStatus.ERROR
            await self._call(driver.moveTo, *point)
            await self._call(driver.dragTo, end[0], end[1], duration=0.5, button="left")
            return None

        if kind == ActionType.TYPE:
            if not inputs.content:
                return None
            text, submit = strip_trailing_newline(inputs.content)
            await self._call(driver.write, text, interval=0.01)
            if submit:
                await self._call(driver.press, "enter")
            return None

        if kind == ActionType.HOTKEY:
            keys = remap_hotkey(inputs.key or "", self.platform)
            if not keys:
                logger.error("[local] hotkey without a key")
                return ExecuteStatus.ERROR
            await self._call(driver.hotkey, *keys)
            return None

        if kind == ActionType.SCROLL:
            direction = (inputs.direction or "").lower()
            if point is not None:
                await self._call(driver.moveTo, *point)
            amount = min(LOCAL_SCROLL_CLICKS_PER_UNIT, LOCAL_SCROLL_MAX_AMOUNT)
            if direction == "up":
                await self._call(driver.scroll, amount)
            elif direction == "down":
                await self._call(driver.scroll, -amount)
            elif direction == "left":
                await self._call(driver.hscroll, -amount)
            elif direction == "right":
                await self._call(driver.hscroll, amount)
            else:
                logger.warning("[local] unsupported scroll direction %r", inputs.direction)
            return None

        logger.warning("[local] unsupported action %s", action.raw or kind.value)
        return None

    async def close(self) -> None:
        return None
