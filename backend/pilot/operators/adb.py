"""Android operator driven through ``adb shell``."""

from __future__ import annotations

import asyncio
import base64
import logging
import re
import shlex
from typing import Awaitable, Callable

from pilot.agent.constants import (
    ADB_COMMAND_TIMEOUT_SECONDS,
    ADB_IME,
    ADB_SCROLL_DISTANCE_PX,
    ADB_SCROLL_MAX_AMOUNT,
    ADB_SWIPE_DURATION_MS,
    ADB_WAIT_SECONDS,
)
from pilot.agent.errors import OperatorActionFailed
from pilot.operators.base import (
    Action,
    ActionType,
    ExecuteStatus,
    ScreenContext,
    ScreenshotOutput,
    resolve_point,
)

logger = logging.getLogger(__name__)

KEY_CODE_MAP = {
    "enter": 66,
    "back": 4,
    "home": 3,
    "backspace": 67,
    "delete": 112,
    "menu": 82,
    "power": 26,
    "volume_up": 24,
    "volume_down": 25,
    "mute": 164,
    "lock": 26,
}

_SCROLL_VECTORS = {"up": (0, -1), "down": (0, 1), "left": (-1, 0), "right": (1, 0)}

Runner = Callable[[list[str]], Awaitable[bytes]]


async def run_adb(args: list[str]) -> bytes:
    process = await asyncio.create_subprocess_exec(
        *args,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    try:
        stdout, stderr = await asyncio.wait_for(
            process.communicate(), timeout=ADB_COMMAND_TIMEOUT_SECONDS
        )
    except asyncio.TimeoutError:
        process.kill()
        await process.wait()
        raise OperatorActionFailed(f"adb timed out: {' '.join(args)}")
    if process.returncode != 0:
        raise OperatorActionFailed(
            f"adb exited with {process.returncode}: {stderr.decode(errors='replace').strip()}"
        )
    return stdout


class AdbOperator:
    name = "adb"

    def __init__(
        self,
        device_id: str = "",
        adb_path: str = "adb",
        runner: Runner = run_adb,
        wait_seconds: float = ADB_WAIT_SECONDS,
    ):
        self.device_id = device_id
        self.adb_path = adb_path
        self.wait_seconds = wait_seconds
        self._run = runner
        self.scroll_amount = 1
        self._uses_adb_ime: bool | None = None

    def _base(self) -> list[str]:
        args = [self.adb_path]
        if self.device_id:
            args += ["-s", self.device_id]
        return args

    async def shell(self, command: str) -> str:
        output = await self._run(self._base() + ["shell", command])
        return output.decode(errors="replace").strip()

    async def keyevent(self, code: int) -> None:
        await self.shell(f"input keyevent {code}")

    async def screenshot(self) -> ScreenshotOutput:
        png = await self._run(self._base() + ["exec-out", "screencap", "-p"])
        width, height = await self.screen_size()
        return ScreenshotOutput(
            base64=base64.b64encode(png).decode("ascii"),
            scale_factor=1.0,
            width=width,
            height=height,
        )

    async def screen_size(self) -> tuple[int, int]:
        output = await self.shell("wm size")
        # "Physical size: 1080x2400" optionally followed by "Override size: ..."
        sizes = re.findall(r"(\d+)x(\d+)", output)
        if not sizes:
            return 0, 0
        width, height = sizes[-1]
        return int(width), int(height)

    async def execute(self, action: Action, screen: ScreenContext) -> ExecuteStatus | None:
        if action.terminal:
            return ExecuteStatus.END

        kind = action.type
        inputs = action.inputs
        point = resolve_point(inputs.start_box, screen)

        if kind == ActionType.CLICK:
            if point is None:
                logger.error("[adb] click without a usable start_box: %r", inputs.start_box)
                return ExecuteStatus.ERROR
            await self.shell(f"input tap {point[0]} {point[1]}")
        elif kind == ActionType.TYPE:
            return await self._type(inputs.content or "")
        elif kind == ActionType.DRAG:
            end = resolve_point(inputs.end_box, screen)
            if point is None or end is None:
                logger.error("[adb] swipe needs start_box and end_box")
                return ExecuteStatus.ERROR
            await self._swipe(point, end)
        elif kind == ActionType.SCROLL:
            vector = _SCROLL_VECTORS.get((inputs.direction or "").lower())
            if point is None:
                logger.error("[adb] scroll needs a start_box")
                return ExecuteStatus.ERROR
            if vector is None:
                logger.warning("[adb] unsupported scroll direction %r", inputs.direction)
                return None
            distance = ADB_SCROLL_DISTANCE_PX * min(self.scroll_amount, ADB_SCROLL_MAX_AMOUNT)
            end = (point[0] + vector[0] * distance, point[1] + vector[1] * distance)
            await self._swipe(point, end)
        elif kind == ActionType.PRESS_HOME:
            await self.keyevent(KEY_CODE_MAP["home"])
        elif kind == ActionType.HOTKEY:
            code = KEY_CODE_MAP.get((inputs.key or "").strip().lower())
            if code is None:
                logger.warning("[adb] unsupported key %r", inputs.key)
            else:
                await self.keyevent(code)
        elif kind == ActionType.WAIT:
            await asyncio.sleep(self.wait_seconds)
        else:
            logger.warning("[adb] unsupported action %s", action.raw or kind.value)
        return None

    async def _swipe(self, start: tuple[int, int], end: tuple[int, int]) -> None:
        await self.shell(
            f"input swipe {start[0]} {start[1]} {end[0]} {end[1]} {ADB_SWIPE_DURATION_MS}"
        )

    async def _type(self, content: str) -> ExecuteStatus | None:
        content = content.strip()
        if not content:
            return None
        if self._uses_adb_ime is None:
            current = await self.shell("settings get secure default_input_method")
            self._uses_adb_ime = ADB_IME in current

        if not content.isascii() and not self._uses_adb_ime:
            reply = await self.shell(f"ime set {ADB_IME}")
            logger.info("[adb] ime set: %s", reply)
            if "selected" not in reply or "cannot be selected" in reply:
                logger.error(
                    "[adb] ADBKeyboard is unavailable; install and enable it to type non-ASCII text"
                )
                return ExecuteStatus.ERROR
            self._uses_adb_ime = True

        if self._uses_adb_ime:
            await self.shell(f"am broadcast -a ADB_INPUT_TEXT --es msg {shlex.quote(content)}")
        else:
            # input text treats spaces as argument separators
            await self.shell(f"input text {shlex.quote(content.replace(' ', '%s'))}")
        return None

    async def close(self) -> None:
        return None
