"""Remote sandbox operator: drives a cloud computer through its HTTP proxy.

Every proxy call is signed per attempt (the JWT embeds a timestamp, so a
retried request gets a fresh token) and wrapped in a bounded retry. When
the retries run out the device state is unknown and the failure is fatal
for the run.
"""

from __future__ import annotations

import asyncio
import logging
import re
import time
from dataclasses import dataclass

import httpx
from jose import jwt

from pilot.agent.constants import REMOTE_SCROLL_MAX_AMOUNT, REMOTE_SCROLL_UNIT
from pilot.agent.errors import OperatorActionFailed
from pilot.operators.base import (
    Action,
    ActionType,
    ExecuteStatus,
    ScreenContext,
    ScreenshotOutput,
    resolve_point,
    strip_trailing_newline,
)

logger = logging.getLogger(__name__)

_DATA_URL_PREFIX = re.compile(r"^data:image/\w+;base64,")

_BUTTONS = {
    ActionType.CLICK: "Left",
    ActionType.LEFT_DOUBLE: "DoubleLeft",
    ActionType.RIGHT_SINGLE: "Right",
    ActionType.MIDDLE_CLICK: "Middle",
}

_SCROLL_DIRECTIONS = {"up": "Up", "down": "Down", "left": "Left", "right": "Right"}


@dataclass
class RetryPolicy:
    retries: int = 1
    backoff_seconds: float = 0.0

    def delay(self, attempt: int) -> float:
        """Delay before retry number *attempt* (1-based); exponential when backoff > 0."""
        if self.backoff_seconds <= 0:
            return 0.0
        return self.backoff_seconds * (2 ** (attempt - 1))


class DeviceAuth:
    """Builds the signed headers the sandbox proxy expects."""

    def __init__(self, device_id: str, secret: str, algorithm: str = "HS256"):
        self.device_id = device_id
        self.secret = secret
        self.algorithm = algorithm

    def headers(self) -> dict[str, str]:
        ts = int(time.time() * 1000)
        token = jwt.encode(
            {"deviceId": self.device_id, "ts": ts},
            self.secret,
            algorithm=self.algorithm,
        )
        return {
            "X-Device-Id": self.device_id,
            "X-Timestamp": str(ts),
            "Authorization": f"Bearer {token}",
        }


class RemoteComputer:
    """Thin client for the sandbox proxy's /proxy/<Operation> endpoints."""

    def __init__(
        self,
        base_url: str,
        auth: DeviceAuth,
        instance_id: str = "",
        retry: RetryPolicy | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.auth = auth
        self.instance_id = instance_id
        self.retry = retry or RetryPolicy()
        self._client = client or httpx.AsyncClient(timeout=httpx.Timeout(30.0, connect=10.0))

    async def request(self, operation: str, body: dict | None = None) -> dict:
        url = f"{self.base_url}/proxy/{operation}"
        attempts = self.retry.retries + 1
        last_error: Exception | None = None
        for attempt in range(1, attempts + 1):
            try:
                response = await self._client.post(url, json=body, headers=self.auth.headers())
                response.raise_for_status()
                return response.json()
            except (httpx.HTTPError, ValueError) as exc:
                last_error = exc
                if attempt < attempts:
                    delay = self.retry.delay(attempt)
                    logger.warning(
                        "[remote] %s attempt %d/%d failed (%s), retrying in %.1fs",
                        operation,
                        attempt,
                        attempts,
                        exc,
                        delay,
                    )
                    if delay:
                        await asyncio.sleep(delay)
        raise OperatorActionFailed(
            f"{operation} failed after {attempts} attempt(s): {last_error}",
            fatal=True,
        )

    def _body(self, **fields) -> dict:
        return {"InstanceId": self.instance_id, **fields}

    async def move_mouse(self, x: int, y: int) -> None:
        await self.request("MoveMouse", self._body(PositionX=x, PositionY=y))

    async def click_mouse(self, x: int, y: int, button: str) -> None:
        await self.request(
            "ClickMouse",
            self._body(PositionX=x, PositionY=y, Button=button, Press=True, Release=True),
        )

    async def drag_mouse(self, sx: int, sy: int, tx: int, ty: int) -> None:
        await self.request(
            "DragMouse",
            self._body(SourceX=sx, SourceY=sy, TargetX=tx, TargetY=ty),
        )

    async def press_key(self, key: str) -> None:
        await self.request("PressKey", self._body(Key=key))

    async def type_text(self, text: str) -> None:
        await self.request("TypeText", self._body(Text=text))

    async def scroll(self, x: int, y: int, direction: str, amount: int = 1) -> None:
        await self.request(
            "Scroll",
            self._body(
                PositionX=x,
                PositionY=y,
                Direction=direction,
                Amount=min(amount, REMOTE_SCROLL_MAX_AMOUNT),
            ),
        )

    async def get_screen_size(self) -> tuple[int, int]:
        data = await self.request("GetScreenSize", self._body())
        result = data.get("Result") or {}
        if "Width" not in result or "Height" not in result:
            raise OperatorActionFailed("GetScreenSize returned no size")
        return int(result["Width"]), int(result["Height"])

    async def take_screenshot(self) -> str:
        data = await self.request("TakeScreenshot", self._body())
        screenshot = (data.get("Result") or {}).get("Screenshot")
        if not screenshot:
            raise OperatorActionFailed("Screenshot data not found in response")
        return _DATA_URL_PREFIX.sub("", screenshot)

    async def describe_sandboxes(self) -> list[dict]:
        data = await self.request("DescribeSandboxes")
        return [
            {"SandboxId": s.get("SandboxId"), "OsType": s.get("OsType"), "Status": s.get("Status")}
            for s in data.get("Result") or []
        ]

    async def close(self) -> None:
        await self._client.aclose()


class RemoteComputerOperator:
    name = "remote"

    def __init__(self, computer: RemoteComputer, wait_seconds: float = 5.0):
        self.computer = computer
        self.wait_seconds = wait_seconds

    async def ensure_sandbox(self) -> str:
        """Pick the first RUNNING sandbox when none is configured."""
        if self.computer.instance_id:
            return self.computer.instance_id
        for sandbox in await self.computer.describe_sandboxes():
            if sandbox.get("Status") == "RUNNING":
                self.computer.instance_id = sandbox["SandboxId"]
                logger.info("[remote] using sandbox %s", self.computer.instance_id)
                return self.computer.instance_id
        raise OperatorActionFailed("There is no available sandbox", fatal=True)

    async def screenshot(self) -> ScreenshotOutput:
        await self.ensure_sandbox()
        width, height = await self.computer.get_screen_size()
        data = await self.computer.take_screenshot()
        return ScreenshotOutput(base64=data, scale_factor=1.0, width=width, height=height)

    async def execute(self, action: Action, screen: ScreenContext) -> ExecuteStatus | None:
        if action.terminal:
            logger.info("[remote] terminal action %s", action.type.value)
            return ExecuteStatus.END
        await self.ensure_sandbox()

        kind = action.type
        inputs = action.inputs
        point = resolve_point(inputs.start_box, screen)

        if kind == ActionType.WAIT:
            await asyncio.sleep(self.wait_seconds)
        elif kind == ActionType.MOUSE_MOVE:
            if point is None:
                logger.error("[remote] mouse_move without a usable start_box: %r", inputs.start_box)
                return ExecuteStatus.ERROR
            await self.computer.move_mouse(*point)
        elif kind in _BUTTONS:
            if point is None:
                logger.error("[remote] %s without a usable start_box: %r", kind.value, inputs.start_box)
                return ExecuteStatus.ERROR
            await self.computer.click_mouse(point[0], point[1], _BUTTONS[kind])
        elif kind == ActionType.DRAG:
            end = resolve_point(inputs.end_box, screen)
            if point is None or end is None:
                logger.error("[remote] drag needs start_box and end_box")
                return ExecuteStatus.ERROR
            await self.computer.drag_mouse(point[0], point[1], end[0], end[1])
        elif kind == ActionType.TYPE:
            if inputs.content:
                text, _ = strip_trailing_newline(inputs.content.strip())
                await self.computer.type_text(text)
        elif kind == ActionType.HOTKEY:
            # the sandbox maps key names for its own OS
            key = (inputs.key or "").strip()
            if not key:
                logger.error("[remote] hotkey without a key")
                return ExecuteStatus.ERROR
            await self.computer.press_key(key)
        elif kind == ActionType.SCROLL:
            direction = _SCROLL_DIRECTIONS.get((inputs.direction or "").lower())
            if point is None:
                logger.error("[remote] scroll without a usable start_box")
                return ExecuteStatus.ERROR
            if direction is None:
                logger.warning("[remote] unsupported scroll direction %r", inputs.direction)
            else:
                await self.computer.scroll(point[0], point[1], direction, 5 * REMOTE_SCROLL_UNIT)
        else:
            logger.warning("[remote] unsupported action %s", action.raw or kind.value)
        return None

    async def close(self) -> None:
        await self.computer.close()
