"""Shared types for operator backends.

An operator turns an abstract Action (parsed from model output such as
``click(start_box='[10,10,20,20]')``) into concrete input on a target
device. Backends share no base class; they only satisfy the Operator
protocol.
"""

from __future__ import annotations

import enum
import logging
import re
import sys
from dataclasses import dataclass, field
from typing import Protocol

logger = logging.getLogger(__name__)


class ExecuteStatus(str, enum.Enum):
    END = "end"  # terminal action, the run should stop
    ERROR = "error"  # action skipped or refused, the model may retry


class ActionType(str, enum.Enum):
    MOUSE_MOVE = "mouse_move"
    CLICK = "click"
    LEFT_DOUBLE = "left_double"
    RIGHT_SINGLE = "right_single"
    MIDDLE_CLICK = "middle_click"
    DRAG = "drag"
    TYPE = "type"
    HOTKEY = "hotkey"
    SCROLL = "scroll"
    WAIT = "wait"
    PRESS_HOME = "press_home"
    FINISHED = "finished"
    CALL_USER = "call_user"
    ERROR_ENV = "error_env"
    USER_STOP = "user_stop"
    UNSUPPORTED = "unsupported"


# Names the model may use for the same action.
ACTION_ALIASES: dict[str, ActionType] = {
    "mouse_move": ActionType.MOUSE_MOVE,
    "hover": ActionType.MOUSE_MOVE,
    "click": ActionType.CLICK,
    "left_single": ActionType.CLICK,
    "left_click": ActionType.CLICK,
    "left_double": ActionType.LEFT_DOUBLE,
    "double_click": ActionType.LEFT_DOUBLE,
    "right_single": ActionType.RIGHT_SINGLE,
    "right_click": ActionType.RIGHT_SINGLE,
    "middle_click": ActionType.MIDDLE_CLICK,
    "drag": ActionType.DRAG,
    "left_click_drag": ActionType.DRAG,
    "select": ActionType.DRAG,
    "swipe": ActionType.DRAG,
    "type": ActionType.TYPE,
    "hotkey": ActionType.HOTKEY,
    "press": ActionType.HOTKEY,
    "scroll": ActionType.SCROLL,
    "wait": ActionType.WAIT,
    "press_home": ActionType.PRESS_HOME,
    "finished": ActionType.FINISHED,
    "call_user": ActionType.CALL_USER,
    "error_env": ActionType.ERROR_ENV,
    "user_stop": ActionType.USER_STOP,
}

TERMINAL_ACTIONS = frozenset(
    {ActionType.FINISHED, ActionType.CALL_USER, ActionType.ERROR_ENV, ActionType.USER_STOP}
)


@dataclass
class ActionInputs:
    start_box: str | None = None
    end_box: str | None = None
    content: str | None = None
    key: str | None = None
    direction: str | None = None


@dataclass
class Action:
    type: ActionType
    inputs: ActionInputs = field(default_factory=ActionInputs)
    raw: str = ""

    @property
    def terminal(self) -> bool:
        return self.type in TERMINAL_ACTIONS


@dataclass
class ScreenshotOutput:
    base64: str
    scale_factor: float = 1.0
    width: int = 0
    height: int = 0


@dataclass
class ScreenContext:
    """Target screen plus the coordinate space boxes are expressed in.

    Source dimensions default to the screen itself, i.e. boxes are already
    in device pixels.
    """

    width: int
    height: int
    scale_factor: float = 1.0
    source_width: int | None = None
    source_height: int | None = None


class Operator(Protocol):
    name: str

    async def screenshot(self) -> ScreenshotOutput:
        ...

    async def execute(self, action: Action, screen: ScreenContext) -> ExecuteStatus | None:
        ...

    async def close(self) -> None:
        ...


# ── Coordinates ─────────────────────────────────────────────────

_NUMBER = re.compile(r"-?\d+(?:\.\d+)?")


def parse_box(box: str | None) -> list[float] | None:
    """Parse "[x1,y1,x2,y2]" (or the 2-value point form "(x,y)")."""
    if not box:
        return None
    values = [float(v) for v in _NUMBER.findall(box)]
    if len(values) == 2:
        return values + values
    if len(values) == 4:
        return values
    return None


def resolve_point(box: str | None, screen: ScreenContext) -> tuple[int, int] | None:
    """Centre of *box* in target screen pixels, or None if the box is unusable."""
    values = parse_box(box)
    if values is None:
        return None
    x1, y1, x2, y2 = values
    source_w = screen.source_width or screen.width
    source_h = screen.source_height or screen.height
    if not source_w or not source_h:
        return None
    x = (x1 + x2) / 2 * screen.width / source_w
    y = (y1 + y2) / 2 * screen.height / source_h
    return round(x), round(y)


def screen_context(
    width: int,
    height: int,
    scale_factor: float = 1.0,
    coordinate_space: int | None = None,
) -> ScreenContext:
    if coordinate_space:
        return ScreenContext(width, height, scale_factor, coordinate_space, coordinate_space)
    return ScreenContext(width, height, scale_factor)


# ── Keys ────────────────────────────────────────────────────────


def platform_command_key(platform: str | None = None) -> str:
    return "command" if (platform or sys.platform) == "darwin" else "win"


def remap_hotkey(key: str, platform: str | None = None) -> list[str]:
    """Split "ctrl+c" / "ctrl c" into key names for the current platform."""
    platform = platform or sys.platform
    command = platform_command_key(platform)
    keymap = {
        "ctrl": "command" if platform == "darwin" else "ctrl",
        "control": "command" if platform == "darwin" else "ctrl",
        "meta": command,
        "win": command,
        "cmd": command,
        "command": command,
        "return": "enter",
        "arrowup": "up",
        "arrowdown": "down",
        "arrowleft": "left",
        "arrowright": "right",
        "page down": "pagedown",
        "page up": "pageup",
        ",": "comma",
    }
    normalized = key.strip().lower().replace("page down", "pagedown").replace("page up", "pageup")
    return [keymap.get(k, k) for k in re.split(r"[\s+]+", normalized) if k]


def strip_trailing_newline(content: str) -> tuple[str, bool]:
    """Remove a trailing "\\n" (escaped or literal). Returns (text, had_newline)."""
    text = content.strip(" ")
    for marker in ("\\n", "\n"):
        if text.endswith(marker):
            return text[: -len(marker)], True
    return text, False
