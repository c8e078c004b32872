"""Tests for operator backends, action parsing and coordinate handling.

Device access is faked: pyautogui by a recording driver, adb by a scripted
runner, and the remote proxy by an httpx MockTransport.
"""

from __future__ import annotations

import asyncio
import json
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

import httpx
import pytest
from jose import jwt

from pilot.agent.errors import OperatorActionFailed, ToolExecutionFailed
from pilot.agent.tool_registry import ToolRegistry
from pilot.config import Settings
from pilot.operators import create_operator
from pilot.operators.actions import parse_action
from pilot.operators.adb import AdbOperator
from pilot.operators.base import (
    ActionType,
    ExecuteStatus,
    ScreenContext,
    ScreenshotOutput,
    remap_hotkey,
    resolve_point,
    screen_context,
    strip_trailing_newline,
)
from pilot.operators.local import LocalDesktopOperator
from pilot.operators.remote import (
    DeviceAuth,
    RemoteComputer,
    RemoteComputerOperator,
    RetryPolicy,
)
from pilot.operators.tools import OperatorToolset

SCREEN = ScreenContext(width=100, height=100)


# ── Coordinates and keys ────────────────────────────────────────


def test_resolve_point_uses_box_centre():
    assert resolve_point("[10,10,20,20]", SCREEN) == (15, 15)
    assert resolve_point("(40, 60)", SCREEN) == (40, 60)


def test_resolve_point_scales_from_coordinate_space():
    screen = screen_context(1920, 1080, coordinate_space=1000)
    assert resolve_point("[500,500,500,500]", screen) == (960, 540)


def test_resolve_point_rejects_unusable_boxes():
    assert resolve_point(None, SCREEN) is None
    assert resolve_point("[1,2,3]", SCREEN) is None
    assert resolve_point("nowhere", SCREEN) is None


def test_remap_hotkey_per_platform():
    assert remap_hotkey("ctrl+c", "darwin") == ["command", "c"]
    assert remap_hotkey("ctrl c", "linux") == ["ctrl", "c"]
    assert remap_hotkey("meta", "win32") == ["win"]
    assert remap_hotkey("Return", "linux") == ["enter"]


def test_strip_trailing_newline_handles_escaped_form():
    assert strip_trailing_newline("hello\\n") == ("hello", True)
    assert strip_trailing_newline("hello\n") == ("hello", True)
    assert strip_trailing_newline("hello") == ("hello", False)


# ── Action parsing ──────────────────────────────────────────────


def test_parse_action_reads_arguments_and_aliases():
    action = parse_action("left_click(start_box='<|box_start|>[1,2,3,4]<|box_end|>')")
    assert action.type == ActionType.CLICK
    assert action.inputs.start_box == "[1,2,3,4]"

    action = parse_action("type(text='it\\'s fine\\n')")
    assert action.type == ActionType.TYPE
    assert action.inputs.content == "it's fine\\n"

    action = parse_action("hotkey(hotkey='ctrl c')")
    assert action.inputs.key == "ctrl c"


def test_parse_action_unknown_and_invalid():
    assert parse_action("teleport(start_box='[1,1,1,1]')").type == ActionType.UNSUPPORTED
    assert parse_action("finished()").terminal
    with pytest.raises(ValueError):
        parse_action("just some words")


# ── Local desktop ───────────────────────────────────────────────


class RecordingDriver:
    def __init__(self):
        self.calls = []

    def __getattr__(self, name):
        def record(*args, **kwargs):
            self.calls.append((name, args, kwargs))

        return record


def run_local(action_text, platform="linux"):
    driver = RecordingDriver()
    operator = LocalDesktopOperator(driver=driver, wait_seconds=0, platform=platform)
    status = asyncio.run(operator.execute(parse_action(action_text), SCREEN))
    return status, driver.calls


def test_local_click_and_drag():
    status, calls = run_local("click(start_box='[10,10,20,20]')")
    assert status is None
    assert calls == [("click", (15, 15), {})]

    _, calls = run_local("drag(start_box='[0,0,0,0]', end_box='[50,50,50,50]')")
    assert calls == [
        ("moveTo", (0, 0), {}),
        ("dragTo", (50, 50), {"duration": 0.5, "button": "left"}),
    ]


def test_local_type_submits_on_trailing_newline():
    _, calls = run_local("type(content='hello\\n')")
    assert calls == [("write", ("hello",), {"interval": 0.01}), ("press", ("enter",), {})]


def test_local_hotkey_and_scroll():
    _, calls = run_local("hotkey(key='ctrl c')", platform="darwin")
    assert calls == [("hotkey", ("command", "c"), {})]

    _, calls = run_local("scroll(start_box='[10,10,20,20]', direction='down')")
    assert calls == [("moveTo", (15, 15), {}), ("scroll", (-5,), {})]


def test_local_terminal_and_missing_box():
    status, calls = run_local("finished()")
    assert status == ExecuteStatus.END
    assert calls == []

    status, calls = run_local("click()")
    assert status == ExecuteStatus.ERROR
    assert calls == []


# ── ADB ─────────────────────────────────────────────────────────


class ScriptedAdb:
    def __init__(self, ime="com.android.inputmethod.latin/.LatinIME", ime_reply="Input method selected"):
        self.commands = []
        self.ime = ime
        self.ime_reply = ime_reply

    async def __call__(self, args):
        self.commands.append(args)
        command = args[-1]
        if command.startswith("settings get"):
            return self.ime.encode()
        if command.startswith("ime set"):
            return self.ime_reply.encode()
        if command == "wm size":
            return b"Physical size: 1080x2400"
        return b""


def shell_commands(runner):
    return [args[-1] for args in runner.commands if "shell" in args]


def test_adb_tap_and_swipe():
    runner = ScriptedAdb()
    operator = AdbOperator(device_id="emulator-5554", runner=runner)

    asyncio.run(operator.execute(parse_action("click(start_box='[10,10,20,20]')"), SCREEN))
    asyncio.run(
        operator.execute(parse_action("swipe(start_box='[0,0,0,0]', end_box='[50,50,50,50]')"), SCREEN)
    )

    assert runner.commands[0][:3] == ["adb", "-s", "emulator-5554"]
    assert shell_commands(runner) == ["input tap 15 15", "input swipe 0 0 50 50 300"]


def test_adb_scroll_and_keys():
    runner = ScriptedAdb()
    operator = AdbOperator(runner=runner)

    asyncio.run(operator.execute(parse_action("scroll(start_box='[10,10,20,20]', direction='down')"), SCREEN))
    asyncio.run(operator.execute(parse_action("press_home()"), SCREEN))
    asyncio.run(operator.execute(parse_action("hotkey(key='back')"), SCREEN))

    assert shell_commands(runner) == [
        "input swipe 15 15 15 115 300",
        "input keyevent 3",
        "input keyevent 4",
    ]


def test_adb_types_ascii_with_input_text():
    runner = ScriptedAdb()
    operator = AdbOperator(runner=runner)
    status = asyncio.run(operator.execute(parse_action("type(content='hello world')"), SCREEN))

    assert status is None
    assert shell_commands(runner)[-1] == "input text hello%sworld"


def test_adb_non_ascii_without_keyboard_is_an_error():
    runner = ScriptedAdb(ime_reply="Unknown input method com.android.adbkeyboard/.AdbIME cannot be selected")
    operator = AdbOperator(runner=runner)
    status = asyncio.run(operator.execute(parse_action("type(content='héllo')"), SCREEN))

    assert status == ExecuteStatus.ERROR
    assert not any(c.startswith("am broadcast") for c in shell_commands(runner))


def test_adb_non_ascii_uses_keyboard_broadcast():
    runner = ScriptedAdb()
    operator = AdbOperator(runner=runner)
    status = asyncio.run(operator.execute(parse_action("type(content='héllo')"), SCREEN))

    assert status is None
    assert shell_commands(runner)[-1] == "am broadcast -a ADB_INPUT_TEXT --es msg 'héllo'"


def test_adb_screenshot_reads_size():
    runner = ScriptedAdb()
    shot = asyncio.run(AdbOperator(runner=runner).screenshot())
    assert (shot.width, shot.height) == (1080, 2400)


# ── Remote sandbox ──────────────────────────────────────────────


def make_remote(handler, retries=1):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    computer = RemoteComputer(
        "http://proxy.test/api/v1/",
        DeviceAuth("device-1", "secret"),
        instance_id="sbx-1",
        retry=RetryPolicy(retries=retries),
        client=client,
    )
    return computer


def test_remote_request_is_signed_and_retried_once():
    seen = []

    def handler(request):
        seen.append(request)
        if len(seen) == 1:
            return httpx.Response(502)
        return httpx.Response(200, json={"Result": {}})

    computer = make_remote(handler)
    asyncio.run(computer.move_mouse(15, 15))

    assert len(seen) == 2
    request = seen[-1]
    assert request.url.path == "/api/v1/proxy/MoveMouse"
    assert json.loads(request.content) == {"InstanceId": "sbx-1", "PositionX": 15, "PositionY": 15}
    token = request.headers["Authorization"].removeprefix("Bearer ")
    claims = jwt.decode(token, "secret", algorithms=["HS256"])
    assert claims["deviceId"] == "device-1"
    assert str(claims["ts"]) == request.headers["X-Timestamp"]


def test_remote_exhausted_retries_are_fatal():
    attempts = []

    def handler(request):
        attempts.append(request)
        return httpx.Response(500)

    computer = make_remote(handler)
    with pytest.raises(OperatorActionFailed) as excinfo:
        asyncio.run(computer.type_text("hi"))
    assert excinfo.value.fatal
    assert len(attempts) == 2


def test_remote_operator_maps_actions():
    bodies = []

    def handler(request):
        bodies.append((request.url.path.rsplit("/", 1)[-1], json.loads(request.content)))
        return httpx.Response(200, json={"Result": {}})

    operator = RemoteComputerOperator(make_remote(handler), wait_seconds=0)

    async def scenario():
        for text in (
            "left_double(start_box='[10,10,20,20]')",
            "scroll(start_box='[10,10,20,20]', direction='up')",
            "hotkey(key='ctrl shift t')",
        ):
            await operator.execute(parse_action(text), SCREEN)
        await operator.close()

    asyncio.run(scenario())

    click, scroll, hotkey = bodies
    assert click[0] == "ClickMouse"
    assert click[1]["Button"] == "DoubleLeft"
    assert click[1]["PositionX"] == 15
    assert scroll[0] == "Scroll"
    assert scroll[1]["Direction"] == "Up"
    assert scroll[1]["Amount"] == 10
    assert hotkey == ("PressKey", {"InstanceId": "sbx-1", "Key": "ctrl shift t"})


def test_remote_operator_picks_running_sandbox():
    def handler(request):
        return httpx.Response(
            200,
            json={
                "Result": [
                    {"SandboxId": "stopped", "Status": "STOPPED"},
                    {"SandboxId": "live", "Status": "RUNNING"},
                ]
            },
        )

    computer = make_remote(handler)
    computer.instance_id = ""
    operator = RemoteComputerOperator(computer)
    assert asyncio.run(operator.ensure_sandbox()) == "live"


# ── Toolset and factory ─────────────────────────────────────────


class FakeOperator:
    name = "fake"

    def __init__(self, status=None):
        self.status = status
        self.executed = []

    async def screenshot(self):
        return ScreenshotOutput(base64="aGVsbG8=", width=100, height=100)

    async def execute(self, action, screen):
        self.executed.append((action.type, resolve_point(action.inputs.start_box, screen)))
        return self.status

    async def close(self):
        return None


def test_toolset_registers_and_executes():
    operator = FakeOperator()
    registry = ToolRegistry()
    OperatorToolset(operator).register(registry)
    assert [d.name for d in registry.descriptors()] == ["computer_screenshot", "computer_action"]
    assert "computer_action" in registry

    toolset = OperatorToolset(operator)
    result = asyncio.run(toolset.action("click(start_box='[10,10,20,20]')"))
    assert not result.is_error
    assert operator.executed == [(ActionType.CLICK, (15, 15))]


def test_toolset_terminal_and_refused_actions():
    result = asyncio.run(OperatorToolset(FakeOperator(ExecuteStatus.END)).action("finished()"))
    assert result.terminal

    result = asyncio.run(OperatorToolset(FakeOperator(ExecuteStatus.ERROR)).action("type(content='x')"))
    assert result.is_error


def test_create_operator_by_name():
    assert create_operator(Settings(OPERATOR="none")) is None
    assert create_operator(Settings(OPERATOR="adb")).name == "adb"
    with pytest.raises(ValueError):
        create_operator(Settings(OPERATOR="hologram"))


def test_toolset_rejects_text_that_is_not_an_action():
    with pytest.raises(ToolExecutionFailed):
        asyncio.run(OperatorToolset(FakeOperator()).action("please click the button"))


def test_remote_hotkey_is_sent_as_written():
    bodies = []

    def handler(request):
        bodies.append(json.loads(request.content))
        return httpx.Response(200, json={"Result": {}})

    operator = RemoteComputerOperator(make_remote(handler), wait_seconds=0)

    async def scenario():
        status = await operator.execute(parse_action("hotkey(key='ctrl c')"), SCREEN)
        await operator.close()
        return status

    assert asyncio.run(scenario()) is None
    assert bodies == [{"InstanceId": "sbx-1", "Key": "ctrl c"}]


def test_remote_action_without_box_is_an_error_and_sends_nothing():
    bodies = []

    def handler(request):
        bodies.append(request)
        return httpx.Response(200, json={"Result": {}})

    operator = RemoteComputerOperator(make_remote(handler), wait_seconds=0)

    async def scenario():
        status = await operator.execute(parse_action("click(start_box='nowhere')"), SCREEN)
        await operator.close()
        return status

    assert asyncio.run(scenario()) == ExecuteStatus.ERROR
    assert bodies == []


def test_toolset_reports_skipped_action_as_error():
    operator = LocalDesktopOperator(driver=RecordingDriver(), wait_seconds=0, platform="linux")
    toolset = OperatorToolset(operator)
    toolset.last_screenshot = ScreenshotOutput(base64="", width=100, height=100)

    result = asyncio.run(toolset.action("click()"))
    assert result.is_error
    assert result.content == ["Could not perform click(); check its arguments and the screen"]
    assert operator.driver.calls == []


def test_adb_click_without_box_is_an_error():
    runner = ScriptedAdb()
    status = asyncio.run(AdbOperator(runner=runner).execute(parse_action("click()"), SCREEN))
    assert status == ExecuteStatus.ERROR
    assert shell_commands(runner) == []
