"""Tests for the ToolDispatcher: resolution order, event footprint and
error handling."""

from __future__ import annotations

import asyncio
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

import pytest

from pilot.agent.cancellation import CancellationToken
from pilot.agent.dispatcher import ToolDispatcher
from pilot.agent.errors import Cancelled, OperatorActionFailed
from pilot.agent.events import EventStream, EventType
from pilot.agent.state import ToolCall, ToolDescriptor, ToolResult
from pilot.agent.tool_registry import ToolRegistry


class FakeHub:
    def __init__(self):
        self.calls = []

    async def list_tools(self):
        return [ToolDescriptor(name="read_file", description="Read", server="fs")]

    async def call_tool(self, server, name, arguments):
        self.calls.append((server, name, arguments))
        return ToolResult(tool_call_id="", name=name, content=["file body"])


def make_dispatcher(hub=None):
    stream = EventStream()
    registry = ToolRegistry()
    return ToolDispatcher(stream, registry, hub), stream, registry


def run(coro):
    return asyncio.run(coro)


def types(stream):
    return [e.type for e in stream.get_all()]


# ── Resolution ──────────────────────────────────────────────────


def test_unknown_tool_becomes_error_result():
    dispatcher, stream, _ = make_dispatcher()
    result = run(dispatcher.execute(ToolCall(id="c1", name="nope"), CancellationToken()))

    assert result.is_error
    assert result.content == ["Tool not found: nope"]
    used = stream.latest(EventType.TOOL_USED)
    assert used.payload["status"] == "error"


def test_event_footprint_of_one_call():
    dispatcher, stream, registry = make_dispatcher()

    async def echo(text):
        return f"echo: {text}"

    registry.register("echo", "Echo", {"type": "object"}, echo)
    result = run(
        dispatcher.execute(ToolCall(id="c1", name="echo", arguments='{"text": "hi"}'), CancellationToken())
    )

    assert result.content == ["echo: hi"]
    assert types(stream) == [
        EventType.TOOL_CALL_START,
        EventType.TOOL_USED,
        EventType.TOOL_RESULT,
        EventType.OBSERVATION,
    ]
    used = stream.latest(EventType.TOOL_USED)
    assert used.payload["status"] == "success"
    assert used.payload["result"] == ["echo: hi"]
    assert stream.latest(EventType.OBSERVATION).payload["content"] == "echo: hi"


def test_chat_message_appends_chat_text():
    dispatcher, stream, _ = make_dispatcher()
    run(
        dispatcher.execute(
            ToolCall(id="c1", name="chat-message", arguments='{"text": "Done!", "attachments": []}'),
            CancellationToken(),
        )
    )
    chat = stream.latest(EventType.CHAT_TEXT)
    assert chat.payload == {"text": "Done!", "attachments": []}


def test_idle_is_terminal():
    dispatcher, _, _ = make_dispatcher()
    result = run(dispatcher.execute(ToolCall(id="c1", name="idle"), CancellationToken()))
    assert result.terminal
    assert not result.is_error


def test_custom_tool_wins_over_mcp():
    hub = FakeHub()
    dispatcher, _, registry = make_dispatcher(hub)

    async def read_file(path):
        return "local"

    registry.register("read_file", "Read", {"type": "object"}, read_file)
    result = run(
        dispatcher.execute(ToolCall(id="c1", name="read_file", arguments='{"path": "a"}'), CancellationToken())
    )
    assert result.content == ["local"]
    assert hub.calls == []


def test_mcp_tool_routed_by_server():
    hub = FakeHub()
    dispatcher, _, _ = make_dispatcher(hub)
    result = run(
        dispatcher.execute(ToolCall(id="c9", name="read_file", arguments='{"path": "a"}'), CancellationToken())
    )
    assert hub.calls == [("fs", "read_file", {"path": "a"})]
    assert result.tool_call_id == "c9"
    assert result.content == ["file body"]


# ── Failures ────────────────────────────────────────────────────


def test_handler_exception_becomes_error_result():
    dispatcher, stream, registry = make_dispatcher()

    async def explode():
        raise RuntimeError("disk on fire")

    registry.register("explode", "Boom", {"type": "object"}, explode)
    result = run(dispatcher.execute(ToolCall(id="c1", name="explode"), CancellationToken()))

    assert result.is_error
    assert result.content == ["Error executing tool: disk on fire"]
    assert stream.last().type == EventType.OBSERVATION


def test_malformed_arguments_become_error_result():
    dispatcher, _, registry = make_dispatcher()

    async def echo(text):
        return text

    registry.register("echo", "Echo", {"type": "object"}, echo)
    result = run(dispatcher.execute(ToolCall(id="c1", name="echo", arguments="{not json"), CancellationToken()))
    assert result.is_error
    assert result.content[0].startswith("Invalid arguments for echo")


def test_fatal_operator_failure_propagates():
    dispatcher, stream, registry = make_dispatcher()

    async def act():
        raise OperatorActionFailed("proxy unreachable", fatal=True)

    registry.register("act", "Act", {"type": "object"}, act)
    with pytest.raises(OperatorActionFailed):
        run(dispatcher.execute(ToolCall(id="c1", name="act"), CancellationToken()))
    assert stream.latest(EventType.TOOL_USED).payload["status"] == "error"
    assert stream.latest(EventType.TOOL_RESULT) is None


def test_cancelled_call_is_marked_in_place():
    dispatcher, stream, registry = make_dispatcher()
    token = CancellationToken()

    async def slow():
        token.cancel("stop")
        await asyncio.sleep(10)

    registry.register("slow", "Slow", {"type": "object"}, slow)
    with pytest.raises(Cancelled):
        run(dispatcher.execute(ToolCall(id="c1", name="slow"), token))
    assert stream.latest(EventType.TOOL_USED).payload["status"] == "cancelled"
    assert stream.latest(EventType.OBSERVATION) is None


# ── Batches ─────────────────────────────────────────────────────


def test_batch_runs_in_order_and_stops_after_terminal():
    dispatcher, stream, registry = make_dispatcher()
    order = []

    def recorder(name):
        async def handler():
            order.append(name)
            return name

        return handler

    for name in ("a", "b", "c"):
        registry.register(name, name, {"type": "object"}, recorder(name))

    calls = [
        ToolCall(id="1", name="a"),
        ToolCall(id="2", name="b"),
        ToolCall(id="3", name="idle"),
        ToolCall(id="4", name="c"),
    ]
    results = run(dispatcher.execute_batch(calls, CancellationToken(), batch=1))

    assert order == ["a", "b"]
    assert [r.name for r in results] == ["a", "b", "idle"]
    used = [e.payload["name"] for e in stream.get_all() if e.type == EventType.TOOL_USED]
    assert used == ["a", "b", "idle"]
