"""Tests for SessionRegistry and the sqlite EventStore."""

from __future__ import annotations

import asyncio
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

import pytest

from pilot.agent.constants import AWARE_ANALYSIS_TOOL
from pilot.agent.errors import SessionBusy, SessionNotFound
from pilot.agent.events import EventType
from pilot.agent.registry import SessionRegistry
from pilot.agent.runtime import Runtime
from pilot.agent.state import RunStatus, ToolCall
from pilot.agent.tool_engine import NativeToolCallEngine, ParsedModelResponse
from pilot.config import Settings
from pilot.db import EventStore

PLAN = ParsedModelResponse(
    tool_calls=[
        ToolCall(
            id="aware",
            name=AWARE_ANALYSIS_TOOL,
            arguments='{"plan": [{"id": "step_001", "title": "Answer"}], "step": 1}',
        )
    ]
)


class IdleModel:
    """Plans one step, then either goes idle or calls a named tool."""

    def __init__(self, action="idle"):
        self.engine = NativeToolCallEngine()
        self.action = action

    async def ask_text(self, messages, request_id):
        return "On it."

    async def ask_with_tools(self, messages, tools, request_id, tool_choice=None):
        if tool_choice == AWARE_ANALYSIS_TOOL:
            return PLAN
        return ParsedModelResponse(tool_calls=[ToolCall(id="c1", name=self.action, arguments="{}")])


def make_runtime(model=None, store=None):
    runtime = Runtime(settings=Settings(GREETING_TIMEOUT_SECONDS=1.0), model=model or IdleModel(), store=store)

    async def block():
        await asyncio.sleep(3600)

    runtime.tools.register("block", "Block", {"type": "object"}, block)
    return runtime


# ── Registry ────────────────────────────────────────────────────


def test_spawn_runs_to_completion():
    async def scenario():
        registry = SessionRegistry(make_runtime())
        session_id = await registry.spawn("What time is it?")
        session = await registry.query(session_id)
        await session.wait()
        listed = await registry.list_sessions()
        await registry.shutdown()
        return session, listed

    session, listed = asyncio.run(scenario())
    assert session.status == RunStatus.COMPLETED
    assert session.stream.last().type == EventType.COMPLETE
    assert listed[0]["agent_id"] == session.id
    assert listed[0]["status"] == "completed"


def test_unknown_session_raises():
    async def scenario():
        registry = SessionRegistry(make_runtime())
        try:
            with pytest.raises(SessionNotFound):
                await registry.query("missing")
            with pytest.raises(SessionNotFound):
                await registry.stop("missing")
        finally:
            await registry.shutdown()

    asyncio.run(scenario())


def test_send_to_running_session_is_busy_and_stop_ends_it():
    async def scenario():
        registry = SessionRegistry(make_runtime(IdleModel(action="block")))
        session_id = await registry.spawn("Wait for me")
        with pytest.raises(SessionBusy):
            await registry.send(session_id, "again")
        stopped = await registry.stop(session_id)
        session = await registry.query(session_id)
        await session.wait()
        stopped_again = await registry.stop(session_id)
        await registry.shutdown()
        return session, stopped, stopped_again

    session, stopped, stopped_again = asyncio.run(scenario())
    assert stopped is True
    assert stopped_again is False
    assert session.status == RunStatus.ABORTED


def test_spawn_with_existing_id_reuses_the_session():
    async def scenario():
        registry = SessionRegistry(make_runtime())
        first = await registry.spawn("one", session_id="fixed")
        await (await registry.query(first)).wait()
        second = await registry.spawn("two", session_id="fixed")
        session = await registry.query(second)
        await session.wait()
        sessions = await registry.list_sessions()
        await registry.shutdown()
        return first, second, session, sessions

    first, second, session, sessions = asyncio.run(scenario())
    assert first == second == "fixed"
    assert len(sessions) == 1
    messages = [e.payload["text"] for e in session.stream.get_all() if e.type == EventType.USER_MESSAGE]
    assert messages == ["one", "two"]


def test_shutdown_stops_running_sessions():
    async def scenario():
        registry = SessionRegistry(make_runtime(IdleModel(action="block")))
        session_id = await registry.spawn("Wait for me")
        session = await registry.query(session_id)
        await asyncio.sleep(0.05)
        await registry.shutdown()
        return session, registry

    session, registry = asyncio.run(scenario())
    assert session.status == RunStatus.ABORTED
    assert not session.running
    assert not registry.started


def test_commands_queued_behind_shutdown_are_failed():
    async def scenario():
        registry = SessionRegistry(make_runtime())
        await registry.spawn("Hello")
        return await asyncio.gather(
            registry.shutdown(), registry.list_sessions(), return_exceptions=True
        )

    shutdown, late = asyncio.run(asyncio.wait_for(scenario(), timeout=5))
    assert shutdown is None
    assert isinstance(late, RuntimeError)


# ── Event store ─────────────────────────────────────────────────


def test_event_store_round_trip(tmp_path):
    store = EventStore(tmp_path / "runs" / "pilot.db")
    events = [{"id": "e1", "type": "user-message", "timestamp": 1, "payload": {"text": "hi"}}]

    async def scenario():
        await store.init()
        await store.save("s1", events, "completed")
        loaded = await store.load("s1")
        missing = await store.load("nope")
        listed = await store.list_sessions()
        return loaded, missing, listed

    loaded, missing, listed = asyncio.run(scenario())
    assert loaded == events
    assert missing is None
    assert listed[0]["session_id"] == "s1"
    assert listed[0]["status"] == "completed"


def test_finished_run_is_persisted(tmp_path):
    store = EventStore(tmp_path / "pilot.db")

    async def scenario():
        await store.init()
        registry = SessionRegistry(make_runtime(store=store))
        session_id = await registry.spawn("Persist me")
        await (await registry.query(session_id)).wait()
        await registry.shutdown()
        return session_id, await store.load(session_id)

    session_id, events = asyncio.run(scenario())
    assert events[0]["type"] == "user-message"
    assert events[-1]["type"] == "complete"
