"""SessionRegistry: owns the map of live sessions.

All mutations go through a single consumer task reading commands from an
asyncio.Queue, so spawn/stop/interrupt requests coming from several HTTP
or WebSocket handlers never race on the session map.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any

from pilot.agent.errors import SessionNotFound
from pilot.agent.runtime import Runtime
from pilot.agent.session import AgentSession

logger = logging.getLogger(__name__)


@dataclass
class Command:
    kind: str  # spawn, send, stop, interrupt, query, list, shutdown
    args: dict = field(default_factory=dict)
    future: asyncio.Future | None = None


class SessionRegistry:
    def __init__(self, runtime: Runtime):
        self.runtime = runtime
        self._sessions: dict[str, AgentSession] = {}
        self._queue: asyncio.Queue[Command] = asyncio.Queue()
        self._task: asyncio.Task | None = None

    @property
    def started(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if not self.started:
            self._task = asyncio.create_task(self._serve(), name="session-registry")

    async def _call(self, kind: str, **args: Any) -> Any:
        self.start()
        future = asyncio.get_running_loop().create_future()
        await self._queue.put(Command(kind=kind, args=args, future=future))
        return await future

    # ── Public API ──────────────────────────────────────────────

    async def spawn(self, text: str, session_id: str | None = None) -> str:
        return await self._call("spawn", text=text, session_id=session_id)

    async def send(self, session_id: str, text: str) -> str:
        return await self._call("send", session_id=session_id, text=text)

    async def stop(self, session_id: str) -> bool:
        return await self._call("stop", session_id=session_id)

    async def interrupt(self, session_id: str, text: str) -> None:
        await self._call("interrupt", session_id=session_id, text=text)

    async def query(self, session_id: str) -> AgentSession:
        return await self._call("query", session_id=session_id)

    async def list_sessions(self) -> list[dict]:
        return await self._call("list")

    async def shutdown(self) -> None:
        if not self.started:
            return
        await self._call("shutdown")
        await self._task

    # ── Actor loop ──────────────────────────────────────────────

    async def _serve(self) -> None:
        while True:
            command = await self._queue.get()
            try:
                result = await self._handle(command)
            except Exception as exc:
                if not command.future.done():
                    command.future.set_exception(exc)
            else:
                if not command.future.done():
                    command.future.set_result(result)
            if command.kind == "shutdown":
                break

        while not self._queue.empty():
            pending = self._queue.get_nowait()
            if pending.future is not None and not pending.future.done():
                pending.future.set_exception(RuntimeError("Session registry is shut down"))

    def _get(self, session_id: str) -> AgentSession:
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFound(session_id)
        return session

    async def _handle(self, command: Command) -> Any:
        args = command.args
        if command.kind == "spawn":
            session_id = args.get("session_id")
            if session_id and session_id in self._sessions:
                return self._sessions[session_id].start(args["text"])
            session = AgentSession(self.runtime, session_id=session_id)
            self._sessions[session.id] = session
            logger.info("Spawned session %s", session.id)
            return session.start(args["text"])
        if command.kind == "send":
            return self._get(args["session_id"]).start(args["text"])
        if command.kind == "stop":
            return await self._get(args["session_id"]).stop()
        if command.kind == "interrupt":
            self._get(args["session_id"]).interrupt(args["text"])
            return None
        if command.kind == "query":
            return self._get(args["session_id"])
        if command.kind == "list":
            return [s.snapshot() for s in self._sessions.values()]
        if command.kind == "shutdown":
            sessions = list(self._sessions.values())
            for session in sessions:
                await session.stop()
            await asyncio.gather(*(s.wait() for s in sessions))
            logger.info("Session registry shut down (%d sessions)", len(sessions))
            return None
        raise ValueError(f"Unknown registry command: {command.kind}")
