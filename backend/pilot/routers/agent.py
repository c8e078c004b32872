from __future__ import annotations

import asyncio
import json
import logging

from fastapi import APIRouter, HTTPException, Request, WebSocket, WebSocketDisconnect
from pydantic import BaseModel

from pilot.agent.errors import SessionBusy, SessionNotFound
from pilot.agent.registry import SessionRegistry
from pilot.agent.runtime import Notification

logger = logging.getLogger(__name__)

router = APIRouter(tags=["agents"])


class StartRequest(BaseModel):
    text: str
    agent_id: str | None = None


class MessageRequest(BaseModel):
    text: str


def _registry(request: Request) -> SessionRegistry:
    return request.app.state.registry


async def _guarded(coro):
    try:
        return await coro
    except SessionNotFound as exc:
        raise HTTPException(404, str(exc))
    except SessionBusy as exc:
        raise HTTPException(409, str(exc))


@router.post("/agents")
async def start_agent(body: StartRequest, request: Request):
    agent_id = await _guarded(_registry(request).spawn(body.text, body.agent_id))
    return {"agent_id": agent_id}


@router.get("/agents")
async def list_agents(request: Request):
    return await _registry(request).list_sessions()


@router.post("/agents/{agent_id}/messages")
async def send_message(agent_id: str, body: MessageRequest, request: Request):
    await _guarded(_registry(request).send(agent_id, body.text))
    return {"agent_id": agent_id}


@router.post("/agents/{agent_id}/stop")
async def stop_agent(agent_id: str, request: Request):
    stopped = await _guarded(_registry(request).stop(agent_id))
    return {"agent_id": agent_id, "stopped": stopped}


@router.post("/agents/{agent_id}/interrupt")
async def interrupt_agent(agent_id: str, body: MessageRequest, request: Request):
    await _guarded(_registry(request).interrupt(agent_id, body.text))
    return {"agent_id": agent_id}


@router.get("/agents/{agent_id}/events")
async def get_events(agent_id: str, request: Request):
    """Live events of an active session, or the persisted copy of an old one."""
    try:
        session = await _registry(request).query(agent_id)
    except SessionNotFound:
        store = request.app.state.runtime.store
        events = await store.load(agent_id) if store is not None else None
        if events is None:
            raise HTTPException(404, f"Session not found: {agent_id}")
        return {"agent_id": agent_id, "status": None, "events": events}
    return {**session.snapshot(), "events": session.stream.to_list()}


async def _send(ws: WebSocket, msg_type: str, data: dict | None = None):
    await ws.send_text(json.dumps({"type": msg_type, **(data or {})}))


@router.websocket("/ws/agents/{agent_id}")
async def agent_ws(ws: WebSocket, agent_id: str):
    await ws.accept()
    registry: SessionRegistry = ws.app.state.registry
    try:
        session = await registry.query(agent_id)
    except SessionNotFound:
        await _send(ws, "error", {"message": "Session not found"})
        await ws.close()
        return

    outbox: asyncio.Queue[Notification] = asyncio.Queue()

    async def forward(notification: Notification) -> None:
        outbox.put_nowait(notification)

    remove = session.add_observer(forward)

    async def pump():
        while True:
            notification = await outbox.get()
            await _send(ws, notification.kind, notification.to_dict())

    pump_task = asyncio.create_task(pump())
    await _send(ws, "snapshot", {**session.snapshot(), "events": session.stream.to_list()})
    try:
        while True:
            raw = await ws.receive_text()
            try:
                payload = json.loads(raw)
            except json.JSONDecodeError:
                payload = None
            if not isinstance(payload, dict):
                await _send(ws, "error", {"message": "Frames must be JSON objects"})
                continue
            kind = payload.get("type")
            text = payload.get("text", "")
            try:
                if kind == "stop":
                    await registry.stop(agent_id)
                elif kind == "interrupt" and text:
                    await registry.interrupt(agent_id, text)
                elif kind == "message" and text:
                    await registry.send(agent_id, text)
            except SessionBusy as exc:
                await _send(ws, "error", {"message": str(exc)})
    except WebSocketDisconnect:
        logger.info("WebSocket for %s disconnected", agent_id)
    finally:
        remove()
        pump_task.cancel()
