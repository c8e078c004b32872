"""Command line entry point.

    pilot run "open the settings page"   run one instruction and print events
    pilot serve --port 8000              start the HTTP/WebSocket API
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys

from pilot.agent.events import Event, EventType
from pilot.agent.runtime import build_runtime
from pilot.agent.session import AgentSession
from pilot.config import settings

logger = logging.getLogger(__name__)


def format_event(event: Event) -> str | None:
    payload = event.payload
    if event.type == EventType.CHAT_TEXT:
        return f"agent> {payload.get('text', '')}"
    if event.type == EventType.PLAN_UPDATE:
        steps = "\n".join(f"  [{p['id']}] {p['title']}" for p in payload.get("plan", []))
        return f"plan (step {payload.get('step')}):\n{steps}"
    if event.type == EventType.NEW_PLAN_STEP:
        return f"step -> {payload.get('step')}"
    if event.type == EventType.AGENT_STATUS:
        return f"status: {payload.get('status', '')}"
    if event.type == EventType.TOOL_USED and payload.get("status") != "loading":
        return f"tool {payload.get('name')}({payload.get('args')}) -> {payload.get('status')}"
    if event.type in (EventType.COMPLETE, EventType.ERROR, EventType.TERMINATE):
        return payload.get("message", event.type.value)
    return None


async def run_instruction(text: str, as_json: bool = False) -> int:
    runtime = build_runtime(settings)
    if runtime.store is not None:
        await runtime.store.init()
    session = AgentSession(runtime)

    def echo(event: Event) -> None:
        if as_json:
            print(json.dumps(event.to_dict(), ensure_ascii=False), flush=True)
            return
        line = format_event(event)
        if line:
            print(line, flush=True)

    session.stream.subscribe(echo)
    session.start(text)
    try:
        await session.wait()
    except asyncio.CancelledError:
        await session.stop()
        raise
    finally:
        await runtime.close()
    return 0 if session.status.value == "completed" else 1


def serve(host: str, port: int) -> None:
    import uvicorn

    uvicorn.run("pilot.main:app", host=host, port=port, log_level=settings.LOG_LEVEL.lower())


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(prog="pilot", description="Agent orchestration engine")
    parser.add_argument("--log-level", default=settings.LOG_LEVEL)
    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="run one instruction to completion")
    run.add_argument("instruction")
    run.add_argument("--json", action="store_true", help="print raw events as JSON lines")

    srv = sub.add_parser("serve", help="start the HTTP/WebSocket API")
    srv.add_argument("--host", default="127.0.0.1")
    srv.add_argument("--port", type=int, default=8000)

    args = parser.parse_args(argv)
    logging.basicConfig(
        level=args.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )

    if args.command == "serve":
        serve(args.host, args.port)
        return 0
    try:
        return asyncio.run(run_instruction(args.instruction, as_json=args.json))
    except KeyboardInterrupt:
        logger.info("Interrupted")
        return 130
