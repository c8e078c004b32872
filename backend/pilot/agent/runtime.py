from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

from pilot.agent.llm import ModelClient, OpenAIModelClient
from pilot.agent.mcp import MCPConnectionCache, MCPHub, load_server_configs
from pilot.agent.tool_registry import ToolRegistry
from pilot.config import Settings
from pilot.db import EventStore
from pilot.operators import create_operator
from pilot.operators.base import Operator
from pilot.operators.tools import OperatorToolset

logger = logging.getLogger(__name__)


# ── Notifications to the UI / observers ─────────────────────────

NOTIFICATION_KINDS = ("status", "update", "complete", "error", "terminate")


@dataclass
class Notification:
    kind: str
    session_id: str
    events: list[dict] = field(default_factory=list)
    plan: list[dict] | None = None
    current_step: int | None = None
    message: str | None = None

    def __post_init__(self) -> None:
        if self.kind not in NOTIFICATION_KINDS:
            raise ValueError(f"Unknown notification kind: {self.kind}")

    def to_dict(self) -> dict:
        data: dict[str, Any] = {
            "kind": self.kind,
            "session_id": self.session_id,
            "events": self.events,
        }
        if self.plan is not None:
            data["plan"] = self.plan
        if self.current_step is not None:
            data["current_step"] = self.current_step
        if self.message is not None:
            data["message"] = self.message
        return data


Observer = Callable[[Notification], Awaitable[None]]


# ── Runtime ─────────────────────────────────────────────────────


@dataclass
class Runtime:
    """Everything a session needs from the outside world."""

    settings: Settings
    model: ModelClient
    tools: ToolRegistry = field(default_factory=ToolRegistry)
    hub: MCPHub | None = None
    operator: Operator | None = None
    store: EventStore | None = None
    observers: list[Observer] = field(default_factory=list)

    def add_observer(self, observer: Observer) -> Callable[[], None]:
        self.observers.append(observer)

        def remove() -> None:
            if observer in self.observers:
                self.observers.remove(observer)

        return remove

    async def close(self) -> None:
        if self.hub is not None:
            await self.hub.close()
        if self.operator is not None:
            await self.operator.close()


def build_runtime(config: Settings) -> Runtime:
    tools = ToolRegistry()
    operator = create_operator(config)
    if operator is not None:
        OperatorToolset(operator, config.BOX_COORDINATE_SPACE).register(tools)
        logger.info("Operator '%s' enabled", operator.name)

    configs = load_server_configs(config.MCP_SERVERS_FILE)
    hub = MCPHub(MCPConnectionCache(configs)) if configs else None

    return Runtime(
        settings=config,
        model=OpenAIModelClient(config),
        tools=tools,
        hub=hub,
        operator=operator,
        store=EventStore(config.DB_PATH),
    )
