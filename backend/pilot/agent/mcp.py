"""MCP adapter: shared connections to Model Context Protocol servers.

One MCPConnectionCache exists per process. Connections are opened lazily the
first time a server is needed, and concurrent first callers share a single
connecting task so a server is never spawned twice.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from typing import Any, Awaitable, Callable, Protocol

import mcp.types as mcp_types
from mcp.client.session import ClientSession
from mcp.client.sse import sse_client
from mcp.client.stdio import StdioServerParameters, stdio_client

from pilot.agent.state import ToolDescriptor, ToolResult

logger = logging.getLogger(__name__)


@dataclass
class MCPServerConfig:
    name: str
    command: str | None = None
    args: list[str] = field(default_factory=list)
    env: dict[str, str] | None = None
    url: str | None = None
    headers: dict[str, str] = field(default_factory=dict)
    timeout: float = 120.0

    @property
    def transport(self) -> str:
        return "sse" if self.url else "stdio"

    @classmethod
    def from_dict(cls, name: str, data: dict) -> MCPServerConfig:
        if not data.get("command") and not data.get("url"):
            raise ValueError(f"MCP server '{name}' needs either 'command' or 'url'")
        return cls(
            name=name,
            command=data.get("command"),
            args=list(data.get("args") or []),
            env=data.get("env"),
            url=data.get("url"),
            headers=dict(data.get("headers") or {}),
            timeout=float(data.get("timeout", 120.0)),
        )


def load_server_configs(path: Path | None) -> list[MCPServerConfig]:
    """Read ``{"mcpServers": {name: {...}}}``. A missing file means no servers."""
    if path is None:
        return []
    path = Path(path)
    if not path.exists():
        logger.warning("MCP servers file %s does not exist", path)
        return []
    data = json.loads(path.read_text(encoding="utf-8"))
    servers = data.get("mcpServers") or {}
    return [MCPServerConfig.from_dict(name, cfg) for name, cfg in servers.items()]


class Connection(Protocol):
    connected: bool

    async def list_tools(self) -> list[ToolDescriptor]:
        ...

    async def call_tool(self, name: str, arguments: dict) -> tuple[list[str], bool]:
        ...

    async def close(self) -> None:
        ...


Connector = Callable[[MCPServerConfig], Awaitable[Connection]]


# ── Live connection ─────────────────────────────────────────────


class MCPConnection:
    """A ClientSession kept open in a dedicated task.

    The transport and session context managers are entered and exited in the
    same task, which the underlying anyio task groups require.
    """

    def __init__(self, config: MCPServerConfig):
        self.config = config
        self.session: ClientSession | None = None
        self._ready: asyncio.Future | None = None
        self._closed = asyncio.Event()
        self._task: asyncio.Task | None = None

    async def start(self) -> MCPConnection:
        loop = asyncio.get_running_loop()
        self._ready = loop.create_future()
        self._task = asyncio.create_task(self._run(), name=f"mcp-{self.config.name}")
        await self._ready
        return self

    def _open_transport(self):
        if self.config.transport == "sse":
            return sse_client(self.config.url, headers=self.config.headers or None)
        params = StdioServerParameters(
            command=self.config.command,
            args=self.config.args,
            env=self.config.env,
        )
        return stdio_client(params)

    async def _run(self) -> None:
        try:
            async with self._open_transport() as streams:
                read_stream, write_stream = streams[0], streams[1]
                async with ClientSession(
                    read_stream,
                    write_stream,
                    read_timeout_seconds=timedelta(seconds=self.config.timeout),
                ) as session:
                    await session.initialize()
                    self.session = session
                    logger.info("MCP server '%s' connected", self.config.name)
                    self._ready.set_result(True)
                    await self._closed.wait()
        except Exception as exc:
            if not self._ready.done():
                self._ready.set_exception(exc)
            else:
                logger.exception("MCP server '%s' connection dropped", self.config.name)
        finally:
            self.session = None

    @property
    def connected(self) -> bool:
        return self.session is not None

    def _require_session(self) -> ClientSession:
        if self.session is None:
            raise RuntimeError(f"MCP server '{self.config.name}' is not connected")
        return self.session

    async def list_tools(self) -> list[ToolDescriptor]:
        response = await self._require_session().list_tools()
        return [
            ToolDescriptor(
                name=tool.name,
                description=tool.description or "",
                parameters=tool.inputSchema or {"type": "object", "properties": {}},
                server=self.config.name,
            )
            for tool in response.tools
        ]

    async def call_tool(self, name: str, arguments: dict) -> tuple[list[str], bool]:
        result = await self._require_session().call_tool(name, arguments)
        return convert_content(result.content), bool(result.isError)

    async def close(self) -> None:
        self._closed.set()
        if self._task is not None:
            try:
                await self._task
            except asyncio.CancelledError:
                pass


def convert_content(blocks: list[Any]) -> list[str]:
    parts = []
    for block in blocks:
        if isinstance(block, mcp_types.TextContent):
            parts.append(block.text)
        elif isinstance(block, mcp_types.ImageContent):
            parts.append(f"[image: {block.mimeType}]")
        elif isinstance(block, mcp_types.EmbeddedResource):
            text = getattr(block.resource, "text", None)
            parts.append(text if text is not None else f"[resource: {block.resource.uri}]")
        else:
            parts.append(str(block))
    return parts


async def open_connection(config: MCPServerConfig) -> Connection:
    return await MCPConnection(config).start()


# ── Cache ───────────────────────────────────────────────────────


class MCPConnectionCache:
    def __init__(self, configs: list[MCPServerConfig], connector: Connector = open_connection):
        self.configs = {c.name: c for c in configs}
        self._connector = connector
        self._connections: dict[str, Connection] = {}
        self._pending: dict[str, asyncio.Task] = {}

    @property
    def server_names(self) -> list[str]:
        return list(self.configs)

    async def get(self, name: str) -> Connection:
        connection = self._connections.get(name)
        if connection is not None:
            if connection.connected:
                return connection
            # transport went away after connecting; reopen below
            logger.warning("MCP server '%s' disconnected, reconnecting", name)
            self._connections.pop(name, None)
        config = self.configs.get(name)
        if config is None:
            raise KeyError(f"Unknown MCP server: {name}")

        task = self._pending.get(name)
        if task is None:
            task = asyncio.create_task(self._connect(config))
            self._pending[name] = task
        # shield: one caller being cancelled must not abort the shared connect
        return await asyncio.shield(task)

    async def _connect(self, config: MCPServerConfig) -> Connection:
        try:
            connection = await self._connector(config)
            self._connections[config.name] = connection
            return connection
        finally:
            self._pending.pop(config.name, None)

    async def close_all(self) -> None:
        for task in list(self._pending.values()):
            task.cancel()
        connections, self._connections = self._connections, {}
        for name, connection in connections.items():
            try:
                await connection.close()
            except Exception:
                logger.exception("Failed to close MCP server '%s'", name)


# ── Hub ─────────────────────────────────────────────────────────


class MCPHub:
    """Aggregated tool catalog over every configured MCP server."""

    def __init__(self, cache: MCPConnectionCache):
        self.cache = cache

    async def list_tools(self) -> list[ToolDescriptor]:
        tools: list[ToolDescriptor] = []
        for name in self.cache.server_names:
            try:
                connection = await self.cache.get(name)
                tools.extend(await connection.list_tools())
            except Exception as exc:
                logger.warning("Skipping MCP server '%s': %s", name, exc)
        return tools

    async def call_tool(self, server: str, name: str, arguments: dict) -> ToolResult:
        connection = await self.cache.get(server)
        content, is_error = await connection.call_tool(name, arguments)
        return ToolResult(tool_call_id="", name=name, content=content, is_error=is_error)

    async def close(self) -> None:
        await self.cache.close_all()
