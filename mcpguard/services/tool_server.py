# -*- coding: utf-8 -*-
"""Location: ./mcpguard/services/tool_server.py
Copyright 2026
SPDX-License-Identifier: Apache-2.0

Tool server connections.

``ToolServerConnection`` is the black-box client the orchestrator uses to list
and invoke tools. ``StdioToolServerConnection`` speaks MCP over stdio through
the ``mcp`` SDK. The SDK's stdio transport must be entered and exited from the
same task, so each connection runs a small owner task holding the session
open until ``close()`` is called. Reconnection is the caller's concern: a
broken connection raises ``ToolServerError`` and the pool drops it.
"""

# Standard
import abc
import asyncio
import contextlib
from typing import Any, Callable, Dict, List, Optional

# Third-Party
from mcp import ClientSession
from mcp.client.stdio import stdio_client, StdioServerParameters
import orjson

# First-Party
from mcpguard.config import settings
from mcpguard.exceptions import ToolServerError
from mcpguard.schemas import ToolDescriptor, ToolServerConfig
from mcpguard.services.logging_service import LoggingService

logger = LoggingService().get_logger(__name__)


def tool_result_to_python_obj(result: Any) -> Any:
    """Convert a ``CallToolResult`` into a JSON-compatible value.

    Structured content wins; otherwise text content is joined and parsed as
    JSON when possible.

    Args:
        result: SDK result model or an equivalent mapping.

    Returns:
        JSON-compatible value.

    Examples:
        >>> tool_result_to_python_obj({"structuredContent": {"temp": 21}})
        {'temp': 21}
        >>> tool_result_to_python_obj({"content": [{"type": "text", "text": "[1, 2]"}]})
        [1, 2]
        >>> tool_result_to_python_obj({"content": [{"type": "text", "text": "sunny"}]})
        {'text': 'sunny'}
    """
    payload: Dict[str, Any]
    if hasattr(result, "model_dump"):
        payload = result.model_dump(by_alias=True, mode="json")
    elif isinstance(result, dict):
        payload = result
    else:
        return str(result)

    if payload.get("structuredContent") is not None:
        return payload["structuredContent"]

    texts: List[str] = []
    for item in payload.get("content") or []:
        text = item.get("text") if isinstance(item, dict) else getattr(item, "text", None)
        if text:
            texts.append(str(text))
    merged = "\n".join(texts).strip()
    if not merged:
        return {}
    try:
        return orjson.loads(merged)
    except orjson.JSONDecodeError:
        return {"text": merged}


def _error_text(result: Any) -> str:
    value = tool_result_to_python_obj(result)
    if isinstance(value, dict) and set(value) == {"text"}:
        return str(value["text"])
    return orjson.dumps(value).decode("utf-8")


class ToolServerConnection(abc.ABC):
    """Request/response client of one tool server."""

    @abc.abstractmethod
    async def list_tools(self) -> List[ToolDescriptor]:
        """List callable tools.

        Returns:
            Tool descriptors as reported by the server.
        """

    @abc.abstractmethod
    async def call_tool(self, name: str, arguments: Dict[str, Any]) -> Any:
        """Invoke a tool.

        Args:
            name: Tool name.
            arguments: Tool arguments.

        Returns:
            JSON-compatible result.

        Raises:
            ToolServerError: When the server reports an error.
        """

    async def close(self) -> None:
        """Release the connection."""
        return None


class StdioToolServerConnection(ToolServerConnection):
    """MCP stdio client kept open by a dedicated owner task."""

    def __init__(self, name: str, config: ToolServerConfig) -> None:
        """Initialize without starting the server process.

        Args:
            name: Tool server name (for logs).
            config: Launch configuration.
        """
        self.name = name
        self.config = config
        self._session: Optional[ClientSession] = None
        self._task: Optional[asyncio.Task[None]] = None
        self._ready = asyncio.Event()
        self._stop = asyncio.Event()
        self._error: Optional[BaseException] = None
        self._start_lock = asyncio.Lock()

    async def _run(self) -> None:
        params = StdioServerParameters(
            command=self.config.command,
            args=list(self.config.args),
            env=dict(self.config.env) or None,
            cwd=self.config.cwd,
        )
        try:
            async with stdio_client(params) as (read_stream, write_stream):
                async with ClientSession(read_stream, write_stream) as session:
                    await session.initialize()
                    self._session = session
                    self._ready.set()
                    await self._stop.wait()
        except Exception as exc:  # surfaced to callers through start()/_require_session()
            self._error = exc
            logger.warning(f"Tool server {self.name} connection ended: {exc}")
        finally:
            self._session = None
            self._ready.set()

    async def start(self) -> None:
        """Launch the server process and initialize the MCP session.

        Raises:
            ToolServerError: If the server cannot be started.
        """
        async with self._start_lock:
            if self._task is not None and self._task.done():
                # previous session ended; relaunch
                self._task = None
                self._ready.clear()
                self._stop.clear()
                self._error = None
            if self._task is None:
                self._task = asyncio.create_task(self._run(), name=f"mcpguard-tool-server-{self.name}")
            await self._ready.wait()
        self._require_session()

    def _require_session(self) -> ClientSession:
        if self._session is None:
            detail = f": {self._error}" if self._error else ""
            raise ToolServerError(f"Tool server {self.name} is not connected{detail}", details={"server": self.name})
        return self._session

    @property
    def connected(self) -> bool:
        """Whether the session is open."""
        return self._session is not None

    async def list_tools(self) -> List[ToolDescriptor]:
        await self.start()
        try:
            result = await self._require_session().list_tools()
        except ToolServerError:
            raise
        except Exception as exc:
            raise ToolServerError(f"Tool server {self.name} failed to list tools: {exc}", details={"server": self.name}) from exc
        return [ToolDescriptor(name=t.name, description=t.description, input_schema=t.inputSchema or {"type": "object"}) for t in result.tools]

    async def call_tool(self, name: str, arguments: Dict[str, Any]) -> Any:
        await self.start()
        session = self._require_session()
        try:
            result = await asyncio.wait_for(session.call_tool(name=name, arguments=arguments), timeout=settings.tool_call_timeout_ms / 1000)
        except TimeoutError as exc:
            raise ToolServerError(f"Tool {name} on {self.name} timed out after {settings.tool_call_timeout_ms}ms") from exc
        if getattr(result, "isError", False):
            raise ToolServerError(_error_text(result), details={"server": self.name, "tool": name})
        return tool_result_to_python_obj(result)

    async def close(self) -> None:
        self._stop.set()
        if self._task is not None:
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None


ConnectionFactory = Callable[[str, ToolServerConfig], ToolServerConnection]


class ToolServerPool:
    """One live connection per tool server name.

    A connection is opened lazily and replaced when the server's launch
    configuration changes.
    """

    def __init__(self, factory: ConnectionFactory = StdioToolServerConnection) -> None:
        """Initialize the pool.

        Args:
            factory: Builds a connection from a name and launch configuration.
        """
        self._factory = factory
        self._connections: Dict[str, ToolServerConnection] = {}
        self._configs: Dict[str, ToolServerConfig] = {}
        self._lock = asyncio.Lock()

    async def get(self, name: str, config: ToolServerConfig) -> ToolServerConnection:
        """Return the connection of a server, opening it when needed.

        Args:
            name: Tool server name.
            config: Current launch configuration.

        Returns:
            ToolServerConnection: Live (or lazily started) connection.
        """
        async with self._lock:
            current = self._connections.get(name)
            if current is not None and self._configs.get(name) == config:
                return current
            if current is not None:
                await current.close()
            connection = self._factory(name, config)
            self._connections[name] = connection
            self._configs[name] = config
            return connection

    async def close(self, name: str) -> None:
        """Close and forget the connection of one server."""
        async with self._lock:
            connection = self._connections.pop(name, None)
            self._configs.pop(name, None)
        if connection is not None:
            await connection.close()
            logger.debug(f"Closed tool server connection {name}")

    async def close_all(self) -> None:
        """Close every connection."""
        async with self._lock:
            connections = list(self._connections.values())
            self._connections.clear()
            self._configs.clear()
        for connection in connections:
            await connection.close()
