# -*- coding: utf-8 -*-
"""Location: ./mcpguard/server.py
Copyright 2026
SPDX-License-Identifier: Apache-2.0

MCP stdio server exposing the orchestrator to agents.

Tools:
    execute_code: run a script against a registered tool server
    list_guarded_servers: registered servers with their resolved policies
    get_tool_api: TypeScript (or Python) API visible to scripts for a server
    invalidate_schema: drop cached schemas of a server

Exposed as the ``mcpguard-server`` console script.
"""

# Standard
import asyncio
from typing import Any, Dict, List, Optional
import uuid

# Third-Party
from mcp.server import Server
from mcp.server.stdio import stdio_server
from mcp.types import CallToolResult, TextContent, Tool
import orjson
from pydantic import ValidationError

# First-Party
from mcpguard.config import settings
from mcpguard.exceptions import MCPGuardError
from mcpguard.schemas import ExecutionRequest, ExecutionResult
from mcpguard.services.execution_supervisor import ExecutionSupervisor
from mcpguard.services.logging_service import LoggingService
from mcpguard.utils.typescript_api import generate_python_api, generate_typescript_api

logger = LoggingService().get_logger(__name__)

SERVER_NAME = "mcpguard"

TOOLS: List[Tool] = [
    Tool(
        name="execute_code",
        description=(
            "Execute a short script inside an isolated sandbox. The script calls tools of the target server "
            "through mcp.<tool>(args); denied calls resolve to {isError: true, error: {kind, message}}. "
            "Use get_tool_api first to see the available tools."
        ),
        inputSchema={
            "type": "object",
            "properties": {
                "code": {"type": "string", "description": "Script body; 'return' a value to produce the result."},
                "server": {"type": "string", "description": "Target tool server name."},
                "language": {"type": "string", "enum": ["javascript", "typescript", "python"]},
                "input": {"type": "object", "description": "Arguments exposed to the script as inputArgs / input_args."},
                "id": {"type": "string", "description": "Execution id used for deduplication and cancellation."},
            },
            "required": ["code", "server"],
        },
    ),
    Tool(
        name="list_guarded_servers",
        description="List registered tool servers and their resolved isolation policies.",
        inputSchema={"type": "object", "properties": {}},
    ),
    Tool(
        name="get_tool_api",
        description="Render the API that scripts can call for a server.",
        inputSchema={
            "type": "object",
            "properties": {
                "server": {"type": "string"},
                "language": {"type": "string", "enum": ["typescript", "python"], "default": "typescript"},
            },
            "required": ["server"],
        },
    ),
    Tool(
        name="invalidate_schema",
        description="Drop every cached tool schema of a server so the next execution re-lists its tools.",
        inputSchema={"type": "object", "properties": {"server": {"type": "string"}}, "required": ["server"]},
    ),
]


def _text(data: Any) -> str:
    return data if isinstance(data, str) else orjson.dumps(data, option=orjson.OPT_INDENT_2, default=str).decode()


def _response(payload: Any, is_error: bool = False, structured: Optional[Dict[str, Any]] = None) -> CallToolResult:
    return CallToolResult(content=[TextContent(type="text", text=_text(payload))], structuredContent=structured, isError=is_error)


def result_payload(result: ExecutionResult) -> Dict[str, Any]:
    """Structured view of an execution result for agents.

    Args:
        result: Execution result.

    Returns:
        JSON-compatible summary.
    """
    payload: Dict[str, Any] = {
        "status": "success" if result.succeeded else "error",
        "phase": result.final_phase.value,
        "result": result.result,
        "stdout": result.stdout,
        "stderr": result.stderr,
        "toolCalls": [
            {
                "sequence": r.sequence_number,
                "tool": r.tool_name,
                "outcome": r.outcome,
                "error": r.error.model_dump(mode="json") if r.error else None,
            }
            for r in result.tool_call_log
        ],
        "wallTimeMs": result.wall_time_ms,
    }
    if result.error is not None:
        payload["failedPhase"] = result.failed_phase.value if result.failed_phase else None
        payload["error"] = result.error.model_dump(mode="json", exclude_none=True, exclude={"details"})
    return payload


class GuardServer:
    """Tool handlers bound to one supervisor."""

    def __init__(self, supervisor: Optional[ExecutionSupervisor] = None) -> None:
        self.supervisor = supervisor or ExecutionSupervisor()

    async def call(self, name: str, arguments: Dict[str, Any]) -> CallToolResult:
        """Dispatch one tool call.

        Args:
            name: Tool name.
            arguments: Tool arguments.

        Returns:
            CallToolResult: Text plus structured content.
        """
        handlers = {
            "execute_code": self.execute_code,
            "list_guarded_servers": self.list_guarded_servers,
            "get_tool_api": self.get_tool_api,
            "invalidate_schema": self.invalidate_schema,
        }
        handler = handlers.get(name)
        if handler is None:
            return _response(f"Unknown tool: {name}", is_error=True)
        try:
            return await handler(arguments or {})
        except ValidationError as exc:
            return _response(f"Invalid arguments: {exc}", is_error=True)
        except MCPGuardError as exc:
            return _response(f"{exc.kind.value}: {exc.message}", is_error=True)

    async def execute_code(self, arguments: Dict[str, Any]) -> CallToolResult:
        request = ExecutionRequest(
            id=str(arguments.get("id") or uuid.uuid4().hex),
            script_source=str(arguments.get("code") or ""),
            target_server=str(arguments.get("server") or ""),
            input_args=arguments.get("input") or {},
            language=arguments.get("language") or settings.default_language,
        )
        result = await self.supervisor.submit(request)
        payload = result_payload(result)
        return _response(payload, is_error=not result.succeeded, structured=payload)

    async def list_guarded_servers(self, arguments: Dict[str, Any]) -> CallToolResult:
        servers = []
        for name in sorted(self.supervisor.store.list_servers()):
            policy = self.supervisor.resolver.resolve_for_server(name)
            servers.append({"name": name, "policy": policy.model_dump(mode="json")})
        payload = {"servers": servers}
        return _response(payload, structured=payload)

    async def get_tool_api(self, arguments: Dict[str, Any]) -> CallToolResult:
        entry = await self.supervisor.load_schema(str(arguments.get("server") or ""))
        if arguments.get("language") == "python":
            return _response(generate_python_api(entry.tools))
        return _response(generate_typescript_api(entry.tools))

    async def invalidate_schema(self, arguments: Dict[str, Any]) -> CallToolResult:
        server = str(arguments.get("server") or "")
        removed = self.supervisor.invalidate_schema(server)
        payload = {"server": server, "removed": removed}
        return _response(payload, structured=payload)


def build_app(guard: GuardServer) -> Server:
    """Create the MCP server with tool handlers registered.

    Args:
        guard: Handler object.

    Returns:
        Server: Low-level MCP server.
    """
    app = Server(SERVER_NAME)

    @app.list_tools()
    async def list_tools() -> List[Tool]:
        return TOOLS

    @app.call_tool()
    async def call_tool(name: str, arguments: Dict[str, Any]) -> CallToolResult:
        return await guard.call(name, arguments)

    return app


async def serve() -> None:
    """Serve over stdio until the client disconnects."""
    await LoggingService().initialize()
    guard = GuardServer()
    app = build_app(guard)
    logger.info(f"Starting {SERVER_NAME} MCP server")
    try:
        async with stdio_server() as (read_stream, write_stream):
            await app.run(read_stream, write_stream, app.create_initialization_options())
    finally:
        await guard.supervisor.shutdown()
        await LoggingService().shutdown()


def main() -> None:
    asyncio.run(serve())


if __name__ == "__main__":  # pragma: no cover - executed only when run directly
    main()
