# -*- coding: utf-8 -*-
"""Location: ./tests/unit/mcpguard/test_server.py
Copyright 2026
SPDX-License-Identifier: Apache-2.0
"""

# Standard
import sys

# Third-Party
import pytest

# First-Party
from mcpguard.models import ExecutionPhase
from mcpguard.runtimes.python import PythonRuntime
from mcpguard.schemas import ExecutionResult, ToolServerConfig
from mcpguard.server import build_app, GuardServer, result_payload, TOOLS
from mcpguard.services.execution_supervisor import ExecutionSupervisor
from mcpguard.services.sandbox_runner import SandboxRunner
from mcpguard.services.tool_server import ToolServerPool


@pytest.fixture
def guard(store, tmp_path, tool_server_factory):
    store.upsert_server("demo", ToolServerConfig(command="demo-server"))
    runner = SandboxRunner(runtimes={"python": PythonRuntime(python_path=sys.executable)}, scratch_dir=tmp_path / "scratch")
    supervisor = ExecutionSupervisor(store=store, runner=runner, pool=ToolServerPool(factory=lambda n, c: tool_server_factory()))
    return GuardServer(supervisor)


def test_tool_names():
    assert [t.name for t in TOOLS] == ["execute_code", "list_guarded_servers", "get_tool_api", "invalidate_schema"]


def test_build_app(guard):
    assert build_app(guard).name == "mcpguard"


def test_result_payload_failure_fields():
    result = ExecutionResult(request_id="a", final_phase=ExecutionPhase.COMPLETED, result=[1])
    payload = result_payload(result)
    assert payload["status"] == "success"
    assert "error" not in payload


@pytest.mark.asyncio
async def test_execute_code(guard):
    response = await guard.call("execute_code", {"code": "r = await mcp.echo({'a': 1})\nreturn r", "server": "demo", "language": "python"})
    assert response.isError is False
    assert response.structuredContent["result"] == {"echo": {"a": 1}}
    assert response.structuredContent["toolCalls"][0]["tool"] == "echo"
    assert '"status": "success"' in response.content[0].text


@pytest.mark.asyncio
async def test_execute_code_failure_is_error(guard):
    response = await guard.call("execute_code", {"code": "import os", "server": "demo", "language": "python"})
    assert response.isError is True
    assert response.structuredContent["error"]["kind"] == "PolicyViolation"
    assert response.structuredContent["failedPhase"] is None


@pytest.mark.asyncio
async def test_invalid_arguments(guard):
    response = await guard.call("execute_code", {"code": "return 1", "server": "bad name"})
    assert response.isError is True
    assert "Invalid arguments" in response.content[0].text


@pytest.mark.asyncio
async def test_unknown_tool(guard):
    response = await guard.call("nope", {})
    assert response.isError is True


@pytest.mark.asyncio
async def test_list_guarded_servers(guard):
    response = await guard.call("list_guarded_servers", {})
    servers = response.structuredContent["servers"]
    assert [s["name"] for s in servers] == ["demo"]
    assert servers[0]["policy"]["limits"]["max_tool_calls"] == 100


@pytest.mark.asyncio
async def test_get_tool_api(guard):
    typescript = await guard.call("get_tool_api", {"server": "demo"})
    assert "echo(input: EchoInput): Promise<any>;" in typescript.content[0].text
    python = await guard.call("get_tool_api", {"server": "demo", "language": "python"})
    assert "async def echo(args: dict)" in python.content[0].text
    missing = await guard.call("get_tool_api", {"server": "ghost"})
    assert missing.isError is True
    assert "ToolError" in missing.content[0].text


@pytest.mark.asyncio
async def test_invalidate_schema(guard):
    await guard.call("get_tool_api", {"server": "demo"})
    response = await guard.call("invalidate_schema", {"server": "demo"})
    assert response.structuredContent == {"server": "demo", "removed": 1}
