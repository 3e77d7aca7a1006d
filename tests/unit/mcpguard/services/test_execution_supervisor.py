# -*- coding: utf-8 -*-
"""Location: ./tests/unit/mcpguard/services/test_execution_supervisor.py
Copyright 2026
SPDX-License-Identifier: Apache-2.0
"""

# Standard
import asyncio
import sys

# Third-Party
import pytest

# First-Party
from mcpguard.cache.schema_cache import compute_config_hash
from mcpguard.exceptions import DuplicateExecutionError, ToolServerError
from mcpguard.models import ErrorKind, ExecutionPhase
from mcpguard.runtimes.python import PythonRuntime
from mcpguard.schemas import ExecutionRequest, ServerSecurityConfig, ToolServerConfig
from mcpguard.services.execution_supervisor import ExecutionSupervisor, UNREGISTERED_CONFIG_HASH
from mcpguard.services.sandbox_runner import SandboxRunner
from mcpguard.services.tool_server import ToolServerPool

DEMO_CONFIG = ToolServerConfig(command="demo-server")


@pytest.fixture
def connections():
    return []


@pytest.fixture
def supervisor(store, tmp_path, tool_server_factory, connections):
    def factory(name, config):
        connection = tool_server_factory()
        connections.append(connection)
        return connection

    store.upsert_server("demo", DEMO_CONFIG)
    runner = SandboxRunner(runtimes={"python": PythonRuntime(python_path=sys.executable)}, scratch_dir=tmp_path / "scratch", timeout_grace_ms=200)
    return ExecutionSupervisor(store=store, runner=runner, pool=ToolServerPool(factory=factory))


def _request(source, request_id="run-1", server="demo"):
    return ExecutionRequest(id=request_id, script_source=source, target_server=server, language="python")


async def _wait_until(predicate, timeout=10.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.05)


@pytest.mark.asyncio
async def test_submit_runs_and_caches_schema(supervisor, connections):
    result = await supervisor.submit(_request("r = await mcp.echo({'v': 1})\nreturn r"))
    assert result.final_phase is ExecutionPhase.COMPLETED
    assert result.result == {"echo": {"v": 1}}
    assert supervisor.active_ids == []

    config_hash = compute_config_hash("demo", DEMO_CONFIG)
    assert supervisor.get_cached_schema("demo", config_hash).tool_names == frozenset({"echo"})

    await supervisor.submit(_request("return 1", request_id="run-2"))
    assert len(connections) == 1
    assert connections[0].list_count == 1


@pytest.mark.asyncio
async def test_policy_violation_has_no_phase(supervisor, connections):
    result = await supervisor.submit(_request("import os\nreturn os.getcwd()"))
    assert result.final_phase is ExecutionPhase.FAILED
    assert result.failed_phase is None
    assert result.error.kind is ErrorKind.POLICY_VIOLATION
    assert result.error.line == 1
    assert connections == []


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "source",
    [
        "from asyncio import open_connection\nr, w = await open_connection('127.0.0.1', 80)\nreturn 1",
        "from asyncio import subprocess as sp\np = await sp.create_subprocess_exec('id')\nreturn 1",
        "try:\n    raise ValueError()\nexcept ValueError as e:\n    t = e. __traceback__\n    return t.tb_frame.f_back.f_globals['os'].getcwd()",
    ],
)
async def test_python_escapes_rejected_before_start(supervisor, connections, source):
    result = await supervisor.submit(_request(source))
    assert result.final_phase is ExecutionPhase.FAILED
    assert result.failed_phase is None
    assert result.error.kind is ErrorKind.POLICY_VIOLATION
    assert result.tool_call_log == ()
    assert connections == []


@pytest.mark.asyncio
async def test_server_override_applies_to_run(supervisor, store):
    store.upsert_server_config(ServerSecurityConfig.model_validate({"mcpName": "demo", "resourceLimits": {"maxMCPCalls": 1}}))
    source = "a = await mcp.echo({})\nb = await mcp.echo({})\nreturn b"
    result = await supervisor.submit(_request(source))
    assert result.result["error"]["kind"] == "CallBudgetExceeded"


@pytest.mark.asyncio
async def test_duplicate_id_rejected_while_active(supervisor):
    first = asyncio.create_task(supervisor.submit(_request("while True:\n    pass")))
    await _wait_until(lambda: "run-1" in supervisor.active_ids)
    with pytest.raises(DuplicateExecutionError):
        await supervisor.submit(_request("return 1"))
    assert await supervisor.cancel("run-1")
    result = await first
    assert result.error.kind is ErrorKind.CANCELLED


@pytest.mark.asyncio
async def test_cancel_returns_cancelled_result(supervisor, tmp_path):
    task = asyncio.create_task(supervisor.submit(_request("while True:\n    pass")))
    await _wait_until(lambda: supervisor.phase_of("run-1") is ExecutionPhase.EXECUTING)
    assert await supervisor.cancel("run-1", reason="user abort")
    result = await task
    assert result.final_phase is ExecutionPhase.FAILED
    assert result.failed_phase is ExecutionPhase.EXECUTING
    assert result.error.kind is ErrorKind.CANCELLED
    assert "user abort" in result.error.message
    assert supervisor.active_ids == []
    assert list((tmp_path / "scratch").iterdir()) == []
    assert supervisor.metrics.summary()["failures_by_kind"] == {"Cancelled": 1}


@pytest.mark.asyncio
async def test_cancel_unknown_id(supervisor):
    assert await supervisor.cancel("missing") is False


@pytest.mark.asyncio
async def test_id_reusable_after_completion(supervisor):
    assert (await supervisor.submit(_request("return 1"))).succeeded
    assert (await supervisor.submit(_request("return 2"))).result == 2


@pytest.mark.asyncio
async def test_unregistered_server_exposes_no_tools(supervisor):
    result = await supervisor.submit(_request("r = await mcp.echo({})\nreturn r", server="ghost"))
    assert result.succeeded
    assert result.result["error"]["kind"] == "UnknownTool"
    assert supervisor.get_cached_schema("ghost", UNREGISTERED_CONFIG_HASH) is None


@pytest.mark.asyncio
async def test_schema_listing_failure_fails_generation(store, tmp_path, tool_server_factory):
    class Unreachable(tool_server_factory):
        async def list_tools(self):
            raise ToolServerError("connection refused")

    store.upsert_server("demo", DEMO_CONFIG)
    supervisor = ExecutionSupervisor(store=store, runner=SandboxRunner(runtimes={}, scratch_dir=tmp_path), pool=ToolServerPool(factory=lambda n, c: Unreachable()))
    result = await supervisor.submit(_request("return 1"))
    assert result.failed_phase is ExecutionPhase.GENERATING
    assert result.error.kind is ErrorKind.TOOL_ERROR


@pytest.mark.asyncio
async def test_invalidate_and_reload_schema(supervisor, connections):
    entry = await supervisor.load_schema("demo")
    assert supervisor.get_cached_schema("demo", entry.config_hash) is not None
    assert supervisor.invalidate_schema("demo") == 1
    assert supervisor.get_cached_schema("demo", entry.config_hash) is None
    await supervisor.load_schema("demo")
    assert connections[0].list_count == 2


@pytest.mark.asyncio
async def test_load_schema_requires_registration(supervisor):
    with pytest.raises(ToolServerError, match="not registered"):
        await supervisor.load_schema("ghost")


@pytest.mark.asyncio
async def test_register_server_replaces_schema_and_connection(supervisor, connections):
    old = await supervisor.load_schema("demo")
    new_config = ToolServerConfig(command="demo-server", args=["--v2"])
    await supervisor.register_server("demo", new_config)
    assert connections[0].closed
    assert supervisor.get_cached_schema("demo", old.config_hash) is None
    new = await supervisor.load_schema("demo")
    assert new.config_hash == compute_config_hash("demo", new_config)
    assert len(connections) == 2


@pytest.mark.asyncio
async def test_remove_server(supervisor, store, connections):
    await supervisor.load_schema("demo")
    store.upsert_server_config(ServerSecurityConfig(mcp_name="demo"))
    assert await supervisor.remove_server("demo") is True
    assert store.get_server("demo") is None
    assert store.get_server_config("demo") is None
    assert connections[0].closed
    assert await supervisor.remove_server("demo") is False


@pytest.mark.asyncio
async def test_shutdown_closes_connections(supervisor, connections):
    await supervisor.load_schema("demo")
    await supervisor.shutdown()
    assert connections[0].closed
