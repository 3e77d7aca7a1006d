# -*- coding: utf-8 -*-
"""Location: ./tests/unit/mcpguard/services/test_sandbox_runner.py
Copyright 2026
SPDX-License-Identifier: Apache-2.0

End-to-end runs through the restricted CPython runtime.
"""

# Standard
import asyncio
import sys

# Third-Party
import pytest
import pytest_asyncio

# First-Party
from mcpguard.models import ErrorKind, ExecutionPhase
from mcpguard.runtimes.python import PythonRuntime
from mcpguard.schemas import ExecutionRequest
from mcpguard.services.sandbox_runner import PhaseTracker, RunOutcome, SandboxRunner, scratch_workspace
from mcpguard.services.tool_bridge import ToolBridge


@pytest.fixture
def scratch(tmp_path):
    return tmp_path / "scratch"


@pytest.fixture
def runner(scratch):
    return SandboxRunner(runtimes={"python": PythonRuntime(python_path=sys.executable)}, scratch_dir=scratch, timeout_grace_ms=200)


@pytest.fixture
def execute(runner, make_policy, echo_schema, fake_server):
    async def _execute(source, input_args=None, policy=None):
        policy = policy or make_policy()
        request = ExecutionRequest(id="run-1", script_source=source, target_server="demo", input_args=input_args or {}, language="python")
        bridge = ToolBridge(request.id, policy, echo_schema, fake_server)
        return await runner.run(request, policy, bridge)

    return _execute


class TestPhaseTracker:
    def test_forward_only(self):
        tracker = PhaseTracker("r")
        tracker.advance(ExecutionPhase.BUILDING)
        with pytest.raises(ValueError, match="Building -> Generating"):
            tracker.advance(ExecutionPhase.GENERATING)
        with pytest.raises(ValueError):
            tracker.advance(ExecutionPhase.COMPLETED)

    def test_fail_records_phase_once(self):
        tracker = PhaseTracker("r")
        tracker.fail()
        tracker.fail()
        assert tracker.current is ExecutionPhase.FAILED
        assert tracker.failed_phase is ExecutionPhase.GENERATING


def test_run_outcome_defaults():
    outcome = RunOutcome.from_message({"ok": False})
    assert (outcome.ok, outcome.error, outcome.stdout) == (False, {}, "")


@pytest.mark.asyncio
async def test_scratch_workspace_removed_on_error(scratch):
    with pytest.raises(RuntimeError):
        async with scratch_workspace("a/b c", scratch) as workspace:
            assert workspace.name.startswith("exec-a_b_c-")
            (workspace / "file.txt").write_text("x")
            raise RuntimeError("boom")
    assert list(scratch.iterdir()) == []


@pytest.mark.asyncio
async def test_completes_with_result(execute, scratch):
    result = await execute("r = 1 + 1\nreturn r")
    assert result.final_phase is ExecutionPhase.COMPLETED
    assert result.failed_phase is None
    assert result.result == 2
    assert result.error is None
    assert list(scratch.iterdir()) == []


@pytest.mark.asyncio
async def test_stdout_and_input_args(execute):
    result = await execute("print('hello')\nreturn input_args['x'] * 2", input_args={"x": 21})
    assert result.succeeded
    assert result.result == 42
    assert result.stdout == "hello\n"


@pytest.mark.asyncio
async def test_build_error_classified_by_phase(execute):
    result = await execute("a = 1\nb = = 2\nreturn b")
    assert result.final_phase is ExecutionPhase.FAILED
    assert result.failed_phase is ExecutionPhase.BUILDING
    assert result.error.kind is ErrorKind.BUILD_ERROR
    assert (result.error.file, result.error.line) == ("script.py", 2)


@pytest.mark.asyncio
async def test_runtime_error_classified_by_phase(execute):
    result = await execute("x = 1\nraise ValueError('boom')")
    assert result.failed_phase is ExecutionPhase.EXECUTING
    assert result.error.kind is ErrorKind.RUNTIME_ERROR
    assert result.error.message == "ValueError: boom"
    assert result.error.line == 2
    assert "line 2" in result.error.stack


@pytest.mark.asyncio
async def test_blocked_import_fails_at_runtime(execute):
    result = await execute("import socket\nreturn 1")
    assert result.error.kind is ErrorKind.RUNTIME_ERROR
    assert "not allowed" in result.error.message


@pytest.mark.asyncio
async def test_timeout_kills_sandbox_and_cleans_up(execute, make_policy, scratch):
    result = await execute("while True:\n    pass", policy=make_policy(cpu_ms=1000))
    assert result.failed_phase is ExecutionPhase.EXECUTING
    assert result.error.kind is ErrorKind.TIMEOUT_ERROR
    assert result.error.details["cpuMs"] == 1000
    assert result.wall_time_ms >= 1000
    assert list(scratch.iterdir()) == []


@pytest.mark.asyncio
async def test_tool_calls_relayed(execute, fake_server):
    result = await execute("r = await mcp.echo({'msg': 'hi'})\nreturn r")
    assert result.succeeded
    assert result.result == {"echo": {"msg": "hi"}}
    assert fake_server.calls == [("echo", {"msg": "hi"})]
    assert [r.tool_name for r in result.tool_call_log] == ["echo"]


@pytest.mark.asyncio
async def test_unknown_tool_resolves_in_script(execute, fake_server):
    result = await execute("r = await call_tool('drop_database', {})\nreturn r")
    assert result.succeeded
    assert result.result["isError"] is True
    assert result.result["error"]["kind"] == "UnknownTool"
    assert fake_server.calls == []


@pytest.mark.asyncio
async def test_call_budget_enforced(execute, make_policy, fake_server):
    source = "out = []\nfor i in range(3):\n    out.append(await mcp.echo({'i': i}))\nreturn [o.get('isError', False) for o in out]"
    result = await execute(source, policy=make_policy(max_tool_calls=2))
    assert result.succeeded
    assert result.result == [False, False, True]
    assert len(fake_server.calls) == 2
    assert result.tool_call_log[-1].error.kind is ErrorKind.CALL_BUDGET_EXCEEDED


@pytest.mark.asyncio
async def test_missing_runtime_is_generation_error(make_policy, echo_schema, scratch):
    runner = SandboxRunner(runtimes={"python": PythonRuntime(python_path=str(scratch / "nope"))}, scratch_dir=scratch)
    request = ExecutionRequest(id="r", script_source="return 1", target_server="demo", language="python")
    result = await runner.run(request, make_policy(), ToolBridge("r", make_policy(), echo_schema, None))
    assert result.failed_phase is ExecutionPhase.GENERATING
    assert result.error.kind is ErrorKind.GENERATION_ERROR


@pytest.mark.asyncio
async def test_unknown_language_is_generation_error(runner, make_policy, echo_schema):
    request = ExecutionRequest(id="r", script_source="return 1", target_server="demo", language="typescript")
    result = await runner.run(request, make_policy(), ToolBridge("r", make_policy(), echo_schema, None))
    assert result.error.kind is ErrorKind.GENERATION_ERROR
    assert "typescript" in result.error.message


@pytest.mark.asyncio
async def test_cancellation_propagates_after_cleanup(runner, make_policy, echo_schema, scratch):
    policy = make_policy(cpu_ms=30000)
    request = ExecutionRequest(id="r", script_source="while True:\n    pass", target_server="demo", language="python")
    tracker = PhaseTracker(request.id)
    task = asyncio.create_task(runner.run(request, policy, ToolBridge("r", policy, echo_schema, None), tracker=tracker))
    await asyncio.sleep(1.0)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task
    assert not tracker.current.is_terminal
    assert list(scratch.iterdir()) == []


@pytest_asyncio.fixture
async def listener():
    received = []

    async def handle(reader, writer):
        received.append(await reader.read(1024))
        writer.close()

    server = await asyncio.start_server(handle, "127.0.0.1", 0)
    server.received = received
    server.port = server.sockets[0].getsockname()[1]
    yield server
    server.close()
    await server.wait_closed()


@pytest.mark.asyncio
async def test_socket_connect_refused_under_deny_all_policy(execute, make_policy, listener):
    policy = make_policy()
    assert policy.network.allowed_hosts is None
    source = (
        "from asyncio import open_connection\n"
        f"reader, writer = await open_connection('127.0.0.1', {listener.port})\n"
        "writer.write(b'exfil')\n"
        "await writer.drain()\n"
        "return 'sent'"
    )
    result = await execute(source, policy=policy)
    await asyncio.sleep(0.2)
    assert result.final_phase is ExecutionPhase.FAILED
    assert result.error.kind is ErrorKind.RUNTIME_ERROR
    assert result.result is None
    assert listener.received == []


@pytest.mark.asyncio
async def test_asyncio_namespace_has_no_network_helpers(execute, listener):
    source = f"import asyncio\nreader, writer = await asyncio.open_connection('127.0.0.1', {listener.port})\nreturn 'sent'"
    result = await execute(source)
    await asyncio.sleep(0.2)
    assert result.error.kind is ErrorKind.RUNTIME_ERROR
    assert "AttributeError" in result.error.message
    assert listener.received == []


@pytest.mark.asyncio
async def test_subprocess_spawn_refused(execute, tmp_path):
    marker = tmp_path / "spawned"
    command = f"open({str(marker)!r}, 'w').close()"
    source = (
        "from asyncio import subprocess as sp\n"
        f"proc = await sp.create_subprocess_exec({sys.executable!r}, '-c', {command!r})\n"
        "await proc.wait()\n"
        "return 'spawned'"
    )
    result = await execute(source)
    assert result.final_phase is ExecutionPhase.FAILED
    assert result.error.kind is ErrorKind.RUNTIME_ERROR
    assert not marker.exists()


@pytest.mark.asyncio
async def test_traceback_frame_walk_refused(execute, scratch):
    source = (
        "try:\n"
        "    raise ValueError('x')\n"
        "except ValueError as e:\n"
        "    t = e. __traceback__\n"
        "    g = t.tb_frame.f_back.f_globals\n"
        "    return g['os'].getcwd()"
    )
    result = await execute(source)
    assert result.final_phase is ExecutionPhase.FAILED
    assert result.error.kind is ErrorKind.RUNTIME_ERROR
    assert "PermissionError" in result.error.message
    assert result.error.line == 5
    assert result.result is None
    assert list(scratch.iterdir()) == []


@pytest.mark.asyncio
async def test_module_namespaces_hide_submodules(execute):
    result = await execute("import json\nreturn json.decoder")
    assert result.error.kind is ErrorKind.RUNTIME_ERROR
    assert "AttributeError" in result.error.message

    result = await execute("import collections.abc\nreturn 1")
    assert "not allowed" in result.error.message


@pytest.mark.asyncio
async def test_allowlisted_modules_work_inside_guard(execute, fake_server):
    source = (
        "import asyncio\n"
        "import collections\n"
        "import dataclasses\n"
        "@dataclasses.dataclass\n"
        "class Point:\n"
        "    x: int\n"
        "    y: int = 2\n"
        "Pair = collections.namedtuple('Pair', ['a', 'b'])\n"
        "echoed = await asyncio.gather(mcp.echo({'i': 1}), mcp.echo({'i': 2}))\n"
        "return [dataclasses.asdict(Point(1)), list(Pair(3, 4)), len(echoed)]"
    )
    result = await execute(source)
    assert result.succeeded, result.error
    assert result.result == [{"x": 1, "y": 2}, [3, 4], 2]
    assert len(fake_server.calls) == 2
