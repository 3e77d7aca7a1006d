# -*- coding: utf-8 -*-
"""Location: ./tests/unit/mcpguard/runtimes/test_python_runtime.py
Copyright 2026
SPDX-License-Identifier: Apache-2.0
"""

# Standard
import ast
import json
import subprocess
import sys

# Third-Party
import pytest

# First-Party
from mcpguard.runtimes.python import PythonRuntime
from mcpguard.schemas import FileSystemPolicy


@pytest.fixture
def runtime():
    return PythonRuntime(python_path=sys.executable, memory_overhead_mb=64, network_namespace=False)


def test_generate_wraps_script(runtime, tmp_path, make_policy):
    artifact = runtime.generate(tmp_path, "x = 1\nreturn x", "python", {"a": 1}, make_policy(memory_mb=32), "s3cret")
    script = (tmp_path / "script.py").read_text()
    assert script == "async def __user_main__():\n    x = 1\n    return x\n    pass\n"
    assert artifact.entrypoint == tmp_path / "harness.py"
    assert artifact.build_target == tmp_path / "script.py"
    assert (artifact.line_offset, artifact.column_offset, artifact.script_line_count) == (1, 4, 2)
    harness = artifact.entrypoint.read_text()
    assert "__CONFIG_LITERAL__" not in harness
    assert "s3cret" in harness
    assert str((32 + 64) * 1024 * 1024) in harness


def test_commands_use_isolated_interpreter(runtime, tmp_path, make_policy):
    artifact = runtime.generate(tmp_path, "return 1", "python", {}, make_policy(), "s")
    assert runtime.run_command(artifact, make_policy())[:4] == [sys.executable, "-I", "-S", "-B"]
    build = runtime.build_command(artifact)
    assert build[-1] == str(tmp_path / "script.py")


def test_build_snippet_reports_syntax_error_location(runtime, tmp_path, make_policy):
    artifact = runtime.generate(tmp_path, "a = 1\nb = = 2\nreturn b", "python", {}, make_policy(), "s")
    proc = subprocess.run(runtime.build_command(artifact), capture_output=True, text=True, check=False)
    assert proc.returncode == 1
    diagnostics = runtime.parse_build_diagnostics(artifact, proc.stdout, proc.stderr)
    assert diagnostics[0].file == "script.py"
    assert diagnostics[0].line == 2
    assert diagnostics[0].message.startswith("SyntaxError")


def test_build_snippet_accepts_valid_script(runtime, tmp_path, make_policy):
    artifact = runtime.generate(tmp_path, "return [i for i in range(3)]", "python", {}, make_policy(), "s")
    proc = subprocess.run(runtime.build_command(artifact), capture_output=True, text=True, check=False)
    assert proc.returncode == 0, proc.stdout + proc.stderr


def test_diagnostics_fall_back_to_stderr(runtime, tmp_path, make_policy):
    artifact = runtime.generate(tmp_path, "return 1", "python", {}, make_policy(), "s")
    diagnostics = runtime.parse_build_diagnostics(artifact, "not json\n", "Traceback\nMemoryError")
    assert [(d.message, d.file) for d in diagnostics] == [("MemoryError", "script.py")]


def test_location_outside_script_keeps_artifact_name(runtime, tmp_path, make_policy):
    artifact = runtime.generate(tmp_path, "return 1", "python", {}, make_policy(), "s")
    assert runtime.map_location(artifact, 2, 9) == ("script.py", 1, 5)
    assert runtime.map_location(artifact, 40, 1) == ("script.py", 40, 1)
    assert runtime.map_location(artifact, 1, 1) == ("script.py", 1, 1)


def test_filesystem_paths_written_to_config(runtime, tmp_path, make_policy):
    policy = make_policy(file_system=FileSystemPolicy(enabled=True, read_paths=("/data",), write_paths=("/out",)))
    artifact = runtime.generate(tmp_path, "return 1", "python", {}, policy, "s")
    harness = artifact.entrypoint.read_text()
    assert "/data" in harness and "/out" in harness


def test_capabilities_and_availability(tmp_path):
    runtime = PythonRuntime(python_path=str(tmp_path / "missing"))
    assert not runtime.is_available()
    capabilities = runtime.get_capabilities()
    assert capabilities.languages == frozenset({"python"})
    assert not capabilities.enforces_network_allowlist
    assert any("audit hook" in note for note in capabilities.notes)


def test_network_namespace_wraps_interpreter(tmp_path, make_policy):
    unshare = tmp_path / "unshare"
    unshare.write_text("")
    runtime = PythonRuntime(python_path=sys.executable, network_namespace=True, unshare_path=str(unshare))
    artifact = runtime.generate(tmp_path, "return 1", "python", {}, make_policy(), "s")
    command = runtime.run_command(artifact, make_policy())
    assert command[:4] == [str(unshare), "--net", "--map-root-user", "--"]
    assert command[4:8] == [sys.executable, "-I", "-S", "-B"]
    assert runtime.is_available()
    assert "Runs in an empty network namespace." in runtime.get_capabilities().notes


def test_network_namespace_requires_unshare(tmp_path):
    runtime = PythonRuntime(python_path=sys.executable, network_namespace=True, unshare_path=str(tmp_path / "missing"))
    assert not runtime.is_available()


def test_harness_config_limits_module_surface(runtime, tmp_path, make_policy):
    artifact = runtime.generate(tmp_path, "return 1", "python", {}, make_policy(), "s")
    harness = artifact.entrypoint.read_text()
    literal = harness.split("CONFIG = json.loads(", 1)[1].split("\n", 1)[0].rstrip(")")
    config = json.loads(ast.literal_eval(literal))
    assert "open_connection" not in config["module_exports"]["asyncio"]
    assert "decoder" not in config["module_exports"]["json"]
    assert "socket." in config["blocked_events"] and "subprocess." in config["blocked_events"]
    assert "tb_frame" in config["frame_attributes"]
