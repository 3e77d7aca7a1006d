# -*- coding: utf-8 -*-
"""Location: ./mcpguard/runtimes/python.py
Copyright 2026
SPDX-License-Identifier: Apache-2.0

Restricted CPython runtime.

The script is wrapped into ``async def __user_main__()`` in its own file and
executed by a generated harness in an isolated interpreter (``-I -S``):

- builtins are reduced to a safe subset, ``__import__`` only admits the
  module allowlist shared with the script validator and hands out a
  namespace of the module's exported names (no submodules, no private
  names), so ``asyncio`` carries scheduling helpers only
- an audit hook, installed before the script starts, rejects socket use,
  process creation, ``ctypes``, frame reads and code compilation outside
  the standard library code generators (``dataclasses``, ``namedtuple``)
- the address space is capped at ``limits.memory_mb`` plus interpreter headroom
- ``mcp.<tool>(args)`` and ``call_tool(name, args)`` reach the tool bridge
  over secret-tagged JSON lines on stdio
- ``read_file``/``write_file`` exist only when the policy grants paths

With ``python_network_namespace`` enabled the interpreter is also started
in an empty network namespace through ``unshare``.

The build step compiles the wrapped script in a separate interpreter and
prints a JSON diagnostic on ``SyntaxError``.
"""

# Standard
import json
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

# Third-Party
import orjson

# First-Party
from mcpguard.config import settings
from mcpguard.runtimes.base import Artifact, BuildDiagnostic, indent_script, RuntimeCapabilities, SandboxRuntime
from mcpguard.schemas import IsolationPolicy
from mcpguard.services.script_validator import ALLOWED_PYTHON_MODULES, module_exports

# Audit events refused once the script runs (prefix match).
BLOCKED_AUDIT_EVENTS = (
    "ctypes.",
    "os.exec",
    "os.fork",
    "os.forkpty",
    "os.kill",
    "os.killpg",
    "os.posix_spawn",
    "os.spawn",
    "os.system",
    "pty.",
    "socket.",
    "subprocess.",
)

# Attribute reads CPython audits that lead to frames.
AUDITED_FRAME_ATTRIBUTES = ("ag_frame", "cr_frame", "f_back", "f_builtins", "f_globals", "f_locals", "gi_frame", "tb_frame")

SAFE_BUILTINS = (
    "abs", "all", "any", "ascii", "bin", "bool", "bytearray", "bytes", "callable", "chr", "classmethod",
    "dict", "divmod", "enumerate", "filter", "float", "format", "frozenset", "hash", "hex", "int",
    "isinstance", "issubclass", "iter", "len", "list", "map", "max", "min", "next", "object", "oct",
    "ord", "pow", "print", "property", "range", "repr", "reversed", "round", "set", "slice", "sorted",
    "staticmethod", "str", "sum", "super", "tuple", "type", "zip", "aiter", "anext", "__build_class__",
    "ArithmeticError", "AssertionError", "AttributeError", "Exception", "ImportError", "IndexError",
    "KeyError", "LookupError", "NameError", "NotImplementedError", "OverflowError", "PermissionError",
    "RuntimeError", "StopAsyncIteration", "StopIteration", "TimeoutError", "TypeError", "ValueError",
    "ZeroDivisionError", "NotImplemented", "Ellipsis",
)  # fmt: skip

MAX_MESSAGE_BYTES = 16 * 1024 * 1024

_BUILD_SNIPPET = """
import json, sys
path = sys.argv[1]
try:
    with open(path, encoding="utf-8") as handle:
        compile(handle.read(), path, "exec", dont_inherit=True)
except SyntaxError as exc:
    print(json.dumps({"message": "%s: %s" % (type(exc).__name__, exc.msg), "line": exc.lineno, "column": exc.offset}))
    sys.exit(1)
except ValueError as exc:
    print(json.dumps({"message": "ValueError: %s" % exc, "line": None, "column": None}))
    sys.exit(1)
"""

_HARNESS = r'''# Generated by mcpguard. Do not edit.
import asyncio
import builtins
import io
import json
import os
import sys
import traceback
import types

CONFIG = json.loads(__CONFIG_LITERAL__)
SECRET = CONFIG["secret"]
SCRIPT_PATH = CONFIG["script_path"]
SCRIPT_NAME = CONFIG["script_name"]
LINE_OFFSET = CONFIG["line_offset"]
ALLOWED_MODULES = frozenset(CONFIG["allowed_modules"])
MODULE_EXPORTS = {name: frozenset(names) for name, names in CONFIG["module_exports"].items()}
BLOCKED_EVENTS = tuple(CONFIG["blocked_events"])
FRAME_ATTRIBUTES = frozenset(CONFIG["frame_attributes"])
CODE_GENERATORS = (os.sep + "dataclasses.py", os.path.join("collections", "__init__.py"))
FRAME_READERS = (os.sep + "traceback.py",)
READ_ROOTS = [os.path.realpath(p) for p in CONFIG["read_paths"]]
WRITE_ROOTS = [os.path.realpath(p) for p in CONFIG["write_paths"]]

_protocol_out = sys.stdout
_real_stderr = sys.stderr
_pending = {}
_counter = [0]
_facades = {}
_guarded = [False]


def _apply_memory_limit():
    limit = CONFIG["memory_limit_bytes"]
    if not limit:
        return
    try:
        import resource
    except ImportError:
        return
    try:
        _, hard = resource.getrlimit(resource.RLIMIT_AS)
        if hard != resource.RLIM_INFINITY:
            limit = min(limit, hard)
        resource.setrlimit(resource.RLIMIT_AS, (limit, limit))
    except (ValueError, OSError) as exc:
        _real_stderr.write("mcpguard: memory limit not applied: %s\n" % exc)


def _send(message):
    message["secret"] = SECRET
    _protocol_out.write(json.dumps(message, default=str) + "\n")
    _protocol_out.flush()


def _bridge_error(kind, message):
    return {"isError": True, "error": {"kind": kind, "message": message}}


def _resolve(message):
    future = _pending.pop(str(message.get("id")), None)
    if future is None or future.done():
        return
    if message.get("ok"):
        future.set_result(message.get("result"))
    else:
        error = message.get("error") or {"kind": "ToolError", "message": "tool call failed"}
        future.set_result({"isError": True, "error": error})


async def _pump(reader):
    while True:
        raw = await reader.readline()
        if not raw:
            break
        try:
            message = json.loads(raw)
        except ValueError:
            continue
        if isinstance(message, dict) and message.get("secret") == SECRET and message.get("type") == "toolcall_response":
            _resolve(message)
    for future in _pending.values():
        if not future.done():
            future.set_result(_bridge_error("ToolError", "tool bridge closed"))
    _pending.clear()


async def call_tool(name, args=None):
    _counter[0] += 1
    request_id = str(_counter[0])
    future = asyncio.get_running_loop().create_future()
    _pending[request_id] = future
    _send({"type": "toolcall", "id": request_id, "tool": str(name), "args": {} if args is None else args})
    return await future


class _ToolProxy:
    def __getattr__(self, name):
        if name.startswith("__"):
            raise AttributeError(name)

        async def _invoke(args=None, **kwargs):
            return await call_tool(name, kwargs if args is None else args)

        return _invoke


def _inside(path, roots):
    real = os.path.realpath(str(path))
    return any(real == root or real.startswith(root.rstrip(os.sep) + os.sep) for root in roots)


def read_file(path):
    if not _inside(path, READ_ROOTS + WRITE_ROOTS):
        raise PermissionError("read denied: %s" % path)
    with open(os.path.realpath(str(path)), encoding="utf-8") as handle:
        return handle.read()


def write_file(path, content):
    if not _inside(path, WRITE_ROOTS):
        raise PermissionError("write denied: %s" % path)
    with open(os.path.realpath(str(path)), "w", encoding="utf-8") as handle:
        handle.write(str(content))


def _build_facades():
    for name in sorted(ALLOWED_MODULES):
        module = builtins.__import__(name)
        exports = {}
        for attr in MODULE_EXPORTS.get(name, ()):
            if hasattr(module, attr):
                value = getattr(module, attr)
                if not isinstance(value, types.ModuleType):
                    exports[attr] = value
        _facades[name] = types.SimpleNamespace(**exports)


def _safe_import(name, globals=None, locals=None, fromlist=(), level=0):
    facade = None if level else _facades.get(name)
    if facade is None:
        raise ImportError("import of '%s' is not allowed in the sandbox" % name)
    return facade


def _caller_file():
    # 0 is this helper, 1 the hook, 2 the code that raised the event
    try:
        return sys._getframe(2).f_code.co_filename
    except ValueError:
        return ""


def _audit(event, args):
    if not _guarded[0]:
        return
    if event.startswith(BLOCKED_EVENTS):
        raise PermissionError("%s is not permitted in the sandbox" % event)
    if event == "object.__getattr__" and len(args) > 1 and args[1] in FRAME_ATTRIBUTES:
        if not _caller_file().endswith(FRAME_READERS):
            raise PermissionError("frame access is not permitted in the sandbox")
    elif event in ("compile", "exec"):
        filename = _caller_file()
        if not (filename.startswith("<frozen importlib") or filename.endswith(CODE_GENERATORS)):
            raise PermissionError("dynamic code evaluation is not permitted in the sandbox")


def _safe_builtins():
    table = {name: getattr(builtins, name) for name in CONFIG["builtins"] if hasattr(builtins, name)}
    table["__import__"] = _safe_import
    return table


def _describe(exc):
    frames = [f for f in traceback.extract_tb(exc.__traceback__) if f.filename == SCRIPT_NAME]
    line = frames[-1].lineno if frames else None
    column = None
    if isinstance(exc, SyntaxError) and exc.filename == SCRIPT_NAME:
        line, column = exc.lineno, exc.offset
    stack = ["Traceback (most recent call last):\n"]
    for frame in frames:
        stack.append("  %s, line %d\n    %s\n" % (SCRIPT_NAME, frame.lineno - LINE_OFFSET, (frame.line or "").strip()))
    stack.extend(traceback.format_exception_only(type(exc), exc))
    return {
        "name": type(exc).__name__,
        "message": "%s: %s" % (type(exc).__name__, exc),
        "line": line,
        "column": column,
        "stack": "".join(stack),
    }


async def _main():
    loop = asyncio.get_running_loop()
    reader = asyncio.StreamReader(limit=CONFIG["max_message_bytes"])
    transport, _ = await loop.connect_read_pipe(lambda: asyncio.StreamReaderProtocol(reader), sys.stdin)
    pump = asyncio.ensure_future(_pump(reader))
    namespace = {
        "__builtins__": _safe_builtins(),
        "__name__": "__sandbox__",
        "mcp": _ToolProxy(),
        "call_tool": call_tool,
        "input_args": CONFIG["input_args"],
    }
    if CONFIG["filesystem"]:
        namespace["read_file"] = read_file
        namespace["write_file"] = write_file

    out, err = io.StringIO(), io.StringIO()
    payload = {"type": "result", "ok": True, "value": None}
    sys.stdout, sys.stderr = out, err
    try:
        _build_facades()
        with open(SCRIPT_PATH, encoding="utf-8") as handle:
            code = compile(handle.read(), SCRIPT_NAME, "exec", dont_inherit=True)
        exec(code, namespace)
        user_main = namespace["__user_main__"]
        sys.addaudithook(_audit)
        _guarded[0] = True
        payload["value"] = await user_main()
    except BaseException as exc:
        payload = {"type": "result", "ok": False, "error": _describe(exc)}
    finally:
        sys.stdout, sys.stderr = _protocol_out, _real_stderr
        pump.cancel()
        transport.close()
    payload["stdout"] = out.getvalue()
    payload["stderr"] = err.getvalue()
    _send(payload)
    return 0 if payload["ok"] else 1


if __name__ == "__main__":
    _apply_memory_limit()
    sys.exit(asyncio.run(_main()))
'''


class PythonRuntime(SandboxRuntime):
    """Restricted CPython subprocess runtime."""

    name = "python"

    def __init__(
        self,
        python_path: Optional[str] = None,
        memory_overhead_mb: Optional[int] = None,
        network_namespace: Optional[bool] = None,
        unshare_path: Optional[str] = None,
    ) -> None:
        """Initialize the runtime.

        Args:
            python_path: Interpreter used for build and run; defaults to ``settings.python_path``.
            memory_overhead_mb: Interpreter headroom added to ``limits.memory_mb``.
            network_namespace: Start the interpreter in an empty network namespace; defaults to ``settings.python_network_namespace``.
            unshare_path: ``unshare`` executable; defaults to ``settings.unshare_path``.
        """
        self._python_path = python_path or settings.python_path
        self._memory_overhead_mb = settings.python_memory_overhead_mb if memory_overhead_mb is None else memory_overhead_mb
        self._network_namespace = settings.python_network_namespace if network_namespace is None else network_namespace
        self._unshare_path = unshare_path or settings.unshare_path

    def get_capabilities(self) -> RuntimeCapabilities:
        notes = ["Sockets and process creation are refused by an audit hook; network grants have no effect."]
        if self._network_namespace:
            notes.append("Runs in an empty network namespace.")
        return RuntimeCapabilities(
            name=self.name,
            languages=frozenset({"python"}),
            enforces_network_allowlist=False,
            enforces_filesystem_paths=True,
            enforces_memory_limit=True,
            notes=notes,
        )

    def is_available(self) -> bool:
        if self._network_namespace and not (self._unshare_path and Path(self._unshare_path).exists()):
            return False
        return bool(self._python_path) and Path(self._python_path).exists()

    def generate(
        self,
        workspace: Path,
        script: str,
        language: str,
        input_args: Mapping[str, Any],
        policy: IsolationPolicy,
        secret: str,
    ) -> Artifact:
        lines, count = indent_script(script, "    ")
        script_path = workspace / "script.py"
        script_path.write_text("async def __user_main__():\n" + "\n".join(lines) + "\n    pass\n", encoding="utf-8")

        config: Dict[str, Any] = {
            "secret": secret,
            "script_path": str(script_path),
            "script_name": script_path.name,
            "line_offset": 1,
            "allowed_modules": sorted(ALLOWED_PYTHON_MODULES),
            "module_exports": {name: sorted(module_exports(name)) for name in sorted(ALLOWED_PYTHON_MODULES)},
            "blocked_events": list(BLOCKED_AUDIT_EVENTS),
            "frame_attributes": list(AUDITED_FRAME_ATTRIBUTES),
            "builtins": list(SAFE_BUILTINS),
            "input_args": orjson.loads(orjson.dumps(dict(input_args), default=str)),
            "filesystem": policy.file_system.enabled,
            "read_paths": [str(Path(p).expanduser()) for p in policy.file_system.read_paths],
            "write_paths": [str(Path(p).expanduser()) for p in policy.file_system.write_paths],
            "memory_limit_bytes": (policy.limits.memory_mb + self._memory_overhead_mb) * 1024 * 1024,
            "max_message_bytes": MAX_MESSAGE_BYTES,
        }
        entrypoint = workspace / "harness.py"
        entrypoint.write_text(_HARNESS.replace("__CONFIG_LITERAL__", repr(json.dumps(config))), encoding="utf-8")
        return Artifact(
            language=language,
            workspace=workspace,
            entrypoint=entrypoint,
            build_target=script_path,
            script_name=script_path.name,
            secret=secret,
            line_offset=1,
            column_offset=4,
            script_line_count=count,
        )

    def build_command(self, artifact: Artifact) -> Optional[List[str]]:
        return [str(self._python_path), "-I", "-S", "-B", "-c", _BUILD_SNIPPET, str(artifact.build_target)]

    def parse_build_diagnostics(self, artifact: Artifact, stdout: str, stderr: str) -> List[BuildDiagnostic]:
        diagnostics: List[BuildDiagnostic] = []
        for raw in stdout.splitlines():
            try:
                data = orjson.loads(raw)
            except orjson.JSONDecodeError:
                continue
            if not isinstance(data, dict) or "message" not in data:
                continue
            file, line, column = self.map_location(artifact, data.get("line"), data.get("column"))
            diagnostics.append(BuildDiagnostic(message=str(data["message"]), file=file, line=line, column=column))
        if not diagnostics:
            tail = (stderr.strip().splitlines() or ["build failed"])[-1]
            diagnostics.append(BuildDiagnostic(message=tail, file=artifact.script_name))
        return diagnostics

    def run_command(self, artifact: Artifact, policy: IsolationPolicy) -> List[str]:
        command = [str(self._python_path), "-I", "-S", "-B", str(artifact.entrypoint)]
        if self._network_namespace and self._unshare_path:
            # Python scripts never get network access, whatever the policy grants
            return [str(self._unshare_path), "--net", "--map-root-user", "--", *command]
        return command
