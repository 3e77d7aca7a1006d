# -*- coding: utf-8 -*-
"""Location: ./mcpguard/runtimes/deno.py
Copyright 2026
SPDX-License-Identifier: Apache-2.0

Deno runtime for JavaScript and TypeScript scripts.

The script body is wrapped in ``async function __user_main__()`` below a
harness that provides ``mcp.<tool>(args)``, ``callTool(name, args)``,
``inputArgs`` and console capture. Tool calls travel as secret-tagged JSON
lines over stdio. Isolation comes from Deno's permission model: nothing is
granted unless the policy lists it.

Examples:
    >>> from mcpguard.runtimes.deno import parse_deno_diagnostics
    >>> out = "TS2322 [ERROR]: Type 'number' is not assignable to type 'string'.\\n    at file:///tmp/ws/main.ts:12:9"
    >>> [(d.message.split(']: ')[1][:4], d.file, d.line, d.column) for d in parse_deno_diagnostics(out)]
    [('Type', 'main.ts', 12, 9)]
"""

# Standard
from pathlib import Path
import re
import shutil
from typing import Any, Dict, List, Mapping, Optional, Tuple
from urllib.parse import unquote, urlparse

# Third-Party
import orjson

# First-Party
from mcpguard.config import settings
from mcpguard.runtimes.base import Artifact, BuildDiagnostic, indent_script, RuntimeCapabilities, SandboxRuntime
from mcpguard.schemas import IsolationPolicy
from mcpguard.utils.hosts import deno_net_permissions

_LOCATION_RE = re.compile(r"at (file://\S+?):(\d+):(\d+)")
_MESSAGE_RE = re.compile(r"^(?:(TS\d+ \[ERROR\]: .+)|error: (.+))$")
_STACK_RE = re.compile(r"main\.(?:js|ts):(\d+):(\d+)")

_PRELUDE = """// Generated by mcpguard. Do not edit.
const __CONFIG__ANY__ = __CONFIG_JSON__;
const __encoder = new TextEncoder();
const __pending = new Map();
let __counter = 0;
let __writeChain = Promise.resolve();

async function __writeAll(data) {
  let offset = 0;
  while (offset < data.length) offset += await Deno.stdout.write(data.subarray(offset));
}

function __send(msg) {
  msg.secret = __CONFIG.secret;
  const data = __encoder.encode(JSON.stringify(msg) + "\\n");
  __writeChain = __writeChain.then(() => __writeAll(data));
  return __writeChain;
}

async function* __readLines() {
  const decoder = new TextDecoder();
  let buf = "";
  for await (const chunk of Deno.stdin.readable) {
    buf += decoder.decode(chunk, { stream: true });
    let idx = buf.indexOf("\\n");
    while (idx >= 0) {
      yield buf.slice(0, idx);
      buf = buf.slice(idx + 1);
      idx = buf.indexOf("\\n");
    }
  }
  if (buf.length) yield buf;
}

(async () => {
  for await (const line of __readLines()) {
    let msg;
    try { msg = JSON.parse(line); } catch { continue; }
    if (!msg || msg.secret !== __CONFIG.secret || msg.type !== "toolcall_response") continue;
    const resolve = __pending.get(String(msg.id));
    if (!resolve) continue;
    __pending.delete(String(msg.id));
    resolve(msg.ok ? msg.result : { isError: true, error: msg.error ?? { kind: "ToolError", message: "tool call failed" } });
  }
  for (const resolve of __pending.values()) resolve({ isError: true, error: { kind: "ToolError", message: "tool bridge closed" } });
  __pending.clear();
})();

async function callTool(name, args) {
  const id = String(++__counter);
  const pending = new Promise((resolve) => __pending.set(id, resolve));
  await __send({ type: "toolcall", id, tool: String(name), args: args ?? {} });
  return await pending;
}

const mcp__ANY__ = new Proxy({}, {
  get(_target, prop) {
    if (typeof prop !== "string" || prop === "then") return undefined;
    return (args) => callTool(prop, args);
  },
});
const inputArgs__ANY__ = __CONFIG.inputArgs;

async function readFile(path) {
  if (!__CONFIG.filesystem) throw new Error("filesystem access is not granted");
  return await Deno.readTextFile(path);
}

async function writeFile(path, content) {
  if (!__CONFIG.filesystem) throw new Error("filesystem access is not granted");
  await Deno.writeTextFile(path, String(content));
}

function __format(args) {
  return args.map((a) => {
    if (typeof a === "string") return a;
    try { return JSON.stringify(a) ?? String(a); } catch { return String(a); }
  }).join(" ");
}
const __out = [];
const __err = [];
console.log = (...args) => { __out.push(__format(args) + "\\n"); };
console.info = console.log;
console.debug = console.log;
console.error = (...args) => { __err.push(__format(args) + "\\n"); };
console.warn = console.error;

"""

_EPILOGUE = """
(async () => {
  const payload__ANY__ = { type: "result", ok: true, value: null };
  try {
    const value = await __user_main__();
    JSON.stringify(value ?? null);
    payload.value = value === undefined ? null : value;
  } catch (e) {
    payload.ok = false;
    payload.error = {
      name: (e && e.name) || "Error",
      message: e instanceof Error ? `${e.name}: ${e.message}` : String(e),
      stack: (e && e.stack) || null,
      line: null,
      column: null,
    };
  }
  payload.stdout = __out.join("");
  payload.stderr = __err.join("");
  await __send(payload);
  Deno.exit(payload.ok ? 0 : 1);
})();
"""

_DENO_JSON = {
    "compilerOptions": {"strict": False, "noImplicitAny": False, "checkJs": False},
    "lock": False,
}


def _location_file(url: str) -> str:
    """File name of a ``file://`` URL.

    Args:
        url: Location URL printed by Deno.

    Returns:
        Base file name.

    Examples:
        >>> _location_file("file:///tmp/exec-1/main.ts")
        'main.ts'
    """
    return Path(unquote(urlparse(url).path)).name


def parse_deno_diagnostics(output: str) -> List[BuildDiagnostic]:
    """Parse ``deno check`` output into unmapped diagnostics.

    Args:
        output: Combined stdout/stderr of ``deno check``.

    Returns:
        Diagnostics with artifact coordinates.
    """
    diagnostics: List[BuildDiagnostic] = []
    first_message: Optional[str] = None
    message: Optional[str] = None
    for raw in output.splitlines():
        line = raw.strip()
        if not line:
            continue
        found = _MESSAGE_RE.match(line)
        if found:
            message = found.group(1) or found.group(2)
            first_message = first_message or message
        location = _LOCATION_RE.search(line)
        if location and message:
            text = message.split(" at file://", 1)[0].strip()
            diagnostics.append(BuildDiagnostic(message=text, file=_location_file(location.group(1)), line=int(location.group(2)), column=int(location.group(3))))
            message = None
    if not diagnostics and first_message:
        diagnostics.append(BuildDiagnostic(message=first_message))
    return diagnostics


class DenoRuntime(SandboxRuntime):
    """Deno-based runtime with explicit permission flags."""

    name = "deno"

    def __init__(self, deno_path: Optional[str] = None) -> None:
        """Locate the Deno executable used for sandbox runs.

        Args:
            deno_path: Explicit executable; defaults to ``settings.deno_path`` or ``PATH`` lookup.
        """
        self._deno_path = deno_path or settings.deno_path or shutil.which("deno")

    def get_capabilities(self) -> RuntimeCapabilities:
        return RuntimeCapabilities(
            name=self.name,
            languages=frozenset({"javascript", "typescript"}),
            enforces_network_allowlist=True,
            enforces_filesystem_paths=True,
            enforces_memory_limit=True,
            notes=["Memory limit applies to the V8 heap."],
        )

    def is_available(self) -> bool:
        return bool(self._deno_path)

    def generate(
        self,
        workspace: Path,
        script: str,
        language: str,
        input_args: Mapping[str, Any],
        policy: IsolationPolicy,
        secret: str,
    ) -> Artifact:
        config: Dict[str, Any] = {
            "secret": secret,
            "inputArgs": dict(input_args),
            "filesystem": policy.file_system.enabled,
        }
        any_type = ": any" if language == "typescript" else ""
        prelude = _PRELUDE.replace("__ANY__", any_type).replace("__CONFIG_JSON__", orjson.dumps(config, default=str).decode())
        lines, count = indent_script(script, "  ")
        body = "async function __user_main__() {\n" + "\n".join(lines) + "\n}\n"
        epilogue = _EPILOGUE.replace("__ANY__", any_type)

        entrypoint = workspace / ("main.ts" if language == "typescript" else "main.js")
        entrypoint.write_text(prelude + body + epilogue, encoding="utf-8")
        config_path = workspace / "deno.json"
        config_path.write_bytes(orjson.dumps(_DENO_JSON, option=orjson.OPT_INDENT_2))
        return Artifact(
            language=language,
            workspace=workspace,
            entrypoint=entrypoint,
            build_target=entrypoint,
            script_name="script.ts" if language == "typescript" else "script.js",
            secret=secret,
            line_offset=prelude.count("\n") + 1,
            column_offset=2,
            script_line_count=count,
            extra_files=(config_path,),
        )

    def environment(self, artifact: Artifact) -> Dict[str, str]:
        env = super().environment(artifact)
        env["DENO_DIR"] = str(artifact.workspace / ".deno")
        env["DENO_NO_UPDATE_CHECK"] = "1"
        return env

    def build_command(self, artifact: Artifact) -> Optional[List[str]]:
        return [str(self._deno_path), "check", "--quiet", f"--config={artifact.workspace / 'deno.json'}", str(artifact.entrypoint)]

    def parse_build_diagnostics(self, artifact: Artifact, stdout: str, stderr: str) -> List[BuildDiagnostic]:
        mapped: List[BuildDiagnostic] = []
        for diag in parse_deno_diagnostics(f"{stdout}\n{stderr}"):
            if diag.file == artifact.entrypoint.name:
                file, line, column = self.map_location(artifact, diag.line, diag.column)
                mapped.append(BuildDiagnostic(message=diag.message, file=file, line=line, column=column))
            else:
                mapped.append(diag)
        if not mapped:
            tail = (stderr.strip().splitlines() or ["build failed"])[-1]
            mapped.append(BuildDiagnostic(message=tail, file=artifact.script_name))
        return mapped

    def run_command(self, artifact: Artifact, policy: IsolationPolicy) -> List[str]:
        cmd = [
            str(self._deno_path),
            "run",
            "--quiet",
            "--no-prompt",
            "--no-remote",
            "--no-check",
            f"--config={artifact.workspace / 'deno.json'}",
            f"--v8-flags=--max-old-space-size={policy.limits.memory_mb}",
        ]
        hosts = deno_net_permissions(policy.network.allowed_hosts, policy.network.allow_localhost) if policy.network_granted else []
        if hosts:
            cmd.append("--allow-net=" + ",".join(hosts))
        if policy.file_system.enabled:
            readable = [str(Path(p).expanduser()) for p in (*policy.file_system.read_paths, *policy.file_system.write_paths)]
            writable = [str(Path(p).expanduser()) for p in policy.file_system.write_paths]
            if readable:
                cmd.append("--allow-read=" + ",".join(readable))
            if writable:
                cmd.append("--allow-write=" + ",".join(writable))
        cmd.append(str(artifact.entrypoint))
        return cmd

    def locate_runtime_error(self, artifact: Artifact, error: Mapping[str, Any]) -> Tuple[Optional[str], Optional[int], Optional[int]]:
        if isinstance(error.get("line"), int):
            return super().locate_runtime_error(artifact, error)
        fallback: Optional[Tuple[Optional[str], Optional[int], Optional[int]]] = None
        for match in _STACK_RE.finditer(str(error.get("stack") or "")):
            located = self.map_location(artifact, int(match.group(1)), int(match.group(2)))
            if located[0] == artifact.script_name:
                return located
            fallback = fallback or located
        return fallback or (artifact.script_name, None, None)
