# -*- coding: utf-8 -*-
"""Location: ./mcpguard/cli.py
Copyright 2026
SPDX-License-Identifier: Apache-2.0

mcpguard CLI ─ run sandboxed scripts and manage tool servers

This module is exposed as a **console-script** via:

    [project.scripts]
    mcpguard = "mcpguard.cli:main"

Features
─────────
* run: Execute a script against a tool server under its isolation policy
* servers: Register, list and remove tool server launch configurations
* schema: Inspect, render and invalidate cached tool schemas
* policy: Show or override the isolation policy of a server
* metrics: Show persisted per-server execution rollups

Typical usage
─────────────
```console
$ mcpguard servers add weather -- npx -y weather-mcp
$ mcpguard run fetch.ts --server weather --input '{"city": "Oslo"}'
```
"""

# Standard
import asyncio
from pathlib import Path
import sys
from typing import Any, Dict, List, Optional
import uuid

# Third-Party
import orjson
from pydantic import ValidationError
import typer
from typing_extensions import Annotated

# First-Party
from mcpguard import __version__
from mcpguard.exceptions import MCPGuardError
from mcpguard.schemas import (
    ExecutionRequest,
    ExecutionResult,
    ServerSecurityConfig,
    ToolServerConfig,
)
from mcpguard.services.execution_supervisor import ExecutionSupervisor
from mcpguard.services.logging_service import LoggingService
from mcpguard.utils.typescript_api import generate_python_api, generate_typescript_api

logger = LoggingService().get_logger(__name__)

LANGUAGE_BY_SUFFIX = {".py": "python", ".ts": "typescript", ".mts": "typescript", ".js": "javascript", ".mjs": "javascript"}

app = typer.Typer(help="Run untrusted scripts against MCP tool servers inside an isolation policy.", add_completion=False)
servers_app = typer.Typer(help="Manage tool server launch configurations.")
schema_app = typer.Typer(help="Inspect and invalidate cached tool schemas.")
policy_app = typer.Typer(help="Show and override isolation policies.")
app.add_typer(servers_app, name="servers")
app.add_typer(schema_app, name="schema")
app.add_typer(policy_app, name="policy")


def _dump(data: Any) -> str:
    return orjson.dumps(data, option=orjson.OPT_INDENT_2 | orjson.OPT_SORT_KEYS, default=str).decode()


def _supervisor() -> ExecutionSupervisor:
    return ExecutionSupervisor()


def _parse_input(raw: Optional[str]) -> Dict[str, Any]:
    """Decode ``--input``.

    Args:
        raw: JSON object text, or None.

    Returns:
        Decoded arguments.

    Raises:
        typer.BadParameter: If the text is not a JSON object.

    Examples:
        >>> _parse_input('{"a": 1}')
        {'a': 1}
        >>> _parse_input(None)
        {}
    """
    if not raw:
        return {}
    try:
        value = orjson.loads(raw)
    except orjson.JSONDecodeError as exc:
        raise typer.BadParameter(f"invalid JSON: {exc}", param_hint="--input") from exc
    if not isinstance(value, dict):
        raise typer.BadParameter("must be a JSON object", param_hint="--input")
    return value


def _render_result(result: ExecutionResult) -> None:
    if result.stdout:
        typer.echo(result.stdout, nl=not result.stdout.endswith("\n"))
    if result.stderr:
        typer.echo(result.stderr, err=True, nl=not result.stderr.endswith("\n"))
    for record in result.tool_call_log:
        status = "ok" if record.error is None else f"{record.error.kind.value}: {record.error.message}"
        typer.echo(f"  [{record.sequence_number}] {record.tool_name} -> {status} ({record.latency_ms}ms)", err=True)
    if result.succeeded:
        typer.echo(f"Completed in {result.wall_time_ms}ms", err=True)
        if result.result is not None:
            typer.echo(_dump(result.result))
        return
    error = result.error
    where = ""
    if error is not None and error.line is not None:
        where = f" at {error.file or 'script'}:{error.line}" + (f":{error.column}" if error.column is not None else "")
    phase = f" during {result.failed_phase.value}" if result.failed_phase else ""
    typer.echo(f"Failed{phase}: {error.kind.value if error else 'unknown'}{where}: {error.message if error else ''}", err=True)
    if error is not None and error.stack:
        typer.echo(error.stack.rstrip(), err=True)


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------
@app.command(help="Execute a script against a tool server.")
def run(
    script: Annotated[Path, typer.Argument(help="Script file, or '-' to read stdin.")],
    server: Annotated[str, typer.Option("--server", "-s", help="Target tool server.")],
    language: Annotated[Optional[str], typer.Option("--language", "-l", help="javascript, typescript or python; inferred from the file suffix.")] = None,
    input_json: Annotated[Optional[str], typer.Option("--input", "-i", help="Input arguments as a JSON object.")] = None,
    timeout_ms: Annotated[Optional[int], typer.Option("--timeout-ms", help="Override the policy's execution time limit.", min=1)] = None,
    request_id: Annotated[Optional[str], typer.Option("--id", help="Execution id; random when omitted.")] = None,
    as_json: Annotated[bool, typer.Option("--json", help="Print the full result as JSON.")] = False,
):
    source = sys.stdin.read() if str(script) == "-" else script.read_text(encoding="utf-8")
    language = language or LANGUAGE_BY_SUFFIX.get(script.suffix.lower())
    input_args = _parse_input(input_json)

    async def _run() -> ExecutionResult:
        supervisor = _supervisor()
        try:
            policy = supervisor.resolver.resolve_for_server(server)
            if timeout_ms is not None:
                policy = policy.model_copy(update={"limits": policy.limits.model_copy(update={"cpu_ms": timeout_ms})})
            request = ExecutionRequest(
                id=request_id or uuid.uuid4().hex,
                script_source=source,
                target_server=server,
                policy=policy,
                input_args=input_args,
                language=language,
            )
            return await supervisor.submit(request)
        finally:
            await supervisor.shutdown()

    try:
        result = asyncio.run(_run())
    except ValidationError as exc:
        typer.echo(f"Invalid request: {exc}", err=True)
        raise typer.Exit(code=2) from exc
    except MCPGuardError as exc:
        typer.echo(f"{exc.kind.value}: {exc.message}", err=True)
        raise typer.Exit(code=2) from exc

    if as_json:
        typer.echo(_dump(result.model_dump(mode="json")))
    else:
        _render_result(result)
    raise typer.Exit(code=0 if result.succeeded else 1)


@app.command(help="Show execution rollups per tool server.")
def metrics():
    typer.echo(_dump(_supervisor().metrics.server_rollups()))


@app.command(help="Print the version.")
def version():
    typer.echo(__version__)


@servers_app.command("list", help="List registered tool servers.")
def servers_list():
    servers = _supervisor().store.list_servers()
    if not servers:
        typer.echo("No tool servers registered.")
        return
    for name, config in sorted(servers.items()):
        typer.echo(f"{name}: {' '.join([config.command, *config.args])}")


@servers_app.command("add", help="Register or update a tool server launch command.")
def servers_add(
    name: Annotated[str, typer.Argument(help="Tool server name.")],
    command: Annotated[str, typer.Argument(help="Executable that starts the server.")],
    args: Annotated[Optional[List[str]], typer.Argument(help="Arguments passed to the executable.")] = None,
    env: Annotated[Optional[List[str]], typer.Option("--env", "-e", help="KEY=VALUE environment entry; repeatable.")] = None,
    cwd: Annotated[Optional[str], typer.Option("--cwd", help="Working directory of the server.")] = None,
):
    environment: Dict[str, str] = {}
    for entry in env or []:
        key, sep, value = entry.partition("=")
        if not sep or not key:
            raise typer.BadParameter(f"expected KEY=VALUE, got {entry!r}", param_hint="--env")
        environment[key] = value
    try:
        config = ToolServerConfig(command=command, args=list(args or []), env=environment, cwd=cwd)
        asyncio.run(_supervisor().register_server(name, config))
    except ValidationError as exc:
        typer.echo(f"Invalid server configuration: {exc}", err=True)
        raise typer.Exit(code=2) from exc
    typer.echo(f"Registered {name}")


@servers_app.command("remove", help="Forget a tool server, its policy override and cached schemas.")
def servers_remove(name: Annotated[str, typer.Argument(help="Tool server name.")]):
    removed = asyncio.run(_supervisor().remove_server(name))
    if not removed:
        typer.echo(f"Tool server {name} is not registered", err=True)
        raise typer.Exit(code=1)
    typer.echo(f"Removed {name}")


@schema_app.command("show", help="List the tools of a server (cached, or fetched from the server).")
def schema_show(
    name: Annotated[str, typer.Argument(help="Tool server name.")],
    as_json: Annotated[bool, typer.Option("--json", help="Print the cache entry as JSON.")] = False,
):
    async def _load():
        supervisor = _supervisor()
        try:
            return await supervisor.load_schema(name)
        finally:
            await supervisor.shutdown()

    try:
        entry = asyncio.run(_load())
    except MCPGuardError as exc:
        typer.echo(f"{exc.kind.value}: {exc.message}", err=True)
        raise typer.Exit(code=1) from exc
    if as_json:
        typer.echo(_dump(entry.to_document()))
        return
    typer.echo(f"{name} ({entry.config_hash}), cached {entry.cached_at.isoformat()}")
    for tool in entry.tools:
        typer.echo(f"  {tool.name}: {tool.description or ''}".rstrip())


@schema_app.command("typescript", help="Render the API visible to scripts for a server.")
def schema_typescript(
    name: Annotated[str, typer.Argument(help="Tool server name.")],
    python: Annotated[bool, typer.Option("--python", help="Render the Python stub instead.")] = False,
):
    async def _load():
        supervisor = _supervisor()
        try:
            return await supervisor.load_schema(name)
        finally:
            await supervisor.shutdown()

    try:
        entry = asyncio.run(_load())
    except MCPGuardError as exc:
        typer.echo(f"{exc.kind.value}: {exc.message}", err=True)
        raise typer.Exit(code=1) from exc
    typer.echo(generate_python_api(entry.tools) if python else generate_typescript_api(entry.tools))


@schema_app.command("invalidate", help="Drop every cached schema of a server.")
def schema_invalidate(name: Annotated[str, typer.Argument(help="Tool server name.")]):
    removed = _supervisor().invalidate_schema(name)
    typer.echo(f"Removed {removed} cached schema(s) for {name}")


@schema_app.command("clear", help="Drop every cached schema.")
def schema_clear():
    _supervisor().cache.clear()
    typer.echo("Schema cache cleared")


@policy_app.command("show", help="Show the resolved isolation policy of a server.")
def policy_show(name: Annotated[str, typer.Argument(help="Tool server name.")]):
    policy = _supervisor().resolver.resolve_for_server(name)
    typer.echo(_dump(policy.model_dump(mode="json")))


@policy_app.command("set", help="Override isolation settings of a server; unset options keep inheriting defaults.")
def policy_set(
    name: Annotated[str, typer.Argument(help="Tool server name.")],
    guarded: Annotated[Optional[bool], typer.Option("--guard/--no-guard", help="Run the server's scripts isolated.")] = None,
    network: Annotated[Optional[bool], typer.Option("--network/--no-network", help="Grant network access.")] = None,
    allow: Annotated[Optional[List[str]], typer.Option("--allow", help="Allowed host; repeatable.")] = None,
    allow_localhost: Annotated[Optional[bool], typer.Option("--allow-localhost/--deny-localhost")] = None,
    read_paths: Annotated[Optional[List[str]], typer.Option("--read", help="Readable path; repeatable. Enables filesystem access.")] = None,
    write_paths: Annotated[Optional[List[str]], typer.Option("--write", help="Writable path; repeatable. Enables filesystem access.")] = None,
    timeout_ms: Annotated[Optional[int], typer.Option("--timeout-ms", min=1)] = None,
    memory_mb: Annotated[Optional[int], typer.Option("--memory-mb", min=1)] = None,
    max_calls: Annotated[Optional[int], typer.Option("--max-calls", min=0)] = None,
):
    supervisor = _supervisor()
    existing = supervisor.store.get_server_config(name)
    fields: Dict[str, Any] = {"mcpName": name}
    if existing is not None:
        fields.update(existing.model_dump(by_alias=True, exclude_unset=True))
    if guarded is not None:
        fields["isGuarded"] = guarded

    network_fields = {k: v for k, v in {"enabled": network, "allowlist": allow, "allowLocalhost": allow_localhost}.items() if v is not None}
    if network_fields:
        fields["network"] = {**_section(existing.network if existing else None), **network_fields}
    fs_fields = {k: v for k, v in {"readPaths": read_paths, "writePaths": write_paths}.items() if v}
    if fs_fields:
        fields["fileSystem"] = {**_section(existing.file_system if existing else None), **fs_fields, "enabled": True}
    limit_fields = {k: v for k, v in {"maxExecutionTimeMs": timeout_ms, "maxMemoryMB": memory_mb, "maxMCPCalls": max_calls}.items() if v is not None}
    if limit_fields:
        fields["resourceLimits"] = {**_section(existing.resource_limits if existing else None), **limit_fields}

    try:
        supervisor.store.upsert_server_config(ServerSecurityConfig.model_validate(fields))
    except ValidationError as exc:
        typer.echo(f"Invalid policy override: {exc}", err=True)
        raise typer.Exit(code=2) from exc
    typer.echo(_dump(supervisor.resolver.resolve_for_server(name).model_dump(mode="json")))


def _section(model: Optional[Any]) -> Dict[str, Any]:
    return model.model_dump(by_alias=True, exclude_unset=True) if model is not None else {}


@policy_app.command("reset", help="Remove a server's override so it inherits the defaults.")
def policy_reset(name: Annotated[str, typer.Argument(help="Tool server name.")]):
    if not _supervisor().store.remove_server_config(name):
        typer.echo(f"No override for {name}", err=True)
        raise typer.Exit(code=1)
    typer.echo(f"Removed override for {name}")


def main() -> None:
    app()


if __name__ == "__main__":  # pragma: no cover - executed only when run directly
    main()
