# -*- coding: utf-8 -*-
"""Location: ./mcpguard/services/sandbox_runner.py
Copyright 2026
SPDX-License-Identifier: Apache-2.0

Sandbox Runner.

Owns the lifecycle of one execution::

    Generating -> Building -> Executing -> Completed
         \\____________\\____________\\_______-> Failed

The failure kind is fixed by the stage that was running when the failure
surfaced: a non-zero build toolchain exit is always a ``BuildError``, an
error payload from the isolated runtime is always a ``RuntimeError``, and
an exhausted wall-clock budget is always a ``TimeoutError``. Error text is
never inspected to decide the phase.

The scratch workspace and every spawned process are released on all exit
paths, including cancellation.
"""

# Standard
import asyncio
from contextlib import asynccontextmanager
import contextlib
from dataclasses import dataclass, field
import os
from pathlib import Path
import re
import shutil
import signal
import tempfile
import time
from typing import Any, AsyncIterator, Dict, List, Mapping, Optional, Set, Type
import uuid

# Third-Party
import orjson

# First-Party
from mcpguard.config import settings
from mcpguard.exceptions import (
    BuildError,
    ExecutionTimeoutError,
    GenerationError,
    MCPGuardError,
    RuntimeUnavailableError,
    SandboxRuntimeError,
)
from mcpguard.models import ExecutionPhase
from mcpguard.runtimes.base import Artifact, SandboxRuntime
from mcpguard.runtimes.deno import DenoRuntime
from mcpguard.runtimes.python import MAX_MESSAGE_BYTES, PythonRuntime
from mcpguard.schemas import ExecutionError, ExecutionRequest, ExecutionResult, IsolationPolicy
from mcpguard.services.logging_service import LoggingService
from mcpguard.services.tool_bridge import ToolBridge

logger = LoggingService().get_logger(__name__)
security_logger = LoggingService().get_security_logger()

_UNSAFE_ID_CHARS = re.compile(r"[^A-Za-z0-9_-]")


class PhaseTracker:
    """Monotonic phase state of one execution.

    Examples:
        >>> tracker = PhaseTracker("run-1")
        >>> tracker.advance(ExecutionPhase.BUILDING)
        >>> tracker.fail()
        >>> (tracker.current.value, tracker.failed_phase.value)
        ('Failed', 'Building')
        >>> tracker.advance(ExecutionPhase.EXECUTING)
        Traceback (most recent call last):
        ...
        ValueError: Illegal phase transition Failed -> Executing
    """

    def __init__(self, request_id: str) -> None:
        self.request_id = request_id
        self.current = ExecutionPhase.GENERATING
        self.failed_phase: Optional[ExecutionPhase] = None
        self.started = time.perf_counter()

    def advance(self, phase: ExecutionPhase) -> None:
        """Move to the next phase.

        Args:
            phase: Target phase; must directly follow the current one.

        Raises:
            ValueError: On a skipped, repeated or backwards transition.
        """
        if not self.current.can_advance_to(phase):
            raise ValueError(f"Illegal phase transition {self.current.value} -> {phase.value}")
        logger.debug(f"Execution {self.request_id}: {self.current.value} -> {phase.value}")
        self.current = phase

    def fail(self) -> None:
        """Enter ``Failed``, remembering where the failure happened. No-op once terminal."""
        if self.current.is_terminal:
            return
        self.failed_phase = self.current
        self.current = ExecutionPhase.FAILED

    @property
    def elapsed_ms(self) -> int:
        """Milliseconds since the execution started."""
        return int((time.perf_counter() - self.started) * 1000)


@dataclass
class RunOutcome:
    """What the harness reported at the end of the execute phase."""

    ok: bool
    value: Any = None
    stdout: str = ""
    stderr: str = ""
    error: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_message(cls, message: Mapping[str, Any]) -> "RunOutcome":
        """Build from a ``result`` protocol message.

        Args:
            message: Decoded harness message.

        Returns:
            RunOutcome: Parsed outcome.

        Examples:
            >>> RunOutcome.from_message({"ok": True, "value": 2, "stdout": "hi\\n"}).value
            2
            >>> RunOutcome.from_message({"ok": False, "error": "boom"}).error
            {'message': 'boom'}
        """
        error = message.get("error") or {}
        if not isinstance(error, dict):
            error = {"message": str(error)}
        return cls(
            ok=bool(message.get("ok")),
            value=message.get("value"),
            stdout=str(message.get("stdout") or ""),
            stderr=str(message.get("stderr") or ""),
            error=error,
        )


@asynccontextmanager
async def scratch_workspace(request_id: str, parent: Path) -> AsyncIterator[Path]:
    """Acquire a uniquely named per-execution directory and always remove it.

    Args:
        request_id: Execution id, embedded (sanitized) in the directory name.
        parent: Directory holding all workspaces.

    Yields:
        Path: The workspace directory.

    Raises:
        GenerationError: If the directory cannot be created.
    """
    safe_id = _UNSAFE_ID_CHARS.sub("_", request_id)[:40]
    try:
        parent.mkdir(parents=True, exist_ok=True)
        workspace = Path(tempfile.mkdtemp(prefix=f"exec-{safe_id}-", dir=parent))
    except OSError as exc:
        raise GenerationError(f"Cannot create scratch workspace under {parent}: {exc}") from exc
    try:
        yield workspace
    finally:
        shutil.rmtree(workspace, ignore_errors=True)
        if workspace.exists():
            logger.error(f"Execution {request_id}: scratch workspace {workspace} could not be removed")


async def _terminate(proc: asyncio.subprocess.Process) -> None:
    """Kill a process (and its process group) if it is still running, then reap it."""
    if proc.returncode is None:
        with contextlib.suppress(ProcessLookupError):
            if hasattr(os, "killpg"):
                os.killpg(proc.pid, signal.SIGKILL)
            else:
                proc.kill()
    await proc.wait()


def default_runtimes() -> Dict[str, SandboxRuntime]:
    """Runtime per language using the configured executables."""
    deno = DenoRuntime()
    python = PythonRuntime()
    return {"javascript": deno, "typescript": deno, "python": python}


class SandboxRunner:
    """Drive one execution through generate, build and execute.

    Examples:
        >>> runner = SandboxRunner(runtimes={})
        >>> runner.runtime_for("cobol")
        Traceback (most recent call last):
        ...
        mcpguard.exceptions.GenerationError: No runtime registered for language 'cobol'
    """

    def __init__(
        self,
        runtimes: Optional[Mapping[str, SandboxRuntime]] = None,
        scratch_dir: Optional[Path] = None,
        build_timeout_ms: Optional[int] = None,
        timeout_grace_ms: Optional[int] = None,
    ) -> None:
        """Initialize the runner.

        Args:
            runtimes: Runtime per language; defaults to Deno for JS/TS and restricted CPython for Python.
            scratch_dir: Parent of per-execution workspaces; defaults to ``settings.scratch_dir``.
            build_timeout_ms: Wall-clock budget of the build toolchain.
            timeout_grace_ms: Grace added to ``limits.cpu_ms`` for the execute budget.
        """
        self._runtimes: Dict[str, SandboxRuntime] = dict(default_runtimes() if runtimes is None else runtimes)
        self._scratch_dir = scratch_dir
        self._build_timeout_ms = build_timeout_ms
        self._timeout_grace_ms = timeout_grace_ms

    @property
    def scratch_dir(self) -> Path:
        """Parent directory of workspaces."""
        return Path(self._scratch_dir or settings.scratch_dir)

    @property
    def build_timeout_ms(self) -> int:
        """Build toolchain budget."""
        return self._build_timeout_ms if self._build_timeout_ms is not None else settings.build_timeout_ms

    @property
    def timeout_grace_ms(self) -> int:
        """Grace margin of the execute budget."""
        return self._timeout_grace_ms if self._timeout_grace_ms is not None else settings.timeout_grace_ms

    @property
    def languages(self) -> List[str]:
        """Languages with a registered runtime."""
        return sorted(self._runtimes)

    def runtime_for(self, language: str) -> SandboxRuntime:
        """Look up the runtime of a language.

        Args:
            language: Script language.

        Returns:
            SandboxRuntime: Registered runtime.

        Raises:
            GenerationError: If no runtime handles ``language``.
        """
        runtime = self._runtimes.get(language)
        if runtime is None:
            raise GenerationError(f"No runtime registered for language '{language}'")
        return runtime

    async def run(
        self,
        request: ExecutionRequest,
        policy: IsolationPolicy,
        bridge: ToolBridge,
        language: Optional[str] = None,
        tracker: Optional[PhaseTracker] = None,
    ) -> ExecutionResult:
        """Execute a validated script under ``policy``.

        Phase-boundary failures are returned as a ``Failed`` result. Task
        cancellation propagates after cleanup; the caller owns the
        ``Cancelled`` result.

        Args:
            request: Execution request (script already validated).
            policy: Resolved isolation policy.
            bridge: Tool Bridge of this execution.
            language: Script language; defaults to the request's, then ``settings.default_language``.
            tracker: Phase tracker shared with the caller.

        Returns:
            ExecutionResult: Phase-tagged outcome.
        """
        tracker = tracker or PhaseTracker(request.id)
        language = language or request.language or settings.default_language
        try:
            runtime = self.runtime_for(language)
            if not runtime.is_available():
                raise RuntimeUnavailableError(f"Runtime '{runtime.name}' for {language} is not installed on this host")

            async with scratch_workspace(request.id, self.scratch_dir) as workspace:
                artifact = self._generate(runtime, workspace, request, language, policy)
                tracker.advance(ExecutionPhase.BUILDING)
                await self._build(runtime, artifact)
                tracker.advance(ExecutionPhase.EXECUTING)
                outcome = await self._execute(runtime, artifact, policy, bridge)

            if not outcome.ok:
                file, line, column = runtime.locate_runtime_error(artifact, outcome.error)
                error = SandboxRuntimeError(
                    str(outcome.error.get("message") or "Script raised an error"),
                    file=file,
                    line=line,
                    column=column,
                    stack=outcome.error.get("stack"),
                    details={"name": outcome.error.get("name")} if outcome.error.get("name") else None,
                )
                tracker.fail()
                logger.info(f"Execution {request.id}: script raised {outcome.error.get('name') or 'an error'}")
                return self._result(request, tracker, bridge, outcome.stdout, outcome.stderr, error=error.to_execution_error())

            tracker.advance(ExecutionPhase.COMPLETED)
            logger.info(f"Execution {request.id}: completed in {tracker.elapsed_ms}ms with {bridge.calls_consumed} tool call(s)")
            return self._result(request, tracker, bridge, outcome.stdout, outcome.stderr, value=outcome.value)
        except MCPGuardError as exc:
            tracker.fail()
            logger.info(f"Execution {request.id}: failed in {tracker.failed_phase.value if tracker.failed_phase else 'pre-flight'} with {exc.kind.value}")
            return self._result(request, tracker, bridge, error=exc.to_execution_error(tracker.failed_phase))

    def _result(
        self,
        request: ExecutionRequest,
        tracker: PhaseTracker,
        bridge: ToolBridge,
        stdout: str = "",
        stderr: str = "",
        value: Any = None,
        error: Optional[ExecutionError] = None,
    ) -> ExecutionResult:
        return ExecutionResult(
            request_id=request.id,
            final_phase=tracker.current,
            failed_phase=tracker.failed_phase,
            stdout=stdout,
            stderr=stderr,
            result=value,
            error=error,
            tool_call_log=bridge.records,
            wall_time_ms=tracker.elapsed_ms,
        )

    def _generate(self, runtime: SandboxRuntime, workspace: Path, request: ExecutionRequest, language: str, policy: IsolationPolicy) -> Artifact:
        try:
            return runtime.generate(workspace, request.script_source, language, request.input_args, policy, uuid.uuid4().hex)
        except (OSError, TypeError, ValueError) as exc:
            raise GenerationError(f"Failed to generate sandbox artifact: {exc}") from exc

    async def _spawn(
        self,
        cmd: List[str],
        runtime: SandboxRuntime,
        artifact: Artifact,
        error_cls: Type[MCPGuardError],
        stdin: int,
    ) -> asyncio.subprocess.Process:
        try:
            return await asyncio.create_subprocess_exec(
                *cmd,
                stdin=stdin,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=str(artifact.workspace),
                env=runtime.environment(artifact),
                start_new_session=True,
                limit=MAX_MESSAGE_BYTES,
            )
        except OSError as exc:
            raise error_cls(f"Failed to start {cmd[0]}: {exc}") from exc

    async def _build(self, runtime: SandboxRuntime, artifact: Artifact) -> None:
        """Run the build toolchain; a non-zero exit is a ``BuildError``."""
        cmd = runtime.build_command(artifact)
        if not cmd:
            return
        proc = await self._spawn(cmd, runtime, artifact, BuildError, stdin=asyncio.subprocess.DEVNULL)
        try:
            out, err = await asyncio.wait_for(proc.communicate(), timeout=self.build_timeout_ms / 1000)
        except TimeoutError as exc:
            raise BuildError(f"Build toolchain did not finish within {self.build_timeout_ms}ms") from exc
        finally:
            await _terminate(proc)

        if proc.returncode != 0:
            diagnostics = runtime.parse_build_diagnostics(artifact, out.decode("utf-8", errors="replace"), err.decode("utf-8", errors="replace"))
            first = diagnostics[0]
            raise BuildError(
                first.message,
                file=first.file,
                line=first.line,
                column=first.column,
                details={"diagnostics": [d.to_dict() for d in diagnostics], "exitCode": proc.returncode},
            )

    async def _execute(self, runtime: SandboxRuntime, artifact: Artifact, policy: IsolationPolicy, bridge: ToolBridge) -> RunOutcome:
        """Run the artifact, relay tool calls, and collect the final result message."""
        proc = await self._spawn(runtime.run_command(artifact, policy), runtime, artifact, SandboxRuntimeError, stdin=asyncio.subprocess.PIPE)
        if not proc.stdin or not proc.stdout or not proc.stderr:
            await _terminate(proc)
            raise SandboxRuntimeError("Failed to open pipes to the sandbox process")

        budget_ms = policy.limits.cpu_ms + self.timeout_grace_ms
        write_lock = asyncio.Lock()
        tool_tasks: Set["asyncio.Task[None]"] = set()
        stderr_task = asyncio.create_task(proc.stderr.read())
        outcome: Optional[RunOutcome] = None

        async def _respond(payload: Dict[str, Any]) -> None:
            async with write_lock:
                if proc.stdin.is_closing():
                    return
                proc.stdin.write(orjson.dumps(payload, default=str) + b"\n")
                with contextlib.suppress(BrokenPipeError, ConnectionResetError):
                    await proc.stdin.drain()

        async def _handle_toolcall(message: Dict[str, Any]) -> None:
            reply = await bridge.call(str(message.get("tool") or ""), message.get("args"))
            await _respond({"secret": artifact.secret, "type": "toolcall_response", "id": str(message.get("id") or ""), **reply})

        async def _pump_stdout() -> None:
            nonlocal outcome
            while True:
                try:
                    raw = await proc.stdout.readline()
                except ValueError as exc:
                    raise SandboxRuntimeError(f"Sandbox message exceeds {MAX_MESSAGE_BYTES} bytes") from exc
                if not raw:
                    break
                try:
                    message = orjson.loads(raw)
                except orjson.JSONDecodeError:
                    continue
                if not isinstance(message, dict) or message.get("secret") != artifact.secret:
                    continue
                if message.get("type") == "toolcall":
                    task = asyncio.create_task(_handle_toolcall(message))
                    tool_tasks.add(task)
                    task.add_done_callback(tool_tasks.discard)
                elif message.get("type") == "result":
                    outcome = RunOutcome.from_message(message)
                    break

        stderr_tail = ""
        try:
            try:
                await asyncio.wait_for(_pump_stdout(), timeout=budget_ms / 1000)
            except TimeoutError as exc:
                security_logger.warning(f"Execution {bridge.request_id}: wall-clock budget of {budget_ms}ms exhausted, terminating sandbox")
                raise ExecutionTimeoutError(
                    f"Execution exceeded its time limit of {policy.limits.cpu_ms}ms",
                    details={"cpuMs": policy.limits.cpu_ms, "budgetMs": budget_ms},
                ) from exc
            if outcome is not None:
                proc.stdin.close()
                with contextlib.suppress(TimeoutError):
                    await asyncio.wait_for(proc.wait(), timeout=max(self.timeout_grace_ms, 100) / 1000)
        finally:
            for task in tool_tasks:
                task.cancel()
            if tool_tasks:
                await asyncio.gather(*tool_tasks, return_exceptions=True)
            await _terminate(proc)
            stderr_tail = (await stderr_task).decode("utf-8", errors="replace").strip()

        if outcome is None:
            raise SandboxRuntimeError(
                f"Sandbox exited with code {proc.returncode} without reporting a result",
                stack=stderr_tail or None,
                details={"exitCode": proc.returncode},
            )
        if stderr_tail and stderr_tail not in outcome.stderr:
            outcome.stderr = f"{outcome.stderr}{stderr_tail}\n"
        return outcome
