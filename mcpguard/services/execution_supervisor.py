# -*- coding: utf-8 -*-
"""Location: ./mcpguard/services/execution_supervisor.py
Copyright 2026
SPDX-License-Identifier: Apache-2.0

Execution Supervisor.

Public entry point of the orchestrator:

- ``submit(request)`` runs pre-flight (policy resolution, script validation),
  loads the target server's tool schema, and hands the request to the
  Sandbox Runner. At most one run per request id is active at a time.
- ``cancel(request_id)`` cancels the run's task; the runner tears down the
  process and workspace and ``submit`` resolves with a ``Cancelled`` result.
- ``invalidate_schema`` / ``get_cached_schema`` expose the Schema Cache.
- ``register_server`` / ``remove_server`` keep launch configurations, the
  schema cache and pooled connections consistent.

Only ``DuplicateExecutionError`` escapes ``submit``; every other failure is
returned as a ``Failed`` result.
"""

# Standard
import asyncio
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

# First-Party
from mcpguard.cache.schema_cache import compute_config_hash, SchemaCache
from mcpguard.config import settings
from mcpguard.exceptions import DuplicateExecutionError, ExecutionCancelledError, MCPGuardError, PolicyViolationError, ToolServerError
from mcpguard.models import ExecutionPhase
from mcpguard.schemas import ExecutionRequest, ExecutionResult, SchemaCacheEntry, ToolServerConfig
from mcpguard.services.logging_service import LoggingService
from mcpguard.services.metrics_service import MetricsService
from mcpguard.services.policy_resolver import PolicyResolver
from mcpguard.services.sandbox_runner import PhaseTracker, SandboxRunner
from mcpguard.services.script_validator import ScriptValidator
from mcpguard.services.settings_store import SettingsStore
from mcpguard.services.tool_bridge import ToolBridge
from mcpguard.services.tool_server import ToolServerConnection, ToolServerPool

logger = LoggingService().get_logger(__name__)

UNREGISTERED_CONFIG_HASH = "unregistered"


@dataclass
class _ActiveRun:
    """Bookkeeping of one in-flight request."""

    request: ExecutionRequest
    tracker: PhaseTracker
    task: Optional["asyncio.Task[ExecutionResult]"] = None
    bridge: Optional[ToolBridge] = None
    cancel_reason: Optional[str] = None


class ExecutionSupervisor:
    """Accept execution requests and dispatch them concurrently."""

    def __init__(
        self,
        store: Optional[SettingsStore] = None,
        runner: Optional[SandboxRunner] = None,
        cache: Optional[SchemaCache] = None,
        pool: Optional[ToolServerPool] = None,
        validator: Optional[ScriptValidator] = None,
        resolver: Optional[PolicyResolver] = None,
        metrics: Optional[MetricsService] = None,
        max_concurrent: Optional[int] = None,
    ) -> None:
        """Wire the orchestrator components.

        Args:
            store: Settings document; defaults to ``settings.settings_path``.
            runner: Sandbox Runner.
            cache: Schema Cache persisted in ``store``.
            pool: Tool server connections.
            validator: Pre-flight script validator.
            resolver: Policy resolver reading ``store``.
            metrics: Execution metrics.
            max_concurrent: Runs admitted at once; defaults to ``settings.max_concurrent_executions``.
        """
        self.store = store or SettingsStore()
        self.runner = runner or SandboxRunner()
        self.cache = cache or SchemaCache(self.store)
        self.pool = pool or ToolServerPool()
        self.validator = validator or ScriptValidator()
        self.resolver = resolver or PolicyResolver(self.store)
        self.metrics = metrics or MetricsService(self.store)
        self._slots = asyncio.Semaphore(max_concurrent or settings.max_concurrent_executions)
        self._runs: Dict[str, _ActiveRun] = {}

    # ------------------------------------------------------------------
    # Executions
    # ------------------------------------------------------------------

    @property
    def active_ids(self) -> List[str]:
        """Ids of runs currently in flight."""
        return sorted(self._runs)

    def phase_of(self, request_id: str) -> Optional[ExecutionPhase]:
        """Current phase of an in-flight run, if any."""
        run = self._runs.get(request_id)
        return run.tracker.current if run else None

    async def submit(self, request: ExecutionRequest) -> ExecutionResult:
        """Run one request to completion.

        Args:
            request: Execution request.

        Returns:
            ExecutionResult: Phase-tagged outcome; ``Cancelled`` when ``cancel`` was called.

        Raises:
            DuplicateExecutionError: If a run with the same id is still active.
            asyncio.CancelledError: If the caller's own task is cancelled.
        """
        # registration happens before the first await
        if request.id in self._runs:
            logger.warning(f"Rejected duplicate execution {request.id}")
            raise DuplicateExecutionError(f"Execution {request.id} is already running", details={"requestId": request.id})
        run = _ActiveRun(request=request, tracker=PhaseTracker(request.id))
        self._runs[request.id] = run
        run.task = asyncio.create_task(self._supervise(run), name=f"mcpguard-exec-{request.id}")
        logger.info(f"Accepted execution {request.id} for {request.target_server}")

        try:
            try:
                result = await run.task
            except asyncio.CancelledError:
                current = asyncio.current_task()
                if not run.task.cancelled() or (current is not None and current.cancelling()):
                    raise
                result = self._cancelled_result(run)
        finally:
            if self._runs.get(request.id) is run:
                del self._runs[request.id]

        self.metrics.record(request.target_server, result)
        return result

    async def cancel(self, request_id: str, reason: Optional[str] = None) -> bool:
        """Cancel an in-flight run.

        Args:
            request_id: Id of the run.
            reason: Optional text included in the result.

        Returns:
            bool: True if the run was found and cancellation requested.
        """
        run = self._runs.get(request_id)
        if run is None or run.task is None:
            return False
        if run.task.done():
            return False
        run.cancel_reason = reason
        run.task.cancel()
        logger.info(f"Cancellation requested for execution {request_id}{f': {reason}' if reason else ''}")
        return True

    async def _supervise(self, run: _ActiveRun) -> ExecutionResult:
        request = run.request
        async with self._slots:
            try:
                policy = request.policy or self.resolver.resolve_for_server(request.target_server)
                language = request.language or settings.default_language
                self.validator.validate(request.script_source, language, policy, request.id)
                schema, connection = await self._prepare_tools(request.target_server)
            except PolicyViolationError as exc:
                return ExecutionResult(
                    request_id=request.id,
                    final_phase=ExecutionPhase.FAILED,
                    error=exc.to_execution_error(),
                    wall_time_ms=run.tracker.elapsed_ms,
                )
            except MCPGuardError as exc:
                run.tracker.fail()
                logger.warning(f"Execution {request.id}: pre-flight failed with {exc.kind.value}: {exc.message}")
                return ExecutionResult(
                    request_id=request.id,
                    final_phase=run.tracker.current,
                    failed_phase=run.tracker.failed_phase,
                    error=exc.to_execution_error(run.tracker.failed_phase),
                    wall_time_ms=run.tracker.elapsed_ms,
                )

            run.bridge = ToolBridge(request.id, policy, schema, connection)
            return await self.runner.run(request, policy, run.bridge, language, run.tracker)

    def _cancelled_result(self, run: _ActiveRun) -> ExecutionResult:
        run.tracker.fail()
        message = f"Execution {run.request.id} was cancelled"
        if run.cancel_reason:
            message = f"{message}: {run.cancel_reason}"
        error = ExecutionCancelledError(message, details={"phase": run.tracker.failed_phase.value if run.tracker.failed_phase else None})
        logger.info(message)
        return ExecutionResult(
            request_id=run.request.id,
            final_phase=run.tracker.current,
            failed_phase=run.tracker.failed_phase,
            error=error.to_execution_error(run.tracker.failed_phase),
            tool_call_log=run.bridge.records if run.bridge else (),
            wall_time_ms=run.tracker.elapsed_ms,
        )

    # ------------------------------------------------------------------
    # Schemas
    # ------------------------------------------------------------------

    async def _prepare_tools(self, mcp_name: str) -> Tuple[SchemaCacheEntry, Optional[ToolServerConnection]]:
        """Schema and connection for an execution; unregistered servers expose no tools."""
        config = self.store.get_server(mcp_name)
        if config is None:
            logger.warning(f"Tool server {mcp_name} is not registered; scripts will see no tools")
            return SchemaCacheEntry(mcp_name=mcp_name, config_hash=UNREGISTERED_CONFIG_HASH), None
        connection = await self.pool.get(mcp_name, config)
        return await self._load_schema(mcp_name, config, connection), connection

    async def _load_schema(self, mcp_name: str, config: ToolServerConfig, connection: ToolServerConnection) -> SchemaCacheEntry:
        config_hash = compute_config_hash(mcp_name, config)
        entry = self.cache.get(mcp_name, config_hash)
        if entry is not None:
            return entry
        tools = await connection.list_tools()
        entry = SchemaCacheEntry(mcp_name=mcp_name, config_hash=config_hash, tools=tools)
        self.cache.put(entry)
        logger.info(f"Cached {len(tools)} tool schema(s) for {mcp_name}")
        return entry

    async def load_schema(self, mcp_name: str) -> SchemaCacheEntry:
        """Schema of a registered server, from cache or by listing its tools.

        Args:
            mcp_name: Tool server name.

        Returns:
            SchemaCacheEntry: Current schema.

        Raises:
            ToolServerError: If the server is not registered or cannot list its tools.
        """
        config = self.store.get_server(mcp_name)
        if config is None:
            raise ToolServerError(f"Tool server {mcp_name} is not registered", details={"server": mcp_name})
        return await self._load_schema(mcp_name, config, await self.pool.get(mcp_name, config))

    def get_cached_schema(self, mcp_name: str, config_hash: str) -> Optional[SchemaCacheEntry]:
        """Cached schema for an exact fingerprint, or None."""
        return self.cache.get(mcp_name, config_hash)

    def invalidate_schema(self, mcp_name: str) -> int:
        """Drop every cached schema of a server.

        Returns:
            Number of entries removed.
        """
        removed = self.cache.invalidate(mcp_name)
        logger.info(f"Invalidated {removed} schema cache entr{'y' if removed == 1 else 'ies'} for {mcp_name}")
        return removed

    # ------------------------------------------------------------------
    # Server configuration
    # ------------------------------------------------------------------

    async def register_server(self, mcp_name: str, config: ToolServerConfig) -> None:
        """Register or update a server's launch configuration.

        Args:
            mcp_name: Tool server name.
            config: Launch configuration.
        """
        self.store.upsert_server(mcp_name, config)
        self.invalidate_schema(mcp_name)
        await self.pool.close(mcp_name)

    async def remove_server(self, mcp_name: str) -> bool:
        """Forget a server: launch configuration, security override, schemas and connection.

        Returns:
            True when the server was registered or configured.
        """
        removed = self.store.remove_server(mcp_name)
        removed = self.store.remove_server_config(mcp_name) or removed
        self.invalidate_schema(mcp_name)
        await self.pool.close(mcp_name)
        return removed

    async def shutdown(self) -> None:
        """Cancel in-flight runs and close every tool server connection."""
        tasks = [run.task for run in self._runs.values() if run.task is not None and not run.task.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        await self.pool.close_all()
        logger.info("Execution supervisor shut down")
