# -*- coding: utf-8 -*-
"""Location: ./mcpguard/services/tool_bridge.py
Copyright 2026
SPDX-License-Identifier: Apache-2.0

Tool Bridge.

The only path from sandboxed code to a real tool server. Each call is
checked against the server's cached schema and the per-execution call
ledger before it is forwarded, and every attempt is recorded.

Denials (unknown tool, exhausted budget) and tool failures are not raised:
they are returned as ``{"ok": False, "error": {...}}`` so the script can
handle them and keep running.

Examples:
    >>> import asyncio
    >>> from mcpguard.schemas import IsolationPolicy, ResourceLimits, SchemaCacheEntry, ToolDescriptor
    >>> policy = IsolationPolicy(mcp_name="demo", limits=ResourceLimits(max_tool_calls=1))
    >>> schema = SchemaCacheEntry(mcp_name="demo", config_hash="h", tools=[ToolDescriptor(name="echo")])
    >>> bridge = ToolBridge("run-1", policy, schema, connection=None)
    >>> asyncio.run(bridge.call("missing", {}))["error"]["kind"]
    'UnknownTool'
    >>> asyncio.run(bridge.call("echo", {}))["error"]["kind"]
    'CallBudgetExceeded'
    >>> [r.tool_name for r in bridge.records]
    ['missing', 'echo']
"""

# Standard
from datetime import datetime, timezone
import time
from typing import Any, Dict, List, Optional, Tuple

# First-Party
from mcpguard.exceptions import CallBudgetExceededError, MCPGuardError, ToolServerError, UnknownToolError
from mcpguard.models import ErrorKind
from mcpguard.schemas import IsolationPolicy, SchemaCacheEntry, ToolCallError, ToolCallRecord
from mcpguard.services.logging_service import LoggingService
from mcpguard.services.tool_server import ToolServerConnection

logger = LoggingService().get_logger(__name__)
security_logger = LoggingService().get_security_logger()


class ToolBridge:
    """Per-execution relay between the sandbox and one tool server.

    A bridge is created for a single execution and never shared. Budget
    reservation happens without an intervening ``await``, so concurrent
    calls from one script cannot overrun ``limits.max_tool_calls``.
    """

    def __init__(
        self,
        request_id: str,
        policy: IsolationPolicy,
        schema: SchemaCacheEntry,
        connection: Optional[ToolServerConnection],
    ) -> None:
        """Initialize the bridge.

        Args:
            request_id: Execution the bridge belongs to.
            policy: Resolved policy (for ``limits.max_tool_calls``).
            schema: Cached tool list of the target server.
            connection: Live tool-server client; None when no server is reachable.
        """
        self.request_id = request_id
        self._policy = policy
        self._schema = schema
        self._connection = connection
        self._records: List[ToolCallRecord] = []
        self._next_sequence = 1
        self._consumed = 0

    @property
    def records(self) -> Tuple[ToolCallRecord, ...]:
        """Call log ordered by sequence number."""
        return tuple(sorted(self._records, key=lambda r: r.sequence_number))

    @property
    def calls_consumed(self) -> int:
        """Attempts counted against the budget so far."""
        return self._consumed

    def _reserve(self, tool_name: str) -> Tuple[int, bool, Optional[MCPGuardError]]:
        """Assign a sequence number and decide admission.

        The schema is checked first, then the ledger. An unknown name takes
        a budget slot while one is left; a budget denial never does.

        Returns:
            (sequence number, whether budget was consumed, denial or None)
        """
        sequence = self._next_sequence
        self._next_sequence += 1
        limit = self._policy.limits.max_tool_calls
        has_budget = self._consumed < limit
        if has_budget:
            self._consumed += 1
        if tool_name not in self._schema.tool_names:
            return sequence, has_budget, UnknownToolError(f"Unknown tool '{tool_name}' for server {self._policy.mcp_name}")
        if not has_budget:
            return sequence, False, CallBudgetExceededError(f"Tool call budget of {limit} exhausted; '{tool_name}' was not forwarded")
        return sequence, True, None

    def _record(
        self,
        sequence: int,
        tool_name: str,
        arguments: Dict[str, Any],
        started: float,
        result: Any = None,
        error: Optional[MCPGuardError] = None,
        counted: bool = True,
    ) -> None:
        self._records.append(
            ToolCallRecord(
                sequence_number=sequence,
                tool_name=tool_name,
                arguments=arguments,
                outcome="error" if error is not None else "result",
                result=None if error is not None else result,
                error=ToolCallError(kind=error.kind, message=error.message) if error is not None else None,
                timestamp=datetime.now(timezone.utc),
                latency_ms=int((time.perf_counter() - started) * 1000),
                counted=counted,
            )
        )

    async def call(self, tool_name: str, arguments: Any) -> Dict[str, Any]:
        """Relay one tool call from the sandbox.

        Args:
            tool_name: Tool requested by the script.
            arguments: Arguments supplied by the script.

        Returns:
            ``{"ok": True, "result": value}`` or ``{"ok": False, "error": {"kind", "message"}}``.
        """
        started = time.perf_counter()
        tool_name = str(tool_name or "")
        args: Dict[str, Any] = arguments if isinstance(arguments, dict) else {}
        sequence, counted, denial = self._reserve(tool_name)

        if denial is None and not isinstance(arguments, (dict, type(None))):
            denial = ToolServerError(f"Arguments for '{tool_name}' must be an object")
        if denial is not None:
            if denial.kind in (ErrorKind.UNKNOWN_TOOL, ErrorKind.CALL_BUDGET_EXCEEDED):
                security_logger.warning(f"Execution {self.request_id}: denied tool call #{sequence} {tool_name!r}: {denial.kind.value}")
            self._record(sequence, tool_name, args, started, error=denial, counted=counted)
            return self._denial_payload(denial)

        if self._connection is None:
            error = ToolServerError(f"No connection to tool server {self._policy.mcp_name}")
            self._record(sequence, tool_name, args, started, error=error)
            return self._denial_payload(error)

        try:
            result = await self._connection.call_tool(tool_name, args)
        except ToolServerError as exc:
            self._record(sequence, tool_name, args, started, error=exc)
            return self._denial_payload(exc)
        except Exception as exc:  # the script receives the failure; the execution goes on
            logger.exception(f"Execution {self.request_id}: tool {tool_name} failed unexpectedly")
            error = ToolServerError(f"Tool '{tool_name}' failed: {exc}")
            self._record(sequence, tool_name, args, started, error=error)
            return self._denial_payload(error)

        self._record(sequence, tool_name, args, started, result=result)
        logger.debug(f"Execution {self.request_id}: tool call #{sequence} {tool_name} succeeded")
        return {"ok": True, "result": result}

    @staticmethod
    def _denial_payload(error: MCPGuardError) -> Dict[str, Any]:
        return {"ok": False, "error": {"kind": error.kind.value, "message": error.message}}
