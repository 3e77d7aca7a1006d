# -*- coding: utf-8 -*-
"""Location: ./mcpguard/services/metrics_service.py
Copyright 2026
SPDX-License-Identifier: Apache-2.0

Execution metrics.

Aggregates per-execution outcomes in memory and, when a settings store is
attached, keeps a per-server rollup in ``tokenMetricsCache`` and the most
recent failure of each server in ``assessmentErrorsCache``.

Running several tool calls inside one script replaces a round trip per
call through the agent's context. The saving is estimated with fixed
per-call costs:

    saved = max(0, calls * 1500 - (300 + calls * 100))

Examples:
    >>> estimate_tokens_saved(0)
    0
    >>> estimate_tokens_saved(3)
    3900
"""

# Standard
from datetime import datetime, timezone
import threading
from typing import Any, Dict, Optional

# First-Party
from mcpguard.models import ExecutionPhase
from mcpguard.schemas import ExecutionResult
from mcpguard.services.logging_service import LoggingService
from mcpguard.services.settings_store import ASSESSMENT_ERRORS_SECTION, SettingsStore, TOKEN_METRICS_SECTION

logger = LoggingService().get_logger(__name__)

TOKENS_PER_DIRECT_CALL = 1500
SCRIPT_OVERHEAD_TOKENS = 300
TOKENS_PER_BRIDGED_CALL = 100


def estimate_tokens_saved(tool_calls: int) -> int:
    """Estimated context tokens saved by one execution.

    Args:
        tool_calls: Tool calls forwarded by the execution.

    Returns:
        Non-negative token estimate.
    """
    if tool_calls <= 0:
        return 0
    return max(0, tool_calls * TOKENS_PER_DIRECT_CALL - (SCRIPT_OVERHEAD_TOKENS + tool_calls * TOKENS_PER_BRIDGED_CALL))


class MetricsService:
    """Thread-safe execution counters.

    Examples:
        >>> from mcpguard.models import ExecutionPhase
        >>> from mcpguard.schemas import ExecutionResult
        >>> service = MetricsService()
        >>> service.record("demo", ExecutionResult(request_id="a", final_phase=ExecutionPhase.COMPLETED, wall_time_ms=40))
        >>> service.summary()["success_rate"]
        1.0
    """

    def __init__(self, store: Optional[SettingsStore] = None) -> None:
        """Initialize the service.

        Args:
            store: Settings document for per-server rollups; None keeps metrics in memory.
        """
        self._store = store
        self._lock = threading.Lock()
        self._total = 0
        self._successes = 0
        self._wall_time_ms = 0
        self._tool_calls = 0
        self._tokens_saved = 0
        self._failures_by_kind: Dict[str, int] = {}

    def record(self, mcp_name: str, result: ExecutionResult) -> None:
        """Account for one finished execution.

        Args:
            mcp_name: Target tool server.
            result: Final result.
        """
        calls = sum(1 for r in result.tool_call_log if r.counts_against_budget)
        saved = estimate_tokens_saved(calls)
        with self._lock:
            self._total += 1
            self._wall_time_ms += result.wall_time_ms
            self._tool_calls += calls
            self._tokens_saved += saved
            if result.final_phase is ExecutionPhase.COMPLETED:
                self._successes += 1
            elif result.error is not None:
                kind = result.error.kind.value
                self._failures_by_kind[kind] = self._failures_by_kind.get(kind, 0) + 1

        if self._store is not None:
            self._persist(mcp_name, result, calls, saved)

    def _persist(self, mcp_name: str, result: ExecutionResult, calls: int, saved: int) -> None:
        now = datetime.now(timezone.utc).isoformat()
        rollups = self._store.read_section(TOKEN_METRICS_SECTION, {}) or {}
        current = rollups.get(mcp_name) or {}
        rollups[mcp_name] = {
            "executions": int(current.get("executions", 0)) + 1,
            "toolCalls": int(current.get("toolCalls", 0)) + calls,
            "estimatedTokensSaved": int(current.get("estimatedTokensSaved", 0)) + saved,
            "lastUpdated": now,
        }
        self._store.write_section(TOKEN_METRICS_SECTION, rollups)

        if result.error is not None:
            errors = self._store.read_section(ASSESSMENT_ERRORS_SECTION, {}) or {}
            errors[mcp_name] = {
                "kind": result.error.kind.value,
                "message": result.error.message,
                "phase": result.failed_phase.value if result.failed_phase else None,
                "requestId": result.request_id,
                "recordedAt": now,
            }
            self._store.write_section(ASSESSMENT_ERRORS_SECTION, errors)

    def summary(self) -> Dict[str, Any]:
        """Aggregated view.

        Returns:
            Totals, success rate, average wall time, tool calls and tokens saved.
        """
        with self._lock:
            total = self._total
            return {
                "total_executions": total,
                "successful_executions": self._successes,
                "failed_executions": total - self._successes,
                "success_rate": self._successes / total if total else 0.0,
                "avg_wall_time_ms": self._wall_time_ms / total if total else 0.0,
                "total_tool_calls": self._tool_calls,
                "estimated_tokens_saved": self._tokens_saved,
                "failures_by_kind": dict(self._failures_by_kind),
            }

    def server_rollups(self) -> Dict[str, Any]:
        """Persisted per-server rollups (empty without a store)."""
        if self._store is None:
            return {}
        return self._store.read_section(TOKEN_METRICS_SECTION, {}) or {}

    def reset(self) -> None:
        """Zero the in-memory counters."""
        with self._lock:
            self._total = self._successes = self._wall_time_ms = self._tool_calls = self._tokens_saved = 0
            self._failures_by_kind = {}
        logger.debug("Execution metrics reset")
