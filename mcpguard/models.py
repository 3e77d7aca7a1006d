# -*- coding: utf-8 -*-
"""Location: ./mcpguard/models.py
Copyright 2026
SPDX-License-Identifier: Apache-2.0

Enumerations shared across MCP Guard.
"""

# Standard
from enum import Enum
from typing import FrozenSet, Optional


class LogLevel(str, Enum):
    """RFC 5424 severity levels."""

    DEBUG = "debug"
    INFO = "info"
    NOTICE = "notice"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"
    ALERT = "alert"
    EMERGENCY = "emergency"


class ExecutionPhase(str, Enum):
    """Lifecycle phase of one execution.

    Phases advance strictly forward. ``FAILED`` is terminal and reachable
    from any non-terminal phase.

    Examples:
        >>> ExecutionPhase.GENERATING.can_advance_to(ExecutionPhase.BUILDING)
        True
        >>> ExecutionPhase.EXECUTING.can_advance_to(ExecutionPhase.BUILDING)
        False
        >>> ExecutionPhase.BUILDING.can_advance_to(ExecutionPhase.FAILED)
        True
        >>> ExecutionPhase.COMPLETED.can_advance_to(ExecutionPhase.FAILED)
        False
    """

    GENERATING = "Generating"
    BUILDING = "Building"
    EXECUTING = "Executing"
    COMPLETED = "Completed"
    FAILED = "Failed"

    @property
    def is_terminal(self) -> bool:
        """Whether no further transition is possible."""
        return self in _TERMINAL_PHASES

    def can_advance_to(self, target: "ExecutionPhase") -> bool:
        """Check whether ``target`` is a legal next phase.

        Args:
            target: Candidate next phase.

        Returns:
            True when the transition keeps the lifecycle monotonic.
        """
        if self.is_terminal:
            return False
        if target is ExecutionPhase.FAILED:
            return True
        return _PHASE_ORDER.index(target) == _PHASE_ORDER.index(self) + 1


_PHASE_ORDER = (ExecutionPhase.GENERATING, ExecutionPhase.BUILDING, ExecutionPhase.EXECUTING, ExecutionPhase.COMPLETED)
_TERMINAL_PHASES: FrozenSet[ExecutionPhase] = frozenset({ExecutionPhase.COMPLETED, ExecutionPhase.FAILED})


class ErrorKind(str, Enum):
    """Classification of an execution or tool-call failure."""

    POLICY_VIOLATION = "PolicyViolation"
    GENERATION_ERROR = "GenerationError"
    BUILD_ERROR = "BuildError"
    RUNTIME_ERROR = "RuntimeError"
    TIMEOUT_ERROR = "TimeoutError"
    UNKNOWN_TOOL = "UnknownTool"
    CALL_BUDGET_EXCEEDED = "CallBudgetExceeded"
    DUPLICATE_EXECUTION = "DuplicateExecution"
    CANCELLED = "Cancelled"
    TOOL_ERROR = "ToolError"
    CONFIGURATION_ERROR = "ConfigurationError"

    @property
    def origin_phase(self) -> Optional[ExecutionPhase]:
        """Phase that produces this kind of failure, if phase-bound.

        Examples:
            >>> ErrorKind.BUILD_ERROR.origin_phase
            <ExecutionPhase.BUILDING: 'Building'>
            >>> ErrorKind.POLICY_VIOLATION.origin_phase is None
            True
        """
        return _ORIGIN_PHASES.get(self)


_ORIGIN_PHASES = {
    ErrorKind.GENERATION_ERROR: ExecutionPhase.GENERATING,
    ErrorKind.BUILD_ERROR: ExecutionPhase.BUILDING,
    ErrorKind.RUNTIME_ERROR: ExecutionPhase.EXECUTING,
    ErrorKind.TIMEOUT_ERROR: ExecutionPhase.EXECUTING,
    ErrorKind.UNKNOWN_TOOL: ExecutionPhase.EXECUTING,
    ErrorKind.CALL_BUDGET_EXCEEDED: ExecutionPhase.EXECUTING,
    ErrorKind.TOOL_ERROR: ExecutionPhase.EXECUTING,
}
