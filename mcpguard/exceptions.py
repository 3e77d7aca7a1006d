# -*- coding: utf-8 -*-
"""Location: ./mcpguard/exceptions.py
Copyright 2026
SPDX-License-Identifier: Apache-2.0

Exception hierarchy for MCP Guard.

Every error carries an ``ErrorKind`` and converts to the ``ExecutionError``
model placed in an ``ExecutionResult``.

Examples:
    >>> err = BuildError("Unexpected token", file="main.ts", line=3, column=7)
    >>> err.kind.value
    'BuildError'
    >>> err.to_execution_error().phase.value
    'Building'
    >>> str(err)
    'Unexpected token'
"""

# Standard
from typing import Any, Dict, Optional

# First-Party
from mcpguard.models import ErrorKind, ExecutionPhase
from mcpguard.schemas import ExecutionError


class MCPGuardError(Exception):
    """Base class for MCP Guard errors."""

    kind: ErrorKind = ErrorKind.RUNTIME_ERROR

    def __init__(
        self,
        message: str,
        *,
        file: Optional[str] = None,
        line: Optional[int] = None,
        column: Optional[int] = None,
        stack: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Initialize the error.

        Args:
            message: Human readable description.
            file: Source file the error points at, if known.
            line: 1-based line, if known.
            column: 1-based column, if known.
            stack: Stack trace from the isolated runtime, if any.
            details: Extra structured context.
        """
        super().__init__(message)
        self.message = message
        self.file = file
        self.line = line
        self.column = column
        self.stack = stack
        self.details = details or {}

    @property
    def phase(self) -> Optional[ExecutionPhase]:
        """Phase this error originates from."""
        return self.kind.origin_phase

    def to_execution_error(self, phase: Optional[ExecutionPhase] = None) -> ExecutionError:
        """Convert to the result-level error model.

        Args:
            phase: Overrides the phase derived from the error kind.

        Returns:
            ExecutionError: Serializable error description.
        """
        return ExecutionError(
            kind=self.kind,
            message=self.message,
            phase=phase or self.phase,
            file=self.file,
            line=self.line,
            column=self.column,
            stack=self.stack,
            details=self.details,
        )


class PolicyViolationError(MCPGuardError):
    """Script rejected by the pre-flight validator."""

    kind = ErrorKind.POLICY_VIOLATION


class GenerationError(MCPGuardError):
    """Artifact could not be assembled or written."""

    kind = ErrorKind.GENERATION_ERROR


class RuntimeUnavailableError(GenerationError):
    """The runtime executable for the requested language is missing."""


class BuildError(MCPGuardError):
    """The build toolchain rejected the artifact."""

    kind = ErrorKind.BUILD_ERROR


class SandboxRuntimeError(MCPGuardError):
    """Uncaught error raised by the script inside the isolated runtime."""

    kind = ErrorKind.RUNTIME_ERROR


class ExecutionTimeoutError(MCPGuardError):
    """The isolated runtime exceeded its wall-clock budget."""

    kind = ErrorKind.TIMEOUT_ERROR


class UnknownToolError(MCPGuardError):
    """Tool name not present in the server schema."""

    kind = ErrorKind.UNKNOWN_TOOL


class CallBudgetExceededError(MCPGuardError):
    """Tool call ledger reached ``limits.max_tool_calls``."""

    kind = ErrorKind.CALL_BUDGET_EXCEEDED


class ToolServerError(MCPGuardError):
    """Tool server returned an error or could not be reached."""

    kind = ErrorKind.TOOL_ERROR


class DuplicateExecutionError(MCPGuardError):
    """A run with the same request id is already in flight."""

    kind = ErrorKind.DUPLICATE_EXECUTION


class ExecutionCancelledError(MCPGuardError):
    """The run was cancelled by its caller."""

    kind = ErrorKind.CANCELLED


class SettingsStoreError(MCPGuardError):
    """Settings document could not be read or written."""

    kind = ErrorKind.CONFIGURATION_ERROR
