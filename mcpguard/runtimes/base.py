# -*- coding: utf-8 -*-
"""Location: ./mcpguard/runtimes/base.py
Copyright 2026
SPDX-License-Identifier: Apache-2.0

Base interfaces for isolated runtimes.

A runtime knows how to turn a validated script into an artifact, which
command builds (checks) it, which command runs it under a policy, and how
to map toolchain locations back onto the script. Process lifecycle, I/O and
timeouts belong to the sandbox runner.
"""

# Standard
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, FrozenSet, List, Mapping, Optional, Sequence, Tuple

# First-Party
from mcpguard.schemas import IsolationPolicy


@dataclass(frozen=True)
class Artifact:
    """Generated files of one execution."""

    language: str
    workspace: Path
    entrypoint: Path
    build_target: Path
    script_name: str
    secret: str
    line_offset: int
    column_offset: int
    script_line_count: int
    extra_files: Tuple[Path, ...] = ()


@dataclass(frozen=True)
class BuildDiagnostic:
    """One diagnostic reported by a build toolchain."""

    message: str
    file: Optional[str] = None
    line: Optional[int] = None
    column: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to serializable dict."""
        return {"message": self.message, "file": self.file, "line": self.line, "column": self.column}


@dataclass
class RuntimeCapabilities:
    """What a runtime can enforce by itself."""

    name: str
    languages: FrozenSet[str]
    enforces_network_allowlist: bool = False
    enforces_filesystem_paths: bool = False
    enforces_memory_limit: bool = False
    notes: List[str] = field(default_factory=list)


class SandboxRuntime(ABC):
    """Abstract isolated runtime."""

    name: str = "runtime"

    @abstractmethod
    def get_capabilities(self) -> RuntimeCapabilities:
        """Return runtime capabilities."""

    @abstractmethod
    def is_available(self) -> bool:
        """Return whether the runtime executable is installed."""

    @abstractmethod
    def generate(
        self,
        workspace: Path,
        script: str,
        language: str,
        input_args: Mapping[str, Any],
        policy: IsolationPolicy,
        secret: str,
    ) -> Artifact:
        """Write the harness-wrapped script into ``workspace``.

        Args:
            workspace: Per-execution scratch directory.
            script: Validated script body.
            language: Script language.
            input_args: Declared arguments exposed to the script.
            policy: Resolved policy (filesystem helpers, limits).
            secret: Token tagging bridge protocol messages.

        Returns:
            Artifact: Paths and offsets of the generated files.
        """

    @abstractmethod
    def build_command(self, artifact: Artifact) -> Optional[List[str]]:
        """Command that checks the artifact, or None when no build step exists."""

    @abstractmethod
    def parse_build_diagnostics(self, artifact: Artifact, stdout: str, stderr: str) -> List[BuildDiagnostic]:
        """Extract diagnostics from toolchain output, mapped onto the script."""

    @abstractmethod
    def run_command(self, artifact: Artifact, policy: IsolationPolicy) -> List[str]:
        """Command that executes the artifact under ``policy``."""

    def environment(self, artifact: Artifact) -> Dict[str, str]:
        """Environment of toolchain and runtime processes.

        Nothing is inherited from the host.

        Args:
            artifact: Artifact being built or run.

        Returns:
            Environment mapping.
        """
        return {"NO_COLOR": "1"}

    def map_location(self, artifact: Artifact, line: Optional[int], column: Optional[int]) -> Tuple[Optional[str], Optional[int], Optional[int]]:
        """Translate an artifact location into a script location.

        Args:
            artifact: Artifact the location refers to.
            line: 1-based line in the entrypoint/build target.
            column: 1-based column, if known.

        Returns:
            (file, line, column); the file is the script name when the
            location falls inside the script, else the artifact file name.
        """
        if line is None:
            return artifact.script_name, None, None
        script_line = line - artifact.line_offset
        if 1 <= script_line <= artifact.script_line_count:
            script_column = max(1, column - artifact.column_offset) if column is not None else None
            return artifact.script_name, script_line, script_column
        return artifact.build_target.name, line, column

    def locate_runtime_error(self, artifact: Artifact, error: Mapping[str, Any]) -> Tuple[Optional[str], Optional[int], Optional[int]]:
        """Locate a runtime error reported by the harness.

        Args:
            artifact: Artifact that raised.
            error: Error payload from the harness (``line``/``column`` in artifact coordinates).

        Returns:
            (file, line, column) in script coordinates when possible.
        """
        line = error.get("line")
        column = error.get("column")
        return self.map_location(artifact, int(line) if isinstance(line, int) else None, int(column) if isinstance(column, int) else None)


def indent_script(script: str, indent: str) -> Tuple[List[str], int]:
    """Indent every script line for embedding in a function body.

    Args:
        script: Script text.
        indent: Prefix added to each line.

    Returns:
        (indented lines, number of script lines)

    Examples:
        >>> indent_script("a = 1\\nreturn a", "    ")
        (['    a = 1', '    return a'], 2)
        >>> indent_script("", "  ")
        (['  '], 1)
    """
    lines: Sequence[str] = script.splitlines() or [""]
    return [f"{indent}{line}" for line in lines], len(lines)
