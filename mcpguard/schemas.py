# -*- coding: utf-8 -*-
"""Location: ./mcpguard/schemas.py
Copyright 2026
SPDX-License-Identifier: Apache-2.0

Pydantic models for MCP Guard.

Three groups live here:
- the settings document (camelCase on disk, shared with the configuration tooling)
- the resolved, immutable isolation policy handed to the sandbox runner
- execution requests, results, tool descriptors and schema cache entries
"""

# Future
from __future__ import annotations

# Standard
from datetime import datetime, timezone
from typing import Any, Dict, FrozenSet, List, Literal, Optional, Tuple

# Third-Party
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

# First-Party
from mcpguard.models import ErrorKind, ExecutionPhase

SERVER_NAME_PATTERN = r"^[A-Za-z0-9_-]+$"
Language = Literal["javascript", "typescript", "python"]


def _utc_now() -> datetime:
    """Timezone-aware current time."""
    return datetime.now(timezone.utc)


def normalize_host(host: str) -> str:
    """Lower-case a host name and strip surrounding whitespace and trailing dots.

    Args:
        host: Raw host entry.

    Returns:
        Normalized host.

    Examples:
        >>> normalize_host(" API.Example.com. ")
        'api.example.com'
        >>> normalize_host("*.Example.org")
        '*.example.org'
    """
    return host.strip().rstrip(".").lower()


# ---------------------------------------------------------------------------
# Settings document models
# ---------------------------------------------------------------------------


class _DocumentModel(BaseModel):
    """Base for settings document sections (camelCase aliases on disk)."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class NetworkSettings(_DocumentModel):
    """Network section of a security configuration."""

    enabled: bool = Field(False, description="Whether outbound network access is granted")
    allowlist: List[str] = Field(default_factory=list, description="Hosts reachable when enabled; '*.domain' wildcards allowed")
    allow_localhost: bool = Field(False, alias="allowLocalhost", description="Permit loopback hosts")


class FileSystemSettings(_DocumentModel):
    """Filesystem section of a security configuration."""

    enabled: bool = Field(False, description="Whether filesystem access is granted")
    read_paths: List[str] = Field(default_factory=list, alias="readPaths")
    write_paths: List[str] = Field(default_factory=list, alias="writePaths")


class ResourceLimitSettings(_DocumentModel):
    """Resource limits section of a security configuration."""

    max_execution_time_ms: int = Field(30000, alias="maxExecutionTimeMs", ge=1)
    max_memory_mb: int = Field(128, alias="maxMemoryMB", ge=1)
    max_mcp_calls: int = Field(100, alias="maxMCPCalls", ge=0)


class SecurityDefaults(_DocumentModel):
    """Global default capability envelope."""

    network: NetworkSettings = Field(default_factory=NetworkSettings)
    file_system: FileSystemSettings = Field(default_factory=FileSystemSettings, alias="fileSystem")
    resource_limits: ResourceLimitSettings = Field(default_factory=ResourceLimitSettings, alias="resourceLimits")


class ServerSecurityConfig(_DocumentModel):
    """Per tool-server override of the global defaults.

    Only the fields actually present in the document override the defaults;
    the resolver reads ``model_fields_set`` on each section.
    """

    id: Optional[str] = None
    mcp_name: str = Field(..., alias="mcpName", min_length=1, max_length=100, pattern=SERVER_NAME_PATTERN)
    is_guarded: bool = Field(True, alias="isGuarded")
    network: Optional[NetworkSettings] = None
    file_system: Optional[FileSystemSettings] = Field(None, alias="fileSystem")
    resource_limits: Optional[ResourceLimitSettings] = Field(None, alias="resourceLimits")
    last_modified: Optional[str] = Field(None, alias="lastModified")


class GlobalSecuritySettings(_DocumentModel):
    """The policy part of the settings document."""

    enabled: bool = True
    defaults: SecurityDefaults = Field(default_factory=SecurityDefaults)
    mcp_configs: List[ServerSecurityConfig] = Field(default_factory=list, alias="mcpConfigs")


class ToolServerConfig(_DocumentModel):
    """How to launch a tool server speaking MCP over stdio."""

    command: str = Field(..., min_length=1, description="Executable that starts the tool server")
    args: List[str] = Field(default_factory=list)
    env: Dict[str, str] = Field(default_factory=dict)
    cwd: Optional[str] = None


# ---------------------------------------------------------------------------
# Resolved isolation policy
# ---------------------------------------------------------------------------


class NetworkPolicy(BaseModel):
    """Network capability. ``allowed_hosts is None`` is the only deny-all form."""

    model_config = ConfigDict(frozen=True)

    allowed_hosts: Optional[FrozenSet[str]] = None
    allow_localhost: bool = False

    @field_validator("allowed_hosts", mode="before")
    @classmethod
    def _normalize_hosts(cls, value: Any) -> Any:
        """Normalize host entries; an empty collection collapses to None."""
        if value is None:
            return None
        hosts = frozenset(normalize_host(str(h)) for h in value if str(h).strip())
        return hosts or None


class FileSystemPolicy(BaseModel):
    """Filesystem capability."""

    model_config = ConfigDict(frozen=True)

    enabled: bool = False
    read_paths: Tuple[str, ...] = ()
    write_paths: Tuple[str, ...] = ()

    @model_validator(mode="after")
    def _paths_require_enabled(self) -> "FileSystemPolicy":
        """A disabled filesystem grants no path."""
        if not self.enabled and (self.read_paths or self.write_paths):
            raise ValueError("filesystem paths granted while filesystem access is disabled")
        return self


class ResourceLimits(BaseModel):
    """Compute and call-volume ceilings."""

    model_config = ConfigDict(frozen=True)

    cpu_ms: int = Field(30000, ge=1)
    memory_mb: int = Field(128, ge=1)
    max_tool_calls: int = Field(100, ge=0)


class IsolationPolicy(BaseModel):
    """Capability envelope of one execution; immutable once built."""

    model_config = ConfigDict(frozen=True)

    mcp_name: str
    isolated: bool = True
    network: NetworkPolicy = Field(default_factory=NetworkPolicy)
    file_system: FileSystemPolicy = Field(default_factory=FileSystemPolicy)
    limits: ResourceLimits = Field(default_factory=ResourceLimits)

    @property
    def network_granted(self) -> bool:
        """Whether any outbound host is reachable."""
        return self.network.allowed_hosts is not None or self.network.allow_localhost


# ---------------------------------------------------------------------------
# Tool schemas
# ---------------------------------------------------------------------------


class ToolDescriptor(BaseModel):
    """A callable tool as listed by its server."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    name: str = Field(..., min_length=1)
    description: Optional[str] = None
    input_schema: Dict[str, Any] = Field(default_factory=lambda: {"type": "object", "properties": {}}, alias="inputSchema")


class SchemaCacheEntry(BaseModel):
    """Cached tool list of one (server, configuration fingerprint) pair."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    mcp_name: str = Field(..., alias="mcpName")
    config_hash: str = Field(..., alias="configHash")
    tools: Tuple[ToolDescriptor, ...] = ()
    tool_names: FrozenSet[str] = Field(default_factory=frozenset, alias="toolNames")
    cached_at: datetime = Field(default_factory=_utc_now, alias="cachedAt")

    @model_validator(mode="before")
    @classmethod
    def _derive_tool_names(cls, data: Any) -> Any:
        """Fill ``tool_names`` from ``tools`` so the two never disagree."""
        if not isinstance(data, dict):
            return data
        tools = data.get("tools") or ()
        if not isinstance(tools, (list, tuple)):
            return data
        names = []
        for tool in tools:
            if isinstance(tool, ToolDescriptor):
                names.append(tool.name)
            elif isinstance(tool, dict):
                names.append(tool.get("name"))
        data = {k: v for k, v in data.items() if k not in ("tool_names", "toolNames")}
        data["tool_names"] = frozenset(n for n in names if n)
        return data

    @property
    def key(self) -> Tuple[str, str]:
        """Cache key."""
        return (self.mcp_name, self.config_hash)

    def to_document(self) -> Dict[str, Any]:
        """Serialize for the settings document."""
        return {
            "mcpName": self.mcp_name,
            "configHash": self.config_hash,
            "tools": [t.model_dump(mode="json", by_alias=True, exclude_none=True) for t in self.tools],
            "toolNames": sorted(self.tool_names),
            "cachedAt": self.cached_at.isoformat(),
        }


# ---------------------------------------------------------------------------
# Execution models
# ---------------------------------------------------------------------------


class ExecutionRequest(BaseModel):
    """One logical execution submitted by a caller."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(..., min_length=1, max_length=128, description="Fingerprint used for deduplication and cancellation")
    script_source: str = Field(..., description="Untrusted script body")
    target_server: str = Field(..., min_length=1, max_length=100, pattern=SERVER_NAME_PATTERN)
    policy: Optional[IsolationPolicy] = Field(None, description="Resolved policy; resolved from settings when omitted")
    input_args: Dict[str, Any] = Field(default_factory=dict)
    language: Optional[Language] = None


class ToolCallError(BaseModel):
    """Failure of a single bridged tool call."""

    model_config = ConfigDict(frozen=True)

    kind: ErrorKind
    message: str


class ToolCallRecord(BaseModel):
    """Audit entry of one tool call attempt."""

    model_config = ConfigDict(frozen=True)

    sequence_number: int = Field(..., ge=1)
    tool_name: str
    arguments: Dict[str, Any] = Field(default_factory=dict)
    outcome: Literal["result", "error"]
    result: Any = None
    error: Optional[ToolCallError] = None
    timestamp: datetime = Field(default_factory=_utc_now)
    latency_ms: int = 0
    counted: Optional[bool] = Field(None, description="Whether the attempt consumed budget; derived from the outcome when unset")

    @property
    def counts_against_budget(self) -> bool:
        """Budget denials are logged but do not consume budget."""
        if self.counted is not None:
            return self.counted
        return self.error is None or self.error.kind is not ErrorKind.CALL_BUDGET_EXCEEDED


class ExecutionError(BaseModel):
    """Phase-tagged failure description carried by a result."""

    model_config = ConfigDict(frozen=True)

    kind: ErrorKind
    message: str
    phase: Optional[ExecutionPhase] = None
    file: Optional[str] = None
    line: Optional[int] = None
    column: Optional[int] = None
    stack: Optional[str] = None
    details: Dict[str, Any] = Field(default_factory=dict)


class ExecutionResult(BaseModel):
    """Final outcome of one execution."""

    model_config = ConfigDict(frozen=True)

    request_id: str
    final_phase: ExecutionPhase
    failed_phase: Optional[ExecutionPhase] = None
    stdout: str = ""
    stderr: str = ""
    result: Any = None
    error: Optional[ExecutionError] = None
    tool_call_log: Tuple[ToolCallRecord, ...] = ()
    wall_time_ms: int = 0

    @property
    def succeeded(self) -> bool:
        """True when the execution reached ``Completed``."""
        return self.final_phase is ExecutionPhase.COMPLETED
