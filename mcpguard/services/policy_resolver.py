# -*- coding: utf-8 -*-
"""Location: ./mcpguard/services/policy_resolver.py
Copyright 2026
SPDX-License-Identifier: Apache-2.0

Policy Resolver.

Merges the per-server security override with the global defaults into one
immutable ``IsolationPolicy``. Fields present in the override replace the
matching default field; everything else is inherited. A server that was
never configured still gets a complete policy built from the defaults.

Examples:
    >>> from mcpguard.schemas import ServerSecurityConfig
    >>> resolver = PolicyResolver()
    >>> override = ServerSecurityConfig.model_validate(
    ...     {"mcpName": "github", "network": {"enabled": True, "allowlist": ["API.GitHub.com."]},
    ...      "resourceLimits": {"maxMCPCalls": 5}})
    >>> policy = resolver.resolve("github", override=override)
    >>> sorted(policy.network.allowed_hosts)
    ['api.github.com']
    >>> policy.limits.max_tool_calls, policy.limits.cpu_ms
    (5, 30000)
    >>> resolver.resolve("github").network.allowed_hosts is None
    True
"""

# Standard
from typing import Any, Dict, List, Optional, TypeVar

# Third-Party
from pydantic import BaseModel

# First-Party
from mcpguard.schemas import (
    FileSystemPolicy,
    FileSystemSettings,
    IsolationPolicy,
    NetworkPolicy,
    NetworkSettings,
    normalize_host,
    ResourceLimits,
    ResourceLimitSettings,
    SecurityDefaults,
    ServerSecurityConfig,
)
from mcpguard.services.logging_service import LoggingService
from mcpguard.services.settings_store import default_security_defaults, SettingsStore
from mcpguard.utils.hosts import is_valid_host_entry

logger = LoggingService().get_logger(__name__)

SectionT = TypeVar("SectionT", bound=BaseModel)


def _merge_section(default: SectionT, override: Optional[BaseModel]) -> SectionT:
    """Overlay the explicitly set fields of ``override`` onto ``default``.

    Args:
        default: Fully populated default section.
        override: Partially populated override section, or None.

    Returns:
        A new section of the default's type.
    """
    merged: Dict[str, Any] = default.model_dump()
    if override is not None:
        merged = {**merged, **override.model_dump(exclude_unset=True)}
    return type(default).model_validate(merged)


def _clean_allowlist(mcp_name: str, allowlist: List[str]) -> List[str]:
    hosts = []
    for entry in allowlist:
        if is_valid_host_entry(entry):
            hosts.append(normalize_host(entry))
        else:
            logger.warning(f"Ignoring invalid allowlist entry {entry!r} for {mcp_name}")
    return hosts


class PolicyResolver:
    """Build ``IsolationPolicy`` objects from settings.

    ``resolve`` is pure. ``resolve_for_server`` reads defaults and overrides
    through a ``SettingsStore``.
    """

    def __init__(self, store: Optional[SettingsStore] = None) -> None:
        """Initialize the resolver.

        Args:
            store: Settings source for ``resolve_for_server``.
        """
        self._store = store

    def resolve(
        self,
        mcp_name: str,
        defaults: Optional[SecurityDefaults] = None,
        override: Optional[ServerSecurityConfig] = None,
        enabled: bool = True,
    ) -> IsolationPolicy:
        """Merge defaults and an optional override.

        Args:
            mcp_name: Tool server identity.
            defaults: Global defaults; built from configuration when omitted.
            override: Per-server override, if the server was ever configured.
            enabled: Global isolation switch.

        Returns:
            IsolationPolicy: Fully populated, immutable policy.
        """
        defaults = defaults or default_security_defaults()
        network: NetworkSettings = _merge_section(defaults.network, override.network if override else None)
        file_system: FileSystemSettings = _merge_section(defaults.file_system, override.file_system if override else None)
        limits: ResourceLimitSettings = _merge_section(defaults.resource_limits, override.resource_limits if override else None)

        allowed_hosts = _clean_allowlist(mcp_name, network.allowlist) if network.enabled else []
        fs_enabled = file_system.enabled
        return IsolationPolicy(
            mcp_name=mcp_name,
            isolated=bool(enabled and override is not None and override.is_guarded),
            network=NetworkPolicy(
                allowed_hosts=allowed_hosts or None,
                allow_localhost=network.enabled and network.allow_localhost,
            ),
            file_system=FileSystemPolicy(
                enabled=fs_enabled,
                read_paths=tuple(file_system.read_paths) if fs_enabled else (),
                write_paths=tuple(file_system.write_paths) if fs_enabled else (),
            ),
            limits=ResourceLimits(
                cpu_ms=limits.max_execution_time_ms,
                memory_mb=limits.max_memory_mb,
                max_tool_calls=limits.max_mcp_calls,
            ),
        )

    def resolve_for_server(self, mcp_name: str) -> IsolationPolicy:
        """Resolve the policy of a server from the settings document.

        Args:
            mcp_name: Tool server identity.

        Returns:
            IsolationPolicy: The resolved policy.

        Raises:
            ValueError: If the resolver was built without a store.
        """
        if self._store is None:
            raise ValueError("PolicyResolver has no settings store")
        global_settings = self._store.get_global_settings()
        override = next((c for c in global_settings.mcp_configs if c.mcp_name == mcp_name), None)
        policy = self.resolve(mcp_name, global_settings.defaults, override, global_settings.enabled)
        logger.debug(f"Resolved policy for {mcp_name}: isolated={policy.isolated} network={policy.network_granted} limits={policy.limits.model_dump()}")
        return policy
