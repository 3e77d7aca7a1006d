# -*- coding: utf-8 -*-
"""Location: ./mcpguard/services/settings_store.py
Copyright 2026
SPDX-License-Identifier: Apache-2.0

Settings document persistence.

The document is shared with the configuration tooling (IDE extension, CLI)
and holds:

- ``enabled``: global isolation switch
- ``defaults``: default capability envelope
- ``mcpConfigs``: per tool-server overrides
- ``mcpServers``: how to launch each tool server
- cache sections (``mcpSchemaCache``, ``tokenMetricsCache``,
  ``assessmentErrorsCache``) keyed by server name or ``name:configHash``

The file is created on first access and rewritten atomically on every
mutation. Sections this module does not know about are preserved.
"""

# Standard
import contextlib
import copy
from datetime import datetime, timezone
import os
from pathlib import Path
import tempfile
import threading
from typing import Any, Dict, List, Optional, Union
import uuid

# Third-Party
import orjson
from pydantic import ValidationError

# First-Party
from mcpguard.config import settings
from mcpguard.exceptions import SettingsStoreError
from mcpguard.schemas import GlobalSecuritySettings, NetworkSettings, ResourceLimitSettings, SecurityDefaults, ServerSecurityConfig, ToolServerConfig
from mcpguard.services.logging_service import LoggingService

logger = LoggingService().get_logger(__name__)

SCHEMA_CACHE_SECTION = "mcpSchemaCache"
TOKEN_METRICS_SECTION = "tokenMetricsCache"
ASSESSMENT_ERRORS_SECTION = "assessmentErrorsCache"
SERVERS_SECTION = "mcpServers"


def default_security_defaults() -> SecurityDefaults:
    """Capability envelope used when the document carries none.

    Returns:
        SecurityDefaults: Network and filesystem off, configured limits.

    Examples:
        >>> d = default_security_defaults()
        >>> d.network.enabled, d.file_system.enabled
        (False, False)
        >>> d.resource_limits.max_mcp_calls
        100
    """
    return SecurityDefaults(
        network=NetworkSettings(enabled=settings.default_network_enabled),
        resource_limits=ResourceLimitSettings(
            max_execution_time_ms=settings.default_max_execution_time_ms,
            max_memory_mb=settings.default_max_memory_mb,
            max_mcp_calls=settings.default_max_mcp_calls,
        ),
    )


def _default_document() -> Dict[str, Any]:
    return {
        "enabled": True,
        "defaults": default_security_defaults().model_dump(mode="json", by_alias=True),
        "mcpConfigs": [],
        SERVERS_SECTION: {},
    }


class SettingsStore:
    """Process-wide view of the settings document.

    Reads hand out deep copies; writes hold a re-entrant lock for the
    in-memory mutation and the atomic file replacement.

    Examples:
        >>> import tempfile, pathlib
        >>> path = pathlib.Path(tempfile.mkdtemp()) / "settings.json"
        >>> store = SettingsStore(path)
        >>> store.get_global_settings().enabled
        True
        >>> path.exists()
        True
    """

    def __init__(self, path: Optional[Union[str, Path]] = None) -> None:
        """Initialize the store without touching the filesystem.

        Args:
            path: Document location; defaults to ``settings.settings_path``.
        """
        self._path = Path(path).expanduser() if path else Path(settings.settings_path).expanduser()
        self._lock = threading.RLock()
        self._document: Optional[Dict[str, Any]] = None

    @property
    def path(self) -> Path:
        """Location of the settings document."""
        return self._path

    def _ensure_loaded(self) -> Dict[str, Any]:
        """Load the document on first access, creating it when absent."""
        if self._document is None:
            with self._lock:
                if self._document is None:
                    self._document = self._read()
        return self._document

    def _read(self) -> Dict[str, Any]:
        if not self._path.exists():
            document = _default_document()
            self._write(document)
            logger.info(f"Created settings document at {self._path}")
            return document
        try:
            document = orjson.loads(self._path.read_bytes())
        except (OSError, orjson.JSONDecodeError) as exc:
            raise SettingsStoreError(f"Cannot read settings document {self._path}: {exc}") from exc
        if not isinstance(document, dict):
            raise SettingsStoreError(f"Settings document {self._path} is not a JSON object")
        for key, value in _default_document().items():
            document.setdefault(key, value)
        return document

    def _write(self, document: Dict[str, Any]) -> None:
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            fd, temp_name = tempfile.mkstemp(prefix=f".{self._path.name}.", suffix=".tmp", dir=str(self._path.parent))
            try:
                with os.fdopen(fd, "wb") as handle:
                    handle.write(orjson.dumps(document, option=orjson.OPT_INDENT_2))
                    handle.flush()
                    os.fsync(handle.fileno())
                os.replace(temp_name, self._path)
            except BaseException:
                with contextlib.suppress(OSError):
                    os.unlink(temp_name)
                raise
        except OSError as exc:
            raise SettingsStoreError(f"Cannot write settings document {self._path}: {exc}") from exc

    def reload(self) -> None:
        """Drop the in-memory copy; the next access re-reads the file."""
        with self._lock:
            self._document = None

    def snapshot(self) -> Dict[str, Any]:
        """Return a deep copy of the whole document."""
        return copy.deepcopy(self._ensure_loaded())

    # ------------------------------------------------------------------
    # Sections
    # ------------------------------------------------------------------

    def read_section(self, name: str, default: Any = None) -> Any:
        """Return a deep copy of one top-level section.

        Args:
            name: Section key.
            default: Returned when the section is absent.

        Returns:
            The section value.
        """
        document = self._ensure_loaded()
        if name not in document:
            return default
        return copy.deepcopy(document[name])

    def write_section(self, name: str, value: Any) -> None:
        """Replace one top-level section and persist.

        Args:
            name: Section key.
            value: JSON-compatible value.
        """
        with self._lock:
            document = self._ensure_loaded()
            document[name] = copy.deepcopy(value)
            self._write(document)

    def pop_section_entries(self, name: str, keys: List[str]) -> int:
        """Remove entries from a mapping section and persist when changed.

        Args:
            name: Section key.
            keys: Entry keys to drop.

        Returns:
            Number of entries removed.
        """
        with self._lock:
            document = self._ensure_loaded()
            section = document.get(name)
            if not isinstance(section, dict):
                return 0
            removed = sum(1 for key in keys if section.pop(key, None) is not None)
            if removed:
                self._write(document)
            return removed

    # ------------------------------------------------------------------
    # Security configuration
    # ------------------------------------------------------------------

    def get_global_settings(self) -> GlobalSecuritySettings:
        """Parse the policy part of the document.

        Returns:
            GlobalSecuritySettings: enabled flag, defaults, per-server overrides.

        Raises:
            SettingsStoreError: If the document does not match the expected shape.
        """
        document = self._ensure_loaded()
        try:
            return GlobalSecuritySettings.model_validate(
                {
                    "enabled": document.get("enabled", True),
                    "defaults": document.get("defaults") or {},
                    "mcpConfigs": document.get("mcpConfigs") or [],
                }
            )
        except ValidationError as exc:
            raise SettingsStoreError(f"Invalid security settings in {self._path}: {exc}") from exc

    def get_server_config(self, mcp_name: str) -> Optional[ServerSecurityConfig]:
        """Return the per-server override, if any.

        Args:
            mcp_name: Tool server name.

        Returns:
            The override or None.
        """
        for config in self.get_global_settings().mcp_configs:
            if config.mcp_name == mcp_name:
                return config
        return None

    def upsert_server_config(self, config: ServerSecurityConfig) -> None:
        """Insert or replace a per-server override.

        Only fields explicitly set on ``config`` are stored, so unset fields
        keep inheriting the defaults.

        Args:
            config: Override to store.
        """
        data = config.model_dump(mode="json", by_alias=True, exclude_unset=True)
        data["mcpName"] = config.mcp_name
        data["id"] = config.id or uuid.uuid4().hex
        data["lastModified"] = datetime.now(timezone.utc).isoformat()
        with self._lock:
            document = self._ensure_loaded()
            configs = [c for c in document.get("mcpConfigs") or [] if c.get("mcpName") != config.mcp_name]
            configs.append(data)
            document["mcpConfigs"] = configs
            self._write(document)
        logger.info(f"Stored security configuration for {config.mcp_name}")

    def remove_server_config(self, mcp_name: str) -> bool:
        """Remove a per-server override and the server's metric caches.

        Args:
            mcp_name: Tool server name.

        Returns:
            True when an override existed.
        """
        with self._lock:
            document = self._ensure_loaded()
            configs = document.get("mcpConfigs") or []
            remaining = [c for c in configs if c.get("mcpName") != mcp_name]
            existed = len(remaining) != len(configs)
            document["mcpConfigs"] = remaining
            for section in (TOKEN_METRICS_SECTION, ASSESSMENT_ERRORS_SECTION):
                if isinstance(document.get(section), dict):
                    document[section].pop(mcp_name, None)
            self._write(document)
        return existed

    def set_enabled(self, enabled: bool) -> None:
        """Toggle isolation globally."""
        self.write_section("enabled", bool(enabled))

    def set_defaults(self, defaults: SecurityDefaults) -> None:
        """Replace the default capability envelope."""
        self.write_section("defaults", defaults.model_dump(mode="json", by_alias=True))

    # ------------------------------------------------------------------
    # Tool server launch configuration
    # ------------------------------------------------------------------

    def list_servers(self) -> Dict[str, ToolServerConfig]:
        """Return launch configurations keyed by server name."""
        raw = self.read_section(SERVERS_SECTION, {}) or {}
        return {name: ToolServerConfig.model_validate(cfg) for name, cfg in raw.items()}

    def get_server(self, mcp_name: str) -> Optional[ToolServerConfig]:
        """Return one launch configuration, if registered."""
        return self.list_servers().get(mcp_name)

    def upsert_server(self, mcp_name: str, config: ToolServerConfig) -> None:
        """Register or replace a launch configuration."""
        with self._lock:
            document = self._ensure_loaded()
            servers = document.setdefault(SERVERS_SECTION, {})
            servers[mcp_name] = config.model_dump(mode="json", exclude_none=True)
            self._write(document)

    def remove_server(self, mcp_name: str) -> bool:
        """Drop a launch configuration.

        Returns:
            True when the server was registered.
        """
        return self.pop_section_entries(SERVERS_SECTION, [mcp_name]) > 0
