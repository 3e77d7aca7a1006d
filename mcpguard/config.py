# -*- coding: utf-8 -*-
"""Location: ./mcpguard/config.py
Copyright 2026
SPDX-License-Identifier: Apache-2.0

MCP Guard configuration.

Settings are read from the environment (prefix ``MCPGUARD_``) and an optional
``.env`` file. ``get_settings`` caches the instance; modules import the
module-level ``settings`` object.

Examples:
    >>> from mcpguard.config import Settings
    >>> s = Settings(_env_file=None)
    >>> s.timeout_grace_ms
    1000
    >>> s.default_language
    'javascript'
"""

# Standard
from functools import lru_cache
from pathlib import Path
import shutil
import sys
import tempfile
from typing import Literal, Optional

# Third-Party
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def _default_settings_path() -> Path:
    """Location of the shared settings document."""
    return Path.home() / ".mcpguard" / "settings.json"


def _default_scratch_dir() -> Path:
    """Parent directory of per-execution scratch workspaces."""
    return Path(tempfile.gettempdir()) / "mcpguard"


class Settings(BaseSettings):
    """MCP Guard configuration loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="MCPGUARD_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ==========================================================================
    # Storage
    # ==========================================================================
    settings_path: Path = Field(default_factory=_default_settings_path, description="Settings document (policies and caches)")
    scratch_dir: Path = Field(default_factory=_default_scratch_dir, description="Parent of per-execution workspaces")

    # ==========================================================================
    # Runtimes
    # ==========================================================================
    default_language: Literal["javascript", "typescript", "python"] = "javascript"
    deno_path: Optional[str] = Field(default_factory=lambda: shutil.which("deno"))
    python_path: Optional[str] = Field(default_factory=lambda: sys.executable or shutil.which("python3"))
    build_timeout_ms: int = Field(default=30000, ge=100)
    timeout_grace_ms: int = Field(default=1000, ge=0)
    python_memory_overhead_mb: int = Field(default=256, ge=0)
    python_network_namespace: bool = Field(default=False, description="Start Python sandboxes in an empty network namespace (unshare --net)")
    unshare_path: Optional[str] = Field(default_factory=lambda: shutil.which("unshare"))

    # ==========================================================================
    # Execution
    # ==========================================================================
    max_script_chars: int = Field(default=50000, ge=1)
    max_concurrent_executions: int = Field(default=16, ge=1)
    tool_call_timeout_ms: int = Field(default=60000, ge=100)

    # Defaults used when the settings document carries no "defaults" section
    default_network_enabled: bool = False
    default_max_execution_time_ms: int = Field(default=30000, ge=100)
    default_max_memory_mb: int = Field(default=128, ge=16)
    default_max_mcp_calls: int = Field(default=100, ge=0)

    # ==========================================================================
    # Logging
    # ==========================================================================
    log_level: Literal["debug", "info", "notice", "warning", "error", "critical", "alert", "emergency"] = "info"
    log_format: Literal["text", "json"] = "text"
    log_to_file: bool = False
    log_file: Optional[str] = None
    log_folder: Optional[str] = None


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance.

    Returns:
        Settings: The process-wide settings.
    """
    return Settings()


settings = get_settings()
