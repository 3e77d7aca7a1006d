# -*- coding: utf-8 -*-
"""Location: ./tests/conftest.py
Copyright 2026
SPDX-License-Identifier: Apache-2.0
"""

# Standard
from pathlib import Path
import sys
from typing import Any, Callable, Dict, List, Optional

# Third-Party
import pytest

# First-Party
from mcpguard.config import settings
from mcpguard.exceptions import ToolServerError
from mcpguard.schemas import IsolationPolicy, ResourceLimits, SchemaCacheEntry, ToolDescriptor
from mcpguard.services.settings_store import SettingsStore
from mcpguard.services.tool_server import ToolServerConnection


class FakeToolServer(ToolServerConnection):
    """In-memory tool server: each tool is a callable taking the arguments."""

    def __init__(self, tools: Optional[Dict[str, Callable[[Dict[str, Any]], Any]]] = None) -> None:
        self.tools = tools if tools is not None else {"echo": lambda args: {"echo": args}}
        self.calls: List[tuple] = []
        self.list_count = 0
        self.closed = False

    async def list_tools(self) -> List[ToolDescriptor]:
        self.list_count += 1
        return [ToolDescriptor(name=name, description=f"{name} tool") for name in self.tools]

    async def call_tool(self, name: str, arguments: Dict[str, Any]) -> Any:
        self.calls.append((name, arguments))
        handler = self.tools[name]
        return handler(arguments)

    async def close(self) -> None:
        self.closed = True


def failing_tool(args: Dict[str, Any]) -> Any:
    raise ToolServerError("backend unavailable")


@pytest.fixture(autouse=True)
def isolated_settings(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    """Point the settings document and scratch space at a temp directory."""
    monkeypatch.setattr(settings, "settings_path", tmp_path / "settings.json")
    monkeypatch.setattr(settings, "scratch_dir", tmp_path / "scratch")
    monkeypatch.setattr(settings, "python_path", sys.executable)
    yield settings


@pytest.fixture
def store(tmp_path: Path) -> SettingsStore:
    return SettingsStore(tmp_path / "settings.json")


@pytest.fixture
def fake_server() -> FakeToolServer:
    return FakeToolServer()


@pytest.fixture
def make_policy() -> Callable[..., IsolationPolicy]:
    def _make(mcp_name: str = "demo", cpu_ms: int = 10000, memory_mb: int = 128, max_tool_calls: int = 100, **kwargs: Any) -> IsolationPolicy:
        return IsolationPolicy(mcp_name=mcp_name, limits=ResourceLimits(cpu_ms=cpu_ms, memory_mb=memory_mb, max_tool_calls=max_tool_calls), **kwargs)

    return _make


@pytest.fixture
def echo_schema() -> SchemaCacheEntry:
    return SchemaCacheEntry(mcp_name="demo", config_hash="abc123", tools=[ToolDescriptor(name="echo", description="Echo arguments")])


@pytest.fixture
def tool_server_factory() -> Callable[..., FakeToolServer]:
    return FakeToolServer


@pytest.fixture
def broken_tool() -> Callable[[Dict[str, Any]], Any]:
    return failing_tool
