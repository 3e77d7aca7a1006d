# -*- coding: utf-8 -*-
"""Location: ./tests/unit/mcpguard/test_config.py
Copyright 2026
SPDX-License-Identifier: Apache-2.0
"""

# Third-Party
from pydantic import ValidationError
import pytest

# First-Party
from mcpguard.config import get_settings, Settings


def test_defaults():
    s = Settings(_env_file=None)
    assert s.default_max_mcp_calls == 100
    assert s.max_concurrent_executions == 16
    assert s.settings_path.name == "settings.json"


def test_environment_overrides(monkeypatch):
    monkeypatch.setenv("MCPGUARD_DEFAULT_LANGUAGE", "python")
    monkeypatch.setenv("MCPGUARD_TIMEOUT_GRACE_MS", "250")
    s = Settings(_env_file=None)
    assert s.default_language == "python"
    assert s.timeout_grace_ms == 250


def test_invalid_values_rejected(monkeypatch):
    monkeypatch.setenv("MCPGUARD_DEFAULT_LANGUAGE", "cobol")
    with pytest.raises(ValidationError):
        Settings(_env_file=None)


def test_get_settings_cached():
    assert get_settings() is get_settings()
