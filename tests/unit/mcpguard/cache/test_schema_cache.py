# -*- coding: utf-8 -*-
"""Location: ./tests/unit/mcpguard/cache/test_schema_cache.py
Copyright 2026
SPDX-License-Identifier: Apache-2.0
"""

# Standard
from datetime import datetime, timedelta, timezone

# First-Party
from mcpguard.cache.schema_cache import cache_key_string, compute_config_hash, SchemaCache
from mcpguard.schemas import SchemaCacheEntry, ToolDescriptor, ToolServerConfig
from mcpguard.services.settings_store import SCHEMA_CACHE_SECTION, SettingsStore


def _entry(name="github", config_hash="h1", tools=("search",), cached_at=None):
    kwargs = {"cached_at": cached_at} if cached_at else {}
    return SchemaCacheEntry(mcp_name=name, config_hash=config_hash, tools=[ToolDescriptor(name=t) for t in tools], **kwargs)


def test_config_hash_is_stable_for_models_and_mappings():
    config = ToolServerConfig(command="npx", args=["-y", "server"])
    assert compute_config_hash("github", config) == compute_config_hash("github", {"command": "npx", "args": ["-y", "server"], "env": {}})
    assert compute_config_hash("github", config) != compute_config_hash("github", ToolServerConfig(command="npx", args=["-y", "other"]))


def test_get_miss_then_hit():
    cache = SchemaCache()
    assert cache.get("github", "h1") is None
    cache.put(_entry())
    assert cache.get("github", "h1").tool_names == frozenset({"search"})
    stats = cache.stats()
    assert (stats["hit_count"], stats["miss_count"]) == (1, 1)
    assert stats["cached_keys"] == ["github:h1"]


def test_put_replaces_same_key():
    cache = SchemaCache()
    cache.put(_entry(tools=("a",)))
    cache.put(_entry(tools=("b",)))
    assert cache.get("github", "h1").tool_names == frozenset({"b"})


def test_invalidate_removes_all_fingerprints_of_server():
    cache = SchemaCache()
    cache.put(_entry(config_hash="h1"))
    cache.put(_entry(config_hash="h2"))
    cache.put(_entry(name="other"))
    assert cache.invalidate("github") == 2
    assert cache.get("github", "h1") is None
    assert cache.get("other", "h1") is not None
    assert cache.invalidate("github") == 0


def test_clear():
    cache = SchemaCache()
    cache.put(_entry())
    cache.clear()
    assert cache.stats()["cached_keys"] == []


def test_entries_for_newest_first():
    now = datetime.now(timezone.utc)
    cache = SchemaCache()
    cache.put(_entry(config_hash="old", cached_at=now - timedelta(hours=1)))
    cache.put(_entry(config_hash="new", cached_at=now))
    assert [e.config_hash for e in cache.entries_for("github")] == ["new", "old"]


def test_persisted_entries_survive_restart(tmp_path):
    path = tmp_path / "settings.json"
    cache = SchemaCache(SettingsStore(path))
    cache.put(_entry())
    section = SettingsStore(path).read_section(SCHEMA_CACHE_SECTION)
    assert list(section) == [cache_key_string("github", "h1")]
    assert section["github:h1"]["toolNames"] == ["search"]

    restored = SchemaCache(SettingsStore(path))
    assert restored.get("github", "h1").tool_names == frozenset({"search"})


def test_invalidation_persisted(tmp_path):
    path = tmp_path / "settings.json"
    cache = SchemaCache(SettingsStore(path))
    cache.put(_entry())
    cache.invalidate("github")
    assert SchemaCache(SettingsStore(path)).get("github", "h1") is None


def test_malformed_entries_skipped(store):
    store.write_section(
        SCHEMA_CACHE_SECTION,
        {
            "github:h1": {"mcpName": "github", "configHash": "h1", "tools": [{"name": "search"}]},
            "broken:x": {"tools": "not-a-list"},
            "mismatch:key": {"mcpName": "github", "configHash": "h9", "tools": []},
        },
    )
    cache = SchemaCache(store)
    assert cache.load() == 1
    assert cache.get("github", "h1") is not None
    assert cache.get("github", "h9") is None
