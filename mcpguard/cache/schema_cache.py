# -*- coding: utf-8 -*-
"""Location: ./mcpguard/cache/schema_cache.py
Copyright 2026
SPDX-License-Identifier: Apache-2.0

Tool Schema Cache.

Keeps the tool list of each (server name, configuration fingerprint) pair so
executions can validate tool calls without re-querying the server. Entries
have no TTL: they live until a configuration change or server removal
invalidates them.

Reads are lock-free: writers build a new mapping and swap the reference, so
a reader always sees a consistent snapshot. Writers serialize on a lock for
the in-memory mutation only, then persist the latest snapshot to the
``mcpSchemaCache`` section of the settings document.

Examples:
    >>> from mcpguard.cache.schema_cache import SchemaCache
    >>> from mcpguard.schemas import SchemaCacheEntry, ToolDescriptor
    >>> cache = SchemaCache()
    >>> cache.get("github", "abc") is None
    True
    >>> entry = SchemaCacheEntry(mcp_name="github", config_hash="abc", tools=[ToolDescriptor(name="search")])
    >>> cache.put(entry)
    >>> cache.get("github", "abc") == entry
    True
    >>> sorted(cache.get("github", "abc").tool_names)
    ['search']
    >>> cache.invalidate("github")
    1
    >>> cache.get("github", "abc") is None
    True
"""

# Standard
import hashlib
import threading
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

# Third-Party
import orjson
from pydantic import BaseModel, ValidationError

# First-Party
from mcpguard.schemas import SchemaCacheEntry
from mcpguard.services.logging_service import LoggingService
from mcpguard.services.settings_store import SCHEMA_CACHE_SECTION, SettingsStore

logger = LoggingService().get_logger(__name__)

CacheKey = Tuple[str, str]


def compute_config_hash(mcp_name: str, config: Union[BaseModel, Mapping[str, Any]]) -> str:
    """Fingerprint a tool server's connection configuration.

    Args:
        mcp_name: Tool server name.
        config: Launch configuration (model or mapping).

    Returns:
        First 16 hex characters of the SHA-256 over canonical JSON.

    Examples:
        >>> h = compute_config_hash("github", {"command": "npx", "args": ["-y", "server-github"]})
        >>> len(h)
        16
        >>> h == compute_config_hash("github", {"args": ["-y", "server-github"], "command": "npx"})
        True
        >>> h == compute_config_hash("gitlab", {"command": "npx", "args": ["-y", "server-github"]})
        False
    """
    if isinstance(config, BaseModel):
        config = config.model_dump(mode="json", exclude_none=True)
    payload = orjson.dumps({"mcpName": mcp_name, "config": dict(config)}, option=orjson.OPT_SORT_KEYS)
    return hashlib.sha256(payload).hexdigest()[:16]


def cache_key_string(mcp_name: str, config_hash: str) -> str:
    """Persisted key of an entry (``name:hash``)."""
    return f"{mcp_name}:{config_hash}"


class SchemaCache:
    """Process-wide cache of tool schemas.

    Attributes:
        _entries: Current snapshot, replaced wholesale on each write
        _write_lock: Serializes in-memory mutations
        _persist_lock: Serializes writes to the settings document
    """

    def __init__(self, store: Optional[SettingsStore] = None) -> None:
        """Initialize the cache.

        Args:
            store: Settings document used for persistence; None keeps the cache in memory.
        """
        self._store = store
        self._entries: Dict[CacheKey, SchemaCacheEntry] = {}
        self._write_lock = threading.Lock()
        self._persist_lock = threading.Lock()
        self._hit_count = 0
        self._miss_count = 0
        self._loaded = store is None

    def load(self) -> int:
        """Populate the cache from the settings document.

        Malformed entries are skipped and treated as misses.

        Returns:
            Number of entries loaded.
        """
        if self._store is None:
            return 0
        raw = self._store.read_section(SCHEMA_CACHE_SECTION, {}) or {}
        loaded: Dict[CacheKey, SchemaCacheEntry] = {}
        for key, value in raw.items():
            try:
                entry = SchemaCacheEntry.model_validate(value)
            except ValidationError as exc:
                logger.warning(f"Skipping malformed schema cache entry {key}: {exc.error_count()} error(s)")
                continue
            if cache_key_string(*entry.key) != key:
                logger.warning(f"Skipping schema cache entry with mismatched key {key}")
                continue
            loaded[entry.key] = entry
        with self._write_lock:
            self._entries = loaded
            self._loaded = True
        logger.debug(f"Loaded {len(loaded)} schema cache entries")
        return len(loaded)

    def _ensure_loaded(self) -> None:
        if not self._loaded:
            self.load()

    def get(self, mcp_name: str, config_hash: str) -> Optional[SchemaCacheEntry]:
        """Look up an entry.

        Args:
            mcp_name: Tool server name.
            config_hash: Configuration fingerprint.

        Returns:
            The entry, or None on a miss.
        """
        self._ensure_loaded()
        entry = self._entries.get((mcp_name, config_hash))
        if entry is None:
            self._miss_count += 1
        else:
            self._hit_count += 1
        return entry

    def entries_for(self, mcp_name: str) -> List[SchemaCacheEntry]:
        """All entries of one server, newest first."""
        self._ensure_loaded()
        found = [e for (name, _), e in self._entries.items() if name == mcp_name]
        return sorted(found, key=lambda e: e.cached_at, reverse=True)

    def put(self, entry: SchemaCacheEntry) -> None:
        """Store an entry, replacing any entry with the same key.

        Args:
            entry: Entry to store.
        """
        self._ensure_loaded()
        with self._write_lock:
            updated = dict(self._entries)
            updated[entry.key] = entry
            self._entries = updated
        logger.debug(f"Schema cache stored {cache_key_string(*entry.key)} ({len(entry.tools)} tools)")
        self._persist()

    def invalidate(self, mcp_name: str) -> int:
        """Remove every entry of a server regardless of fingerprint.

        Args:
            mcp_name: Tool server name.

        Returns:
            Number of entries removed.
        """
        self._ensure_loaded()
        with self._write_lock:
            updated = {k: v for k, v in self._entries.items() if k[0] != mcp_name}
            removed = len(self._entries) - len(updated)
            self._entries = updated
        logger.debug(f"Schema cache invalidated: {mcp_name} ({removed} entries)")
        if removed:
            self._persist()
        return removed

    def clear(self) -> None:
        """Remove every entry."""
        self._ensure_loaded()
        with self._write_lock:
            self._entries = {}
        logger.debug("Schema cache invalidated: all")
        self._persist()

    def _persist(self) -> None:
        """Write the latest snapshot to the settings document."""
        if self._store is None:
            return
        with self._persist_lock:
            snapshot = self._entries
            self._store.write_section(SCHEMA_CACHE_SECTION, {cache_key_string(*key): entry.to_document() for key, entry in snapshot.items()})

    def stats(self) -> Dict[str, Any]:
        """Get cache statistics.

        Returns:
            Dictionary with hit_count, miss_count, hit_rate and cached_keys.

        Examples:
            >>> cache = SchemaCache()
            >>> cache._hit_count, cache._miss_count = 3, 1
            >>> cache.stats()["hit_rate"]
            0.75
        """
        total = self._hit_count + self._miss_count
        return {
            "hit_count": self._hit_count,
            "miss_count": self._miss_count,
            "hit_rate": self._hit_count / total if total > 0 else 0.0,
            "cached_keys": sorted(cache_key_string(*k) for k in self._entries),
        }
