# -*- coding: utf-8 -*-
"""Location: ./mcpguard/utils/hosts.py
Copyright 2026
SPDX-License-Identifier: Apache-2.0

Host allowlist helpers.

Allowlist entries are exact host names or ``*.suffix`` wildcards. A wildcard
matches any subdomain of the suffix but not the suffix itself. Loopback hosts
are governed solely by ``allow_localhost``.
"""

# Standard
import re
from typing import FrozenSet, Iterable, List, Optional

# First-Party
from mcpguard.schemas import normalize_host

LOOPBACK_HOSTS: FrozenSet[str] = frozenset({"localhost", "127.0.0.1", "::1", "[::1]"})

_HOST_RE = re.compile(r"^(\*\.)?([a-z0-9]([a-z0-9-]{0,61}[a-z0-9])?)(\.[a-z0-9]([a-z0-9-]{0,61}[a-z0-9])?)*(:\d{1,5})?$")
_IPV4_RE = re.compile(r"^\d{1,3}(\.\d{1,3}){3}(:\d{1,5})?$")


def is_loopback(host: str) -> bool:
    """Return whether ``host`` names the local machine.

    Args:
        host: Host name, optionally with a port.

    Returns:
        True for localhost and loopback addresses.

    Examples:
        >>> is_loopback("LOCALHOST")
        True
        >>> is_loopback("127.0.0.1:8080")
        True
        >>> is_loopback("example.com")
        False
    """
    value = normalize_host(host)
    if value in LOOPBACK_HOSTS:
        return True
    if value.startswith("["):
        return value.split("]", 1)[0] + "]" in LOOPBACK_HOSTS
    return value.rsplit(":", 1)[0] in LOOPBACK_HOSTS


def is_valid_host_entry(entry: str) -> bool:
    """Validate an allowlist entry.

    Args:
        entry: Raw allowlist entry.

    Returns:
        True when the entry is a host name, IPv4 address or wildcard.

    Examples:
        >>> is_valid_host_entry("*.example.com")
        True
        >>> is_valid_host_entry("https://example.com/path")
        False
        >>> is_valid_host_entry("10.0.0.1:443")
        True
    """
    value = normalize_host(entry)
    if not value:
        return False
    return bool(_HOST_RE.match(value) or _IPV4_RE.match(value))


def host_matches(host: str, allowed_hosts: Optional[Iterable[str]], allow_localhost: bool = False) -> bool:
    """Check ``host`` against an allowlist.

    Args:
        host: Host being contacted.
        allowed_hosts: Normalized allowlist, or None for deny-all.
        allow_localhost: Whether loopback hosts are reachable.

    Returns:
        True when the connection is permitted.

    Examples:
        >>> host_matches("api.example.com", {"*.example.com"})
        True
        >>> host_matches("example.com", {"*.example.com"})
        False
        >>> host_matches("localhost", {"localhost"})
        False
        >>> host_matches("localhost", None, allow_localhost=True)
        True
        >>> host_matches("example.com", None)
        False
    """
    value = normalize_host(host)
    if is_loopback(value):
        return allow_localhost
    if not allowed_hosts:
        return False
    for entry in allowed_hosts:
        if entry.startswith("*."):
            suffix = entry[1:]
            if value.endswith(suffix) and len(value) > len(suffix):
                return True
        elif value == entry:
            return True
    return False


def deno_net_permissions(allowed_hosts: Optional[Iterable[str]], allow_localhost: bool) -> List[str]:
    """Translate an allowlist into Deno ``--allow-net`` entries.

    Wildcard entries are passed through unchanged (Deno 2 accepts
    ``*.suffix`` in net permissions). Loopback entries are dropped unless
    ``allow_localhost`` is set.

    Args:
        allowed_hosts: Normalized allowlist, or None.
        allow_localhost: Whether loopback hosts are reachable.

    Returns:
        Sorted host list; empty means no network flag at all.

    Examples:
        >>> deno_net_permissions({"*.example.com", "localhost"}, False)
        ['*.example.com']
        >>> deno_net_permissions(None, True)
        ['127.0.0.1', 'localhost']
    """
    granted = set()
    for entry in allowed_hosts or ():
        if is_loopback(entry):
            continue
        granted.add(entry)
    if allow_localhost:
        granted.update({"localhost", "127.0.0.1"})
    return sorted(granted)
