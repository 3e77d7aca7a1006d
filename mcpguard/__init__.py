# -*- coding: utf-8 -*-
"""Location: ./mcpguard/__init__.py
Copyright 2026
SPDX-License-Identifier: Apache-2.0

MCP Guard - sandboxed execution of agent scripts against MCP tool servers.
"""

__author__ = "MCP Guard Contributors"
__version__ = "0.3.0"
__license__ = "Apache-2.0"
