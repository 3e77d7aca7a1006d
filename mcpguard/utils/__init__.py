# -*- coding: utf-8 -*-
"""Location: ./mcpguard/utils/__init__.py
Copyright 2026
SPDX-License-Identifier: Apache-2.0

Utility helpers for MCP Guard.
"""
