# -*- coding: utf-8 -*-
"""Location: ./mcpguard/services/__init__.py
Copyright 2026
SPDX-License-Identifier: Apache-2.0

Services composing the MCP Guard execution pipeline.
"""
