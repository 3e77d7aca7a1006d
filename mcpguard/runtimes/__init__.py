# -*- coding: utf-8 -*-
"""Location: ./mcpguard/runtimes/__init__.py
Copyright 2026
SPDX-License-Identifier: Apache-2.0

Isolated runtimes that build and execute sandboxed scripts.
"""
