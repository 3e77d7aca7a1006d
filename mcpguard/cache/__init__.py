# -*- coding: utf-8 -*-
"""Location: ./mcpguard/cache/__init__.py
Copyright 2026
SPDX-License-Identifier: Apache-2.0

Caches shared across executions.
"""
