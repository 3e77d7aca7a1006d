# -*- coding: utf-8 -*-
"""Location: ./tests/unit/mcpguard/services/test_logging_service.py
Copyright 2026
SPDX-License-Identifier: Apache-2.0
"""

# Standard
import logging

# Third-Party
import pytest

# First-Party
from mcpguard.models import LogLevel
from mcpguard.services.logging_service import LoggingService, SECURITY_LOGGER_NAME


def test_loggers_nested_under_package():
    service = LoggingService()
    assert service.get_logger("mcpguard.services.x").name == "mcpguard.services.x"
    assert service.get_logger("thirdparty").name == "mcpguard.thirdparty"
    assert service.get_logger("mcpguard.a") is service.get_logger("mcpguard.a")


def test_security_logger():
    assert LoggingService().get_security_logger().name == SECURITY_LOGGER_NAME


def test_handlers_attached_once():
    LoggingService().get_logger("mcpguard.one")
    LoggingService().get_logger("mcpguard.two")
    root = logging.getLogger("mcpguard")
    stream_handlers = [h for h in root.handlers if type(h) is logging.StreamHandler]
    assert len(stream_handlers) == 1


@pytest.mark.asyncio
async def test_set_level():
    service = LoggingService()
    previous = LoggingService._level
    try:
        await service.set_level(LogLevel.DEBUG)
        assert logging.getLogger("mcpguard").level == logging.DEBUG
    finally:
        await service.set_level(previous)


@pytest.mark.asyncio
async def test_initialize_and_shutdown():
    service = LoggingService()
    await service.initialize()
    await service.shutdown()
