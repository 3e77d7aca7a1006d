# -*- coding: utf-8 -*-
"""Location: ./mcpguard/services/logging_service.py
Copyright 2026
SPDX-License-Identifier: Apache-2.0

Logging Service Implementation.

Console output uses a text or JSON formatter depending on
``settings.log_format``; file output (when ``settings.log_to_file`` is set)
is always JSON through a rotating handler. Security events such as policy
violations and denied tool calls go to the ``mcpguard.security`` logger.
"""

# Standard
import logging
from logging.handlers import RotatingFileHandler
import os
from typing import Dict, Optional

# Third-Party
from pythonjsonlogger import jsonlogger

# First-Party
from mcpguard.config import settings
from mcpguard.models import LogLevel

SECURITY_LOGGER_NAME = "mcpguard.security"

# Create a text formatter
text_formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

# Create a JSON formatter
json_formatter = jsonlogger.JsonFormatter("%(asctime)s %(name)s %(levelname)s %(message)s")

# Global handlers will be created lazily
_file_handler: Optional[RotatingFileHandler] = None
_console_handler: Optional[logging.StreamHandler] = None

_PY_LEVELS = {
    LogLevel.DEBUG: logging.DEBUG,
    LogLevel.INFO: logging.INFO,
    LogLevel.NOTICE: logging.INFO,
    LogLevel.WARNING: logging.WARNING,
    LogLevel.ERROR: logging.ERROR,
    LogLevel.CRITICAL: logging.CRITICAL,
    LogLevel.ALERT: logging.CRITICAL,
    LogLevel.EMERGENCY: logging.CRITICAL,
}


def _get_file_handler() -> RotatingFileHandler:
    """Get or create the file handler.

    Returns:
        RotatingFileHandler: The file handler for JSON logging.

    Raises:
        ValueError: If file logging is disabled or no log file specified.
    """
    global _file_handler  # pylint: disable=global-statement
    if _file_handler is None:
        if not settings.log_to_file or not settings.log_file:
            raise ValueError("File logging is disabled or no log file specified")

        if settings.log_folder:
            os.makedirs(settings.log_folder, exist_ok=True)
            log_path = os.path.join(settings.log_folder, settings.log_file)
        else:
            log_path = settings.log_file

        _file_handler = RotatingFileHandler(log_path, maxBytes=1024 * 1024, backupCount=5)
        _file_handler.setFormatter(json_formatter)
    return _file_handler


def _get_console_handler() -> logging.StreamHandler:
    """Get or create the console handler.

    Returns:
        logging.StreamHandler: Stream handler writing to stderr.
    """
    global _console_handler  # pylint: disable=global-statement
    if _console_handler is None:
        _console_handler = logging.StreamHandler()
        _console_handler.setFormatter(json_formatter if settings.log_format == "json" else text_formatter)
    return _console_handler


class LoggingService:
    """MCP Guard logging service.

    Loggers are created once per name and share the console and file
    handlers. Handlers attach to the ``mcpguard`` package logger only, so
    records from child loggers reach them exactly once through propagation.
    """

    _root_name = "mcpguard"
    _level: LogLevel = LogLevel(settings.log_level)
    _loggers: Dict[str, logging.Logger] = {}
    _configured = False

    def _configure(self) -> None:
        """Attach handlers to the package logger on first use."""
        if LoggingService._configured:
            return
        root = logging.getLogger(self._root_name)
        root.addHandler(_get_console_handler())
        if settings.log_to_file and settings.log_file:
            try:
                root.addHandler(_get_file_handler())
            except OSError as e:
                root.warning(f"Failed to initialize file logging: {e}")
        root.setLevel(_PY_LEVELS[LoggingService._level])
        LoggingService._configured = True

    async def initialize(self) -> None:
        """Initialize logging service.

        Examples:
            >>> from mcpguard.services.logging_service import LoggingService
            >>> import asyncio
            >>> asyncio.run(LoggingService().initialize())
        """
        self._configure()
        if settings.log_to_file and settings.log_file:
            self.get_logger(__name__).info(f"File logging enabled: {settings.log_folder or '.'}/{settings.log_file}")
        self.get_logger(__name__).debug("Logging service initialized")

    async def shutdown(self) -> None:
        """Flush and close handlers.

        Examples:
            >>> from mcpguard.services.logging_service import LoggingService
            >>> import asyncio
            >>> asyncio.run(LoggingService().shutdown())
        """
        for handler in (_file_handler, _console_handler):
            if handler is not None:
                handler.flush()
        if _file_handler is not None:
            _file_handler.close()

    def get_logger(self, name: str) -> logging.Logger:
        """Get or create logger instance.

        Args:
            name: Logger name; names outside the package are nested under it.

        Returns:
            Logger instance

        Examples:
            >>> from mcpguard.services.logging_service import LoggingService
            >>> import logging
            >>> logger = LoggingService().get_logger('mcpguard.test')
            >>> isinstance(logger, logging.Logger)
            True
            >>> logger.name
            'mcpguard.test'
        """
        self._configure()
        if not (name == self._root_name or name.startswith(self._root_name + ".")):
            name = f"{self._root_name}.{name}" if name else self._root_name
        if name not in LoggingService._loggers:
            LoggingService._loggers[name] = logging.getLogger(name)
        return LoggingService._loggers[name]

    def get_security_logger(self) -> logging.Logger:
        """Logger dedicated to security-relevant events.

        Returns:
            Logger instance
        """
        return self.get_logger(SECURITY_LOGGER_NAME)

    async def set_level(self, level: LogLevel) -> None:
        """Set minimum log level for the package.

        Args:
            level: New log level

        Examples:
            >>> from mcpguard.services.logging_service import LoggingService
            >>> from mcpguard.models import LogLevel
            >>> import asyncio
            >>> asyncio.run(LoggingService().set_level(LogLevel.DEBUG))
        """
        LoggingService._level = level
        logging.getLogger(self._root_name).setLevel(_PY_LEVELS[level])
        self.get_logger(__name__).info(f"Log level set to {level.value}")
