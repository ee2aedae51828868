from __future__ import annotations

import logging
import logging.handlers
import os
import pathlib
import re
import sys
from typing import Any, Dict, List, Optional, Union

import structlog
from pythonjsonlogger import jsonlogger

from pluginfed.core.base import PluginfedManager
from pluginfed.utils.exceptions import ManagerInitializationError, ManagerShutdownError

_SIZE_UNITS = {"B": 1, "KB": 1024, "MB": 1024 ** 2, "GB": 1024 ** 3}
_SIZE_PATTERN = re.compile(r"^\s*(\d+)\s*([KMG]?B)\s*$", re.IGNORECASE)
_RETENTION_PATTERN = re.compile(r"^\s*(\d+)\s*(?:days?|files?)?\s*$", re.IGNORECASE)

DEFAULT_MAX_BYTES = 10 * 1024 ** 2
DEFAULT_BACKUP_COUNT = 30


def parse_rotation(value: Any) -> int:
    """Convert a rotation setting such as ``"10 MB"`` or ``512000`` to bytes."""
    if isinstance(value, int) and value > 0:
        return value
    match = _SIZE_PATTERN.match(str(value))
    if not match:
        return DEFAULT_MAX_BYTES
    return int(match.group(1)) * _SIZE_UNITS[match.group(2).upper()]


def parse_retention(value: Any) -> int:
    """Convert a retention setting such as ``"30 days"`` to a backup file count."""
    if isinstance(value, int) and value >= 0:
        return value
    match = _RETENTION_PATTERN.match(str(value))
    return int(match.group(1)) if match else DEFAULT_BACKUP_COUNT


class LoggingManager(PluginfedManager):
    """Manages logging configuration and access.

    Configures Python's logging module with console and rotating-file handlers
    based on configuration, and hands out loggers to the federation components.
    """

    # Mapping from string log levels to logging module constants
    LOG_LEVELS = {
        "debug": logging.DEBUG,
        "info": logging.INFO,
        "warning": logging.WARNING,
        "error": logging.ERROR,
        "critical": logging.CRITICAL,
    }

    def __init__(self, config_manager: Any) -> None:
        """Initialize the Logging Manager.

        Args:
            config_manager: The Configuration Manager to use for logging settings.
        """
        super().__init__(name="logging_manager")
        self._config_manager = config_manager
        self._root_logger: Optional[logging.Logger] = None
        self._file_handler: Optional[logging.Handler] = None
        self._console_handler: Optional[logging.Handler] = None
        self._log_directory: Optional[pathlib.Path] = None
        self._enable_structlog = False
        self._handlers: List[logging.Handler] = []

    async def initialize(self) -> None:
        """Initialize the Logging Manager.

        Raises:
            ManagerInitializationError: If initialization fails.
        """
        try:
            logging_config = await self._config_manager.get("logging", {})
            log_level = self._parse_level(logging_config.get("level", "INFO"))
            log_format = logging_config.get("format", "json").lower()
            file_config = logging_config.get("file", {})
            console_config = logging_config.get("console", {})

            self._root_logger = logging.getLogger()
            self._root_logger.setLevel(log_level)

            if log_format == "json":
                self._enable_structlog = True
                formatter = self._create_json_formatter()
            else:
                formatter = logging.Formatter(
                    "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
                )

            if console_config.get("enabled", True):
                self._console_handler = logging.StreamHandler(sys.stdout)
                self._console_handler.setLevel(self._parse_level(console_config.get("level", "INFO")))
                self._console_handler.setFormatter(formatter)
                self._add_handler(self._console_handler)

            if file_config.get("enabled", True):
                file_path = file_config.get("path", "logs/pluginfed.log")
                self._log_directory = pathlib.Path(file_path).parent
                os.makedirs(self._log_directory, exist_ok=True)

                self._file_handler = logging.handlers.RotatingFileHandler(
                    file_path,
                    maxBytes=parse_rotation(file_config.get("rotation", "10 MB")),
                    backupCount=parse_retention(file_config.get("retention", "30 days")),
                    encoding="utf-8",
                )
                self._file_handler.setLevel(log_level)
                self._file_handler.setFormatter(formatter)
                self._add_handler(self._file_handler)

            if self._enable_structlog:
                self._configure_structlog()

            await self._config_manager.register_listener("logging", self._on_config_changed)

            self._root_logger.info(
                "Logging Manager initialized",
                extra={"manager": "LoggingManager", "event": "initialization"},
            )

            self._mark_started()

        except Exception as e:
            raise ManagerInitializationError(
                f"Failed to initialize LoggingManager: {str(e)}",
                manager_name=self.name,
            ) from e

    def _parse_level(self, level: Any) -> int:
        level_str = level.lower() if isinstance(level, str) else "info"
        return self.LOG_LEVELS.get(level_str, logging.INFO)

    def _add_handler(self, handler: logging.Handler) -> None:
        self._root_logger.addHandler(handler)
        self._handlers.append(handler)

    def _create_json_formatter(self) -> logging.Formatter:
        """Create a JSON formatter for log records.

        Returns:
            logging.Formatter: A formatter that outputs logs in JSON format.
        """
        return jsonlogger.JsonFormatter(
            fmt="%(asctime)s %(name)s %(levelname)s %(message)s",
            datefmt="%Y-%m-%dT%H:%M:%S%z",
            json_ensure_ascii=False,
            static_fields={"service": "pluginfed"},
        )

    def _configure_structlog(self) -> None:
        """Configure structlog for structured logging."""
        structlog.configure(
            processors=[
                structlog.stdlib.filter_by_level,
                structlog.processors.TimeStamper(fmt="iso"),
                structlog.stdlib.add_logger_name,
                structlog.stdlib.add_log_level,
                structlog.processors.StackInfoRenderer(),
                structlog.processors.format_exc_info,
                structlog.processors.UnicodeDecoder(),
                structlog.stdlib.render_to_log_kwargs,
            ],
            context_class=dict,
            logger_factory=structlog.stdlib.LoggerFactory(),
            wrapper_class=structlog.stdlib.BoundLogger,
            cache_logger_on_first_use=True,
        )

    def get_logger(self, name: str) -> Union[logging.Logger, Any]:
        """Get a logger for a specific component.

        Args:
            name: The name of the component requesting a logger.

        Returns:
            A logger instance configured for the component. Before initialization
            this is a plain stdlib logger.
        """
        if not self._initialized:
            return logging.getLogger(name)

        if self._enable_structlog:
            return structlog.get_logger(name)
        return logging.getLogger(name)

    async def _on_config_changed(self, key: str, value: Any) -> None:
        """Handle configuration changes for logging.

        Args:
            key: The configuration key that changed.
            value: The new value.
        """
        if not self._root_logger:
            return

        if key in ("logging.level", "logging"):
            level = value.get("level", "INFO") if isinstance(value, dict) else value
            log_level = self._parse_level(level)
            self._root_logger.setLevel(log_level)
            if self._file_handler:
                self._file_handler.setLevel(log_level)
        elif key == "logging.console.level" and self._console_handler:
            self._console_handler.setLevel(self._parse_level(value))
        elif key == "logging.file.level" and self._file_handler:
            self._file_handler.setLevel(self._parse_level(value))

    async def shutdown(self) -> None:
        """Shut down the Logging Manager.

        Raises:
            ManagerShutdownError: If shutdown fails.
        """
        if not self._initialized:
            return

        try:
            self._root_logger.info(
                "Shutting down Logging Manager",
                extra={"manager": "LoggingManager", "event": "shutdown"},
            )

            for handler in self._handlers:
                self._root_logger.removeHandler(handler)
                handler.flush()
                handler.close()
            self._handlers.clear()

            await self._config_manager.unregister_listener("logging", self._on_config_changed)

            self._mark_stopped()

        except Exception as e:
            raise ManagerShutdownError(
                f"Failed to shut down LoggingManager: {str(e)}",
                manager_name=self.name,
            ) from e

    def status(self) -> Dict[str, Any]:
        """Get the status of the Logging Manager.

        Returns:
            Dict[str, Any]: Status information about the Logging Manager.
        """
        status = super().status()

        if self._initialized:
            status.update(
                {
                    "log_directory": str(self._log_directory) if self._log_directory else None,
                    "handlers": {
                        "console": self._console_handler in self._handlers,
                        "file": self._file_handler in self._handlers,
                    },
                    "structured_logging": self._enable_structlog,
                }
            )

        return status
