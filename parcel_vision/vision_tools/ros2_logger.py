"""
ROS2-Style Logger for the parcel measurement tools

Provides logging functionality mimicking ROS2 format:
[timestamp] [level] [node_name]: message

Features:
- Console and file logging
- Configurable log levels
- Records of the parcel_vision library routed to the same sinks
- Millisecond timestamp precision
"""

from __future__ import annotations

import logging
import sys
from datetime import datetime
from pathlib import Path
from typing import List, Optional

PACKAGE_LOGGER = "parcel_vision"


class _ROS2Formatter(logging.Formatter):
    """[timestamp] [LEVEL] [node]: message, optionally colored."""

    def __init__(self, node_name: str, timestamp_format: str, colors: Optional[dict] = None):
        super().__init__()
        self.node_name = node_name
        self.timestamp_format = timestamp_format
        self.colors = colors

    def format(self, record: logging.LogRecord) -> str:
        timestamp = datetime.fromtimestamp(record.created).strftime(self.timestamp_format)[:-3]
        level = record.levelname
        # Library records keep their module name so stages stay distinguishable
        node = self.node_name if record.name == self.node_name else record.name
        message = record.getMessage()
        if record.exc_info:
            message = f"{message}\n{self.formatException(record.exc_info)}"
        if self.colors is None:
            return f"[{timestamp}] [{level}] [{node}]: {message}"
        color = self.colors.get(level, self.colors['RESET'])
        reset = self.colors['RESET']
        return f"{color}[{timestamp}] [{level}] [{node}]:{reset} {message}"


class ROS2StyleLogger:
    """Logger with ROS2-style formatting."""

    # ANSI color codes for console output
    COLORS = {
        'DEBUG': '\033[36m',    # Cyan
        'INFO': '\033[32m',     # Green
        'WARN': '\033[33m',     # Yellow
        'WARNING': '\033[33m',  # Yellow
        'ERROR': '\033[31m',    # Red
        'CRITICAL': '\033[35m', # Magenta
        'RESET': '\033[0m'      # Reset
    }

    def __init__(
        self,
        node_name: str = "parcel_measure",
        log_file: Optional[Path] = None,
        console_level: str = "INFO",
        file_level: str = "DEBUG",
        timestamp_format: str = "%Y-%m-%d %H:%M:%S.%f",
        overwrite_log: bool = True,
        attach_package: bool = True,
        use_color: bool = True,
    ):
        """
        Initialize ROS2-style logger.

        Args:
            node_name: Name of the node (appears in log messages)
            log_file: Path to log file (None = no file logging)
            console_level: Logging level for console output (None/"" = no console)
            file_level: Logging level for file output
            timestamp_format: Format string for timestamps
            overwrite_log: If True, overwrite log file on start; if False, append
            attach_package: Also route ``parcel_vision.*`` records to these handlers
            use_color: ANSI colors on the console handler
        """
        self.node_name = node_name
        self.timestamp_format = timestamp_format
        self.log_file = log_file
        self.handlers: List[logging.Handler] = []

        self.logger = logging.getLogger(node_name)
        self.logger.setLevel(logging.DEBUG)
        self.logger.handlers.clear()
        self.logger.propagate = False

        if console_level:
            console_handler = logging.StreamHandler(sys.stdout)
            console_handler.setLevel(getattr(logging, console_level.upper()))
            console_handler.setFormatter(
                _ROS2Formatter(node_name, timestamp_format, self.COLORS if use_color else None)
            )
            self.handlers.append(console_handler)

        if log_file:
            log_file = Path(log_file)
            log_file.parent.mkdir(parents=True, exist_ok=True)
            file_mode = 'w' if overwrite_log else 'a'
            file_handler = logging.FileHandler(log_file, mode=file_mode, encoding='utf-8')
            file_handler.setLevel(getattr(logging, file_level.upper()))
            file_handler.setFormatter(_ROS2Formatter(node_name, timestamp_format))
            self.handlers.append(file_handler)

        for handler in self.handlers:
            self.logger.addHandler(handler)

        if attach_package and node_name != PACKAGE_LOGGER:
            package_logger = logging.getLogger(PACKAGE_LOGGER)
            package_logger.setLevel(logging.DEBUG)
            package_logger.handlers.clear()
            package_logger.propagate = False
            for handler in self.handlers:
                package_logger.addHandler(handler)

    def debug(self, message: str) -> None:
        self.logger.debug(message)

    def info(self, message: str) -> None:
        self.logger.info(message)

    def warn(self, message: str) -> None:
        self.logger.warning(message)

    def warning(self, message: str) -> None:
        """Log warning message (alias)."""
        self.logger.warning(message)

    def error(self, message: str) -> None:
        self.logger.error(message)

    def critical(self, message: str) -> None:
        self.logger.critical(message)

    def set_level(self, level: str) -> None:
        """Change the console level dynamically."""
        for handler in self.handlers:
            if isinstance(handler, logging.StreamHandler) and not isinstance(handler, logging.FileHandler):
                handler.setLevel(getattr(logging, level.upper()))

    def close(self) -> None:
        """Detach and close every handler this logger installed."""
        package_logger = logging.getLogger(PACKAGE_LOGGER)
        for handler in self.handlers:
            self.logger.removeHandler(handler)
            package_logger.removeHandler(handler)
            handler.close()
        self.handlers.clear()
        if not package_logger.handlers:
            package_logger.propagate = True


def create_logger(
    node_name: str = "parcel_measure",
    log_dir: Optional[Path] = None,
    log_prefix: str = "parcel_measure",
    console_level: str = "INFO",
    file_level: str = "DEBUG",
    use_timestamp: bool = False,
    overwrite_log: bool = True,
    attach_package: bool = True,
) -> ROS2StyleLogger:
    """
    Factory function to create a ROS2-style logger.

    Args:
        node_name: Name of the node
        log_dir: Directory for log files (None = no file logging)
        log_prefix: Prefix for log filename
        console_level: Console logging level
        file_level: File logging level
        use_timestamp: If True, add timestamp to filename; if False, use fixed name
        overwrite_log: If True, overwrite log on start; if False, append
        attach_package: Also route ``parcel_vision.*`` records to these handlers

    Returns:
        Configured ROS2StyleLogger instance
    """
    log_file = None
    if log_dir:
        log_dir = Path(log_dir)
        log_dir.mkdir(parents=True, exist_ok=True)

        if use_timestamp:
            timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
            log_file = log_dir / f"{log_prefix}_{timestamp}.log"
        else:
            log_file = log_dir / f"{log_prefix}.log"

    return ROS2StyleLogger(
        node_name=node_name,
        log_file=log_file,
        console_level=console_level,
        file_level=file_level,
        overwrite_log=overwrite_log,
        attach_package=attach_package,
    )
