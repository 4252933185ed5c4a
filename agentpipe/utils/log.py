"""Logging utilities for agentpipe.

Every module logs through ``logging.getLogger(__name__)``; ``AgentpipeLogger``
owns the ``agentpipe`` parent logger those records end up on.
"""

import json
import logging
import os
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

_LOG_RECORD_FIELDS = {
    "name",
    "msg",
    "args",
    "levelname",
    "levelno",
    "pathname",
    "filename",
    "module",
    "exc_info",
    "exc_text",
    "stack_info",
    "lineno",
    "funcName",
    "created",
    "msecs",
    "relativeCreated",
    "thread",
    "threadName",
    "processName",
    "process",
    "message",
    "asctime",
    "stacklevel",
    "taskName",
}

LOG_LEVEL_ENV = "AGENTPIPE_LOG_LEVEL"


class StructuredFormatter(logging.Formatter):
    """Formatter with ISO timestamps and ``extra=`` fields rendered as JSON."""

    def formatTime(self, record: logging.LogRecord, datefmt: Optional[str] = None) -> str:
        timestamp = datetime.fromtimestamp(record.created, timezone.utc)
        return timestamp.strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z"

    def format(self, record: logging.LogRecord) -> str:
        message = super().format(record)
        extras = {
            key: value
            for key, value in record.__dict__.items()
            if key not in _LOG_RECORD_FIELDS and not key.startswith("_")
        }
        if extras:
            try:
                serialized = json.dumps(extras, sort_keys=True, ensure_ascii=True, default=str)
            except (TypeError, ValueError):
                serialized = str(extras)
            return f"{message} | {serialized}"
        return message


def _console_level() -> int:
    level_name = os.getenv(LOG_LEVEL_ENV, "WARNING").upper()
    level = logging.getLevelName(level_name)
    return level if isinstance(level, int) else logging.WARNING


class AgentpipeLogger:
    """Logger for agentpipe."""

    def __init__(self, name: str = "agentpipe", log_file: Optional[Path] = None):
        self.logger = logging.getLogger(name)
        # File handlers capture debug logs while the console respects the configured level.
        self.logger.setLevel(logging.DEBUG)
        self.logger.propagate = False

        # Avoid adding duplicate handlers if an existing logger is reused.
        if not self.logger.handlers:
            console_handler = logging.StreamHandler(sys.stderr)
            console_handler.setLevel(_console_level())
            console_handler.setFormatter(logging.Formatter("%(levelname)s: %(message)s"))
            self.logger.addHandler(console_handler)

        # Adopt a file handler left by an earlier instance so it gets replaced, not stacked.
        self._file_handler: Optional[logging.FileHandler] = next(
            (h for h in self.logger.handlers if isinstance(h, logging.FileHandler)), None
        )
        self._file_handler_path: Optional[Path] = (
            Path(self._file_handler.baseFilename) if self._file_handler else None
        )

        if log_file:
            self.attach_file_handler(log_file)

    def set_console_level(self, level: int) -> None:
        """Change how much reaches stderr, e.g. for a ``--verbose`` flag."""
        for handler in self.logger.handlers:
            if isinstance(handler, logging.StreamHandler) and not isinstance(
                handler, logging.FileHandler
            ):
                handler.setLevel(level)

    def attach_file_handler(self, log_file: Path) -> Path:
        """Attach or replace a file handler for logging to disk."""
        log_file = Path(log_file).resolve()
        log_file.parent.mkdir(parents=True, exist_ok=True)
        if self._file_handler and self._file_handler_path == log_file:
            return log_file

        if self._file_handler:
            self.logger.removeHandler(self._file_handler)
            self._file_handler.close()

        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(StructuredFormatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s"))
        self.logger.addHandler(file_handler)
        self._file_handler = file_handler
        self._file_handler_path = log_file
        return log_file

    def debug(self, message: str, *args: Any, **kwargs: Any) -> None:
        self.logger.debug(message, *args, **kwargs)

    def info(self, message: str, *args: Any, **kwargs: Any) -> None:
        self.logger.info(message, *args, **kwargs)

    def warning(self, message: str, *args: Any, **kwargs: Any) -> None:
        self.logger.warning(message, *args, **kwargs)

    def error(self, message: str, *args: Any, **kwargs: Any) -> None:
        self.logger.error(message, *args, **kwargs)

    def exception(self, message: str, *args: Any, **kwargs: Any) -> None:
        """Log an exception with traceback."""
        self.logger.exception(message, *args, **kwargs)


# Global logger instance
_logger: Optional[AgentpipeLogger] = None


def get_logger() -> AgentpipeLogger:
    """Get the global logger instance."""
    global _logger
    if _logger is None:
        _logger = AgentpipeLogger()
    return _logger


def init_logger(log_file: Optional[Path] = None) -> AgentpipeLogger:
    """Initialize the global logger, optionally writing to ``log_file``."""
    global _logger
    _logger = AgentpipeLogger(log_file=log_file)
    return _logger


__all__ = ["AgentpipeLogger", "StructuredFormatter", "get_logger", "init_logger"]
