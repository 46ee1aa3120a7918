"""
Logging setup for ctxsync.

Console output goes to stderr so it never mixes with rendered query
results; an optional rotating file under .ctxsync/ keeps a history of
sync passes. Either can be switched to one-JSON-object-per-line output.
"""

import json
import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

# Chatty dependencies that only log useful detail at DEBUG
NOISY_LOGGERS = ("httpx", "httpcore", "sentence_transformers", "urllib3", "filelock", "watchdog")

TEXT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


class JsonFormatter(logging.Formatter):
    """One JSON object per record."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": self.formatTime(record, DATE_FORMAT),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "thread": record.threadName,
        }
        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_data)


def _level(name: str) -> int:
    level = logging.getLevelName(name.upper())
    if not isinstance(level, int):
        raise ValueError(f"Unknown log level: {name}")
    return level


def setup_logging(
    level: str = "INFO",
    log_file: Optional[Path] = None,
    json_format: bool = False,
    max_log_size_mb: int = 10,
    log_backups: int = 5,
) -> None:
    """
    Configure the root logger for a ctxsync process.

    Replaces any handlers already on the root logger, so calling it twice
    (e.g. once per CLI command) does not duplicate output.

    Args:
        level: Log level name (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Optional path of a rotating log file
        json_format: Emit JSON lines instead of text
        max_log_size_mb: Size at which the log file rotates
        log_backups: Number of rotated files to keep

    Example:
        setup_logging(level="DEBUG", log_file=Path(".ctxsync/ctxsync.log"))
    """
    numeric_level = _level(level)
    formatter = JsonFormatter() if json_format else logging.Formatter(TEXT_FORMAT, datefmt=DATE_FORMAT)

    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)
        handler.close()

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    if log_file:
        try:
            log_file.parent.mkdir(parents=True, exist_ok=True)
            file_handler = RotatingFileHandler(
                filename=str(log_file),
                maxBytes=max_log_size_mb * 1024 * 1024,
                backupCount=log_backups,
                encoding="utf-8",
            )
        except OSError as e:
            root_logger.warning(f"Cannot write log file {log_file}: {e}. Logging to console only")
        else:
            file_handler.setFormatter(formatter)
            root_logger.addHandler(file_handler)

    set_log_level(level)
    logging.getLogger(__name__).debug(
        f"Logging initialized: level={logging.getLevelName(numeric_level)}, "
        f"file={log_file or 'disabled'}, format={'json' if json_format else 'text'}"
    )


def set_log_level(level: str) -> None:
    """
    Change the level of the root logger and its handlers.

    Third-party loggers in NOISY_LOGGERS stay at WARNING unless the level
    is DEBUG.
    """
    numeric_level = _level(level)
    root_logger = logging.getLogger()
    root_logger.setLevel(numeric_level)
    for handler in root_logger.handlers:
        handler.setLevel(numeric_level)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(numeric_level if numeric_level <= logging.DEBUG else logging.WARNING)
