"""
Structured logging configuration.

Provides:
- Request ID generation and propagation through a ContextVar
- JSON formatted rotating log files for aggregation
- Human-readable console output

Usage:
    from worknote_rag.core.logging_config import get_logger, setup_logging

    # At application startup
    setup_logging()

    # In modules
    logger = get_logger(__name__)
    logger.info("Embedding finalized", extra={"work_id": work_id, "chunk_count": 3})
"""

import logging
import logging.handlers
import json
import sys
import uuid
from datetime import datetime, timezone
from typing import Optional, Dict, Any
from contextvars import ContextVar
from pathlib import Path

# Context variable for request ID - shared across the entire request lifecycle
request_id_var: ContextVar[Optional[str]] = ContextVar('request_id', default=None)

DEFAULT_LOG_DIR = Path(__file__).parent.parent.parent / "logs"
MAX_LOG_SIZE = 10 * 1024 * 1024  # 10 MB
BACKUP_COUNT = 5


def get_request_id() -> Optional[str]:
    """Get the current request ID from context."""
    return request_id_var.get()


def set_request_id(request_id: str) -> None:
    """Set the request ID in context."""
    request_id_var.set(request_id)


def generate_request_id() -> str:
    """Generate a unique request ID."""
    # Format: timestamp-short_uuid (e.g., "20260203101500-a1b2c3d4")
    timestamp = datetime.now(timezone.utc).strftime("%Y%m%d%H%M%S")
    short_uuid = uuid.uuid4().hex[:8]
    return f"{timestamp}-{short_uuid}"


class StructuredLogFormatter(logging.Formatter):
    """
    Formatter that outputs logs in structured JSON format.

    Each entry carries timestamp, level, logger, message, request_id (if
    any), source location, everything passed through ``extra`` and
    exception details.
    """

    _standard_attrs = {
        'name', 'msg', 'args', 'created', 'filename', 'funcName',
        'levelname', 'levelno', 'lineno', 'module', 'msecs',
        'pathname', 'process', 'processName', 'relativeCreated',
        'stack_info', 'exc_info', 'exc_text', 'thread', 'threadName',
        'taskName', 'message', 'request_id'
    }

    def format(self, record: logging.LogRecord) -> str:
        log_entry: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        request_id = get_request_id()
        if request_id:
            log_entry["request_id"] = request_id

        log_entry["source"] = {
            "file": record.pathname,
            "line": record.lineno,
            "function": record.funcName,
        }

        extra_data = {}
        for key, value in record.__dict__.items():
            if key not in self._standard_attrs and not key.startswith('_'):
                try:
                    json.dumps(value)
                    extra_data[key] = value
                except (TypeError, ValueError):
                    extra_data[key] = str(value)

        if extra_data:
            log_entry["extra"] = extra_data

        if record.exc_info:
            log_entry["exception"] = {
                "type": record.exc_info[0].__name__ if record.exc_info[0] else None,
                "message": str(record.exc_info[1]) if record.exc_info[1] else None,
                "traceback": self.formatException(record.exc_info) if record.exc_info[2] else None,
            }

        return json.dumps(log_entry, default=str)


class ConsoleLogFormatter(logging.Formatter):
    """
    Human-readable formatter for console output.

    Format: TIMESTAMP LEVEL [REQUEST_ID] [LOGGER] MESSAGE
    """

    COLORS = {
        'DEBUG': '\033[36m',     # Cyan
        'INFO': '\033[32m',      # Green
        'WARNING': '\033[33m',   # Yellow
        'ERROR': '\033[31m',     # Red
        'CRITICAL': '\033[35m',  # Magenta
    }
    RESET = '\033[0m'

    def __init__(self, use_colors: bool = True):
        super().__init__()
        self.use_colors = use_colors

    def format(self, record: logging.LogRecord) -> str:
        request_id = get_request_id()
        request_id_part = f"[{request_id}]" if request_id else ""

        timestamp = datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S.%f")[:-3]

        level = record.levelname
        if self.use_colors and level in self.COLORS:
            level_str = f"{self.COLORS[level]}{level:8}{self.RESET}"
        else:
            level_str = f"{level:8}"

        logger_name = record.name.split('.')[-1][:20]

        log_line = f"{timestamp} {level_str} {request_id_part:26} [{logger_name:20}] {record.getMessage()}"

        if record.exc_info:
            log_line += f"\n{self.formatException(record.exc_info)}"

        return log_line


class RequestIdFilter(logging.Filter):
    """Logging filter that adds request_id to all log records."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = get_request_id() or "no-request"
        return True


def setup_logging(
    log_level: str = "INFO",
    log_to_file: bool = True,
    log_to_console: bool = True,
    json_format: bool = True,
    console_colors: bool = True,
    log_dir: Optional[Path] = None,
) -> None:
    """
    Configure application-wide logging.

    Args:
        log_level: Minimum log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_to_file: Whether to log to rotating files
        log_to_console: Whether to log to console
        json_format: Use JSON format for file logs
        console_colors: Use colors in console output
        log_dir: Directory for app.log / error.log
    """
    log_dir = log_dir or DEFAULT_LOG_DIR
    level = getattr(logging, log_level.upper(), logging.INFO)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = []

    request_filter = RequestIdFilter()

    if log_to_file:
        log_dir.mkdir(parents=True, exist_ok=True)
        file_formatter = StructuredLogFormatter() if json_format else ConsoleLogFormatter(use_colors=False)

        file_handler = logging.handlers.RotatingFileHandler(
            log_dir / "app.log",
            maxBytes=MAX_LOG_SIZE,
            backupCount=BACKUP_COUNT,
            encoding='utf-8',
        )
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(file_formatter)
        file_handler.addFilter(request_filter)
        root_logger.addHandler(file_handler)

        error_handler = logging.handlers.RotatingFileHandler(
            log_dir / "error.log",
            maxBytes=MAX_LOG_SIZE,
            backupCount=BACKUP_COUNT,
            encoding='utf-8',
        )
        error_handler.setLevel(logging.ERROR)
        error_handler.setFormatter(file_formatter)
        error_handler.addFilter(request_filter)
        root_logger.addHandler(error_handler)

    if log_to_console:
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setLevel(level)
        console_handler.setFormatter(ConsoleLogFormatter(use_colors=console_colors))
        console_handler.addFilter(request_filter)
        root_logger.addHandler(console_handler)

    # Suppress noisy loggers
    logging.getLogger('uvicorn.access').setLevel(logging.WARNING)
    logging.getLogger('httpx').setLevel(logging.WARNING)
    logging.getLogger('httpcore').setLevel(logging.WARNING)
    logging.getLogger('openai').setLevel(logging.WARNING)

    logging.getLogger(__name__).info(
        "Logging configured",
        extra={
            "log_level": log_level,
            "log_to_file": log_to_file,
            "json_format": json_format,
            "log_dir": str(log_dir),
        }
    )


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger with the specified name.

    Usage:
        logger = get_logger(__name__)
        logger.info("Enqueued embedding job", extra={"work_id": "WORK-1"})
    """
    return logging.getLogger(name)
