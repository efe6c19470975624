"""Logging setup: colored console output plus JSON-lines run logs.

Structured fields such as ``resource_id`` reach the handlers in two ways:
per call through ``extra=`` and per run through ``LogContext``. Run context is
process-wide, so records emitted by executor worker threads carry it too.
"""

import json
import logging
import sys
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

STRUCTURED_FIELDS = ('stack_name', 'operation', 'resource_id', 'resource_type', 'provider_id', 'duration')

_context_lock = threading.Lock()
_context_stack: List[Dict[str, Any]] = []


def current_context() -> Dict[str, Any]:
    """Merged fields of every active LogContext, innermost last."""
    with _context_lock:
        merged = {}
        for fields in _context_stack:
            merged.update(fields)
        return merged


class ContextFilter(logging.Filter):
    """Copy run context onto records without overriding explicit extras."""

    def filter(self, record: logging.LogRecord) -> bool:
        for key, value in current_context().items():
            if not hasattr(record, key):
                setattr(record, key, value)
        return True


class JSONFormatter(logging.Formatter):
    """One JSON object per record, for the run log file."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            'timestamp': datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
        }
        entry.update(
            (name, getattr(record, name)) for name in STRUCTURED_FIELDS if hasattr(record, name)
        )
        if record.exc_info:
            entry['exception'] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


class ConsoleFormatter(logging.Formatter):
    """Short colored lines prefixed with the resource they concern."""

    COLORS = {
        'DEBUG': '\033[36m',
        'INFO': '\033[32m',
        'WARNING': '\033[33m',
        'ERROR': '\033[31m',
        'CRITICAL': '\033[35m',
    }
    RESET = '\033[0m'

    def __init__(self, color: bool = True):
        super().__init__()
        self.color = color

    def format(self, record: logging.LogRecord) -> str:
        level = f"{record.levelname:8}"
        if self.color:
            level = f"{self.COLORS.get(record.levelname, '')}{level}{self.RESET}"

        message = record.getMessage()
        resource_id = getattr(record, 'resource_id', None)
        if resource_id:
            message = f"[{resource_id}] {message}"
        if record.exc_info and record.levelno >= logging.ERROR:
            message = f"{message}\n{self.formatException(record.exc_info)}"

        timestamp = datetime.fromtimestamp(record.created).strftime('%H:%M:%S')
        return f"{timestamp} {level} {message}"


def setup_logging(log_level: str = 'info', log_dir: Optional[str] = '.stratus/logs') -> None:
    """Configure the root logger for a CLI run.

    Console output goes to stderr so that machine-readable command output on
    stdout stays clean. The JSON file log always records DEBUG.

    Args:
        log_level: Console level (debug, info, warning, error)
        log_dir: Directory for JSON-lines log files, None to disable file logging
    """
    level = getattr(logging, log_level.upper())
    context_filter = ContextFilter()

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.setLevel(logging.DEBUG if log_dir else level)

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(level)
    console_handler.setFormatter(ConsoleFormatter(color=sys.stderr.isatty()))
    console_handler.addFilter(context_filter)
    root_logger.addHandler(console_handler)

    if log_dir:
        directory = Path(log_dir)
        directory.mkdir(parents=True, exist_ok=True)
        log_file = directory / f"stratus-{datetime.now(timezone.utc):%Y%m%d}.jsonl"
        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(JSONFormatter())
        file_handler.addFilter(context_filter)
        root_logger.addHandler(file_handler)

    for noisy in ('boto3', 'botocore', 'urllib3', 's3transfer'):
        logging.getLogger(noisy).setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    """Get a logger instance (typically for ``__name__``)."""
    return logging.getLogger(name)


class LogContext:
    """Attach structured fields to every record emitted while active.

    Contexts nest; inner fields shadow outer ones until the inner context
    exits.
    """

    def __init__(self, logger: logging.Logger, **fields: Any):
        """Initialize log context.

        Args:
            logger: Logger that announces the context at DEBUG level
            **fields: Fields added to log records
        """
        self.logger = logger
        self.fields = fields

    def __enter__(self):
        with _context_lock:
            _context_stack.append(self.fields)
        self.logger.debug(f"Entering context {self.fields}")
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        with _context_lock:
            # Remove this context even if an inner one leaked
            for index in range(len(_context_stack) - 1, -1, -1):
                if _context_stack[index] is self.fields:
                    del _context_stack[index]
                    break
