"""Logging setup: colour console output plus JSON-lines files with stack fields."""

import json
import logging
import sys
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

# Record attributes carried into the JSON output when present
STRUCTURED_FIELDS = ('stack', 'phase', 'step', 'operation', 'duration')

_context = threading.local()


def _active_fields() -> Dict[str, Any]:
    return getattr(_context, 'fields', {})


class ContextFilter(logging.Filter):
    """Fills in LogContext fields that a record does not already carry.

    Fields passed through ``extra=`` take precedence over the context.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        for key, value in _active_fields().items():
            if not hasattr(record, key):
                setattr(record, key, value)
        return True


class JSONFormatter(logging.Formatter):
    """One JSON object per line, for the log files under ``.stackrecon/logs``."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            'timestamp': datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'thread': record.threadName,
            'message': record.getMessage(),
        }
        entry.update({name: getattr(record, name) for name in STRUCTURED_FIELDS if hasattr(record, name)})

        if record.exc_info:
            entry['exception'] = self.formatException(record.exc_info)

        return json.dumps(entry, default=str)


class ConsoleFormatter(logging.Formatter):
    """Short coloured lines for the terminal, prefixed with the stack and phase."""

    COLORS = {
        'DEBUG': '\033[36m',
        'INFO': '\033[32m',
        'WARNING': '\033[33m',
        'ERROR': '\033[31m',
        'CRITICAL': '\033[35m',
    }
    RESET = '\033[0m'

    def format(self, record: logging.LogRecord) -> str:
        color = self.COLORS.get(record.levelname, '')
        prefix = ''
        if getattr(record, 'stack', None):
            prefix = f"[{record.stack}] "
        if getattr(record, 'phase', None):
            prefix += f"({record.phase}) "

        line = (
            f"{datetime.fromtimestamp(record.created).strftime('%H:%M:%S')} "
            f"{color}{record.levelname:8}{self.RESET} {prefix}{record.getMessage()}"
        )
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


def setup_logging(log_level: str = 'info', log_dir: Optional[str] = '.stackrecon/logs') -> None:
    """Configure the root logger for a stackrecon run.

    Replaces any handlers already installed, so calling it again
    reconfigures logging instead of duplicating output.

    Args:
        log_level: Console level (debug, info, warning, error)
        log_dir: Directory for daily JSON-lines files, or None for console only
    """
    level = getattr(logging, log_level.upper())
    context_filter = ContextFilter()

    root_logger = logging.getLogger()
    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)
        handler.close()

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(level)
    console_handler.setFormatter(ConsoleFormatter())
    console_handler.addFilter(context_filter)
    root_logger.addHandler(console_handler)

    if log_dir:
        log_path = Path(log_dir)
        log_path.mkdir(parents=True, exist_ok=True)

        file_handler = logging.FileHandler(
            log_path / f"stackrecon-{datetime.now(timezone.utc).strftime('%Y%m%d')}.jsonl"
        )
        # Files always get the full debug trail
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(JSONFormatter())
        file_handler.addFilter(context_filter)
        root_logger.addHandler(file_handler)
        root_logger.setLevel(logging.DEBUG)
    else:
        root_logger.setLevel(level)

    for noisy in ('boto3', 'botocore', 'urllib3'):
        logging.getLogger(noisy).setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    """Get a logger instance.

    Args:
        name: Name of the logger (typically __name__)

    Returns:
        Logger instance
    """
    return logging.getLogger(name)


class LogContext:
    """Adds structured fields to every record logged by the current thread.

    Contexts nest; the inner one wins for repeated keys.

    Example:
        with LogContext(stack='us-east-1/network'):
            engine.reconcile(desired)
    """

    def __init__(self, **fields: Any):
        self.fields = fields
        self._previous: Dict[str, Any] = {}

    def __enter__(self) -> "LogContext":
        self._previous = _active_fields()
        _context.fields = {**self._previous, **self.fields}
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        _context.fields = self._previous
