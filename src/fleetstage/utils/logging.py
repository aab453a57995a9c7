"""Logging infrastructure with structured JSON logging."""

import logging
import json
import sys
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional


# Structured fields carried from LogContext into the JSON log file
STRUCTURED_FIELDS = ('resource_key', 'stage', 'provider', 'operation', 'duration')


class JSONFormatter(logging.Formatter):
    """Custom formatter that outputs logs as JSON."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON.

        Args:
            record: The log record to format

        Returns:
            JSON-formatted log string
        """
        log_data = {
            'timestamp': datetime.now(timezone.utc).isoformat().replace('+00:00', 'Z'),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
        }

        if record.exc_info:
            log_data['exception'] = self.formatException(record.exc_info)

        for field_name in STRUCTURED_FIELDS:
            if hasattr(record, field_name):
                log_data[field_name] = getattr(record, field_name)

        return json.dumps(log_data, default=str)


class ConsoleFormatter(logging.Formatter):
    """Human-readable formatter for console output."""

    COLORS = {
        'DEBUG': '\033[36m',    # Cyan
        'INFO': '\033[32m',     # Green
        'WARNING': '\033[33m',  # Yellow
        'ERROR': '\033[31m',    # Red
        'CRITICAL': '\033[35m', # Magenta
    }
    RESET = '\033[0m'

    def format(self, record: logging.LogRecord) -> str:
        """Format log record for console.

        Args:
            record: The log record to format

        Returns:
            Formatted log string with colors
        """
        color = self.COLORS.get(record.levelname, '')
        reset = self.RESET

        timestamp = datetime.now().strftime('%H:%M:%S')
        level = f"{color}{record.levelname:8}{reset}"
        message = record.getMessage()

        if hasattr(record, 'resource_key'):
            message = f"[{record.resource_key}] {message}"
        elif hasattr(record, 'stage'):
            message = f"[stage:{record.stage}] {message}"

        return f"{timestamp} {level} {message}"


def setup_logging(log_level: str = 'info', log_dir: Optional[Path] = None) -> Path:
    """Setup logging infrastructure.

    Args:
        log_level: Logging level (debug, info, warning, error)
        log_dir: Directory for the JSON log files (defaults to .fleetflow/logs)

    Returns:
        Path of today's JSON log file
    """
    level = getattr(logging, log_level.upper())

    log_dir = Path(log_dir) if log_dir is not None else Path('.fleetflow/logs')
    log_dir.mkdir(parents=True, exist_ok=True)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    # Remove existing handlers
    root_logger.handlers.clear()

    # Console handler with human-readable format
    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(level)
    console_handler.setFormatter(ConsoleFormatter())
    root_logger.addHandler(console_handler)

    # File handler with JSON format
    log_file = log_dir / f"fleetstage-{datetime.now(timezone.utc).strftime('%Y%m%d')}.jsonl"
    file_handler = logging.FileHandler(log_file)
    file_handler.setLevel(logging.DEBUG)  # Always log debug to file
    file_handler.setFormatter(JSONFormatter())
    root_logger.addHandler(file_handler)

    # Reduce noise from boto3 and other libraries
    logging.getLogger('boto3').setLevel(logging.WARNING)
    logging.getLogger('botocore').setLevel(logging.WARNING)
    logging.getLogger('urllib3').setLevel(logging.WARNING)

    return log_file


def get_logger(name: str) -> logging.Logger:
    """Get a logger instance.

    Args:
        name: Name of the logger (typically __name__)

    Returns:
        Configured logger instance
    """
    return logging.getLogger(name)


_local = threading.local()
_factory_installed = False
_factory_lock = threading.Lock()


def _current_fields() -> Dict[str, Any]:
    fields: Dict[str, Any] = {}
    for frame in getattr(_local, 'stack', ()):
        fields.update(frame)
    return fields


def _install_record_factory() -> None:
    global _factory_installed
    with _factory_lock:
        if _factory_installed:
            return
        old_factory = logging.getLogRecordFactory()

        def record_factory(*args, **kwargs):
            record = old_factory(*args, **kwargs)
            for key, value in _current_fields().items():
                setattr(record, key, value)
            return record

        logging.setLogRecordFactory(record_factory)
        _factory_installed = True


class LogContext:
    """Context manager for adding structured fields to logs.

    Fields are kept per thread, so parallel per-server workers never tag
    each other's records.
    """

    def __init__(self, logger: logging.Logger, **kwargs: Any):
        """Initialize log context.

        Args:
            logger: Logger to add context to
            **kwargs: Key-value pairs to add to log records
        """
        self.logger = logger
        self.context = {k: v for k, v in kwargs.items() if v is not None}

    def __enter__(self):
        """Enter context and add fields to log records."""
        _install_record_factory()
        if not hasattr(_local, 'stack'):
            _local.stack = []
        _local.stack.append(self.context)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Exit context and drop this frame's fields."""
        stack = getattr(_local, 'stack', [])
        if stack and stack[-1] is self.context:
            stack.pop()
