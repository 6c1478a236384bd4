"""Logging configuration for the workflow engine.

Every record passing through the engine's handlers carries the workflow
context of the thread that emitted it (instance id, branch token, node id),
so interleaved branch tasks of different instances can be told apart in a
shared log.
"""

import logging
import sys
import json
import threading
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from typing import Optional, Dict, Any
from pathlib import Path

DEFAULT_LOG_FORMAT = "%(asctime)s %(levelname)-8s %(name)s%(workflow)s: %(message)s"

# Context keys shown in the plain-text workflow marker, in this order
CONTEXT_MARKER_KEYS = ("instance_id", "token", "node_id")


class StructuredFormatter(logging.Formatter):
    """Formatter emitting one JSON object per log record."""

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "thread": record.threadName,
        }
        entry.update(getattr(record, "extra_fields", {}))

        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = {
                "type": record.exc_info[0].__name__,
                "message": str(record.exc_info[1]),
                "traceback": self.formatException(record.exc_info),
            }

        return json.dumps(entry, default=str)


class WorkflowTextFormatter(logging.Formatter):
    """Plain-text formatter that appends ``[instance=... token=...]`` when context is set."""

    def format(self, record: logging.LogRecord) -> str:
        fields = getattr(record, "extra_fields", {})
        parts = [f"{key.split('_')[0]}={fields[key]}" for key in CONTEXT_MARKER_KEYS if fields.get(key)]
        record.workflow = f" [{' '.join(parts)}]" if parts else ""
        return super().format(record)


class WorkflowContextFilter(logging.Filter):
    """Adds the calling thread's workflow context (instance id, token, ...) to log records.

    Context is kept per thread because branch tasks of different instances
    run side by side on the same worker pool.
    """

    def __init__(self):
        super().__init__()
        self._local = threading.local()

    def _context(self) -> Dict[str, Any]:
        context = getattr(self._local, "context", None)
        if context is None:
            context = {}
            self._local.context = context
        return context

    def set_context(self, **kwargs):
        self._context().update(kwargs)

    def clear_context(self):
        self._context().clear()

    def get_context(self) -> Dict[str, Any]:
        return dict(self._context())

    def filter(self, record: logging.LogRecord) -> bool:
        fields = dict(self._context())
        fields.update(getattr(record, "extra_fields", {}))
        record.extra_fields = fields
        return True


_context_filter = WorkflowContextFilter()


def _attach(root_logger: logging.Logger, handler: logging.Handler, formatter: logging.Formatter) -> None:
    handler.setFormatter(formatter)
    handler.addFilter(_context_filter)
    root_logger.addHandler(handler)


def setup_logging(
    level: str = "INFO",
    log_file: Optional[str] = None,
    log_format: Optional[str] = None,
    structured: bool = False,
    max_size: int = 10 * 1024 * 1024,  # 10MB
    backup_count: int = 5
) -> logging.Logger:
    """
    Configure logging for the workflow engine.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Optional file path; the file is rotated at ``max_size`` bytes
        log_format: Format string for plain-text output; may use ``%(workflow)s``
        structured: Emit JSON lines instead of plain text
        max_size: Maximum log file size in bytes before rotation
        backup_count: Number of rotated files to keep

    Returns:
        Root logger instance
    """
    if structured:
        formatter: logging.Formatter = StructuredFormatter()
    else:
        formatter = WorkflowTextFormatter(fmt=log_format or DEFAULT_LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper()))
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    _attach(root_logger, logging.StreamHandler(sys.stdout), formatter)

    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        _attach(root_logger, RotatingFileHandler(log_file, maxBytes=max_size, backupCount=backup_count), formatter)

    # Library loggers stay at WARNING whatever the engine level
    for noisy in ("sqlalchemy.engine", "sqlalchemy.pool", "urllib3"):
        logging.getLogger(noisy).setLevel(logging.WARNING)
    logging.getLogger("flowengine").setLevel(root_logger.level)

    return root_logger


def get_logger(name: str) -> logging.Logger:
    """Get a logger instance for the given name."""
    return logging.getLogger(name)


def set_logging_context(**kwargs):
    """Set context fields for subsequent log messages on this thread."""
    _context_filter.set_context(**kwargs)


def clear_logging_context():
    """Clear this thread's logging context fields."""
    _context_filter.clear_context()


def get_logging_context() -> Dict[str, Any]:
    return _context_filter.get_context()


def log_with_context(logger: logging.Logger, level: int, message: str, **context):
    """Log a message with additional context fields."""
    logger.log(level, message, extra={"extra_fields": context})


class ErrorRecoveryLogger:
    """Logger for retry attempts made by the recovery helpers."""

    def __init__(self, component_name: str):
        self.logger = get_logger(f"flowengine.recovery.{component_name}")
        self.component_name = component_name

    def log_recovery_attempt(self, operation: str, error: Exception, attempt: int, max_attempts: int):
        log_with_context(
            self.logger, logging.WARNING,
            f"Recovery attempt {attempt}/{max_attempts} for {operation}: {error}",
            component=self.component_name,
            operation=operation,
            error_type=type(error).__name__,
            attempt=attempt,
            max_attempts=max_attempts
        )

    def log_recovery_success(self, operation: str, attempts_used: int):
        log_with_context(
            self.logger, logging.INFO,
            f"Recovered {operation} after {attempts_used} attempts",
            component=self.component_name,
            operation=operation,
            attempts_used=attempts_used,
            recovery_status="success"
        )

    def log_recovery_failure(self, operation: str, final_error: Exception, attempts_used: int):
        log_with_context(
            self.logger, logging.ERROR,
            f"Giving up on {operation} after {attempts_used} attempts: {final_error}",
            component=self.component_name,
            operation=operation,
            error_type=type(final_error).__name__,
            attempts_used=attempts_used,
            recovery_status="failed"
        )
