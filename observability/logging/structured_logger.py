"""
Structured Logger
=================

Logging setup for export runs.

Features:
- Plain or JSON-formatted console output
- Optional log file
- Context enrichment (run_id, command) for every record inside a run
- Run start/end events with machine-readable fields
"""

import json
import logging
import os
import sys
import threading
import traceback
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Optional

# Thread-local storage for context
_context = threading.local()

PLAIN_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

_RESERVED = {
    'name', 'msg', 'args', 'created', 'filename', 'funcName',
    'levelname', 'levelno', 'lineno', 'module', 'msecs',
    'pathname', 'process', 'processName', 'relativeCreated',
    'stack_info', 'exc_info', 'exc_text', 'thread', 'threadName',
    'message', 'taskName'
}


class JsonFormatter(logging.Formatter):
    """JSON log formatter for structured logging."""

    def __init__(self, include_extra: bool = True):
        super().__init__()
        self.include_extra = include_extra

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno
        }

        # Add exception info if present
        if record.exc_info:
            log_entry["exception"] = {
                "type": record.exc_info[0].__name__ if record.exc_info[0] else None,
                "message": str(record.exc_info[1]) if record.exc_info[1] else None,
                "traceback": traceback.format_exception(*record.exc_info)
            }

        context_data = current_context()
        if context_data:
            log_entry["context"] = context_data

        if self.include_extra:
            for key in set(record.__dict__.keys()) - _RESERVED:
                log_entry[key] = getattr(record, key)

        return json.dumps(log_entry, default=str)


def current_context() -> Dict[str, Any]:
    """Copy of the context active in this thread."""
    return getattr(_context, 'data', {}).copy()


@contextmanager
def context(**kwargs):
    """
    Context manager adding fields to every JSON log record within scope.

    Usage:
        with context(run_id="123", command="export"):
            logger.info("Processing")  # Includes run_id and command
    """
    if not hasattr(_context, 'data'):
        _context.data = {}

    old_data = _context.data.copy()
    _context.data.update(kwargs)

    try:
        yield
    finally:
        _context.data = old_data


def setup_logging(
    level: str = "INFO",
    json_format: bool = False,
    log_to_file: bool = False,
    log_path: str = "logs/export.log"
):
    """
    Configure the root logger once per process.

    Args:
        level: Log level name
        json_format: Use JSON formatting
        log_to_file: Also write to log_path
        log_path: Log file path
    """
    log_level = getattr(logging, str(level).upper(), logging.INFO)

    logging.basicConfig(level=log_level, format=PLAIN_FORMAT, stream=sys.stdout)
    root = logging.getLogger()
    root.setLevel(log_level)

    if json_format:
        for handler in root.handlers:
            if isinstance(handler, logging.StreamHandler) and not isinstance(handler, logging.FileHandler):
                handler.setFormatter(JsonFormatter())

    if log_to_file:
        log_path = os.path.abspath(log_path)
        if not any(getattr(h, "baseFilename", None) == log_path for h in root.handlers):
            os.makedirs(os.path.dirname(log_path), exist_ok=True)
            file_handler = logging.FileHandler(log_path)
            file_handler.setFormatter(JsonFormatter() if json_format else logging.Formatter(PLAIN_FORMAT))
            root.addHandler(file_handler)


def log_run_start(logger: logging.Logger, command: str, run_id: str, config: Optional[Dict] = None):
    """Log run start event."""
    logger.info(
        f"Export started: {command}",
        extra={
            "event": "run_start",
            "command": command,
            "run_id": run_id,
            "config": config
        }
    )


def log_run_end(
    logger: logging.Logger,
    command: str,
    run_id: str,
    status: str,
    duration_seconds: float,
    rows_exported: int = 0
):
    """Log run end event."""
    level = logging.INFO if status == "success" else logging.ERROR
    logger.log(
        level,
        f"Export completed: {command} ({status})",
        extra={
            "event": "run_end",
            "command": command,
            "run_id": run_id,
            "status": status,
            "duration_seconds": duration_seconds,
            "rows_exported": rows_exported
        }
    )


def new_trace_id() -> str:
    """Generate a new trace ID."""
    return str(uuid.uuid4())[:8]
