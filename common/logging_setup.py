"""
Structured Logging Setup

Consistent logging configuration across the acquisition services.
Uses JSON format for structured logs unless THERMOPOLL_LOG_FORMAT=text.
"""

import logging
import sys
import os
from datetime import datetime, timezone
from typing import Any, Union
import json

# Helpers accept a bare logger or a service adapter
LoggerLike = Union[logging.Logger, logging.LoggerAdapter]

# LogRecord attributes that are not user-supplied extra fields
_RESERVED_ATTRS = frozenset((
    "name", "msg", "args", "levelname", "levelno", "pathname",
    "filename", "module", "exc_info", "exc_text", "stack_info",
    "lineno", "funcName", "created", "msecs", "relativeCreated",
    "thread", "threadName", "processName", "process", "service",
    "message", "taskName",
))


class JsonFormatter(logging.Formatter):
    """JSON log formatter for structured logging"""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "service": getattr(record, "service", "unknown"),
            "message": record.getMessage(),
            "logger": record.name,
        }

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        # Add extra fields
        for key, value in record.__dict__.items():
            if key not in _RESERVED_ATTRS:
                log_data[key] = value

        return json.dumps(log_data, default=str)


class ServiceLoggerAdapter(logging.LoggerAdapter):
    """Logger adapter that adds service name to all logs"""

    def process(self, msg: str, kwargs: dict) -> tuple[str, dict]:
        # Copy so a caller's extra dict is never mutated
        extra = dict(kwargs.get("extra") or {})
        extra["service"] = self.extra.get("service", "unknown")
        kwargs["extra"] = extra
        return msg, kwargs


def setup_logging(
    service_name: str,
    log_level: str = "INFO",
    json_format: bool = True,
) -> logging.Logger:
    """
    Set up structured logging for a service.

    Args:
        service_name: Name of the service (e.g., "acquisition.engine")
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_format: Use JSON format (True for production, False for dev)

    Returns:
        Configured logger instance
    """
    numeric_level = getattr(logging, log_level.upper(), logging.INFO)

    logger = logging.getLogger(f"thermopoll.{service_name}")
    logger.setLevel(numeric_level)

    # Clear existing handlers
    logger.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(numeric_level)

    if json_format:
        formatter = JsonFormatter()
    else:
        formatter = logging.Formatter(
            "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )

    handler.setFormatter(formatter)
    logger.addHandler(handler)

    # Don't propagate to root logger
    logger.propagate = False

    return logger


def get_service_logger(service_name: str) -> ServiceLoggerAdapter:
    """
    Get a logger adapter with service context.

    Args:
        service_name: Name of the service

    Returns:
        Logger adapter with service name in all logs
    """
    log_level = os.environ.get("THERMOPOLL_LOG_LEVEL", "INFO")
    json_format = os.environ.get("THERMOPOLL_LOG_FORMAT", "json").lower() == "json"

    logger = setup_logging(service_name, log_level, json_format)
    return ServiceLoggerAdapter(logger, {"service": service_name})


def set_log_level(log_level: str) -> None:
    """Change the level of every thermopoll logger already created."""
    numeric_level = getattr(logging, log_level.upper(), logging.INFO)
    for name, logger in logging.Logger.manager.loggerDict.items():
        if name.startswith("thermopoll.") and isinstance(logger, logging.Logger):
            logger.setLevel(numeric_level)
            for handler in logger.handlers:
                handler.setLevel(numeric_level)


class LogContext:
    """
    Context manager for adding temporary fields to one logger's records.

    The record factory is process-wide, so only records whose logger name
    matches are tagged. Keep the block synchronous: an await inside it
    would tag records of any task that logs through the same logger.

    Usage:
        with LogContext(logger, slave_id=1):
            logger.warning("Transaction #42 timeout")
    """

    def __init__(self, logger: LoggerLike, **context: Any):
        self.logger = logger
        self.context = context
        self._name = getattr(logger, "logger", logger).name
        self._original_factory = None

    def __enter__(self):
        self._original_factory = logging.getLogRecordFactory()

        def record_factory(*args, **kwargs):
            record = self._original_factory(*args, **kwargs)
            if record.name == self._name:
                for key, value in self.context.items():
                    setattr(record, key, value)
            return record

        logging.setLogRecordFactory(record_factory)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        logging.setLogRecordFactory(self._original_factory)
        return False


def log_transaction(
    logger: LoggerLike,
    sequence: int,
    outcome: str,
    readings: int = 0,
    duration_ms: float = 0.0,
    error: str | None = None,
) -> None:
    """Log the outcome of one polling transaction"""
    extra = {
        "sequence": sequence,
        "outcome": outcome,
        "readings": readings,
        "duration_ms": round(duration_ms, 1),
    }
    if outcome == "success":
        logger.debug(
            f"Transaction #{sequence}: {readings} readings in {duration_ms:.0f}ms",
            extra=extra,
        )
    else:
        extra["error"] = error
        logger.warning(
            f"Transaction #{sequence} {outcome}: {error}",
            extra=extra,
        )


def log_memory_usage(
    logger: LoggerLike,
    reading_count: int,
    trace_count: int,
    estimated_mb: float,
    process_rss_mb: float,
) -> None:
    """Log a store memory diagnostics sample"""
    logger.info(
        f"Memory usage: {reading_count} records, approximately {estimated_mb:.2f} MB "
        f"(process RSS {process_rss_mb:.1f} MB)",
        extra={
            "reading_count": reading_count,
            "trace_count": trace_count,
            "estimated_mb": round(estimated_mb, 2),
            "process_rss_mb": round(process_rss_mb, 1),
        },
    )
