"""Structured logging configuration for the rate limiter.

This module provides a structured logging setup using Python's standard
logging module with JSON formatting for production environments.
"""

import json
import logging
import logging.config
import re
import sys
import traceback
from datetime import datetime
from typing import Any, Dict, Optional

from bucketgate.app.core.config import settings


_CREDENTIALS_RE = re.compile(r"//[^/@]*@")


def mask_url(url: str) -> str:
    """Hide credentials in a connection URL (``redis://***@host:port``)."""
    return _CREDENTIALS_RE.sub("//***@", url)


class JSONFormatter(logging.Formatter):
    """JSON formatter for structured logging.

    Outputs log records as JSON objects for consumption by log aggregation
    systems like ELK Stack or Grafana Loki.
    """

    STANDARD_FIELDS = ["name", "levelname", "message", "timestamp"]

    # Contextual fields for rate limit decisions
    CONTEXT_FIELDS = [
        "request_id",    # Request ID from X-Request-ID header
        "limiter",       # Logical limiter name (e.g. "listings:create")
        "bucket",        # Effective storage key
        "decision",      # allowed | denied | store_unavailable | ...
        "identity",      # Resolved caller identity
        "path",          # Request path
        "method",        # HTTP method
    ]

    _RESERVED = frozenset((
        "name", "msg", "args", "levelname", "levelno", "pathname",
        "filename", "module", "exc_info", "exc_text", "stack_info",
        "lineno", "funcName", "created", "msecs", "relativeCreated",
        "thread", "threadName", "processName", "process", "message",
        "asctime", "timestamp", "logger", "level", "source", "taskName",
    ))

    def __init__(
        self,
        fields: Optional[list] = None,
        datefmt: Optional[str] = None,
    ):
        super().__init__(datefmt=datefmt)
        self.fields = fields or (self.STANDARD_FIELDS + self.CONTEXT_FIELDS)

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON.

        Args:
            record: Log record to format

        Returns:
            JSON string representation of the log record
        """
        log_data: Dict[str, Any] = {}

        record.message = record.getMessage()

        log_data["timestamp"] = datetime.now().astimezone().isoformat()
        log_data["level"] = record.levelname
        log_data["logger"] = record.name
        log_data["message"] = record.message

        log_data["source"] = {
            "file": record.pathname,
            "line": record.lineno,
            "function": record.funcName,
        }

        for field in self.CONTEXT_FIELDS:
            value = getattr(record, field, None)
            if value is not None and value != "-":
                log_data[field] = value

        for key, value in record.__dict__.items():
            if key in self._RESERVED or key in self.CONTEXT_FIELDS:
                continue
            log_data.setdefault("extra", {})[key] = value

        if record.exc_info and record.exc_info != (None, None, None):
            log_data["exception"] = traceback.format_exception(*record.exc_info)

        return json.dumps(log_data, default=str, ensure_ascii=False)


class ContextFilter(logging.Filter):
    """Logging filter that adds contextual fields to log records.

    Adds default values for limiter, bucket and other contextual fields
    if not already present in the log record.
    """

    CONTEXT_DEFAULTS = {
        "request_id": None,
        "limiter": None,
        "bucket": None,
        "decision": None,
        "identity": None,
        "path": None,
        "method": None,
    }

    def filter(self, record: logging.LogRecord) -> bool:
        for field, default in self.CONTEXT_DEFAULTS.items():
            if not hasattr(record, field):
                setattr(record, field, default)
        return True


def get_logging_config() -> Dict[str, Any]:
    """Get logging configuration dictionary.

    Returns:
        Logging configuration dict compatible with logging.config.dictConfig
    """
    log_format = getattr(settings, "log_format", "text").lower()
    log_level = getattr(settings, "log_level", "INFO").upper()

    formatters = {
        "standard": {
            "format": "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
        },
        "structured": {
            "format": "%(asctime)s - %(name)s - %(levelname)s - %(message)s - limiter=%(limiter)s - bucket=%(bucket)s - decision=%(decision)s"
        },
    }

    if log_format == "json":
        formatters["json"] = {
            "()": "bucketgate.app.core.logging.JSONFormatter",
        }
        default_formatter = "json"
    else:
        default_formatter = "structured" if log_format == "structured" else "standard"

    handlers = {
        "console": {
            "class": "logging.StreamHandler",
            "level": log_level,
            "formatter": default_formatter,
            "stream": sys.stdout,
            "filters": ["context"],
        },
        "error_console": {
            "class": "logging.StreamHandler",
            "level": "ERROR",
            "formatter": default_formatter,
            "stream": sys.stderr,
            "filters": ["context"],
        },
    }

    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": formatters,
        "filters": {
            "context": {
                "()": "bucketgate.app.core.logging.ContextFilter",
            },
        },
        "handlers": handlers,
        "loggers": {
            "bucketgate": {
                "level": log_level,
                "handlers": ["console", "error_console"],
                "propagate": False,
            },
            "uvicorn": {
                "level": log_level,
                "handlers": ["console"],
                "propagate": False,
            },
        },
        "root": {
            "level": log_level,
            "handlers": ["console"],
        },
    }


def setup_logging() -> None:
    """Configure logging for the application."""
    logging.config.dictConfig(get_logging_config())

    # Reduce noise from third-party libraries
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("redis").setLevel(logging.WARNING)


def get_logger(name: str = "bucketgate") -> logging.Logger:
    """Get a logger instance with the specified name."""
    return logging.getLogger(name)


def get_log_context(
    limiter: Optional[str] = None,
    bucket: Optional[str] = None,
    decision: Optional[str] = None,
    identity: Optional[str] = None,
    request_id: Optional[str] = None,
    **extra
) -> Dict[str, Any]:
    """Create a log context dictionary for use with extra parameter.

    Example:
        >>> logger.warning(
        ...     "Rate limit store unavailable",
        ...     extra=get_log_context(limiter="listings:create", decision="store_unavailable")
        ... )
    """
    context = {
        "limiter": limiter,
        "bucket": bucket,
        "decision": decision,
        "identity": identity,
        "request_id": request_id,
    }
    context.update(extra)
    return {k: v for k, v in context.items() if v is not None}
