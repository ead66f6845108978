"""
Logging configuration.

WHAT: Builds and applies the dictConfig used by the API process.

WHY: Every service logs with logging.getLogger(__name__) and structured
``extra`` fields. This module decides where those records go and how they
are formatted: human-readable for development, JSON for log aggregation.

HOW: RequestIdFilter copies the current request ID from the request
context ContextVar onto each record so the formatters can print it.
"""

import logging
import logging.config
import sys
from typing import Any, Dict, Optional

from billing_sync.core.config import Settings
from billing_sync.middleware.request_context import get_request_context


class RequestIdFilter(logging.Filter):
    """Attach the current request ID (or "-") to every log record."""

    def filter(self, record: logging.LogRecord) -> bool:
        context = get_request_context()
        record.request_id = context.request_id if context else "-"
        return True


def build_logging_config(log_level: str = "INFO", log_format: str = "console") -> Dict[str, Any]:
    """
    Build a dictConfig for the application.

    Args:
        log_level: Root log level name
        log_format: "console" or "json"

    Returns:
        Dict suitable for logging.config.dictConfig
    """
    formatter = "json" if log_format == "json" else "console"

    return {
        "version": 1,
        "disable_existing_loggers": False,
        "filters": {
            "request_id": {"()": RequestIdFilter},
        },
        "formatters": {
            "json": {
                "()": "pythonjsonlogger.jsonlogger.JsonFormatter",
                "format": "%(asctime)s %(levelname)s %(name)s %(request_id)s %(message)s",
                "json_ensure_ascii": False,
            },
            "console": {
                "format": "%(asctime)s - %(name)s - %(levelname)s - [%(request_id)s] %(message)s",
                "datefmt": "%Y-%m-%d %H:%M:%S",
            },
        },
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "formatter": formatter,
                "filters": ["request_id"],
                "stream": sys.stdout,
            },
        },
        "loggers": {
            # Records propagate to the root handler; only the level differs
            "billing_sync": {"level": log_level.upper()},
            # Stripe's SDK logs request bodies at debug level
            "stripe": {"level": "WARNING"},
        },
        "root": {
            "handlers": ["console"],
            "level": "WARNING",
        },
    }


def configure_logging(settings: Settings, config: Optional[Dict[str, Any]] = None) -> None:
    """
    Configure logging for the application.

    Args:
        settings: Application settings (LOG_LEVEL, LOG_FORMAT)
        config: Optional full dictConfig overriding the built one
    """
    if config is None:
        config = build_logging_config(settings.LOG_LEVEL, settings.LOG_FORMAT)

    logging.config.dictConfig(config)
    logging.getLogger(__name__).info(
        "Logging configured",
        extra={"log_level": settings.LOG_LEVEL, "log_format": settings.LOG_FORMAT},
    )
