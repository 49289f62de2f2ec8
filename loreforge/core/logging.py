"""Structured logging for LoreForge.

Lines are key=value pairs. Session, stage and chunk ids are promoted to the
front of each line when present so one generation run can be followed across
stages and chunk iterations.
"""

import logging
import sys
from typing import Any

from pydantic import ValidationError

# Promoted to the front of every line, in this order
CONTEXT_FIELDS = ("session_id", "stage_id", "chunk")


class StructuredFormatter(logging.Formatter):
    """key=value formatter with pipeline context fields first."""

    def format(self, record: logging.LogRecord) -> str:
        log_data: dict[str, Any] = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
        }
        for field in CONTEXT_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                log_data[field] = value

        log_data["message"] = record.getMessage()

        if hasattr(record, "extra_data"):
            log_data.update({k: v for k, v in record.extra_data.items() if v is not None})
        if record.exc_info:
            log_data["exc"] = self.formatException(record.exc_info).replace("\n", " | ")

        return " ".join(f"{k}={v}" for k, v in log_data.items())


def _level_from_settings() -> int:
    try:
        from loreforge.core.config import get_settings

        settings = get_settings()
    except ValidationError:
        return logging.INFO

    if settings.LOG_LEVEL:
        return logging.getLevelName(settings.LOG_LEVEL.upper())
    return logging.DEBUG if settings.LOREFORGE_ENV == "dev" else logging.INFO


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger with the structured handler attached.

    Level comes from LOG_LEVEL when set, else DEBUG in dev and INFO otherwise.

    Args:
        name: Logger name (typically __name__)

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(name)

    if not logger.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(StructuredFormatter())
        logger.addHandler(handler)
        logger.setLevel(_level_from_settings())

    return logger


def log_with_context(logger: logging.Logger, level: int, msg: str, **kwargs: Any) -> None:
    """
    Log with additional context fields.

    Args:
        logger: Logger instance
        level: Log level (logging.INFO, etc.)
        msg: Log message
        **kwargs: Context fields; session_id, stage_id and chunk are promoted
    """
    extra: dict[str, Any] = {field: kwargs.pop(field) for field in CONTEXT_FIELDS if field in kwargs}
    extra["extra_data"] = kwargs
    logger.log(level, msg, extra=extra)
