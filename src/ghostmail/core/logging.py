"""Logging configuration helpers."""

from __future__ import annotations

import logging
import logging.config
import re
from typing import Any

from .config import LoggingSettings

_BEARER_PATTERN = re.compile(r"(Bearer\s+)[A-Za-z0-9._\-]+")


class RedactingFilter(logging.Filter):
    """Strip bearer tokens from rendered log messages."""

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        if "Bearer" in message:
            record.msg = _BEARER_PATTERN.sub(r"\1[REDACTED]", message)
            record.args = ()
        return True


def mask_id(value: str | None, first: int = 2, last: int = 4) -> str:
    """Shorten an identifier for log output, keeping its ends recognisable."""
    if not value:
        return "[empty]"
    if len(value) <= first + last:
        return f"{value[:1]}…{value[-1:]}"
    return f"{value[:first]}…{value[-last:]}"


def _structured_formatter() -> dict[str, Any]:
    """Return a dictConfig fragment for structured JSON logs."""
    return {
        "format": "{asctime} {levelname} {name} {message}",
        "style": "{",
    }


def _plain_formatter() -> dict[str, Any]:
    """Return a dictConfig fragment for human readable logs."""
    return {
        "format": "%(asctime)s %(levelname)s %(name)s %(message)s",
    }


def configure_logging(settings: LoggingSettings) -> None:
    """Configure application logging according to provided settings."""
    formatter = _structured_formatter() if settings.structured else _plain_formatter()

    dict_config = {
        "version": 1,
        "disable_existing_loggers": False,
        "filters": {
            "redact": {"()": RedactingFilter},
        },
        "formatters": {
            "default": formatter,
        },
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "formatter": "default",
                "filters": ["redact"],
                "level": settings.level,
            },
        },
        "loggers": {
            # httpx logs every request URL at INFO
            "httpx": {"level": "WARNING"},
            "httpcore": {"level": "WARNING"},
        },
        "root": {
            "handlers": ["console"],
            "level": settings.level,
        },
    }

    logging.config.dictConfig(dict_config)


__all__ = ["RedactingFilter", "configure_logging", "mask_id"]
