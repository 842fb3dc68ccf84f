from __future__ import annotations

import logging
from logging.config import dictConfig
from typing import Any, Iterable, Sequence

from settings import get_settings

# Record attributes appended to every line when a call site passes them in ``extra``.
CONTEXT_KEYS = (
    "device_id",
    "weight_kg",
    "stable_weight_kg",
    "item_count",
    "delta",
    "status",
    "outcome",
    "field",
    "payload",
    "client_count",
)

LOG_FORMAT = "%(asctime)sZ | %(levelname)s | %(name)s | %(message)s"
DATE_FORMAT = "%Y-%m-%dT%H:%M:%S"

_configured = False


def format_context_value(value: Any, precision: int = 3) -> str:
    """Render one context value; floats are fixed to ``precision`` decimals."""
    if isinstance(value, bool):
        return str(value).lower()
    if isinstance(value, float):
        return f"{value:.{precision}f}"
    if isinstance(value, str) and (not value or any(char.isspace() for char in value)):
        return repr(value)
    return str(value)


class ContextualFormatter(logging.Formatter):
    """Appends ``key=value`` pairs for the device context attached to a record."""

    def __init__(
        self,
        fmt: str | None = None,
        datefmt: str | None = None,
        style: str = "%",
        extra_keys: Iterable[str] | None = None,
        precision: int = 3,
    ) -> None:
        super().__init__(fmt=fmt, datefmt=datefmt, style=style)
        self._extra_keys: Sequence[str] = tuple(extra_keys or CONTEXT_KEYS)
        self._precision = precision

    def format(self, record: logging.LogRecord) -> str:
        message = super().format(record)
        context = " ".join(
            f"{key}={format_context_value(getattr(record, key), self._precision)}"
            for key in self._extra_keys
            if getattr(record, key, None) is not None
        )
        return f"{message} | {context}" if context else message


def logging_config_dict(level: str | int) -> dict:
    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "contextual": {
                "()": "logging_config.ContextualFormatter",
                "fmt": LOG_FORMAT,
                "datefmt": DATE_FORMAT,
                "style": "%",
                "extra_keys": list(CONTEXT_KEYS),
            }
        },
        "handlers": {
            "default": {
                "class": "logging.StreamHandler",
                "level": level,
                "formatter": "contextual",
            }
        },
        "root": {"handlers": ["default"], "level": level},
    }


def configure_logging(level: str | int | None = None) -> None:
    """Install the contextual handler on the root logger once per process."""
    global _configured
    if _configured:
        return
    dictConfig(logging_config_dict(level if level is not None else get_settings().log_level))
    _configured = True
