"""Logging configuration with per-request correlation ids."""

from __future__ import annotations

import logging
import sys
from contextvars import ContextVar
from typing import Iterable, Optional, Union

request_id_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)


class RequestIdFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = request_id_var.get() or "-"
        return True


def _has_handler(logger: logging.Logger, handler_types: Iterable[type]) -> bool:
    return any(isinstance(handler, tuple(handler_types)) for handler in logger.handlers)


def configure_logging(level: Union[int, str] = logging.INFO) -> logging.Logger:
    """Attach a stdout handler to the package logger, once."""

    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO

    package_logger = logging.getLogger("textile_tracker")
    package_logger.setLevel(level)

    formatter = logging.Formatter(
        "%(asctime)s [%(levelname)s] [req=%(request_id)s] %(name)s: %(message)s"
    )

    if not _has_handler(package_logger, (logging.StreamHandler,)):
        stream_handler = logging.StreamHandler(sys.stdout)
        stream_handler.setFormatter(formatter)
        stream_handler.addFilter(RequestIdFilter())
        package_logger.addHandler(stream_handler)

    for handler in package_logger.handlers:
        handler.setLevel(level)

    return package_logger


__all__ = ["RequestIdFilter", "configure_logging", "request_id_var"]
