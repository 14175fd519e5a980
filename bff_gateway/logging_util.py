"""
Logging for the gateway: a console handler plus an optional rotating file,
every record stamped with the correlation id of the request it belongs to.

    from bff_gateway.logging_util import configure_logging, get_logger

    configure_logging(level="DEBUG", log_file="gateway.log")
    logger = get_logger(__name__)

`CorrelationIdMiddleware` binds the id per request; log calls never pass it.
"""

import logging
import uuid
from contextvars import ContextVar
from logging.handlers import RotatingFileHandler
from typing import Optional, Union

LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(correlation_id)s | %(name)s | %(message)s"

_correlation_id: ContextVar[str] = ContextVar("correlation_id", default="-")


def get_correlation_id() -> str:
    return _correlation_id.get()


def set_correlation_id(value: Optional[str] = None) -> str:
    """Bind a correlation id to the current context; generates one if not given."""
    value = value or uuid.uuid4().hex
    _correlation_id.set(value)
    return value


class CorrelationIdFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        record.correlation_id = _correlation_id.get()
        return True


def _to_level(level: Union[int, str]) -> int:
    if isinstance(level, int):
        return level
    resolved = logging.getLevelName(level.upper())
    return resolved if isinstance(resolved, int) else logging.INFO


def configure_logging(
    *,
    level: Union[int, str] = "INFO",
    log_file: Optional[str] = None,
    max_bytes: int = 10 * 1024 * 1024,  # 10 MB
    backup_count: int = 5,
    fmt: str = LOG_FORMAT,
    datefmt: str = "%Y-%m-%d %H:%M:%S",
) -> None:
    """
    Replace the root logger's handlers with a console handler and, when
    `log_file` is given, a RotatingFileHandler of `max_bytes` per file
    keeping `backup_count` old files. Safe to call more than once.
    """
    root = logging.getLogger()
    root.setLevel(_to_level(level))
    for h in list(root.handlers):
        root.removeHandler(h)

    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if log_file:
        handlers.append(
            RotatingFileHandler(filename=log_file, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8")
        )

    formatter = logging.Formatter(fmt=fmt, datefmt=datefmt)
    correlation_filter = CorrelationIdFilter()
    for handler in handlers:
        handler.setFormatter(formatter)
        handler.addFilter(correlation_filter)
        root.addHandler(handler)


def get_logger(name: Optional[str] = None) -> logging.Logger:
    return logging.getLogger(name)
