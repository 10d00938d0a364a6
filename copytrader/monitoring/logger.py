"""
Structured logging for the copy-trading worker.

structlog over stdlib logging: ISO UTC timestamps, JSON (production) or
console (local) rendering, optional rotating log file. Decimal values are
rendered as strings so quantities and prices keep their exact digits.
"""
import logging
import sys
from decimal import Decimal
from logging.handlers import RotatingFileHandler
from pathlib import Path

import structlog

# Third-party loggers that are chatty at INFO
_QUIET_LOGGERS = ("ccxt", "ccxt.base.exchange", "aiohttp.access", "sqlalchemy.engine")


def _decimals_to_str(logger, method_name, event_dict):
    for key, value in event_dict.items():
        if isinstance(value, Decimal):
            event_dict[key] = str(value)
    return event_dict


def setup_logging(log_level: str = "INFO", log_format: str = "json", log_file: str | None = None) -> None:
    """
    Configure structured logging. Safe to call more than once; handlers are replaced.

    Args:
        log_level: DEBUG/INFO/WARNING/ERROR/CRITICAL
        log_format: "json" or "text"
        log_file: Optional log file path (rotated at 10MB, 5 backups)
    """
    level = getattr(logging, log_level.upper())

    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(RotatingFileHandler(log_path, maxBytes=10 * 1024 * 1024, backupCount=5))
    for handler in handlers:
        handler.setLevel(level)
        handler.setFormatter(logging.Formatter("%(message)s"))
    logging.basicConfig(level=level, handlers=handlers, force=True)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        _decimals_to_str,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]
    if log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    get_logger(__name__).info(
        "Logging initialized", log_file=log_file, log_level=log_level, log_format=log_format,
    )


def get_logger(name: str) -> structlog.BoundLogger:
    """structlog logger for `name` (typically __name__)."""
    return structlog.get_logger(name)
