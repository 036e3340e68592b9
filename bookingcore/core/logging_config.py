import logging
import sys

import structlog

from ..config import settings

_NOISY_LOGGERS = ("uvicorn.access", "sqlalchemy.engine", "urllib3")


def _resolve_level(level: int | str | None) -> int:
    if isinstance(level, int):
        return level
    name = (level or settings.LOG_LEVEL or "INFO").upper()
    resolved = logging.getLevelName(name)
    return resolved if isinstance(resolved, int) else logging.INFO


def _renderer(log_format: str):
    if log_format == "console":
        return structlog.dev.ConsoleRenderer()
    return structlog.processors.JSONRenderer()


def setup_logging(level: int | str | None = None, log_format: str | None = None) -> None:
    """Route stdlib and structlog output through one renderer on stdout."""
    resolved_level = _resolve_level(level)
    fmt = (log_format or settings.LOG_FORMAT or "json").lower()

    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=resolved_level, force=True)

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
    ]
    if fmt != "console":
        processors.append(structlog.processors.format_exc_info)
    processors.append(_renderer(fmt))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(resolved_level),
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(resolved_level, logging.WARNING))

    structlog.get_logger("bookingcore").info(
        "logging_initialized", level=logging.getLevelName(resolved_level), format=fmt
    )
