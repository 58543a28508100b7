# logging.py

import logging
import os
from logging.handlers import RotatingFileHandler

import structlog
from pydantic import SecretStr
from sqlalchemy.engine import make_url
from sqlalchemy.exc import ArgumentError
from structlog.contextvars import merge_contextvars

from Tagstash.config import Settings

_DISABLED = "NONE"
_QUIET_LOGGERS = ("uvicorn", "uvicorn.error", "uvicorn.access", "asyncio", "alembic")
_SECRET_SUFFIXES = ("_key", "_secret", "_token", "_password")


def _json_formatter() -> structlog.stdlib.ProcessorFormatter:
    """One formatter for structlog events and foreign stdlib records alike."""
    return structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.add_log_level,
            # request_id, user_id and session_id bound by the API and the coordinator
            merge_contextvars,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        foreign_pre_chain=[structlog.processors.add_log_level, merge_contextvars],
    )


def _handler_levels(settings: Settings | None) -> tuple[str, str]:
    """Return (console, file) level names; ``NONE`` turns a handler off."""
    if settings is None:
        return "INFO", _DISABLED
    if not settings.logging_enabled:
        return _DISABLED, _DISABLED
    return settings.logging_console.upper(), settings.logging_file.upper()


def _level(name: str, default: int) -> int:
    value = logging.getLevelName(name)
    return value if isinstance(value, int) else default


def setup_logging(settings: Settings | None = None) -> None:
    """Route structlog through stdlib logging with JSON output.

    Console and rotating-file handlers are configured from the ``[logging]``
    settings; without settings only the console handler is enabled.
    """
    root_level = _level((settings.logging_level if settings else "INFO").upper(), logging.INFO)
    console_level, file_level = _handler_levels(settings)
    formatter = _json_formatter()
    handlers: list[logging.Handler] = []

    if console_level != _DISABLED:
        console = logging.StreamHandler()
        console.setLevel(_level(console_level, root_level))
        console.setFormatter(formatter)
        handlers.append(console)

    if file_level != _DISABLED and settings is not None:
        path = settings.logging_file_path
        os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
        rotating = RotatingFileHandler(
            path, maxBytes=settings.logging_max_bytes, backupCount=settings.logging_backup_count
        )
        rotating.setLevel(_level(file_level, root_level))
        rotating.setFormatter(formatter)
        handlers.append(rotating)

    logging.captureWarnings(True)
    logging.basicConfig(level=root_level, handlers=handlers, force=True)
    for name in _QUIET_LOGGERS:
        lg = logging.getLogger(name)
        lg.handlers = []
        lg.propagate = True

    structlog.configure(
        processors=[
            merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def redact_settings(settings: Settings) -> dict:
    """Settings as a dict that is safe to log: secrets and DB passwords masked."""
    data = settings.model_dump()
    for name, value in list(data.items()):
        if isinstance(value, SecretStr) or name.endswith(_SECRET_SUFFIXES):
            data[name] = "[REDACTED]" if value is not None else None
    try:
        data["database_url"] = make_url(settings.database_url).render_as_string(
            hide_password=True
        )
    except ArgumentError:
        data["database_url"] = "[REDACTED]"
    return data
