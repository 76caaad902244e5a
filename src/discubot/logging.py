"""Logging configuration for Discubot.

Every pipeline attempt runs inside :func:`discussion_context`, which binds the
discussion id, source type and attempt number through ``structlog.contextvars``
so each event logged by adapters, outputs and the analysis engine carries them
without threading ids through every call.
"""

import logging
import sys
from collections.abc import Iterator, MutableMapping
from contextlib import contextmanager
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any

import structlog

from discubot.config import Settings, get_settings

# Event keys whose values are credentials and never reach a log line
SECRET_KEYS = frozenset(
    {"api_token", "apitoken", "notion_token", "notiontoken", "authorization", "token"}
)
REDACTED = "***"

_NOISY_LOGGERS = ("httpx", "httpcore", "anthropic", "asyncpg", "aiohttp.access")


def redact_secrets(
    _logger: Any, _method: str, event_dict: MutableMapping[str, Any]
) -> MutableMapping[str, Any]:
    """Mask credential values, including inside a nested ``config`` dict."""
    for key, value in list(event_dict.items()):
        if key.lower() in SECRET_KEYS and value:
            event_dict[key] = REDACTED
        elif isinstance(value, dict):
            event_dict[key] = {
                k: REDACTED if k.lower() in SECRET_KEYS and v else v for k, v in value.items()
            }
    return event_dict


@contextmanager
def discussion_context(
    discussion_id: str, *, source_type: str | None = None, attempt: int | None = None
) -> Iterator[None]:
    """Bind discussion identifiers to every log event emitted inside the block.

    Previous values are restored on exit, so nested or concurrent attempts
    (each in its own task) never leak ids into each other.
    """
    fields: dict[str, Any] = {"discussion_id": discussion_id}
    if source_type is not None:
        fields["source_type"] = source_type
    if attempt is not None:
        fields["attempt"] = attempt
    with structlog.contextvars.bound_contextvars(**fields):
        yield


def _prepare_log_directory(settings: Settings) -> bool:
    if not settings.log_to_file:
        return False
    try:
        Path(settings.log_directory).mkdir(parents=True, exist_ok=True)
    except OSError as e:
        # Fall back to console-only logging
        print(f"Warning: Could not create log directory: {e}", file=sys.stderr)
        return False
    return True


def _file_handler(settings: Settings, log_level: int) -> RotatingFileHandler | None:
    try:
        handler = RotatingFileHandler(
            filename=settings.log_file_path,
            maxBytes=settings.log_file_max_bytes,
            backupCount=settings.log_file_backup_count,
            encoding="utf-8",
        )
    except OSError as e:
        print(f"Warning: Could not setup file logging: {e}", file=sys.stderr)
        return None
    handler.setLevel(log_level)
    # Files are always JSON
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processors=[
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                structlog.processors.JSONRenderer(),
            ]
        )
    )
    return handler


def setup_logging() -> None:
    """Configure structured logging with console and optional file outputs."""
    settings = get_settings()
    log_level = getattr(logging, settings.log_level.upper(), logging.INFO)
    log_to_file = _prepare_log_directory(settings)

    logging.basicConfig(format="%(message)s", level=log_level, handlers=[])

    # Console: colored in dev, JSON in prod
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(log_level)
    console_handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processors=[
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                (
                    structlog.dev.ConsoleRenderer(colors=True)  # type: ignore[list-item]
                    if settings.is_development
                    else structlog.processors.JSONRenderer()
                ),
            ]
        )
    )
    logging.root.addHandler(console_handler)

    if log_to_file:
        file_handler = _file_handler(settings, log_level)
        if file_handler is not None:
            logging.root.addHandler(file_handler)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            redact_secrets,
            structlog.processors.StackInfoRenderer(),
            structlog.dev.set_exc_info,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    for noisy in _NOISY_LOGGERS:
        logging.getLogger(noisy).setLevel(logging.WARNING)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a logger instance."""
    return structlog.get_logger(name)  # type: ignore[no-any-return]
