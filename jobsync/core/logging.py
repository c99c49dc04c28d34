"""Structured logging configuration using structlog."""

import logging
import sys
from contextvars import ContextVar
from typing import Any

import orjson
import structlog
from structlog.types import Processor

from jobsync.core.config import Settings, settings

# Correlation for log lines emitted inside fetch tasks and log streams
cache_key_ctx: ContextVar[str | None] = ContextVar("cache_key", default=None)
job_id_ctx: ContextVar[str | None] = ContextVar("job_id", default=None)

# Per-request lines from these are noise next to fetch_started/fetch_completed
_CHATTY_LOGGERS = ("httpx", "httpcore")


def _add_context_vars(
    logger: logging.Logger, method_name: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    """Copy the current cache key and job id into the event.

    Explicit ``cache_key=``/``job_id=`` arguments on the log call win.
    """
    if cache_key := cache_key_ctx.get():
        event_dict.setdefault("cache_key", cache_key)
    if job_id := job_id_ctx.get():
        event_dict.setdefault("job_id", job_id)
    return event_dict


def _orjson_serializer(obj: Any, **kwargs: Any) -> str:
    """Serialize a log event with orjson, falling back to str() for errors and keys."""
    return orjson.dumps(obj, default=str).decode("utf-8")


def _uses_json(config: Settings) -> bool:
    log_format = config.log_format.lower() if config.log_format else None
    if log_format is not None:
        return log_format == "json"
    return config.environment != "development"


def _renderers(use_json: bool) -> list[Processor]:
    if use_json:
        return [
            structlog.processors.EventRenamer("message"),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(serializer=_orjson_serializer),
        ]
    return [structlog.dev.ConsoleRenderer(colors=True)]


def configure_logging(config: Settings | None = None) -> None:
    """Configure structlog for the sync layer.

    Development renders colored console lines; every other environment
    emits one JSON object per event. ``log_format`` overrides either way.
    """
    config = config or settings
    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        _add_context_vars,
        *_renderers(_uses_json(config)),
    ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    level = logging.DEBUG if config.debug else logging.INFO
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)
    for name in _CHATTY_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))
