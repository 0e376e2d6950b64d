"""Logging configuration for AbuseGuard."""

import logging
import sys
from typing import Any

import structlog

from abuseguard import __version__
from abuseguard.config import Settings, get_settings


def add_service_info(_logger: Any, _method: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    """Stamp every event so AbuseGuard lines can be told apart from the host API's."""
    event_dict.setdefault("service", "abuseguard")
    event_dict.setdefault("version", __version__)
    return event_dict


def setup_logging(settings: Settings | None = None) -> None:
    """Configure structlog for the given settings, or the process-wide ones."""
    settings = settings or get_settings()
    level = getattr(logging, settings.log_level.upper())

    processors = [
        structlog.contextvars.merge_contextvars,
        add_service_info,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if settings.log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty()))

    structlog.configure(
        processors=processors,  # type: ignore[arg-type]
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)

    # RequestLoggingMiddleware already logs every request
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
