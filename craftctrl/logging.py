"""
CraftCtrl - Structured Logging

structlog configuration shared by the API and maintenance scripts.

Every log entry carries a timestamp, level and (inside a request) the
request ID bound by SecurityMiddleware. Values under keys that look like
credentials are masked before rendering.
"""

from __future__ import annotations

import logging
import sys
from typing import Any, Dict

import structlog

_SENSITIVE_KEYS = ("password", "secret", "token", "authorization", "api_key")


def _redact_sensitive(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Mask credential-looking values, keeping a short prefix for debugging."""
    for key, value in list(event_dict.items()):
        if key == "event":
            continue
        if any(marker in key.lower() for marker in _SENSITIVE_KEYS):
            if isinstance(value, str) and len(value) > 4:
                event_dict[key] = value[:4] + "***"
            else:
                event_dict[key] = "***"
    return event_dict


def configure_logging(level: str = "INFO", json_output: bool = False) -> None:
    """
    Configure structlog and the stdlib root logger.

    Args:
        level: Minimum log level name (DEBUG, INFO, WARNING, ERROR)
        json_output: Render JSON lines (production) instead of console output
    """
    log_level = getattr(logging, level.upper(), logging.INFO)

    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=log_level)

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        _redact_sensitive,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if json_output:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=False,
    )


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Return a logger bound to the module name."""
    return structlog.get_logger(name)


def bind_request_id(request_id: str) -> None:
    """Attach the request ID to every log entry of the current context."""
    structlog.contextvars.bind_contextvars(request_id=request_id)


def clear_request_context() -> None:
    structlog.contextvars.clear_contextvars()


def bind_context(**values: Any) -> None:
    """Attach extra keys (e.g. user_id) to the current request's log entries."""
    structlog.contextvars.bind_contextvars(**values)
