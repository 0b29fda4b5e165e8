"""Structured logging setup for the agent service.

Uses structlog for consistent, machine-parseable log output. Request
identity is bound explicitly on each logger from the caller's
``CallContext``; nothing is read from process-wide context.
"""

import logging
import sys
from typing import Any, Optional

import structlog
from structlog.types import EventDict, Processor, WrappedLogger

SECRET_FIELDS = frozenset({"api_key", "x_api_key", "authorization", "owner_key"})


def mask_key(key: Optional[str]) -> str:
    """Render a caller key safe for logs."""
    if not key:
        return "-"
    if len(key) <= 4:
        return "****"
    return f"{key[:4]}****"


def redact_secrets(logger: WrappedLogger, method_name: str, event_dict: EventDict) -> EventDict:
    """Mask credential fields that were passed to a log call by mistake."""
    for field in SECRET_FIELDS.intersection(event_dict):
        value = event_dict[field]
        event_dict[field] = mask_key(value if isinstance(value, str) else None)
    return event_dict


def setup_logging(log_level: str = "INFO", json_output: bool = False) -> None:
    """
    Configure structured logging for the application.

    Args:
        log_level: Minimum log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_output: If True, output JSON; otherwise, use colored console output
    """
    level = getattr(logging, log_level.upper())
    processors: list[Processor] = [
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        redact_secrets,
    ]

    if json_output:
        processors += [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty()))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )

    # uvicorn, httpx and sqlalchemy log through the standard library
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)
    logging.getLogger("httpx").setLevel(max(level, logging.WARNING))


def get_logger(name: str | None = None, **initial_context: Any) -> structlog.BoundLogger:
    """
    Get a configured logger instance.

    Args:
        name: Logger name (typically module name)
        **initial_context: Initial context values to bind to logger

    Returns:
        A bound structlog logger instance
    """
    logger = structlog.get_logger(name)
    if initial_context:
        logger = logger.bind(**initial_context)
    return logger


def bind_call(
    logger: structlog.BoundLogger,
    request_id: str,
    caller_key: Optional[str],
    **context: Any
) -> structlog.BoundLogger:
    """Bind the identity of one call: request id and the masked caller key."""
    return logger.bind(request_id=request_id, caller=mask_key(caller_key), **context)
