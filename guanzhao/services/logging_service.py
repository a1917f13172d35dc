"""structlog setup for the engagement engine.

Log lines are JSON (or a human-readable console format in development), carry
the request correlation id bound by the middleware, and never include tokens
or secrets.
"""

import logging
import sys
from typing import Any, Dict

import structlog

SERVICE_NAME = "guanzhao"

SENSITIVE_KEYS = {
    "authorization",
    "token",
    "jwt",
    "secret",
    "password",
}


def redact_sensitive(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Replace values of keys that look like credentials with ``REDACTED``.

    Nested dicts (e.g. a logged ``headers`` mapping) are checked one level deep.
    """
    for key in list(event_dict.keys()):
        value = event_dict[key]
        if _is_sensitive(key):
            event_dict[key] = "REDACTED"
        elif isinstance(value, dict):
            event_dict[key] = {
                inner: "REDACTED" if _is_sensitive(inner) else inner_value
                for inner, inner_value in value.items()
            }

    return event_dict


def _is_sensitive(key: str) -> bool:
    key_lower = str(key).lower()
    return any(sensitive in key_lower for sensitive in SENSITIVE_KEYS)


def add_service_name(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    event_dict.setdefault("service", SERVICE_NAME)
    return event_dict


def configure_logging(log_level: str = "INFO", log_format: str = "json") -> None:
    """Configure structlog once at startup.

    Args:
        log_level: DEBUG, INFO, WARNING or ERROR
        log_format: "json" for machine-readable output, "console" for development
    """
    level = getattr(logging, log_level.upper(), logging.INFO)

    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)

    renderer = (
        structlog.dev.ConsoleRenderer()
        if log_format == "console"
        else structlog.processors.JSONRenderer()
    )

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            add_service_name,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            redact_sensitive,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    logger = structlog.get_logger()
    if name:
        logger = logger.bind(logger_name=name)
    return logger
