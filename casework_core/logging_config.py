"""
Structured Logging Setup
========================
Configures structlog on top of stdlib logging for services embedding the core.

Usage:
    from casework_core.logging_config import setup_logging, bind_request_context

    setup_logging(service_name="casework-api")

    with bind_request_context(request_id="req_123", org_id="org_1", user_id="u_9"):
        ...
"""

import logging
import sys
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Iterator, Optional

import structlog

# Context variables for request tracking
request_id_var: ContextVar[str] = ContextVar("request_id", default="")
org_id_var: ContextVar[str] = ContextVar("org_id", default="")
user_id_var: ContextVar[str] = ContextVar("user_id", default="")
service_name_var: ContextVar[str] = ContextVar("service_name", default="unknown")


def _add_service_context(logger, method_name, event_dict):
    """Attach service and request context to every event."""
    event_dict.setdefault("service", service_name_var.get())
    for key, var in (
        ("request_id", request_id_var),
        ("org_id", org_id_var),
        ("user_id", user_id_var),
    ):
        value = var.get()
        if value and key not in event_dict:
            event_dict[key] = value
    return event_dict


def setup_logging(
    service_name: str,
    level: str = "INFO",
    json_output: bool = True,
) -> None:
    """
    Configure logging for a service embedding casework_core.

    Args:
        service_name: Name of the service (e.g., "casework-api")
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_output: Render JSON lines (production) instead of console output
    """
    service_name_var.set(service_name)
    log_level = getattr(logging, level.upper(), logging.INFO)

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    root_logger.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(log_level)
    handler.setFormatter(logging.Formatter("%(message)s"))
    root_logger.addHandler(handler)

    renderer = (
        structlog.processors.JSONRenderer()
        if json_output
        else structlog.dev.ConsoleRenderer()
    )

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            _add_service_context,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    structlog.get_logger(__name__).info(
        "logging.configured", service=service_name, level=level.upper()
    )


@contextmanager
def bind_request_context(
    request_id: Optional[str] = None,
    org_id: Optional[str] = None,
    user_id: Optional[str] = None,
) -> Iterator[None]:
    """Bind request identifiers to every log line emitted inside the block."""
    tokens = []
    for var, value in (
        (request_id_var, request_id),
        (org_id_var, org_id),
        (user_id_var, user_id),
    ):
        if value:
            tokens.append((var, var.set(value)))
    try:
        yield
    finally:
        for var, token in reversed(tokens):
            var.reset(token)
