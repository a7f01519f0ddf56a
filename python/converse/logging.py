"""Structured logging configuration using structlog.

Every log entry carries the context that is set for the current call:
- request_id: Correlation ID for request tracing (HTTP surface only)
- path / method: Raw request path and HTTP method
- conversation_id: Conversation the current operation works on
- message_id: Message the current operation works on
- timestamp: ISO8601 formatted timestamp

Usage:
    from converse.logging import get_logger, configure_logging

    configure_logging()

    logger = get_logger(__name__)
    logger.info("chunk_appended", sequence=3)
"""

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar

import structlog

request_id_var: ContextVar[str | None] = ContextVar("request_id", default=None)
path_var: ContextVar[str | None] = ContextVar("path", default=None)
method_var: ContextVar[str | None] = ContextVar("method", default=None)
conversation_id_var: ContextVar[str | None] = ContextVar("conversation_id", default=None)
message_id_var: ContextVar[str | None] = ContextVar("message_id", default=None)

_CONTEXT_VARS = {
    "request_id": request_id_var,
    "path": path_var,
    "method": method_var,
    "conversation_id": conversation_id_var,
    "message_id": message_id_var,
}


def add_request_context(logger: logging.Logger, method_name: str, event_dict: dict) -> dict:
    """Inject all non-None context variables into the log event dict.

    Explicit keyword arguments passed to the log call win over context.
    """
    for key, var in _CONTEXT_VARS.items():
        value = var.get()
        if value and key not in event_dict:
            event_dict[key] = value
    return event_dict


def configure_logging(json_format: bool = True) -> None:
    """Configure structlog for the application.

    Args:
        json_format: If True, output JSON logs. If False, output console-friendly logs.
    """
    shared_processors = [
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        add_request_context,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]

    if json_format:
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=shared_processors
        + [
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=shared_processors,
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
    )

    root_logger = logging.getLogger()
    root_logger.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)
    root_logger.addHandler(handler)
    root_logger.setLevel(logging.INFO)

    # Silence noisy loggers
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """Get a structlog logger for the given name."""
    return structlog.get_logger(name)


def set_request_context(
    request_id: str | None,
    path: str | None = None,
    method: str | None = None,
) -> None:
    """Set request context for the current async context."""
    request_id_var.set(request_id)
    if path is not None:
        path_var.set(path)
    if method is not None:
        method_var.set(method)


def clear_request_context() -> None:
    """Clear all request-scoped context at the end of a request."""
    for var in _CONTEXT_VARS.values():
        var.set(None)


def get_request_id() -> str | None:
    """Get the current request ID from context."""
    return request_id_var.get()


@contextmanager
def log_context(
    conversation_id: object | None = None,
    message_id: object | None = None,
) -> Iterator[None]:
    """Bind conversation/message ids to every log entry inside the block.

    Previous values are restored on exit, so blocks can nest.
    """
    tokens = []
    if conversation_id is not None:
        tokens.append((conversation_id_var, conversation_id_var.set(str(conversation_id))))
    if message_id is not None:
        tokens.append((message_id_var, message_id_var.set(str(message_id))))
    try:
        yield
    finally:
        for var, token in reversed(tokens):
            var.reset(token)
