"""Logging helpers that tag records with the webhook correlation id.

Usage:
    logger = get_logger(__name__)

    with correlation_scope(event.correlation_id):
        logger.info("Applying event")
"""

import logging
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Any, Iterator, Optional

_correlation_id: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s [%(correlation_id)s] %(message)s"


def get_correlation_id() -> Optional[str]:
    return _correlation_id.get()


@contextmanager
def correlation_scope(correlation_id: Optional[str]) -> Iterator[None]:
    token = _correlation_id.set(correlation_id)
    try:
        yield
    finally:
        _correlation_id.reset(token)


class CorrelationIdFilter(logging.Filter):
    """Adds correlation_id to every record passing through a handler."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.correlation_id = get_correlation_id() or "-"
        return True


def get_logger(name: str) -> logging.Logger:
    logger = logging.getLogger(name)
    if not any(isinstance(f, CorrelationIdFilter) for f in logger.filters):
        logger.addFilter(CorrelationIdFilter())
    return logger


def configure_logging(level: str = "INFO") -> None:
    """Install a single stream handler on the package logger.

    Safe to call more than once; tests build several apps per process.
    """
    package_logger = logging.getLogger("busfare")
    package_logger.setLevel(level.upper())
    if any(h.get_name() == "busfare" for h in package_logger.handlers):
        return

    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    handler.addFilter(CorrelationIdFilter())
    handler.set_name("busfare")
    package_logger.addHandler(handler)


def log_webhook_event(
    logger: logging.Logger,
    event_type: str,
    *,
    payment_id: Optional[str] = None,
    result: Optional[str] = None,
    error: Optional[str] = None,
    **extra: Any,
) -> None:
    """Log one webhook delivery outcome.

    Args:
        logger: Logger instance
        event_type: Provider event type (e.g. "OPENPIX:CHARGE_COMPLETED")
        payment_id: Internal payment id if the event matched one
        result: applied, duplicate, skipped, ignored, unknown or error
        error: Error message if processing failed
        **extra: Additional context fields
    """
    context: dict[str, Any] = {"event_type": event_type}
    if payment_id:
        context["payment_id"] = payment_id
    if result:
        context["result"] = result
    if error:
        context["error"] = error
    context.update(extra)

    msg_parts = [f"Webhook event: {event_type}"]
    msg_parts.extend(f"{key}={value}" for key, value in context.items() if key != "event_type")
    message = " | ".join(msg_parts)

    if result == "error":
        logger.error(message, extra={"webhook": context})
    elif result in ("duplicate", "skipped", "ignored", "unknown"):
        logger.warning(message, extra={"webhook": context})
    else:
        logger.info(message, extra={"webhook": context})
