"""Logging setup with correlation ID support.

Every inbound request gets a correlation ID (taken from ``X-Correlation-ID``
or generated) that is stamped on each log line emitted while handling it, so
a single webhook delivery can be followed from signature check to ledger row.

Usage:
    from paybord.logging_utils import get_logger

    logger = get_logger(__name__)
    logger.info("Recorded transaction %s", transaction_id)
"""

import logging
import sys
import uuid
from contextvars import ContextVar
from typing import Any

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

CORRELATION_ID_HEADER = "X-Correlation-ID"

_correlation_id: ContextVar[str | None] = ContextVar("correlation_id", default=None)


def set_correlation_id(correlation_id: str | None = None) -> str:
    cid = correlation_id or str(uuid.uuid4())
    _correlation_id.set(cid)
    return cid


def get_correlation_id() -> str | None:
    return _correlation_id.get()


def clear_correlation_id() -> None:
    _correlation_id.set(None)


class CorrelationIdFilter(logging.Filter):
    """Adds ``correlation_id`` to every record passing through."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.correlation_id = get_correlation_id() or "no-correlation-id"
        return True


class StructuredFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        if not hasattr(record, "correlation_id"):
            record.correlation_id = get_correlation_id() or "no-correlation-id"
        return f"[{record.correlation_id}] {super().format(record)}"


def get_logger(name: str) -> logging.Logger:
    logger = logging.getLogger(name)
    if not any(isinstance(f, CorrelationIdFilter) for f in logger.filters):
        logger.addFilter(CorrelationIdFilter())
    return logger


def configure_logging(level: str = "INFO") -> None:
    """Attach the correlation-aware handler to the ``paybord`` logger tree."""
    root = logging.getLogger("paybord")
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    if any(isinstance(h.formatter, StructuredFormatter) for h in root.handlers):
        return
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        StructuredFormatter("%(asctime)s %(levelname)s %(name)s: %(message)s")
    )
    root.addHandler(handler)


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        correlation_id = set_correlation_id(request.headers.get(CORRELATION_ID_HEADER))
        try:
            response = await call_next(request)
            response.headers[CORRELATION_ID_HEADER] = correlation_id
            return response
        finally:
            clear_correlation_id()


def log_webhook_event(
    logger: logging.Logger,
    channel: str,
    event_type: str | None,
    *,
    reference: str | None = None,
    result: str | None = None,
    error: str | None = None,
    **extra: Any,
) -> None:
    """Log one webhook delivery outcome.

    Args:
        logger: Logger instance
        channel: Signature channel (paystack, stripe, generic)
        event_type: Provider event type, if it could be read
        reference: Provider payment reference, if any
        result: recorded, duplicate, ignored or rejected
        error: Error message when the delivery was rejected
        **extra: Additional context fields
    """
    context: dict[str, Any] = {"channel": channel, "event_type": event_type}
    if reference:
        context["reference"] = reference
    if result:
        context["result"] = result
    if error:
        context["error"] = error
    context.update(extra)

    parts = [f"Webhook {channel}:{event_type}"]
    if reference:
        parts.append(f"reference={reference}")
    if result:
        parts.append(f"result={result}")
    if error:
        parts.append(f"error={error}")
    message = " | ".join(parts)

    if result == "rejected":
        logger.error(message, extra=context)
    elif result in ("duplicate", "ignored"):
        logger.warning(message, extra=context)
    else:
        logger.info(message, extra=context)
